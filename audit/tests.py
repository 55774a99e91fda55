from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.db import DatabaseError
from django.test import RequestFactory, TestCase
from django.urls import reverse

from .models import AuditOutcome, AuditRecord, ImmutableRecordError
from .recorder import history_for_actor, history_for_entity, record


class RecorderTests(TestCase):
    def test_record_writes_row(self):
        request = RequestFactory().post(
            "/api/pagos", HTTP_X_FORWARDED_FOR="203.0.113.7, 10.0.0.1", HTTP_USER_AGENT="AgroApp/1.0"
        )
        record(5, "crear_pago", "pedidos", 42, before={"payment_status": "pending"},
               after={"payment_status": "pending"}, description="cash", request=request)

        row = AuditRecord.objects.get()
        self.assertEqual(row.actor_id, 5)
        self.assertEqual(row.entity_id, "42")
        self.assertEqual(row.outcome, AuditOutcome.SUCCESS)
        self.assertEqual(row.ip_address, "203.0.113.7")
        self.assertEqual(row.user_agent, "AgroApp/1.0")

    def test_error_is_stored_as_text(self):
        record(None, "confirmar_pago", "pedidos", 1, outcome=AuditOutcome.ERROR, error=ValueError("bad amount"))
        row = AuditRecord.objects.get()
        self.assertIsNone(row.actor_id)
        self.assertEqual(row.error_message, "bad amount")

    def test_write_failure_never_raises(self):
        with patch.object(AuditRecord.objects, "create", side_effect=DatabaseError("disk full")), \
                self.assertLogs("audit.recorder", level="ERROR") as logs:
            record(1, "crear_pago", "pedidos", 42)
        self.assertIn("Audit write failed", logs.output[0])
        self.assertFalse(AuditRecord.objects.exists())

    def test_history(self):
        record(1, "crear_pago", "pedidos", 42)
        record(None, "confirmar_pago", "pedidos", 42)
        record(1, "crear_pago", "pedidos", 43)

        self.assertEqual([r.action for r in history_for_entity("pedidos", 42)], ["confirmar_pago", "crear_pago"])
        self.assertEqual(len(history_for_actor(1)), 2)
        self.assertEqual(len(history_for_actor(1, limit=1)), 1)


class ImmutabilityTests(TestCase):
    def setUp(self):
        record(1, "crear_pago", "pedidos", 42)
        self.row = AuditRecord.objects.get()

    def test_instance_changes_raise(self):
        self.row.outcome = AuditOutcome.FAILURE
        with self.assertRaises(ImmutableRecordError):
            self.row.save()
        with self.assertRaises(ImmutableRecordError):
            self.row.delete()

    def test_queryset_changes_raise(self):
        with self.assertRaises(ImmutableRecordError):
            AuditRecord.objects.filter(pk=self.row.pk).update(outcome=AuditOutcome.FAILURE)
        with self.assertRaises(ImmutableRecordError):
            AuditRecord.objects.all().delete()
        self.assertEqual(AuditRecord.objects.get().outcome, AuditOutcome.SUCCESS)


class EntityHistoryViewTests(TestCase):
    def setUp(self):
        User = get_user_model()
        self.staff = User.objects.create_user(username="admin", password="pw", is_staff=True)
        self.user = User.objects.create_user(username="consumer", password="pw")
        record(self.user.pk, "crear_pago", "pedidos", 42)

    def test_staff_only(self):
        url = reverse("audit:entity_history", args=["pedidos", "42"])
        self.client.force_login(self.user)
        self.assertEqual(self.client.get(url).status_code, 302)

        self.client.force_login(self.staff)
        resp = self.client.get(url)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["total"], 1)
        self.assertEqual(resp.json()["data"][0]["action"], "crear_pago")

    def test_actor_history(self):
        record(None, "confirmar_pago", "pedidos", 42)
        url = reverse("audit:actor_history", args=[self.user.pk])

        self.client.force_login(self.user)
        self.assertEqual(self.client.get(url).status_code, 302)

        self.client.force_login(self.staff)
        resp = self.client.get(url)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual([r["actor_id"] for r in resp.json()["data"]], [self.user.pk])
