import hashlib
import hmac
import json
import time
from decimal import Decimal
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.test import SimpleTestCase, TestCase
from django.urls import reverse

from audit.models import AuditOutcome, AuditRecord
from notifications.models import Notification
from orders.models import Order, OrderItem, OrderStatus, PaymentStatus

from .exceptions import GatewayUnavailable, WebhookAuthError
from .models import AttemptStatus, PaymentAttempt, UnmatchedEvent
from .services import APPLIED, DUPLICATE, apply_attempt_outcome
from .webhook import verify_signature

SECRET = "whsec_agrostock_webhook_secret"


def sign(body: bytes, secret=SECRET, timestamp=None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(secret.encode(), f"{timestamp}.".encode() + body, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


class VerifySignatureTests(SimpleTestCase):
    body = b'{"id": "evt_1"}'

    def test_valid_signature_returns_timestamp(self):
        self.assertEqual(verify_signature(self.body, sign(self.body, timestamp=1000), SECRET, now=1010), 1000)

    def test_any_matching_v1_is_accepted(self):
        header = sign(self.body, timestamp=1000) + ",v1=deadbeef"
        verify_signature(self.body, header, SECRET, now=1000)

    def test_rejections(self):
        cases = {
            "missing": "",
            "malformed": "v1=abc",
            "wrong secret": sign(self.body, secret="whsec_other", timestamp=1000),
            "tampered": sign(b'{"id": "evt_2"}', timestamp=1000),
            "stale": sign(self.body, timestamp=1000 - 301),
            "non-ascii": "t=1000,v1=\u00e9\u00e9",
        }
        for name, header in cases.items():
            with self.subTest(name), self.assertRaises(WebhookAuthError):
                verify_signature(self.body, header, SECRET, tolerance=300, now=1000)


class StripeWebhookTests(TestCase):
    def setUp(self):
        User = get_user_model()
        self.consumer = User.objects.create_user(username="consumer", password="pw")
        self.producer = User.objects.create_user(username="producer", password="pw")
        self.order = Order.objects.create(
            pk=42, consumer=self.consumer, producer=self.producer, total=Decimal("50000"), payment_method="tarjeta"
        )
        OrderItem.objects.create(order=self.order, product_name="Café", quantity=2, unit_price=Decimal("15000"))
        OrderItem.objects.create(order=self.order, product_name="Panela", quantity=1, unit_price=Decimal("20000"))
        self.attempt = PaymentAttempt.objects.create(
            order=self.order, gateway_ref="pi_42", amount=Decimal("50000"), amount_minor=5000000,
            idempotency_key="order-42-abc",
        )

    def _event(self, event_type="payment_intent.succeeded", event_id="evt_1", metadata=None, **intent):
        obj = {
            "id": "pi_42",
            "object": "payment_intent",
            "amount": 5000000,
            "currency": "cop",
            "metadata": {"order_id": "42", "attempt_id": str(self.attempt.pk)} if metadata is None else metadata,
            **intent,
        }
        return {"id": event_id, "type": event_type, "data": {"object": obj}}

    def _post(self, event, signature=None):
        body = event if isinstance(event, str) else json.dumps(event)
        headers = {} if signature == "" else {"HTTP_STRIPE_SIGNATURE": signature or sign(body.encode())}
        with self.captureOnCommitCallbacks(execute=True):
            return self.client.post(reverse("payments:webhook"), data=body, content_type="application/json", **headers)

    def _assert_untouched(self):
        self.order.refresh_from_db()
        self.attempt.refresh_from_db()
        self.assertEqual(self.order.payment_status, PaymentStatus.PENDING)
        self.assertEqual(self.order.status, OrderStatus.PENDING)
        self.assertEqual(self.attempt.status, AttemptStatus.CREATED)
        self.assertEqual(Notification.objects.count(), 0)

    def test_missing_signature_is_rejected(self):
        resp = self._post(self._event(), signature="")
        self.assertEqual(resp.status_code, 401)
        self._assert_untouched()

    def test_invalid_signature_is_rejected(self):
        resp = self._post(self._event(), signature="t=1,v1=00")
        self.assertEqual(resp.status_code, 401)
        self._assert_untouched()

    def test_non_ascii_signature_is_rejected(self):
        resp = self._post(self._event(), signature="t=1700000000,v1=\u00e9\u00e9")
        self.assertEqual(resp.status_code, 401)
        self._assert_untouched()

    def test_signed_garbage_is_bad_request(self):
        resp = self._post("not json")
        self.assertEqual(resp.status_code, 400)
        self._assert_untouched()

    def test_succeeded_marks_order_paid_and_notifies(self):
        resp = self._post(self._event())

        self.assertEqual(resp.status_code, 200)
        self.order.refresh_from_db()
        self.attempt.refresh_from_db()
        self.assertEqual(self.order.payment_status, PaymentStatus.PAID)
        self.assertEqual(self.order.status, OrderStatus.CONFIRMED)
        self.assertIsNotNone(self.order.paid_at)
        self.assertEqual(self.attempt.status, AttemptStatus.SUCCEEDED)
        self.assertEqual(self.attempt.last_event_id, "evt_1")

        notes = {n.recipient_id: n for n in Notification.objects.all()}
        self.assertEqual(set(notes), {self.consumer.pk, self.producer.pk})
        self.assertEqual(notes[self.consumer.pk].title, "Pago confirmado")
        self.assertIn("2 productos", notes[self.producer.pk].message)
        self.assertIn("$50,000", notes[self.producer.pk].message)

        record = AuditRecord.objects.get(action="confirmar_pago")
        self.assertIsNone(record.actor_id)
        self.assertEqual(record.before["payment_status"], PaymentStatus.PENDING)
        self.assertEqual(record.after["payment_status"], PaymentStatus.PAID)

    def test_duplicate_delivery_is_a_no_op(self):
        self._post(self._event())
        self.order.refresh_from_db()
        paid_at = self.order.paid_at

        resp = self._post(self._event())

        self.assertEqual(resp.status_code, 200)
        self.order.refresh_from_db()
        self.assertEqual(self.order.paid_at, paid_at)
        self.assertEqual(self.order.status, OrderStatus.CONFIRMED)
        self.assertEqual(Notification.objects.count(), 2)
        self.assertEqual(AuditRecord.objects.filter(action="confirmar_pago").count(), 1)

    def test_failed_event_keeps_order_pending(self):
        event = self._event(
            "payment_intent.payment_failed", last_payment_error={"message": "Your card has insufficient funds."}
        )
        resp = self._post(event)

        self.assertEqual(resp.status_code, 200)
        self.order.refresh_from_db()
        self.attempt.refresh_from_db()
        self.assertEqual(self.order.payment_status, PaymentStatus.PENDING)
        self.assertEqual(self.order.status, OrderStatus.PENDING)
        self.assertEqual(self.attempt.status, AttemptStatus.FAILED)
        self.assertIn("insufficient funds", self.attempt.failure_message)
        self.assertEqual(Notification.objects.count(), 0)

    def test_concurrent_deliveries_apply_once(self):
        first = PaymentAttempt.objects.get(pk=self.attempt.pk)
        stale = PaymentAttempt.objects.get(pk=self.attempt.pk)

        with self.captureOnCommitCallbacks(execute=True):
            self.assertEqual(apply_attempt_outcome(first, AttemptStatus.SUCCEEDED, event_id="evt_1"), APPLIED)
        self.order.refresh_from_db()
        paid_at = self.order.paid_at

        with self.captureOnCommitCallbacks(execute=True):
            self.assertEqual(apply_attempt_outcome(stale, AttemptStatus.SUCCEEDED, event_id="evt_1"), DUPLICATE)

        self.order.refresh_from_db()
        self.assertEqual(self.order.paid_at, paid_at)
        self.assertEqual(self.order.status, OrderStatus.CONFIRMED)
        self.assertEqual(Notification.objects.count(), 2)
        self.assertEqual(AuditRecord.objects.filter(action="confirmar_pago").count(), 1)

    def test_paid_never_regresses(self):
        self._post(self._event())
        self._post(self._event("payment_intent.payment_failed", event_id="evt_2"))
        self._post(self._event("payment_intent.canceled", event_id="evt_3"))

        self.order.refresh_from_db()
        self.attempt.refresh_from_db()
        self.assertEqual(self.order.payment_status, PaymentStatus.PAID)
        self.assertEqual(self.attempt.status, AttemptStatus.SUCCEEDED)

    def test_success_after_failure_is_flagged(self):
        self._post(self._event("payment_intent.payment_failed"))
        resp = self._post(self._event(event_id="evt_late"))

        self.assertEqual(resp.status_code, 200)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, PaymentStatus.PENDING)
        self.assertTrue(UnmatchedEvent.objects.filter(event_id="evt_late").exists())
        rejected = AuditRecord.objects.get(action="confirmar_pago", outcome=AuditOutcome.FAILURE)
        self.assertIsNone(rejected.actor_id)
        self.assertEqual(rejected.entity_id, "42")
        self.assertIn("already failed", rejected.error_message)

    def test_second_successful_attempt_is_flagged(self):
        self._post(self._event())
        other = PaymentAttempt.objects.create(
            order=self.order, gateway_ref="pi_43", amount=Decimal("50000"), amount_minor=5000000,
            idempotency_key="order-42-def",
        )
        event = self._event(event_id="evt_dup", id="pi_43", metadata={"order_id": "42", "attempt_id": str(other.pk)})
        self._post(event)

        other.refresh_from_db()
        self.assertEqual(other.status, AttemptStatus.SUCCEEDED)
        self.assertTrue(UnmatchedEvent.objects.filter(event_id="evt_dup").exists())
        self.assertEqual(Notification.objects.count(), 2)

    def test_unknown_event_type_is_ignored(self):
        resp = self._post(self._event("charge.refunded"))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.content, b"ignored")
        self._assert_untouched()

    def test_unknown_order_is_acknowledged_and_flagged(self):
        resp = self._post(self._event(event_id="evt_orphan", metadata={"order_id": "9999"}))

        self.assertEqual(resp.status_code, 202)
        self._assert_untouched()
        flagged = UnmatchedEvent.objects.get(event_id="evt_orphan")
        self.assertEqual(flagged.gateway_ref, "pi_42")
        self.assertIn("9999", flagged.reason)

    def test_amount_mismatch_is_flagged(self):
        resp = self._post(self._event(event_id="evt_amount", amount=100))
        self.assertEqual(resp.status_code, 202)
        self._assert_untouched()
        self.assertTrue(UnmatchedEvent.objects.filter(event_id="evt_amount").exists())

    @patch("payments.integrations.stripe.retrieve_payment_intent")
    def test_missing_metadata_falls_back_to_gateway_lookup(self, retrieve):
        retrieve.return_value = {"id": "pi_42", "metadata": {"order_id": "42"}}

        resp = self._post(self._event(metadata={}))

        self.assertEqual(resp.status_code, 200)
        retrieve.assert_called_once_with("pi_42")
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, PaymentStatus.PAID)

    @patch("payments.integrations.stripe.retrieve_payment_intent")
    def test_failed_metadata_lookup_is_flagged(self, retrieve):
        retrieve.side_effect = GatewayUnavailable("down")

        resp = self._post(self._event(event_id="evt_nometa", metadata={}))

        self.assertEqual(resp.status_code, 202)
        self._assert_untouched()
        self.assertTrue(UnmatchedEvent.objects.filter(event_id="evt_nometa").exists())

    def test_unbound_attempt_is_bound_from_metadata(self):
        self.attempt.gateway_ref = None
        self.attempt.save()

        resp = self._post(self._event(id="pi_late"))

        self.assertEqual(resp.status_code, 200)
        self.attempt.refresh_from_db()
        self.assertEqual(self.attempt.gateway_ref, "pi_late")
        self.assertEqual(self.attempt.status, AttemptStatus.SUCCEEDED)

    def test_processing_error_is_acknowledged(self):
        with patch("payments.services.apply_attempt_outcome", side_effect=RuntimeError("boom")), \
                self.assertLogs("payments.webhook", level="ERROR"):
            resp = self._post(self._event(event_id="evt_boom"))

        self.assertEqual(resp.status_code, 200)
        self.assertTrue(UnmatchedEvent.objects.filter(event_id="evt_boom").exists())

    def test_notification_failure_does_not_fail_confirmation(self):
        with patch("notifications.dispatch.deliver_notification") as task, \
                self.assertLogs("notifications.dispatch", level="ERROR"):
            task.delay.side_effect = ConnectionError("broker down")
            resp = self._post(self._event())

        self.assertEqual(resp.status_code, 200)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, PaymentStatus.PAID)


@patch("payments.integrations.stripe.retrieve_payment_intent")
class ClientConfirmTests(TestCase):
    def setUp(self):
        User = get_user_model()
        self.consumer = User.objects.create_user(username="consumer", password="pw")
        self.producer = User.objects.create_user(username="producer", password="pw")
        self.order = Order.objects.create(
            pk=42, consumer=self.consumer, producer=self.producer, total=Decimal("50000")
        )
        self.attempt = PaymentAttempt.objects.create(
            order=self.order, gateway_ref="pi_42", amount=Decimal("50000"), amount_minor=5000000,
            idempotency_key="order-42-abc",
        )
        self.client.force_login(self.consumer)

    def _post(self, payload):
        with self.captureOnCommitCallbacks(execute=True):
            return self.client.post(
                reverse("payments:client_confirm"), data=json.dumps(payload), content_type="application/json"
            )

    def test_gateway_status_is_authoritative(self, retrieve):
        retrieve.return_value = {"id": "pi_42", "status": "processing", "amount": 5000000, "metadata": {"order_id": "42"}}

        resp = self._post({"payment_intent_id": "pi_42", "estado": "succeeded", "order_id": 42})

        self.assertEqual(resp.status_code, 202)
        self.assertEqual(resp.json()["result"], "open")
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, PaymentStatus.PENDING)

    def test_succeeded_intent_is_applied(self, retrieve):
        retrieve.return_value = {"id": "pi_42", "status": "succeeded", "amount": 5000000, "metadata": {"order_id": "42"}}

        resp = self._post({"payment_intent_id": "pi_42", "estado": "succeeded", "order_id": 42})

        self.assertEqual(resp.json()["result"], "applied")
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, PaymentStatus.PAID)
        self.assertEqual(self.order.status, OrderStatus.CONFIRMED)
        self.assertEqual(Notification.objects.count(), 2)

    def test_order_mismatch_is_not_applied(self, retrieve):
        retrieve.return_value = {"id": "pi_42", "status": "succeeded", "amount": 5000000, "metadata": {"order_id": "42"}}

        resp = self._post({"payment_intent_id": "pi_42", "order_id": 7})

        self.assertEqual(resp.json()["result"], "unresolved")
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, PaymentStatus.PENDING)

    def test_bad_intent_id(self, retrieve):
        resp = self._post({"payment_intent_id": "../../v1/charges"})
        self.assertEqual(resp.status_code, 400)
        retrieve.assert_not_called()
