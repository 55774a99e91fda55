from decimal import Decimal
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.test import TestCase

from orders.models import Order, OrderItem

from .dispatch import notify_payment_confirmed, payment_confirmed_payloads
from .models import Notification, NotificationKind
from .tasks import deliver_notification


class PaymentNotificationTests(TestCase):
    def setUp(self):
        User = get_user_model()
        self.consumer = User.objects.create_user(username="consumer", password="pw")
        self.producer = User.objects.create_user(username="producer", password="pw")
        self.order = Order.objects.create(
            pk=42, consumer=self.consumer, producer=self.producer, total=Decimal("50000.00")
        )
        OrderItem.objects.create(order=self.order, product_name="Aguacate", quantity=3, unit_price=Decimal("50000"))

    def test_payloads(self):
        consumer, producer = payment_confirmed_payloads(self.order)

        self.assertEqual(consumer["recipient_id"], self.consumer.pk)
        self.assertEqual(consumer["kind"], NotificationKind.PAYMENT)
        self.assertIn("#42", consumer["message"])
        self.assertEqual(producer["recipient_id"], self.producer.pk)
        self.assertIn("1 producto,", producer["message"])
        self.assertIn("$50,000", producer["message"])
        self.assertNotEqual(consumer["dedupe_key"], producer["dedupe_key"])

    def test_enqueued_only_after_commit(self):
        with self.captureOnCommitCallbacks(execute=False) as callbacks:
            notify_payment_confirmed(self.order)
        self.assertEqual(Notification.objects.count(), 0)

        for callback in callbacks:
            callback()
        self.assertEqual(Notification.objects.count(), 2)

    def test_delivery_is_deduplicated(self):
        payload = payment_confirmed_payloads(self.order)[0]

        first = deliver_notification(**payload)
        second = deliver_notification(**payload)

        self.assertEqual(first["status"], "created")
        self.assertEqual(second["status"], "duplicate")
        self.assertEqual(Notification.objects.filter(recipient=self.consumer).count(), 1)

    def test_enqueue_failure_is_logged(self):
        with patch("notifications.dispatch.deliver_notification") as task, \
                self.assertLogs("notifications.dispatch", level="ERROR"):
            task.delay.side_effect = ConnectionError("broker down")
            with self.captureOnCommitCallbacks(execute=True):
                notify_payment_confirmed(self.order)
        self.assertEqual(task.delay.call_count, 2)
