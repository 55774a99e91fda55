from decimal import Decimal

from django.contrib.auth import get_user_model
from django.test import SimpleTestCase, TestCase

from .models import (
    FULFILLMENT_TRANSITIONS,
    PAYMENT_TRANSITIONS,
    Order,
    OrderStatus,
    PaymentStatus,
    sources_for,
)


class TransitionTableTests(SimpleTestCase):
    def test_tables_are_exhaustive(self):
        self.assertEqual(set(PAYMENT_TRANSITIONS), set(PaymentStatus))
        self.assertEqual(set(FULFILLMENT_TRANSITIONS), set(OrderStatus))

    def test_sources(self):
        self.assertEqual(sources_for(PAYMENT_TRANSITIONS, PaymentStatus.PAID), ["pending"])
        self.assertEqual(sources_for(PAYMENT_TRANSITIONS, PaymentStatus.PENDING), [])
        self.assertEqual(sources_for(FULFILLMENT_TRANSITIONS, OrderStatus.CONFIRMED), ["pending"])


class GuardedTransitionTests(TestCase):
    def setUp(self):
        User = get_user_model()
        self.order = Order.objects.create(
            consumer=User.objects.create_user(username="consumer", password="pw"),
            producer=User.objects.create_user(username="producer", password="pw"),
            total=Decimal("50000"),
        )
        self.qs = Order.objects.filter(pk=self.order.pk)

    def test_payment_moves_forward_once(self):
        self.assertEqual(self.qs.advance_payment(PaymentStatus.PAID), 1)
        self.assertEqual(self.qs.advance_payment(PaymentStatus.PAID), 0)
        self.assertEqual(self.qs.advance_payment(PaymentStatus.PENDING), 0)
        self.order.refresh_from_db()
        self.assertTrue(self.order.is_paid)

    def test_refund_requires_paid(self):
        self.assertEqual(self.qs.advance_payment(PaymentStatus.REFUNDED), 0)
        self.qs.advance_payment(PaymentStatus.PAID)
        self.assertEqual(self.qs.advance_payment(PaymentStatus.REFUNDED), 1)

    def test_fulfillment_is_guarded(self):
        self.assertEqual(self.qs.advance_fulfillment(OrderStatus.IN_TRANSIT), 0)
        self.assertEqual(self.qs.advance_fulfillment(OrderStatus.CONFIRMED), 1)
        self.assertEqual(self.qs.advance_fulfillment(OrderStatus.CONFIRMED), 0)
        self.assertEqual(self.qs.advance_fulfillment(OrderStatus.IN_PREPARATION), 1)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, OrderStatus.IN_PREPARATION)

    def test_extra_fields_are_written_with_the_transition(self):
        self.qs.advance_payment(PaymentStatus.PAID, payment_method="tarjeta")
        self.order.refresh_from_db()
        self.assertEqual(self.order.snapshot()["payment_method"], "tarjeta")
        self.assertEqual(self.order.snapshot()["total"], "50000.00")
