import json
from decimal import Decimal
from io import StringIO
from unittest.mock import Mock, patch

import requests
from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.test import SimpleTestCase, TestCase, override_settings
from django.urls import reverse

from audit.models import AuditOutcome, AuditRecord
from orders.models import Order, OrderStatus, PaymentMethod, PaymentStatus

from . import utils
from .admin import PaymentAttemptAdmin
from .checks import gateway_configured
from .config import GatewayConfig, get_gateway_config, is_placeholder
from .exceptions import ConfigurationError, NotFoundError, ValidationError
from .models import AttemptStatus, PaymentAttempt
from .services import create_payment, mark_refunded


def _response(status=200, body=None):
    resp = Mock()
    resp.status_code = status
    resp.json.return_value = body if body is not None else {}
    resp.text = json.dumps(body or {})
    return resp


def _intent(intent_id="pi_42", status="requires_payment_method"):
    return {
        "id": intent_id,
        "client_secret": f"{intent_id}_secret_abc",
        "status": status,
        "amount": 5000000,
        "currency": "cop",
    }


class OrderFixtureMixin:
    def setUp(self):
        User = get_user_model()
        self.consumer = User.objects.create_user(username="consumer", password="pw")
        self.producer = User.objects.create_user(username="producer", password="pw")
        self.order = Order.objects.create(
            pk=42, consumer=self.consumer, producer=self.producer, total=Decimal("50000")
        )


@patch("payments.integrations.stripe.requests.request")
class CreatePaymentTests(OrderFixtureMixin, TestCase):
    def test_non_positive_amount_is_rejected_before_gateway(self, request):
        for amount in (0, -1, "-0.01", "abc"):
            with self.assertRaises(ValidationError):
                create_payment(order_id=42, actor_id=self.consumer.pk, amount=amount, method="tarjeta")

        request.assert_not_called()
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, PaymentStatus.PENDING)
        self.assertEqual(self.order.payment_method, PaymentMethod.CASH)
        self.assertFalse(PaymentAttempt.objects.exists())

    def test_unknown_order(self, request):
        with self.assertRaises(NotFoundError):
            create_payment(order_id=999, actor_id=self.consumer.pk, amount=100, method="tarjeta")
        request.assert_not_called()

    def test_unsupported_method_and_gateway(self, request):
        with self.assertRaises(ValidationError):
            create_payment(order_id=42, actor_id=self.consumer.pk, amount=100, method="bitcoin")
        with self.assertRaises(ValidationError):
            create_payment(order_id=42, actor_id=self.consumer.pk, amount=100, method="tarjeta", gateway="paypal")
        request.assert_not_called()

    def test_cash_never_calls_gateway(self, request):
        self.order.payment_method = PaymentMethod.CARD
        self.order.save()

        result = create_payment(order_id=42, actor_id=self.consumer.pk, amount=50000, method="efectivo")

        self.assertTrue(result.success)
        self.assertEqual(result.status, PaymentStatus.PENDING)
        self.assertIsNone(result.client_secret)
        request.assert_not_called()
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_method, PaymentMethod.CASH)
        self.assertEqual(self.order.payment_status, PaymentStatus.PENDING)

    def test_card_payment_returns_client_secret(self, request):
        request.return_value = _response(200, _intent())

        result = create_payment(order_id=42, actor_id=self.consumer.pk, amount=50000, method="tarjeta")

        self.assertTrue(result.success)
        self.assertEqual(result.payment_ref, "pi_42")
        self.assertEqual(result.client_secret, "pi_42_secret_abc")
        self.assertEqual(result.status, PaymentStatus.PENDING)

        attempt = PaymentAttempt.objects.get()
        self.assertEqual(attempt.gateway_ref, "pi_42")
        self.assertEqual(attempt.amount_minor, 5000000)
        self.assertEqual(attempt.status, AttemptStatus.CREATED)

        kwargs = request.call_args.kwargs
        self.assertEqual(kwargs["data"]["metadata[order_id]"], "42")
        self.assertEqual(kwargs["data"]["metadata[attempt_id]"], str(attempt.pk))
        self.assertEqual(kwargs["headers"]["Idempotency-Key"], attempt.idempotency_key)

        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, PaymentStatus.PENDING)
        self.assertEqual(self.order.payment_method, PaymentMethod.CARD)

    def test_rejection_fails_attempt_and_leaves_order(self, request):
        request.return_value = _response(402, {"error": {"message": "Your card was declined.", "code": "card_declined"}})

        result = create_payment(order_id=42, actor_id=self.consumer.pk, amount=50000, method="tarjeta")

        self.assertFalse(result.success)
        self.assertFalse(result.retryable)
        self.assertIn("declined", result.error)
        self.assertEqual(PaymentAttempt.objects.get().status, AttemptStatus.FAILED)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, PaymentStatus.PENDING)

    def test_timeout_retry_reuses_idempotency_key(self, request):
        request.side_effect = [requests.ReadTimeout("read timed out"), _response(200, _intent())]

        first = create_payment(order_id=42, actor_id=self.consumer.pk, amount=50000, method="tarjeta")
        self.assertFalse(first.success)
        self.assertTrue(first.retryable)
        self.assertTrue(first.outcome_unknown)

        second = create_payment(order_id=42, actor_id=self.consumer.pk, amount=50000, method="tarjeta")
        self.assertTrue(second.success)

        keys = [c.kwargs["headers"]["Idempotency-Key"] for c in request.call_args_list]
        self.assertEqual(keys[0], keys[1])
        self.assertEqual(PaymentAttempt.objects.count(), 1)
        self.assertEqual(PaymentAttempt.objects.get().gateway_ref, "pi_42")

    def test_transient_failure_is_retryable(self, request):
        request.side_effect = requests.ConnectionError("connection refused")

        result = create_payment(order_id=42, actor_id=self.consumer.pk, amount=50000, method="tarjeta")

        self.assertFalse(result.success)
        self.assertTrue(result.retryable)
        self.assertFalse(result.outcome_unknown)
        attempt = PaymentAttempt.objects.get()
        self.assertEqual(attempt.status, AttemptStatus.CREATED)
        self.assertIsNone(attempt.gateway_ref)

    @override_settings(STRIPE_SECRET_KEY="sk_your_secret_key")
    def test_configuration_error_is_raised_without_attempt(self, request):
        with self.assertRaises(ConfigurationError):
            create_payment(order_id=42, actor_id=self.consumer.pk, amount=50000, method="tarjeta")

        request.assert_not_called()
        self.assertFalse(PaymentAttempt.objects.exists())
        self.assertEqual(AuditRecord.objects.get().outcome, AuditOutcome.ERROR)

    def test_already_paid_order_is_not_charged_again(self, request):
        Order.objects.filter(pk=42).update(payment_status=PaymentStatus.PAID)

        with self.assertRaises(ValidationError):
            create_payment(order_id=42, actor_id=self.consumer.pk, amount=50000, method="tarjeta")
        request.assert_not_called()

    def test_one_audit_record_per_call(self, request):
        request.return_value = _response(200, _intent())

        create_payment(order_id=42, actor_id=self.consumer.pk, amount=50000, method="tarjeta")
        with self.assertRaises(ValidationError):
            create_payment(order_id=42, actor_id=self.consumer.pk, amount=0, method="tarjeta")

        records = list(AuditRecord.objects.order_by("id"))
        self.assertEqual(len(records), 2)
        self.assertEqual(records[0].outcome, AuditOutcome.SUCCESS)
        self.assertEqual(records[0].actor_id, self.consumer.pk)
        self.assertEqual(records[0].entity_id, "42")
        self.assertEqual(records[0].after["payment_ref"], "pi_42")
        self.assertEqual(records[1].outcome, AuditOutcome.FAILURE)
        self.assertIn("greater than 0", records[1].error_message)


@patch("payments.integrations.stripe.requests.request")
class CreatePaymentViewTests(OrderFixtureMixin, TestCase):
    def _post(self, payload):
        return self.client.post(
            reverse("payments:create_payment"), data=json.dumps(payload), content_type="application/json"
        )

    def test_requires_login(self, request):
        resp = self._post({"order_id": 42, "amount": 50000, "method": "tarjeta"})
        self.assertEqual(resp.status_code, 401)

    def test_only_consumer_may_pay(self, request):
        self.client.force_login(self.producer)
        resp = self._post({"order_id": 42, "amount": 50000, "method": "tarjeta"})
        self.assertEqual(resp.status_code, 403)
        request.assert_not_called()

    def test_spanish_aliases_create_intent(self, request):
        request.return_value = _response(200, _intent())
        self.client.force_login(self.consumer)

        resp = self.client.post(
            reverse("payments:create_intent"),
            data=json.dumps({"id_pedido": 42, "monto": "50000", "metodo_pago": "tarjeta"}),
            content_type="application/json",
        )

        self.assertEqual(resp.status_code, 201)
        body = resp.json()
        self.assertTrue(body["success"])
        self.assertEqual(body["client_secret"], "pi_42_secret_abc")

    def test_missing_method_is_rejected(self, request):
        self.client.force_login(self.consumer)
        resp = self._post({"order_id": 42, "amount": 50000})

        self.assertEqual(resp.status_code, 400)
        self.assertIn("method", resp.json()["error"])
        request.assert_not_called()
        self.assertFalse(AuditRecord.objects.exists())

    def test_validation_and_not_found(self, request):
        self.client.force_login(self.consumer)
        self.assertEqual(self._post({"order_id": 42, "amount": 0, "method": "tarjeta"}).status_code, 400)
        self.assertEqual(self._post({"amount": 10}).status_code, 400)
        self.assertEqual(self._post({"order_id": 777, "amount": 10, "method": "tarjeta"}).status_code, 404)

    def test_gateway_failures(self, request):
        self.client.force_login(self.consumer)

        request.side_effect = requests.ConnectionError("down")
        resp = self._post({"order_id": 42, "amount": 50000, "method": "tarjeta"})
        self.assertEqual(resp.status_code, 502)
        self.assertTrue(resp.json()["retryable"])

        request.side_effect = None
        request.return_value = _response(402, {"error": {"message": "declined"}})
        resp = self._post({"order_id": 42, "amount": 50000, "method": "tarjeta"})
        self.assertEqual(resp.status_code, 400)
        self.assertFalse(resp.json()["retryable"])

    @override_settings(STRIPE_WEBHOOK_SECRET="")
    def test_misconfiguration_returns_503(self, request):
        self.client.force_login(self.consumer)
        resp = self._post({"order_id": 42, "amount": 50000, "method": "tarjeta"})
        self.assertEqual(resp.status_code, 503)
        request.assert_not_called()


class PaymentReadViewTests(OrderFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.attempt = PaymentAttempt.objects.create(
            order=self.order, gateway_ref="pi_42", amount=Decimal("50000"), amount_minor=5000000,
            idempotency_key="order-42-abc",
        )

    def test_gateway_config_exposes_publishable_key_only(self):
        resp = self.client.get(reverse("payments:gateway_config"))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["publishable_key"], "pk_test_51AgroStockPublishableKey")
        self.assertNotIn("sk_test", resp.content.decode())

    def test_detail_visible_to_producer(self):
        self.client.force_login(self.producer)
        resp = self.client.get(reverse("payments:payment_detail", args=[self.attempt.pk]))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["data"]["payment_ref"], "pi_42")

    def test_detail_hidden_from_strangers(self):
        stranger = get_user_model().objects.create_user(username="stranger", password="pw")
        self.client.force_login(stranger)
        resp = self.client.get(reverse("payments:payment_detail", args=[self.attempt.pk]))
        self.assertEqual(resp.status_code, 403)

    def test_order_payments(self):
        self.client.force_login(self.consumer)
        resp = self.client.get(reverse("payments:order_payments", args=[42]))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["total"], 1)
        self.assertEqual(resp.json()["payment_status"], PaymentStatus.PENDING)
        self.assertFalse(resp.json()["paid"])

        Order.objects.filter(pk=42).advance_payment(PaymentStatus.PAID)
        self.assertTrue(self.client.get(reverse("payments:order_payments", args=[42])).json()["paid"])


class MarkRefundedTests(OrderFixtureMixin, TestCase):
    def test_only_paid_orders_are_refunded(self):
        self.assertFalse(mark_refunded(self.order, actor_id=self.producer.pk))
        self.assertEqual(self.order.payment_status, PaymentStatus.PENDING)

        Order.objects.filter(pk=42).advance_payment(PaymentStatus.PAID)
        self.assertTrue(mark_refunded(self.order, actor_id=self.producer.pk))
        self.assertEqual(self.order.payment_status, PaymentStatus.REFUNDED)

        outcomes = list(AuditRecord.objects.filter(action="marcar_reembolso").order_by("id").values_list("outcome", flat=True))
        self.assertEqual(outcomes, [AuditOutcome.FAILURE, AuditOutcome.SUCCESS])


@patch("payments.integrations.stripe.retrieve_payment_intent")
class ReconcileCommandTests(OrderFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.attempt = PaymentAttempt.objects.create(
            order=self.order, gateway_ref="pi_42", amount=Decimal("50000"), amount_minor=5000000,
            idempotency_key="order-42-abc",
        )

    def _run(self):
        out = StringIO()
        call_command("reconcile_pending_payments", "--sleep", "0", "--older-than-minutes", "0", stdout=out)
        return out.getvalue()

    def test_applies_succeeded_intents(self, retrieve):
        retrieve.return_value = {**_intent(status="succeeded"), "metadata": {"order_id": "42"}}

        with self.captureOnCommitCallbacks(execute=True):
            output = self._run()

        self.assertIn("updated 1", output)
        self.attempt.refresh_from_db()
        self.order.refresh_from_db()
        self.assertEqual(self.attempt.status, AttemptStatus.SUCCEEDED)
        self.assertEqual(self.order.payment_status, PaymentStatus.PAID)
        self.assertEqual(self.order.status, OrderStatus.CONFIRMED)

    def test_open_intents_are_left_alone(self, retrieve):
        retrieve.return_value = {**_intent(status="processing"), "metadata": {"order_id": "42"}}

        output = self._run()

        self.assertIn("open", output)
        self.attempt.refresh_from_db()
        self.assertEqual(self.attempt.status, AttemptStatus.CREATED)


class GatewayConfigTests(SimpleTestCase):
    valid = {
        "secret_key": "sk_test_123",
        "publishable_key": "pk_test_123",
        "webhook_secret": "whsec_123",
    }

    def test_valid_config(self):
        config = GatewayConfig(**self.valid)
        self.assertEqual(config.currency, "cop")

    def test_placeholders_are_rejected(self):
        for value in ("", "   ", "sk_your_secret_key", "sk_changeme", "sk_xxx", "sk_test_..."):
            with self.subTest(value=value), self.assertRaises(ConfigurationError):
                GatewayConfig(**{**self.valid, "secret_key": value})
        self.assertTrue(is_placeholder("<your key>"))
        self.assertFalse(is_placeholder("whsec_123"))

    def test_wrong_prefix_is_rejected(self):
        with self.assertRaises(ConfigurationError):
            GatewayConfig(**{**self.valid, "secret_key": "pk_test_123"})
        with self.assertRaises(ConfigurationError):
            GatewayConfig(**{**self.valid, "webhook_secret": "secret_123"})

    def test_plain_http_api_base_is_rejected(self):
        with self.assertRaises(ConfigurationError):
            GatewayConfig(**self.valid, api_base="http://api.stripe.com")

    def test_settings_changes_refresh_cached_config(self):
        self.assertEqual(get_gateway_config().currency, "cop")
        with override_settings(PAYMENTS_CURRENCY="USD"):
            self.assertEqual(get_gateway_config().currency, "usd")
        self.assertEqual(get_gateway_config().currency, "cop")

    def test_system_check(self):
        self.assertEqual(gateway_configured(None), [])
        with override_settings(STRIPE_PUBLISHABLE_KEY="pk_placeholder"):
            errors = gateway_configured(None)
        self.assertEqual([e.id for e in errors], ["payments.E001"])


class MinorUnitTests(SimpleTestCase):
    def test_two_decimal_round_trip(self):
        for value in ("50000", "0.01", "19.99", "1234567.89"):
            with self.subTest(value=value):
                minor = utils.to_minor_units(value, "cop")
                self.assertEqual(utils.from_minor_units(minor, "cop"), Decimal(value))

    def test_conversion(self):
        self.assertEqual(utils.to_minor_units(50000, "cop"), 5000000)
        self.assertEqual(utils.to_minor_units("10.005", "usd"), 1001)
        self.assertEqual(utils.to_minor_units("1500", "JPY"), 1500)
        self.assertEqual(utils.from_minor_units(1500, "jpy"), Decimal("1500"))

    def test_parse_amount_rejects_garbage(self):
        for value in ("abc", None, True, "NaN", "Infinity"):
            with self.subTest(value=value), self.assertRaises(ValueError):
                utils.parse_amount(value)


class PaymentAttemptAdminTests(SimpleTestCase):
    def test_gateway_owned_fields_are_read_only(self):
        for field in ("status", "amount", "amount_minor", "gateway_ref", "idempotency_key"):
            with self.subTest(field=field):
                self.assertIn(field, PaymentAttemptAdmin.readonly_fields)
