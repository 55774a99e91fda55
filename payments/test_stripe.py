from unittest.mock import Mock, patch

import requests
from django.test import SimpleTestCase

from .config import GatewayConfig
from .exceptions import (
    ConfigurationError,
    GatewayOutcomeUnknown,
    GatewayRejected,
    GatewayUnavailable,
)
from .integrations import stripe

CONFIG = GatewayConfig(
    secret_key="sk_test_123",
    publishable_key="pk_test_123",
    webhook_secret="whsec_123",
    api_base="https://api.stripe.test",
    timeout=5,
)


def fake_response(status_code, body=None, text=""):
    resp = Mock()
    resp.status_code = status_code
    if body is None:
        resp.json.side_effect = ValueError("no json")
    else:
        resp.json.return_value = body
    resp.text = text
    return resp


@patch("payments.integrations.stripe.requests.request")
class CreatePaymentIntentTests(SimpleTestCase):
    def _create(self):
        return stripe.create_payment_intent(
            amount="50000", metadata={"order_id": 42, "attempt_id": 7},
            idempotency_key="order-42-abc", description="Pedido #42", config=CONFIG,
        )

    def test_success(self, request):
        request.return_value = fake_response(200, {
            "id": "pi_1", "client_secret": "pi_1_secret", "status": "requires_payment_method",
            "amount": 5000000, "currency": "cop",
        })

        intent = self._create()

        self.assertEqual(intent["id"], "pi_1")
        self.assertEqual(intent["client_secret"], "pi_1_secret")
        method, url = request.call_args.args
        kwargs = request.call_args.kwargs
        self.assertEqual((method, url), ("POST", "https://api.stripe.test/v1/payment_intents"))
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer sk_test_123")
        self.assertEqual(kwargs["headers"]["Idempotency-Key"], "order-42-abc")
        self.assertEqual(kwargs["data"]["amount"], 5000000)
        self.assertEqual(kwargs["data"]["currency"], "cop")
        self.assertEqual(kwargs["data"]["metadata[order_id]"], "42")
        self.assertEqual(kwargs["data"]["metadata[attempt_id]"], "7")
        self.assertEqual(kwargs["timeout"], 5)

    def test_card_decline_is_rejected(self, request):
        request.return_value = fake_response(402, {"error": {
            "type": "card_error", "code": "card_declined", "decline_code": "insufficient_funds",
            "message": "Your card has insufficient funds.",
        }})

        with self.assertRaises(GatewayRejected) as ctx:
            self._create()
        self.assertEqual(ctx.exception.code, "insufficient_funds")
        self.assertFalse(ctx.exception.retryable)

    def test_invalid_request_is_rejected(self, request):
        request.return_value = fake_response(400, {"error": {"type": "invalid_request_error", "message": "bad"}})
        with self.assertRaises(GatewayRejected):
            self._create()

    def test_bad_credentials_are_configuration_errors(self, request):
        for status in (401, 403):
            request.return_value = fake_response(status, {"error": {"message": "Invalid API Key provided"}})
            with self.subTest(status=status), self.assertRaises(ConfigurationError):
                self._create()

    def test_server_errors_are_transient(self, request):
        for status in (429, 500, 503):
            request.return_value = fake_response(status, None, text="upstream error")
            with self.subTest(status=status), self.assertRaises(GatewayUnavailable) as ctx:
                self._create()
            self.assertTrue(ctx.exception.retryable)
            self.assertFalse(ctx.exception.outcome_unknown)

    def test_network_errors_are_transient(self, request):
        for exc in (requests.ConnectionError("refused"), requests.ConnectTimeout("connect timeout")):
            request.side_effect = exc
            with self.subTest(exc=type(exc).__name__), self.assertRaises(GatewayUnavailable) as ctx:
                self._create()
            self.assertFalse(ctx.exception.outcome_unknown)

    def test_read_timeout_outcome_is_unknown(self, request):
        request.side_effect = requests.ReadTimeout("read timeout")
        with self.assertRaises(GatewayOutcomeUnknown) as ctx:
            self._create()
        self.assertTrue(ctx.exception.retryable)
        self.assertTrue(ctx.exception.outcome_unknown)

    def test_unreadable_success_outcome_is_unknown(self, request):
        request.return_value = fake_response(200, None, text="<html>")
        with self.assertRaises(GatewayOutcomeUnknown):
            self._create()

        request.return_value = fake_response(200, {"id": "pi_1"})
        with self.assertRaises(GatewayOutcomeUnknown):
            self._create()


@patch("payments.integrations.stripe.requests.request")
class RetrievePaymentIntentTests(SimpleTestCase):
    def test_get_by_id(self, request):
        request.return_value = fake_response(200, {"id": "pi_1", "status": "succeeded", "metadata": {"order_id": "42"}})

        intent = stripe.retrieve_payment_intent("pi_1", config=CONFIG)

        self.assertEqual(intent["metadata"]["order_id"], "42")
        method, url = request.call_args.args
        self.assertEqual((method, url), ("GET", "https://api.stripe.test/v1/payment_intents/pi_1"))
        self.assertNotIn("Idempotency-Key", request.call_args.kwargs["headers"])

    def test_missing_id(self, request):
        with self.assertRaises(GatewayRejected):
            stripe.retrieve_payment_intent("", config=CONFIG)
        request.assert_not_called()
