from django.core.exceptions import ImproperlyConfigured


class PaymentError(Exception):
    pass


class ValidationError(PaymentError):
    """Bad input; raised before any side effect."""


class NotFoundError(PaymentError):
    pass


class ConfigurationError(PaymentError, ImproperlyConfigured):
    """Gateway credentials missing or unusable. Fatal, never retried."""


class GatewayError(PaymentError):
    retryable = False
    outcome_unknown = False


class GatewayRejected(GatewayError):
    """The processor declined this attempt."""

    def __init__(self, message, code=""):
        super().__init__(message)
        self.code = code


class GatewayUnavailable(GatewayError):
    retryable = True


class GatewayOutcomeUnknown(GatewayUnavailable):
    # The request may have reached the processor. Retry only with the same
    # idempotency key.
    outcome_unknown = True


class WebhookAuthError(PaymentError):
    pass


class ReconciliationGap(PaymentError):
    """An event that cannot be tied to a local order/attempt."""

    def __init__(self, reason, *, event=None):
        super().__init__(reason)
        self.reason = reason
        self.event = event
