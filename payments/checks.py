from django.core.checks import Error, register

from .config import GatewayConfig
from .exceptions import ConfigurationError


@register()
def gateway_configured(app_configs, **kwargs):
    try:
        GatewayConfig.from_settings()
    except ConfigurationError as e:
        return [Error(str(e), hint="Set STRIPE_SECRET_KEY, STRIPE_PUBLISHABLE_KEY and STRIPE_WEBHOOK_SECRET.",
                      id="payments.E001")]
    return []
