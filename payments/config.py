import re
from dataclasses import dataclass
from functools import lru_cache

from django.conf import settings
from django.core.signals import setting_changed
from django.dispatch import receiver

from .exceptions import ConfigurationError

_PLACEHOLDER = re.compile(r"(your[_-]|changeme|change[_-]me|placeholder|replace[_-]?me|xxx|<.*>|\.\.\.$)", re.I)

_PREFIXES = {
    "secret_key": ("sk_", "rk_"),
    "publishable_key": ("pk_",),
    "webhook_secret": ("whsec_",),
}


def is_placeholder(value: str) -> bool:
    return not (value or "").strip() or bool(_PLACEHOLDER.search(value.strip()))


@dataclass(frozen=True)
class GatewayConfig:
    secret_key: str
    publishable_key: str
    webhook_secret: str
    api_base: str = "https://api.stripe.com"
    currency: str = "cop"
    timeout: float = 30.0
    webhook_tolerance: int = 300

    def __post_init__(self):
        for name, prefixes in _PREFIXES.items():
            value = getattr(self, name)
            if is_placeholder(value):
                raise ConfigurationError(f"Payment gateway {name} is not configured")
            if not value.startswith(prefixes):
                raise ConfigurationError(f"Payment gateway {name} must start with {' or '.join(prefixes)}")
        if not self.api_base.startswith("https://"):
            raise ConfigurationError("Payment gateway api_base must be HTTPS")
        if self.timeout <= 0:
            raise ConfigurationError("Payment gateway timeout must be positive")

    @classmethod
    def from_settings(cls) -> "GatewayConfig":
        return cls(
            secret_key=getattr(settings, "STRIPE_SECRET_KEY", ""),
            publishable_key=getattr(settings, "STRIPE_PUBLISHABLE_KEY", ""),
            webhook_secret=getattr(settings, "STRIPE_WEBHOOK_SECRET", ""),
            api_base=getattr(settings, "STRIPE_API_BASE", "https://api.stripe.com").rstrip("/"),
            currency=getattr(settings, "PAYMENTS_CURRENCY", "cop").lower(),
            timeout=float(getattr(settings, "PAYMENTS_GATEWAY_TIMEOUT", 30)),
            webhook_tolerance=int(getattr(settings, "STRIPE_WEBHOOK_TOLERANCE", 300)),
        )


@lru_cache(maxsize=1)
def get_gateway_config() -> GatewayConfig:
    return GatewayConfig.from_settings()


@receiver(setting_changed)
def _reset_gateway_config(*, setting, **kwargs):
    if setting.startswith(("STRIPE_", "PAYMENTS_")):
        get_gateway_config.cache_clear()
