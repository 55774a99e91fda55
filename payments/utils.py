import uuid
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

# Currencies the processor charges without a fractional unit.
ZERO_DECIMAL_CURRENCIES = {
    "bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga",
    "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf",
}


def parse_amount(value) -> Decimal:
    if isinstance(value, bool):
        raise ValueError("Invalid amount value")
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, TypeError):
        raise ValueError("Invalid amount value")
    if not amount.is_finite():
        raise ValueError("Invalid amount value")
    return amount


def _exponent(currency: str) -> int:
    return 0 if (currency or "").lower() in ZERO_DECIMAL_CURRENCIES else 2


def to_minor_units(amount, currency: str) -> int:
    exp = _exponent(currency)
    q = parse_amount(amount).quantize(Decimal(1).scaleb(-exp), rounding=ROUND_HALF_UP)
    return int(q.scaleb(exp))


def from_minor_units(minor: int, currency: str) -> Decimal:
    exp = _exponent(currency)
    return (Decimal(int(minor)).scaleb(-exp)).quantize(Decimal(1).scaleb(-exp))


def new_idempotency_key(order_id) -> str:
    return f"order-{order_id}-{uuid.uuid4().hex}"
