import json
import logging

import requests
from requests import RequestException

from ..config import get_gateway_config
from ..exceptions import ConfigurationError, GatewayOutcomeUnknown, GatewayRejected, GatewayUnavailable
from ..utils import to_minor_units

logger = logging.getLogger(__name__)

GATEWAY_NAME = "stripe"


def _headers(config, idempotency_key: str = "") -> dict:
    headers = {
        "Authorization": f"Bearer {config.secret_key}",
        "Content-Type": "application/x-www-form-urlencoded",
    }
    if idempotency_key:
        headers["Idempotency-Key"] = idempotency_key
    return headers


def _error_body(resp) -> dict:
    try:
        return (resp.json() or {}).get("error") or {}
    except ValueError:
        return {"message": resp.text[:500]}


def _raise_for_response(resp, op: str):
    err = _error_body(resp)
    message = err.get("message") or f"HTTP {resp.status_code}"
    if resp.status_code in (401, 403):
        raise ConfigurationError(f"{op} failed: gateway rejected credentials ({message})")
    if resp.status_code == 429 or resp.status_code >= 500:
        raise GatewayUnavailable(f"{op} failed: gateway unavailable ({resp.status_code}). {message}")
    code = err.get("decline_code") or err.get("code") or err.get("type") or ""
    raise GatewayRejected(f"{op} failed: {message}", code=code)


def _send(method: str, path: str, *, config, data=None, idempotency_key: str = "", op: str) -> dict:
    url = f"{config.api_base}{path}"
    try:
        resp = requests.request(
            method, url, headers=_headers(config, idempotency_key), data=data, timeout=config.timeout
        )
    except requests.ConnectTimeout as e:
        # never reached the processor
        raise GatewayUnavailable(f"{op} failed: {e}")
    except requests.Timeout as e:
        raise GatewayOutcomeUnknown(f"{op} timed out after {config.timeout}s: {e}")
    except RequestException as e:
        raise GatewayUnavailable(f"{op} failed: {e}")

    if resp.status_code != 200:
        _raise_for_response(resp, op)
    try:
        return resp.json()
    except ValueError:
        raise GatewayOutcomeUnknown(f"{op} returned an unreadable response: {resp.text[:200]}")


def create_payment_intent(*, amount, metadata: dict, idempotency_key: str,
                          currency: str = "", description: str = "", config=None) -> dict:
    """Create a payment intent for ``amount`` (major units).

    Returns ``{"id", "client_secret", "status", "amount", "currency"}``. The
    metadata travels with the intent and comes back on every webhook event.
    """
    config = config or get_gateway_config()
    currency = (currency or config.currency).lower()
    payload = {
        "amount": to_minor_units(amount, currency),
        "currency": currency,
        "automatic_payment_methods[enabled]": "true",
    }
    if description:
        payload["description"] = description
    for k, v in (metadata or {}).items():
        payload[f"metadata[{k}]"] = str(v)

    data = _send("POST", "/v1/payment_intents", config=config, data=payload,
                 idempotency_key=idempotency_key, op="Create payment intent")
    if not data.get("id") or not data.get("client_secret"):
        raise GatewayOutcomeUnknown(f"Create payment intent: incomplete response {json.dumps(data)[:300]}")
    logger.info("Payment intent %s created (%s %s)", data["id"], payload["amount"], currency)
    return {
        "id": data["id"],
        "client_secret": data["client_secret"],
        "status": data.get("status", ""),
        "amount": data.get("amount", payload["amount"]),
        "currency": data.get("currency", currency),
    }


def retrieve_payment_intent(intent_id: str, *, config=None) -> dict:
    config = config or get_gateway_config()
    if not intent_id:
        raise GatewayRejected("Retrieve payment intent: missing intent id")
    return _send("GET", f"/v1/payment_intents/{intent_id}", config=config, op="Retrieve payment intent")
