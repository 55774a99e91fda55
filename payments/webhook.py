import hashlib
import hmac
import json
import logging
import time

from django.http import HttpResponse, HttpResponseBadRequest
from django.views.decorators.csrf import csrf_exempt

from .config import get_gateway_config
from .exceptions import ConfigurationError, ReconciliationGap, WebhookAuthError
from .services import IGNORED, flag_for_review, handle_gateway_event

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "Stripe-Signature"


def verify_signature(payload: bytes, header: str, secret: str, tolerance: int = 300, now=None) -> int:
    """
    Check a ``t=<unix ts>,v1=<hex hmac>[,v1=...]`` signature header.

    The HMAC-SHA256 is computed over ``"<t>." + raw body`` with the shared
    webhook secret. Returns the signed timestamp; raises WebhookAuthError on
    any mismatch.
    """
    if not header:
        raise WebhookAuthError("Missing signature header")
    timestamp, signatures = "", []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1" and value:
            signatures.append(value)
    if not timestamp.isdigit() or not signatures:
        raise WebhookAuthError("Malformed signature header")

    signed = timestamp.encode("utf-8") + b"." + payload
    expected = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest().encode("ascii")
    if not any(hmac.compare_digest(expected, s.encode("utf-8", "surrogateescape")) for s in signatures):
        raise WebhookAuthError("Signature mismatch")

    now = time.time() if now is None else now
    if tolerance and abs(now - int(timestamp)) > tolerance:
        raise WebhookAuthError("Signature timestamp outside tolerance")
    return int(timestamp)


def _intent_id(event: dict) -> str:
    return str((((event.get("data") or {}).get("object")) or {}).get("id") or "")


@csrf_exempt
def stripe_webhook(request):
    if request.method != "POST":
        return HttpResponseBadRequest("POST only")

    try:
        config = get_gateway_config()
    except ConfigurationError as e:
        logger.error("Webhook received but payments are not configured: %s", e)
        return HttpResponse("Payments not configured", status=503)

    # 🔐 nothing in the body is trusted before this passes
    try:
        verify_signature(
            request.body, request.headers.get(SIGNATURE_HEADER, ""),
            config.webhook_secret, config.webhook_tolerance,
        )
    except WebhookAuthError as e:
        logger.warning("Rejected webhook: %s", e)
        return HttpResponse("Unauthorized", status=401)

    try:
        event = json.loads(request.body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return HttpResponseBadRequest("Invalid JSON")
    if not isinstance(event, dict):
        return HttpResponseBadRequest("Invalid event")

    event_id = str(event.get("id") or "")
    event_type = str(event.get("type") or "")
    try:
        outcome = handle_gateway_event(event)
    except ReconciliationGap as e:
        flag_for_review(
            event_id=event_id or f"webhook:{_intent_id(event)}", event_type=event_type,
            gateway_ref=_intent_id(event), reason=e.reason, payload=event,
        )
        # ack so the processor stops redelivering; the row above is the follow-up
        return HttpResponse("unknown order", status=202)
    except Exception as e:
        logger.exception("Webhook event %s (%s) failed", event_id, event_type)
        flag_for_review(
            event_id=event_id or f"webhook:{_intent_id(event)}", event_type=event_type,
            gateway_ref=_intent_id(event), reason=f"Processing error: {e}", payload=event,
        )
        return HttpResponse("ok")

    if outcome == IGNORED:
        return HttpResponse("ignored")
    return HttpResponse("ok")
