import json
import logging
import re

from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_POST

from orders.models import Order

from .config import get_gateway_config
from .exceptions import ConfigurationError, GatewayError, NotFoundError, ReconciliationGap, ValidationError
from .models import PaymentAttempt
from .services import create_payment, flag_for_review, reconcile_from_gateway

logger = logging.getLogger(__name__)

INTENT_ID_RE = re.compile(r"^pi_[A-Za-z0-9_]{1,120}$")


def _json_body(request):
    try: return json.loads(request.body.decode("utf-8"))
    except Exception: return None


def _error(status, error, **extra):
    return JsonResponse({"success": False, "error": error, **extra}, status=status)


def _pick(body, *keys):
    for k in keys:
        if body.get(k) not in (None, ""):
            return body[k]
    return None


def _can_view(user, order) -> bool:
    return user.is_staff or user.pk in (order.consumer_id, order.producer_id)


@csrf_exempt
@require_POST
def create_payment_view(request):
    if not request.user.is_authenticated:
        return _error(401, "Authentication required")
    body = _json_body(request)
    if not isinstance(body, dict):
        return _error(400, "Invalid JSON body")

    order_id = _pick(body, "order_id", "id_pedido")
    if order_id is None:
        return _error(400, "Missing fields: order_id")
    method = _pick(body, "method", "metodo_pago")
    if method is None:
        return _error(400, "Missing fields: method")
    order = Order.objects.filter(pk=order_id).only("consumer_id").first() if str(order_id).isdigit() else None
    if order is not None and order.consumer_id != request.user.pk and not request.user.is_staff:
        return _error(403, "Not allowed to pay this order")

    try:
        result = create_payment(
            order_id=order_id,
            actor_id=request.user.pk,
            amount=_pick(body, "amount", "monto"),
            method=method,
            gateway=_pick(body, "gateway", "pasarela"),
            request=request,
        )
    except ValidationError as e:
        return _error(400, str(e))
    except NotFoundError as e:
        return _error(404, str(e))
    except ConfigurationError:
        logger.exception("Payment gateway misconfigured")
        return _error(503, "Payments are temporarily unavailable")

    if result.success:
        return JsonResponse(result.as_dict(), status=201)
    # the client shows "try again"; the order was left untouched
    return JsonResponse(result.as_dict(), status=502 if result.retryable else 400)


@csrf_exempt
@require_POST
def client_confirm_view(request):
    """Client-side hint that a payment finished.

    The reported ``estado`` is never trusted: the intent is re-read from the
    gateway and whatever it says goes through the normal guarded path.
    """
    if not request.user.is_authenticated:
        return _error(401, "Authentication required")
    body = _json_body(request)
    if not isinstance(body, dict):
        return _error(400, "Invalid JSON body")
    intent_id = str(body.get("payment_intent_id") or "")
    if not INTENT_ID_RE.match(intent_id):
        return _error(400, "Invalid payment_intent_id")
    order_id = _pick(body, "order_id", "id_pedido")
    logger.info("Client reports intent %s as %s (order %s)", intent_id, body.get("estado"), order_id)

    try:
        outcome = reconcile_from_gateway(intent_id, source="client_confirm", order_id=order_id)
    except ReconciliationGap as e:
        flag_for_review(event_id=f"client_confirm:{intent_id}", gateway_ref=intent_id, reason=e.reason, payload=body)
        outcome = "unresolved"
    except ConfigurationError:
        logger.exception("Payment gateway misconfigured")
        return _error(503, "Payments are temporarily unavailable")
    except GatewayError as e:
        logger.warning("Client confirm for %s could not reach gateway: %s", intent_id, e)
        outcome = "deferred"

    return JsonResponse({"success": True, "received": True, "result": outcome}, status=202)


@require_GET
def gateway_config_view(request):
    try:
        config = get_gateway_config()
    except ConfigurationError:
        return _error(503, "Payments are temporarily unavailable")
    return JsonResponse({"success": True, "publishable_key": config.publishable_key, "currency": config.currency})


@require_GET
def payment_detail_view(request, attempt_id: int):
    if not request.user.is_authenticated:
        return _error(401, "Authentication required")
    attempt = PaymentAttempt.objects.select_related("order").filter(pk=attempt_id).first()
    if attempt is None:
        return _error(404, "Payment not found")
    if not _can_view(request.user, attempt.order):
        return _error(403, "Not allowed")
    return JsonResponse({"success": True, "data": attempt.as_dict()})


@require_GET
def order_payments_view(request, order_id: int):
    if not request.user.is_authenticated:
        return _error(401, "Authentication required")
    order = Order.objects.filter(pk=order_id).first()
    if order is None:
        return _error(404, "Order not found")
    if not _can_view(request.user, order):
        return _error(403, "Not allowed")
    attempts = [a.as_dict() for a in order.payment_attempts.all()]
    return JsonResponse({
        "success": True,
        "data": attempts,
        "total": len(attempts),
        "payment_status": order.payment_status,
        "paid": order.is_paid,
    })
