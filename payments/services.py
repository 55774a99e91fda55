import logging
from dataclasses import asdict, dataclass
from datetime import timedelta

from django.db import IntegrityError, transaction
from django.utils import timezone

from audit.models import AuditOutcome
from audit.recorder import record as audit
from notifications.dispatch import notify_payment_confirmed
from orders.models import Order, OrderStatus, PaymentMethod, PaymentStatus

from .config import get_gateway_config
from .exceptions import GatewayError, GatewayRejected, NotFoundError, ReconciliationGap, ValidationError
from .integrations import stripe as stripe_gateway
from .models import AttemptStatus, PaymentAttempt, UnmatchedEvent
from .utils import new_idempotency_key, parse_amount, to_minor_units

logger = logging.getLogger(__name__)

SUPPORTED_GATEWAYS = {stripe_gateway.GATEWAY_NAME}

# Processor idempotency keys live for 24h; an open attempt older than this
# can no longer be replayed safely and is left to reconciliation.
ATTEMPT_REUSE_WINDOW = timedelta(hours=23)

EVENT_OUTCOMES = {
    "payment_intent.succeeded": AttemptStatus.SUCCEEDED,
    "payment_intent.payment_failed": AttemptStatus.FAILED,
    "payment_intent.canceled": AttemptStatus.CANCELED,
}

# Intent statuses that are final from the processor's side. Anything else
# (processing, requires_action, ...) leaves the attempt open.
INTENT_STATUS_OUTCOMES = {
    "succeeded": AttemptStatus.SUCCEEDED,
    "canceled": AttemptStatus.CANCELED,
}

APPLIED = "applied"
DUPLICATE = "duplicate"
IGNORED = "ignored"
STILL_OPEN = "open"


@dataclass
class PaymentResult:
    success: bool
    status: str
    payment_ref: str | None = None
    client_secret: str | None = None
    attempt_id: int | None = None
    error: str = ""
    retryable: bool = False
    outcome_unknown: bool = False

    def as_dict(self) -> dict:
        return asdict(self)


# ---------- payment creation ----------

def create_payment(*, order_id, actor_id, amount, method, gateway=None, request=None) -> PaymentResult:
    """Start collecting ``amount`` for an order.

    Cash orders stay ``pending`` until someone settles them by hand. Gateway
    orders get a payment intent whose client secret goes back to the caller;
    the order is only marked paid later, by a verified confirmation.

    Raises ValidationError / NotFoundError / ConfigurationError. Gateway
    failures come back as ``PaymentResult(success=False)`` with the order's
    payment status untouched. Exactly one audit record is written per call.
    """
    entry = {"outcome": AuditOutcome.FAILURE, "before": None, "after": None, "error": None, "description": ""}
    try:
        result = _create_payment(order_id, amount, method, gateway, entry)
        if result.success:
            entry["outcome"] = AuditOutcome.SUCCESS
        else:
            entry["error"] = result.error
        return result
    except (ValidationError, NotFoundError) as e:
        entry["error"] = e
        raise
    except Exception as e:
        entry["outcome"] = AuditOutcome.ERROR
        entry["error"] = e
        raise
    finally:
        audit(
            actor_id, "crear_pago", "pedidos", order_id,
            before=entry["before"], after=entry["after"], outcome=entry["outcome"],
            error=entry["error"], description=entry["description"], request=request,
        )


def _create_payment(order_id, amount, method, gateway, entry) -> PaymentResult:
    try:
        amount = parse_amount(amount)
    except ValueError:
        raise ValidationError("Amount must be a number")
    if amount <= 0:
        raise ValidationError("Amount must be greater than 0")

    method = str(method or "").strip().lower()
    if method not in PaymentMethod.values:
        raise ValidationError(f"Unsupported payment method: {method or '(empty)'}")

    try:
        pk = int(order_id)
    except (TypeError, ValueError):
        raise ValidationError("order_id must be an integer")
    try:
        order = Order.objects.get(pk=pk)
    except Order.DoesNotExist:
        raise NotFoundError(f"Order {pk} not found")

    entry["before"] = order.snapshot()
    if order.payment_status != PaymentStatus.PENDING:
        raise ValidationError(f"Order {pk} payment is already {order.payment_status}")

    if method == PaymentMethod.CASH:
        if order.payment_method != method:
            order.payment_method = method
            order.save(update_fields=["payment_method", "updated_at"])
        entry["after"] = order.snapshot()
        entry["description"] = "Cash payment pending manual settlement"
        return PaymentResult(success=True, status=order.payment_status)

    gateway = (gateway or stripe_gateway.GATEWAY_NAME).strip().lower()
    if gateway not in SUPPORTED_GATEWAYS:
        raise ValidationError(f"Unsupported payment gateway: {gateway}")

    config = get_gateway_config()
    amount_minor = to_minor_units(amount, config.currency)
    attempt = _open_attempt(order, gateway, amount, amount_minor, config.currency)
    entry["description"] = f"{gateway} attempt {attempt.pk}"

    try:
        intent = stripe_gateway.create_payment_intent(
            amount=amount,
            currency=config.currency,
            metadata={"order_id": order.pk, "attempt_id": attempt.pk},
            idempotency_key=attempt.idempotency_key,
            description=f"Pedido #{order.pk}",
            config=config,
        )
    except GatewayRejected as e:
        attempt.status = AttemptStatus.FAILED
        attempt.failure_message = str(e)[:255]
        attempt.save(update_fields=["status", "failure_message", "updated_at"])
        logger.info("Order %s: gateway rejected attempt %s: %s", order.pk, attempt.pk, e)
        return PaymentResult(success=False, status=order.payment_status, attempt_id=attempt.pk, error=str(e))
    except GatewayError as e:
        logger.warning("Order %s: attempt %s not confirmed by gateway (unknown=%s): %s",
                       order.pk, attempt.pk, e.outcome_unknown, e)
        return PaymentResult(
            success=False, status=order.payment_status, attempt_id=attempt.pk, error=str(e),
            retryable=True, outcome_unknown=e.outcome_unknown,
        )

    if attempt.gateway_ref and attempt.gateway_ref != intent["id"]:
        logger.error("Attempt %s already bound to %s, gateway returned %s", attempt.pk, attempt.gateway_ref, intent["id"])
        return PaymentResult(
            success=False, status=order.payment_status, attempt_id=attempt.pk,
            error="Payment reference conflict; please retry later", retryable=True, outcome_unknown=True,
        )
    if not attempt.gateway_ref:
        attempt.gateway_ref = intent["id"]
        attempt.save(update_fields=["gateway_ref", "updated_at"])
    if order.payment_method != method:
        Order.objects.filter(pk=order.pk).update(payment_method=method, updated_at=timezone.now())
        order.payment_method = method

    entry["after"] = {**order.snapshot(), "payment_ref": intent["id"]}
    return PaymentResult(
        success=True, status=order.payment_status, payment_ref=intent["id"],
        client_secret=intent["client_secret"], attempt_id=attempt.pk,
    )


def _open_attempt(order, gateway, amount, amount_minor, currency) -> PaymentAttempt:
    """Reuse the order's open attempt for the same amount, so a retry after a
    timeout replays the same idempotency key instead of charging twice."""
    attempt = (
        PaymentAttempt.objects.filter(
            order=order, gateway=gateway, currency=currency, amount_minor=amount_minor,
            status=AttemptStatus.CREATED, created_at__gte=timezone.now() - ATTEMPT_REUSE_WINDOW,
        )
        .order_by("-created_at", "-id")
        .first()
    )
    if attempt:
        return attempt
    return PaymentAttempt.objects.create(
        order=order, gateway=gateway, amount=amount, amount_minor=amount_minor,
        currency=currency, idempotency_key=new_idempotency_key(order.pk),
    )


# ---------- confirmation ----------

def flag_for_review(*, event_id, reason, event_type="", gateway_ref="", payload=None) -> None:
    logger.warning("Manual reconciliation needed for %s (%s): %s", event_id, gateway_ref or "-", reason)
    try:
        with transaction.atomic():
            UnmatchedEvent.objects.get_or_create(
                event_id=event_id[:128],
                defaults={
                    "event_type": event_type[:64],
                    "gateway_ref": (gateway_ref or "")[:128],
                    "reason": reason[:255],
                    "payload": payload,
                },
            )
    except Exception:
        logger.exception("Could not store unmatched event %s", event_id)


def handle_gateway_event(event: dict, *, source: str = "webhook") -> str:
    """Apply one verified processor event. Raises ReconciliationGap when the
    event cannot be tied to a local attempt."""
    event_type = str(event.get("type") or "")
    target = EVENT_OUTCOMES.get(event_type)
    if target is None:
        logger.info("Ignoring gateway event %s of type %s", event.get("id"), event_type or "(none)")
        return IGNORED

    intent = ((event.get("data") or {}).get("object")) or {}
    attempt, _order = resolve_attempt(intent, event=event)
    return apply_attempt_outcome(
        attempt, target, event_id=str(event.get("id") or ""), event_type=event_type,
        payload=intent, source=source,
    )


def resolve_attempt(intent: dict, *, event=None):
    intent_id = str(intent.get("id") or "")
    if not intent_id:
        raise ReconciliationGap("Event carries no payment intent id", event=event)

    metadata = intent.get("metadata") or {}
    if not metadata.get("order_id"):
        try:
            metadata = stripe_gateway.retrieve_payment_intent(intent_id).get("metadata") or {}
        except GatewayError as e:
            raise ReconciliationGap(f"Metadata lookup for {intent_id} failed: {e}", event=event)

    try:
        order = Order.objects.get(pk=int(metadata.get("order_id")))
    except (TypeError, ValueError):
        raise ReconciliationGap(f"Intent {intent_id} has no usable order correlation id", event=event)
    except Order.DoesNotExist:
        raise ReconciliationGap(f"Intent {intent_id} references unknown order {metadata.get('order_id')}", event=event)

    attempt = PaymentAttempt.objects.filter(gateway_ref=intent_id).first()
    if attempt is None:
        attempt = _bind_reference(order, intent_id, metadata.get("attempt_id"), event)

    if attempt.order_id != order.pk:
        raise ReconciliationGap(
            f"Intent {intent_id} belongs to order {attempt.order_id}, metadata says {order.pk}", event=event
        )
    amount = intent.get("amount")
    if amount is not None and int(amount) != attempt.amount_minor:
        raise ReconciliationGap(
            f"Intent {intent_id} amount {amount} does not match attempt {attempt.pk} ({attempt.amount_minor})",
            event=event,
        )
    return attempt, order


def _bind_reference(order, intent_id, attempt_ref, event) -> PaymentAttempt:
    # The intent was created but its id never got stored (e.g. the create call
    # timed out). Only the attempt named in the intent's own metadata qualifies.
    if not str(attempt_ref or "").isdigit():
        raise ReconciliationGap(f"No local attempt for intent {intent_id}", event=event)
    try:
        with transaction.atomic():
            bound = PaymentAttempt.objects.filter(
                pk=int(attempt_ref), order=order, gateway_ref__isnull=True
            ).update(gateway_ref=intent_id, updated_at=timezone.now())
    except IntegrityError:
        bound = 0
    attempt = PaymentAttempt.objects.filter(pk=int(attempt_ref), order=order).first()
    if attempt is None or attempt.gateway_ref != intent_id:
        raise ReconciliationGap(f"No local attempt for intent {intent_id}", event=event)
    if bound:
        logger.info("Bound intent %s to attempt %s of order %s", intent_id, attempt.pk, order.pk)
    return attempt


def apply_attempt_outcome(attempt, target, *, event_id="", event_type="", payload=None, source="webhook") -> str:
    """Move an open attempt to ``target`` and cascade to its order.

    Terminal attempts are never touched again, and the order moves only
    through guarded updates, so replays of the same event are no-ops.
    """
    review_id = event_id or f"{source}:{attempt.gateway_ref}:{target}"
    with transaction.atomic():
        attempt = PaymentAttempt.objects.select_for_update().get(pk=attempt.pk)
        if attempt.is_terminal:
            if target == AttemptStatus.SUCCEEDED and attempt.status != AttemptStatus.SUCCEEDED:
                flag_for_review(
                    event_id=review_id, event_type=event_type, gateway_ref=attempt.gateway_ref, payload=payload,
                    reason=f"Success reported for attempt already {attempt.status}",
                )
                audit(
                    None, "confirmar_pago", "pedidos", attempt.order_id,
                    before={"attempt_status": attempt.status}, after={"attempt_status": attempt.status},
                    outcome=AuditOutcome.FAILURE,
                    error=f"Success reported for attempt {attempt.pk} already {attempt.status}",
                    description=f"{source}: {attempt.gateway_ref} -> {target}",
                )
            logger.info("Attempt %s already %s; %s from %s is a no-op", attempt.pk, attempt.status, target, source)
            return DUPLICATE

        order = Order.objects.get(pk=attempt.order_id)
        before = {**order.snapshot(), "attempt_status": attempt.status}

        attempt.status = target
        attempt.last_event_id = event_id[:128]
        attempt.last_payload = payload
        if target != AttemptStatus.SUCCEEDED:
            error = (payload or {}).get("last_payment_error") or {}
            attempt.failure_message = str(error.get("message") or target)[:255]
        attempt.save(update_fields=["status", "last_event_id", "last_payload", "failure_message", "updated_at"])

        newly_paid = False
        if target == AttemptStatus.SUCCEEDED:
            orders = Order.objects.filter(pk=order.pk)
            newly_paid = bool(orders.advance_payment(PaymentStatus.PAID, paid_at=timezone.now()))
            if newly_paid:
                orders.advance_fulfillment(OrderStatus.CONFIRMED)
            else:
                flag_for_review(
                    event_id=review_id, event_type=event_type, gateway_ref=attempt.gateway_ref, payload=payload,
                    reason=f"Order {order.pk} was already {order.payment_status} when attempt {attempt.pk} succeeded",
                )
            order.refresh_from_db()

        audit(
            None, "confirmar_pago", "pedidos", order.pk,
            before=before, after={**order.snapshot(), "attempt_status": attempt.status},
            description=f"{source}: {attempt.gateway_ref} -> {target}",
        )
        if newly_paid:
            notify_payment_confirmed(order)

    logger.info("Attempt %s -> %s via %s (order %s paid=%s)", attempt.pk, target, source, order.pk, newly_paid)
    return APPLIED


def reconcile_from_gateway(intent_id: str, *, source: str, order_id=None) -> str:
    """Re-read an intent from the processor and apply its status through the
    same guarded path as a webhook."""
    intent = stripe_gateway.retrieve_payment_intent(intent_id)
    target = INTENT_STATUS_OUTCOMES.get(str(intent.get("status") or ""))
    if target is None:
        return STILL_OPEN
    attempt, order = resolve_attempt(intent)
    if order_id is not None and str(order.pk) != str(order_id):
        raise ReconciliationGap(f"Intent {intent_id} belongs to order {order.pk}, not {order_id}")
    return apply_attempt_outcome(attempt, target, payload=intent, source=source)


# ---------- status marking ----------

def mark_refunded(order, *, actor_id, request=None) -> bool:
    before = order.snapshot()
    changed = bool(Order.objects.filter(pk=order.pk).advance_payment(PaymentStatus.REFUNDED))
    order.refresh_from_db()
    audit(
        actor_id, "marcar_reembolso", "pedidos", order.pk, before=before, after=order.snapshot(),
        outcome=AuditOutcome.SUCCESS if changed else AuditOutcome.FAILURE,
        error=None if changed else f"payment status is {order.payment_status}",
        request=request,
    )
    return changed
