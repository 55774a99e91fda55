"""Enqueue side-effect notifications without blocking the caller.

Dispatch happens after the surrounding transaction commits, and an enqueue
failure is logged here so it is never mistaken for a payment failure.
"""
import logging

from django.db import transaction

from .models import NotificationKind
from .tasks import deliver_notification

logger = logging.getLogger(__name__)


def _format_total(amount) -> str:
    return f"${amount:,.0f}" if amount == amount.to_integral_value() else f"${amount:,.2f}"


def _enqueue(payload: dict) -> None:
    try:
        deliver_notification.delay(**payload)
    except Exception:
        logger.exception("Could not enqueue notification %s", payload.get("dedupe_key"))


def payment_confirmed_payloads(order) -> list:
    item_count = order.items.count()
    total = _format_total(order.total)
    return [
        {
            "recipient_id": order.consumer_id,
            "title": "Pago confirmado",
            "message": f"El pago de tu pedido #{order.pk} por {total} fue confirmado.",
            "kind": NotificationKind.PAYMENT.value,
            "order_id": order.pk,
            "dedupe_key": f"payment-confirmed:{order.pk}:consumer",
        },
        {
            "recipient_id": order.producer_id,
            "title": "Nuevo pedido listo",
            "message": (
                f"El pedido #{order.pk} fue pagado y está listo para preparar: "
                f"{item_count} producto{'s' if item_count != 1 else ''}, total {total}."
            ),
            "kind": NotificationKind.ORDER.value,
            "order_id": order.pk,
            "dedupe_key": f"payment-confirmed:{order.pk}:producer",
        },
    ]


def notify_payment_confirmed(order) -> None:
    payloads = payment_confirmed_payloads(order)

    def _send():
        for payload in payloads:
            _enqueue(payload)

    transaction.on_commit(_send)
