"""Append-only audit trail for mutating actions.

``record`` is called by every operation that touches order or payment state.
It must never break its caller: the insert runs in its own savepoint and any
failure is logged and dropped.
"""
import logging

from django.db import transaction

from .models import AuditOutcome, AuditRecord

logger = logging.getLogger(__name__)


def _client_meta(request) -> tuple:
    if request is None:
        return None, ""
    forwarded = request.META.get("HTTP_X_FORWARDED_FOR", "")
    ip = forwarded.split(",")[0].strip() if forwarded else request.META.get("REMOTE_ADDR")
    agent = (request.META.get("HTTP_USER_AGENT") or "")[:255]
    return ip or None, agent


def record(actor_id, action, table, entity_id, before=None, after=None,
           outcome=AuditOutcome.SUCCESS, error=None, description="", request=None) -> None:
    try:
        ip, agent = _client_meta(request)
        with transaction.atomic():
            AuditRecord.objects.create(
                actor_id=actor_id,
                action=action,
                table_name=table,
                entity_id="" if entity_id is None else str(entity_id),
                before=before,
                after=after,
                outcome=outcome,
                description=description or "",
                error_message=str(error) if error else "",
                ip_address=ip,
                user_agent=agent,
            )
    except Exception:
        logger.exception("Audit write failed: action=%s table=%s entity=%s", action, table, entity_id)


def history_for_entity(table: str, entity_id):
    return AuditRecord.objects.filter(table_name=table, entity_id=str(entity_id)).order_by("-created_at", "-id")


def history_for_actor(actor_id, limit: int = 50):
    return AuditRecord.objects.filter(actor_id=actor_id).order_by("-created_at", "-id")[:limit]
