import logging

from celery import shared_task
from django.db import DatabaseError

from .models import Notification

logger = logging.getLogger(__name__)


@shared_task(
    bind=True,
    max_retries=3,
    default_retry_delay=60,
    autoretry_for=(DatabaseError,),
)
def deliver_notification(self, *, recipient_id, title, message, kind, order_id=None, dedupe_key):
    """
    Persist one in-app notification.

    Keyed by ``dedupe_key`` so a retried or re-enqueued task never creates a
    second row for the same event.
    """
    notification, created = Notification.objects.get_or_create(
        dedupe_key=dedupe_key,
        defaults={
            "recipient_id": recipient_id,
            "title": title,
            "message": message,
            "kind": kind,
            "order_id": order_id,
        },
    )
    if created:
        logger.info("Notification %s delivered to user %s", dedupe_key, recipient_id)
    else:
        logger.info("Notification %s already delivered, skipping", dedupe_key)
    return {"status": "created" if created else "duplicate", "id": notification.pk}
