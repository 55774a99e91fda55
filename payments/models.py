from django.db import models


class AttemptStatus(models.TextChoices):
    CREATED = "created", "Created"
    SUCCEEDED = "succeeded", "Succeeded"
    FAILED = "failed", "Failed"
    CANCELED = "canceled", "Canceled"


TERMINAL_ATTEMPT_STATUSES = {AttemptStatus.SUCCEEDED, AttemptStatus.FAILED, AttemptStatus.CANCELED}


class PaymentAttempt(models.Model):
    order = models.ForeignKey("orders.Order", on_delete=models.PROTECT, related_name="payment_attempts")
    gateway = models.CharField(max_length=16, default="stripe")
    gateway_ref = models.CharField(max_length=128, unique=True, null=True, blank=True)  # intent id

    amount = models.DecimalField(max_digits=12, decimal_places=2)
    amount_minor = models.BigIntegerField()
    currency = models.CharField(max_length=8, default="cop")
    idempotency_key = models.CharField(max_length=80, unique=True)

    status = models.CharField(max_length=12, choices=AttemptStatus.choices, default=AttemptStatus.CREATED, db_index=True)
    failure_message = models.CharField(max_length=255, blank=True, default="")
    last_event_id = models.CharField(max_length=128, blank=True, default="")
    last_payload = models.JSONField(blank=True, null=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at", "-id"]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ATTEMPT_STATUSES

    def as_dict(self) -> dict:
        return {
            "id": self.pk,
            "order_id": self.order_id,
            "gateway": self.gateway,
            "payment_ref": self.gateway_ref,
            "amount": str(self.amount),
            "currency": self.currency,
            "status": self.status,
            "failure_message": self.failure_message,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __str__(self):
        return f"{self.gateway_ref or 'attempt-' + str(self.pk)} ({self.status})"


class UnmatchedEvent(models.Model):
    """Gateway events held for manual reconciliation."""

    event_id = models.CharField(max_length=128, unique=True)
    event_type = models.CharField(max_length=64, blank=True, default="")
    gateway_ref = models.CharField(max_length=128, blank=True, default="", db_index=True)
    reason = models.CharField(max_length=255)
    payload = models.JSONField(blank=True, null=True)
    resolved = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self):
        return f"{self.event_id}: {self.reason}"
