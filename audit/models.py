from django.core.serializers.json import DjangoJSONEncoder
from django.db import models


class AuditOutcome(models.TextChoices):
    SUCCESS = "success", "Success"
    FAILURE = "failure", "Failure"
    ERROR = "error", "Error"


class ImmutableRecordError(Exception):
    pass


class AuditRecordQuerySet(models.QuerySet):
    def update(self, **kwargs):
        raise ImmutableRecordError("Audit records cannot be updated")

    def delete(self):
        raise ImmutableRecordError("Audit records cannot be deleted")


class AuditRecord(models.Model):
    actor_id = models.BigIntegerField(null=True, blank=True, db_index=True)  # null = system
    action = models.CharField(max_length=64, db_index=True)
    table_name = models.CharField(max_length=64)
    entity_id = models.CharField(max_length=64, blank=True, default="")
    before = models.JSONField(blank=True, null=True, encoder=DjangoJSONEncoder)
    after = models.JSONField(blank=True, null=True, encoder=DjangoJSONEncoder)
    outcome = models.CharField(max_length=8, choices=AuditOutcome.choices, default=AuditOutcome.SUCCESS)
    description = models.TextField(blank=True, default="")
    error_message = models.TextField(blank=True, default="")
    ip_address = models.GenericIPAddressField(blank=True, null=True)
    user_agent = models.CharField(max_length=255, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)

    objects = AuditRecordQuerySet.as_manager()

    class Meta:
        ordering = ["-created_at", "-id"]
        indexes = [models.Index(fields=["table_name", "entity_id"], name="audit_table_entity_idx")]

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ImmutableRecordError("Audit records cannot be modified")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ImmutableRecordError("Audit records cannot be deleted")

    def as_dict(self) -> dict:
        return {
            "id": self.pk,
            "actor_id": self.actor_id,
            "action": self.action,
            "table": self.table_name,
            "entity_id": self.entity_id,
            "before": self.before,
            "after": self.after,
            "outcome": self.outcome,
            "description": self.description,
            "error": self.error_message,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __str__(self):
        return f"{self.action} {self.table_name}#{self.entity_id} ({self.outcome})"
