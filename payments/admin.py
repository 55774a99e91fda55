from django.contrib import admin

from .models import PaymentAttempt, UnmatchedEvent


@admin.register(PaymentAttempt)
class PaymentAttemptAdmin(admin.ModelAdmin):
    list_display = ("id", "order", "gateway", "gateway_ref", "status", "amount", "currency", "created_at", "updated_at")
    search_fields = ("gateway_ref", "idempotency_key", "order__id")
    list_filter = ("status", "gateway", "currency", "created_at")
    readonly_fields = (
        "status", "amount", "amount_minor", "currency", "gateway_ref", "idempotency_key",
        "last_event_id", "last_payload", "created_at", "updated_at",
    )


@admin.register(UnmatchedEvent)
class UnmatchedEventAdmin(admin.ModelAdmin):
    list_display = ("event_id", "event_type", "gateway_ref", "reason", "resolved", "created_at")
    search_fields = ("event_id", "gateway_ref", "reason")
    list_filter = ("resolved", "event_type", "created_at")
    readonly_fields = ("event_id", "event_type", "gateway_ref", "reason", "payload", "created_at")
