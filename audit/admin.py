from django.contrib import admin

from .models import AuditRecord


@admin.register(AuditRecord)
class AuditRecordAdmin(admin.ModelAdmin):
    list_display = ("created_at", "actor_id", "action", "table_name", "entity_id", "outcome")
    search_fields = ("action", "table_name", "entity_id", "description", "error_message")
    list_filter = ("outcome", "table_name", "action", "created_at")
    ordering = ("-created_at",)

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
