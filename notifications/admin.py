from django.contrib import admin

from .models import Notification


@admin.register(Notification)
class NotificationAdmin(admin.ModelAdmin):
    list_display = ("title", "recipient", "kind", "order", "read", "created_at")
    search_fields = ("title", "message", "dedupe_key")
    list_filter = ("kind", "read", "created_at")
