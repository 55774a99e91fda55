from django.contrib import admin, messages

from .models import Order, OrderItem


class OrderItemInline(admin.TabularInline):
    model = OrderItem
    extra = 0


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ("id", "consumer", "producer", "total", "status", "payment_status", "payment_method", "paid_at")
    search_fields = ("id", "consumer__username", "producer__username", "delivery_address")
    list_filter = ("status", "payment_status", "payment_method", "created_at")
    readonly_fields = ("payment_status", "paid_at", "created_at", "updated_at")
    inlines = [OrderItemInline]
    actions = ["mark_refunded"]

    @admin.action(description="Mark selected paid orders as refunded")
    def mark_refunded(self, request, queryset):
        from payments.services import mark_refunded

        done = sum(mark_refunded(order, actor_id=request.user.pk, request=request) for order in queryset)
        skipped = queryset.count() - done
        self.message_user(request, f"{done} order(s) marked refunded.", messages.SUCCESS)
        if skipped:
            self.message_user(request, f"{skipped} order(s) were not paid and were skipped.", messages.WARNING)
