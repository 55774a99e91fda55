from django.conf import settings
from django.db import models


class NotificationKind(models.TextChoices):
    ORDER = "pedido", "Order"
    PAYMENT = "pago", "Payment"
    SYSTEM = "sistema", "System"


class Notification(models.Model):
    recipient = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="notifications")
    title = models.CharField(max_length=128)
    message = models.TextField()
    kind = models.CharField(max_length=16, choices=NotificationKind.choices, default=NotificationKind.SYSTEM)
    order = models.ForeignKey(
        "orders.Order", on_delete=models.SET_NULL, null=True, blank=True, related_name="notifications"
    )
    dedupe_key = models.CharField(max_length=128, unique=True)
    read = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self):
        return f"{self.title} -> {self.recipient_id}"
