from django.conf import settings
from django.db import models
from django.utils import timezone


class OrderStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    CONFIRMED = "confirmed", "Confirmed"
    IN_PREPARATION = "in_preparation", "In preparation"
    IN_TRANSIT = "in_transit", "In transit"
    DELIVERED = "delivered", "Delivered"
    CANCELED = "canceled", "Canceled"


class PaymentStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    PAID = "paid", "Paid"
    REFUNDED = "refunded", "Refunded"


class PaymentMethod(models.TextChoices):
    CASH = "efectivo", "Cash"
    TRANSFER = "transferencia", "Bank transfer"
    NEQUI = "nequi", "Nequi"
    DAVIPLATA = "daviplata", "Daviplata"
    PSE = "pse", "PSE"
    CARD = "tarjeta", "Card"


FULFILLMENT_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.CANCELED},
    OrderStatus.CONFIRMED: {OrderStatus.IN_PREPARATION, OrderStatus.CANCELED},
    OrderStatus.IN_PREPARATION: {OrderStatus.IN_TRANSIT, OrderStatus.CANCELED},
    OrderStatus.IN_TRANSIT: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELED: set(),
}

PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.PAID},
    PaymentStatus.PAID: {PaymentStatus.REFUNDED},
    PaymentStatus.REFUNDED: set(),
}


def sources_for(table: dict, target) -> list:
    """States from which ``target`` may be reached according to ``table``."""
    return [str(source) for source, targets in table.items() if target in targets]


class OrderQuerySet(models.QuerySet):
    # Both transitions are conditional UPDATEs: the WHERE clause carries the
    # allowed source states, so a concurrent writer that got there first turns
    # this call into a no-op. Return value is the number of rows that moved.

    def advance_payment(self, target: str, **extra) -> int:
        return self.filter(payment_status__in=sources_for(PAYMENT_TRANSITIONS, target)).update(
            payment_status=target, updated_at=timezone.now(), **extra
        )

    def advance_fulfillment(self, target: str, **extra) -> int:
        return self.filter(status__in=sources_for(FULFILLMENT_TRANSITIONS, target)).update(
            status=target, updated_at=timezone.now(), **extra
        )


class Order(models.Model):
    consumer = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name="orders_placed")
    producer = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name="orders_received")
    total = models.DecimalField(max_digits=12, decimal_places=2)

    status = models.CharField(max_length=20, choices=OrderStatus.choices, default=OrderStatus.PENDING, db_index=True)
    payment_status = models.CharField(
        max_length=12, choices=PaymentStatus.choices, default=PaymentStatus.PENDING, db_index=True
    )
    payment_method = models.CharField(max_length=16, choices=PaymentMethod.choices, default=PaymentMethod.CASH)

    delivery_address = models.CharField(max_length=255, blank=True, default="")
    notes = models.TextField(blank=True, default="")

    paid_at = models.DateTimeField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = OrderQuerySet.as_manager()

    class Meta:
        ordering = ["-created_at"]

    @property
    def is_paid(self) -> bool:
        return self.payment_status == PaymentStatus.PAID

    def snapshot(self) -> dict:
        return {
            "status": self.status,
            "payment_status": self.payment_status,
            "payment_method": self.payment_method,
            "total": str(self.total),
        }

    def __str__(self):
        return f"Order #{self.pk} ({self.status}/{self.payment_status})"


class OrderItem(models.Model):
    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name="items")
    product_name = models.CharField(max_length=128)
    quantity = models.PositiveIntegerField(default=1)
    unit_price = models.DecimalField(max_digits=12, decimal_places=2)

    def __str__(self):
        return f"{self.quantity} x {self.product_name}"
