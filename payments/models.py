import uuid
from decimal import Decimal

from django.conf import settings
from django.db import models
from django.db.models import Q

from catalog.models import ProductKind, ProductRef

from .exceptions import InvalidState, PriceMismatch
from .utils import price_tolerance


class OrderQuerySet(models.QuerySet):
    def update(self, **kwargs):
        """Bulk updates may not touch status or frozen fields of a terminal order.

        Row-level saves go through ``Order.save``; this covers ``QuerySet.update``,
        which skips it. Callers that move status filter on ``status="pending"``.
        """
        guarded = set(kwargs) & (set(self.model.FROZEN_FIELDS) | {"user", "status"})
        if guarded and self.filter(status__in=self.model.TERMINAL_STATUSES).exists():
            raise InvalidState(f"Cannot update {', '.join(sorted(guarded))} of a terminal order")
        return super().update(**kwargs)


class Order(models.Model):
    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        SUCCESSFUL = "successful", "Successful"
        FAILED = "failed", "Failed"
        REFUNDED = "refunded", "Refunded"

    TERMINAL_STATUSES = (Status.SUCCESSFUL, Status.FAILED, Status.REFUNDED)
    # Fields that are frozen once the order has left "pending".
    FROZEN_FIELDS = ("price", "product_kind", "product_id", "user_id")

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name="orders")

    product_kind = models.CharField(max_length=16, choices=ProductKind.choices)
    product_id = models.CharField(max_length=64)
    product_name = models.CharField(max_length=255, blank=True, default="")

    price = models.DecimalField(max_digits=12, decimal_places=2)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING, db_index=True)

    gateway_name = models.CharField(max_length=32, blank=True, default="")
    gateway_transaction_ref = models.CharField(max_length=128, blank=True, default="")

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = OrderQuerySet.as_manager()

    class Meta:
        ordering = ("-created_at",)
        constraints = [
            models.UniqueConstraint(
                fields=["user", "product_kind", "product_id"],
                condition=Q(status="pending"),
                name="uniq_pending_order_per_product",
            ),
        ]
        indexes = [
            models.Index(fields=["product_kind", "product_id"], name="payments_order_product_idx"),
        ]

    @property
    def product_ref(self) -> ProductRef:
        return ProductRef(self.product_kind, self.product_id)

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL_STATUSES

    def save(self, *args, **kwargs):
        if not self._state.adding:
            stored = type(self).objects.filter(pk=self.pk).values("status", *self.FROZEN_FIELDS).first()
            if stored and stored["status"] in self.TERMINAL_STATUSES:
                self._check_frozen(stored)
        super().save(*args, **kwargs)

    def _check_frozen(self, stored: dict):
        if self.status != stored["status"]:
            raise InvalidState(
                f"Order {self.pk} is {stored['status']}; status cannot change to {self.status}",
                order_id=str(self.pk),
            )
        for name in self.FROZEN_FIELDS:
            current = getattr(self, name)
            if name == "price":
                changed = Decimal(str(current)) != Decimal(str(stored[name]))
            else:
                changed = str(current) != str(stored[name])
            if changed:
                raise InvalidState(
                    f"Order {self.pk} is {stored['status']}; {name} is immutable",
                    order_id=str(self.pk),
                )

    def __str__(self):
        return f"{self.pk} {self.product_kind}:{self.product_id} ({self.status})"


class PaymentAttempt(models.Model):
    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        SUCCESSFUL = "successful", "Successful"
        FAILED = "failed", "Failed"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order = models.ForeignKey(Order, on_delete=models.PROTECT, related_name="payment_attempts")
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name="payment_attempts")

    amount = models.DecimalField(max_digits=12, decimal_places=2)
    currency = models.CharField(max_length=8, default="INR")
    gateway_name = models.CharField(max_length=32, db_index=True)
    transaction_ref = models.CharField(max_length=64, unique=True)
    gateway_transaction_ref = models.CharField(max_length=128, blank=True, default="")
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING, db_index=True)

    # Last thing the gateway told us, kept even when the status did not move.
    last_gateway_code = models.CharField(max_length=64, blank=True, default="")
    last_gateway_state = models.CharField(max_length=64, blank=True, default="")
    last_gateway_payload = models.JSONField(blank=True, null=True)

    verified_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="+"
    )
    verified_at = models.DateTimeField(null=True, blank=True)
    admin_notes = models.TextField(blank=True, default="")

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ("-created_at",)
        constraints = [
            models.UniqueConstraint(
                fields=["order"],
                condition=Q(status="pending"),
                name="uniq_pending_attempt_per_order",
            ),
        ]

    @property
    def is_pending(self) -> bool:
        return self.status == self.Status.PENDING

    def save(self, *args, **kwargs):
        if self._state.adding:
            expected = Decimal(str(self.order.price))
            if abs(Decimal(str(self.amount)) - expected) > price_tolerance():
                raise PriceMismatch(
                    f"Payment amount {self.amount} does not match order price {expected}",
                    order_id=str(self.order_id),
                )
        super().save(*args, **kwargs)

    def __str__(self):
        return f"{self.transaction_ref} ({self.status})"


class GatewaySetting(models.Model):
    gateway_name = models.CharField(max_length=32, unique=True)
    merchant_id = models.CharField(max_length=64, blank=True, default="")
    merchant_upi_id = models.CharField(max_length=128, blank=True, default="")
    merchant_name = models.CharField(max_length=128, blank=True, default="")

    salt_key = models.CharField(max_length=255, blank=True, default="")
    salt_index = models.CharField(max_length=8, default="1")

    currency = models.CharField(max_length=8, default="INR")
    callback_path = models.CharField(max_length=128, default="/pg/v1/status")
    api_base_url = models.URLField(blank=True, default="")

    test_mode = models.BooleanField(default=False)
    is_active = models.BooleanField(default=False)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"{self.gateway_name} ({'active' if self.is_active else 'inactive'})"
