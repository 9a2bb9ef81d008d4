import uuid

from django.db import models

from core.models import User


class Customer(models.Model):
    class Status(models.TextChoices):
        VISITOR = "visitor", "Visitor"
        PENDING_APPROVAL = "pending_approval", "Pending approval"
        ACTIVE = "active", "Active"
        INACTIVE = "inactive", "Inactive"
        PAUSED = "paused", "Paused"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.OneToOneField(User, on_delete=models.PROTECT, null=True, blank=True, related_name="customer_profile")
    name = models.CharField(max_length=255)
    phone = models.CharField(max_length=32, blank=True)
    address = models.TextField(blank=True)
    delivery_person = models.ForeignKey(
        User,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="assigned_customers",
        limit_choices_to={"role": User.Role.DELIVERY},
    )
    # Derived from ledger state; written only by billing.status.update_status.
    status = models.CharField(max_length=32, choices=Status, default=Status.VISITOR)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["delivery_person", "status"], name="customer_route_status_idx"),
            models.Index(fields=["status"], name="customer_status_idx"),
        ]

    def __str__(self):
        return self.name


class Subscription(models.Model):
    class Status(models.TextChoices):
        ACTIVE = "active", "Active"
        CANCELLED = "cancelled", "Cancelled"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    customer = models.OneToOneField(Customer, on_delete=models.PROTECT, related_name="subscription")
    daily_quantity = models.PositiveIntegerField(help_text="Millilitres per day, a multiple of 500.")
    daily_price = models.BigIntegerField(help_text="Minor currency units.")
    large_bottles = models.PositiveSmallIntegerField(default=0)
    small_bottles = models.PositiveSmallIntegerField(default=0)
    delivery_count = models.PositiveIntegerField(default=0)
    last_deposit_at_delivery_count = models.PositiveIntegerField(default=0)
    status = models.CharField(max_length=16, choices=Status, default=Status.ACTIVE)
    start_date = models.DateField()
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)


class Pause(models.Model):
    id = models.BigAutoField(primary_key=True)
    customer = models.ForeignKey(Customer, on_delete=models.PROTECT, related_name="pauses")
    pause_date = models.DateField()
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["customer", "pause_date"], name="uniq_pause_customer_date"),
        ]


class DeliveryModification(models.Model):
    """One-day override of the subscription's quantity and bottle split."""

    id = models.BigAutoField(primary_key=True)
    customer = models.ForeignKey(Customer, on_delete=models.PROTECT, related_name="modifications")
    date = models.DateField()
    quantity = models.PositiveIntegerField()
    large_bottles = models.PositiveSmallIntegerField(default=0)
    small_bottles = models.PositiveSmallIntegerField(default=0)
    notes = models.CharField(max_length=255, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["customer", "date"], name="uniq_modification_customer_date"),
        ]


class Holiday(models.Model):
    id = models.BigAutoField(primary_key=True)
    date = models.DateField(unique=True)
    name = models.CharField(max_length=128, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
