import uuid

from django.db import models

from core.models import User
from customers.models import Customer


class Delivery(models.Model):
    class Status(models.TextChoices):
        SCHEDULED = "scheduled", "Scheduled"
        DELIVERED = "delivered", "Delivered"
        NOT_DELIVERED = "not_delivered", "Not delivered"
        PAUSED = "paused", "Paused"
        HOLIDAY = "holiday", "Holiday"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    customer = models.ForeignKey(Customer, on_delete=models.PROTECT, related_name="deliveries")
    delivery_person = models.ForeignKey(User, on_delete=models.PROTECT, null=True, blank=True, related_name="deliveries")
    delivery_date = models.DateField()
    quantity = models.PositiveIntegerField()
    large_bottles = models.PositiveSmallIntegerField(default=0)
    small_bottles = models.PositiveSmallIntegerField(default=0)
    charge = models.BigIntegerField(default=0)
    deposit = models.BigIntegerField(default=0)
    large_bottles_collected = models.PositiveSmallIntegerField(default=0)
    small_bottles_collected = models.PositiveSmallIntegerField(default=0)
    status = models.CharField(max_length=16, choices=Status, default=Status.SCHEDULED)
    notes = models.CharField(max_length=255, blank=True)
    delivered_at = models.DateTimeField(null=True, blank=True)
    marked_by = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True, related_name="+")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["delivery_person", "delivery_date"], name="delivery_route_date_idx"),
            models.Index(fields=["delivery_date", "status"], name="delivery_date_status_idx"),
        ]
        constraints = [
            models.UniqueConstraint(fields=["customer", "delivery_date"], name="uniq_delivery_customer_date"),
        ]
