import uuid

from django.db import models
from django.db.models import Q

from core.models import User
from customers.models import Customer
from deliveries.models import Delivery


class Wallet(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    customer = models.OneToOneField(Customer, on_delete=models.PROTECT, related_name="wallet")
    balance = models.BigIntegerField(default=0)
    negative_balance_since = models.DateField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)


class WalletTransaction(models.Model):
    class Kind(models.TextChoices):
        TOP_UP = "top_up", "Top up"
        MILK_CHARGE = "milk_charge", "Milk charge"
        DEPOSIT_CHARGE = "deposit_charge", "Deposit charge"
        PENALTY_CHARGE = "penalty_charge", "Penalty charge"
        ADMIN_CREDIT = "admin_credit", "Admin credit"
        ADMIN_DEBIT = "admin_debit", "Admin debit"
        REFUND = "refund", "Refund"

    id = models.BigAutoField(primary_key=True)
    wallet = models.ForeignKey(Wallet, on_delete=models.PROTECT, related_name="transactions")
    kind = models.CharField(max_length=32, choices=Kind)
    amount = models.BigIntegerField(help_text="Signed; credits positive, debits negative.")
    balance_after = models.BigIntegerField()
    description = models.CharField(max_length=255, blank=True)
    reference_type = models.CharField(max_length=32, blank=True)
    reference_id = models.CharField(max_length=64, blank=True)
    performed_by = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True, related_name="+")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [
            models.Index(fields=["wallet", "id"], name="wallettxn_wallet_id_idx"),
            models.Index(fields=["reference_type", "reference_id"], name="wallettxn_reference_idx"),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["reference_type", "reference_id"],
                condition=Q(kind="top_up") & ~Q(reference_id=""),
                name="uniq_wallettxn_topup_reference",
            ),
        ]


class BottleLedgerEntry(models.Model):
    class Action(models.TextChoices):
        ISSUED = "issued", "Issued"
        RETURNED = "returned", "Returned"
        PENALTY_CHARGED = "penalty_charged", "Penalty charged"
        ADJUSTMENT = "adjustment", "Adjustment"

    class Size(models.TextChoices):
        LARGE = "large", "Large (1L)"
        SMALL = "small", "Small (500ml)"

    id = models.BigAutoField(primary_key=True)
    customer = models.ForeignKey(Customer, on_delete=models.PROTECT, related_name="bottle_ledger")
    delivery = models.ForeignKey(Delivery, on_delete=models.PROTECT, null=True, blank=True, related_name="bottle_entries")
    action = models.CharField(max_length=16, choices=Action)
    size = models.CharField(max_length=8, choices=Size)
    quantity = models.IntegerField()
    large_balance_after = models.PositiveIntegerField()
    small_balance_after = models.PositiveIntegerField()
    description = models.CharField(max_length=255, blank=True)
    issued_date = models.DateField(null=True, blank=True)
    penalty_applied_at = models.DateField(null=True, blank=True)
    returned_at = models.DateField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [
            models.Index(fields=["customer", "id"], name="bottle_customer_id_idx"),
            models.Index(fields=["action", "issued_date"], name="bottle_action_issued_idx"),
        ]


class MonthlyPayment(models.Model):
    class Status(models.TextChoices):
        PAID = "paid", "Paid"
        PENDING = "pending", "Pending"
        OVERDUE = "overdue", "Overdue"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    customer = models.ForeignKey(Customer, on_delete=models.PROTECT, related_name="monthly_payments")
    year = models.PositiveSmallIntegerField()
    month = models.PositiveSmallIntegerField()
    total_cost = models.BigIntegerField()
    amount_due = models.BigIntegerField(default=0)
    amount_paid = models.BigIntegerField(default=0)
    status = models.CharField(max_length=16, choices=Status, default=Status.PENDING)
    due_date = models.DateField()
    paid_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["year", "month", "status"], name="monthly_period_status_idx"),
        ]
        constraints = [
            models.UniqueConstraint(fields=["customer", "year", "month"], name="uniq_monthly_customer_period"),
        ]
