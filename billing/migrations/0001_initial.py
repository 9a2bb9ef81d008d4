import uuid

import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        ("core", "0001_initial"),
        ("customers", "0001_initial"),
        ("deliveries", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="Wallet",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("balance", models.BigIntegerField(default=0)),
                ("negative_balance_since", models.DateField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "customer",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="wallet",
                        to="customers.customer",
                    ),
                ),
            ],
        ),
        migrations.CreateModel(
            name="WalletTransaction",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                (
                    "kind",
                    models.CharField(
                        choices=[
                            ("top_up", "Top up"),
                            ("milk_charge", "Milk charge"),
                            ("deposit_charge", "Deposit charge"),
                            ("penalty_charge", "Penalty charge"),
                            ("admin_credit", "Admin credit"),
                            ("admin_debit", "Admin debit"),
                            ("refund", "Refund"),
                        ],
                        max_length=32,
                    ),
                ),
                ("amount", models.BigIntegerField(help_text="Signed; credits positive, debits negative.")),
                ("balance_after", models.BigIntegerField()),
                ("description", models.CharField(blank=True, max_length=255)),
                ("reference_type", models.CharField(blank=True, max_length=32)),
                ("reference_id", models.CharField(blank=True, max_length=64)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "performed_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="+",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "wallet",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="transactions",
                        to="billing.wallet",
                    ),
                ),
            ],
            options={
                "indexes": [
                    models.Index(fields=["wallet", "id"], name="wallettxn_wallet_id_idx"),
                    models.Index(fields=["reference_type", "reference_id"], name="wallettxn_reference_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("kind", "top_up"), models.Q(("reference_id", ""), _negated=True)),
                        fields=("reference_type", "reference_id"),
                        name="uniq_wallettxn_topup_reference",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="BottleLedgerEntry",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                (
                    "action",
                    models.CharField(
                        choices=[
                            ("issued", "Issued"),
                            ("returned", "Returned"),
                            ("penalty_charged", "Penalty charged"),
                            ("adjustment", "Adjustment"),
                        ],
                        max_length=16,
                    ),
                ),
                ("size", models.CharField(choices=[("large", "Large (1L)"), ("small", "Small (500ml)")], max_length=8)),
                ("quantity", models.IntegerField()),
                ("large_balance_after", models.PositiveIntegerField()),
                ("small_balance_after", models.PositiveIntegerField()),
                ("description", models.CharField(blank=True, max_length=255)),
                ("issued_date", models.DateField(blank=True, null=True)),
                ("penalty_applied_at", models.DateField(blank=True, null=True)),
                ("returned_at", models.DateField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "customer",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="bottle_ledger",
                        to="customers.customer",
                    ),
                ),
                (
                    "delivery",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="bottle_entries",
                        to="deliveries.delivery",
                    ),
                ),
            ],
            options={
                "indexes": [
                    models.Index(fields=["customer", "id"], name="bottle_customer_id_idx"),
                    models.Index(fields=["action", "issued_date"], name="bottle_action_issued_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="MonthlyPayment",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("year", models.PositiveSmallIntegerField()),
                ("month", models.PositiveSmallIntegerField()),
                ("total_cost", models.BigIntegerField()),
                ("amount_due", models.BigIntegerField(default=0)),
                ("amount_paid", models.BigIntegerField(default=0)),
                (
                    "status",
                    models.CharField(
                        choices=[("paid", "Paid"), ("pending", "Pending"), ("overdue", "Overdue")],
                        default="pending",
                        max_length=16,
                    ),
                ),
                ("due_date", models.DateField()),
                ("paid_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "customer",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="monthly_payments",
                        to="customers.customer",
                    ),
                ),
            ],
            options={
                "indexes": [
                    models.Index(fields=["year", "month", "status"], name="monthly_period_status_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(fields=["customer", "year", "month"], name="uniq_monthly_customer_period"),
                ],
            },
        ),
    ]
