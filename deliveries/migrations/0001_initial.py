import uuid

import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        ("core", "0001_initial"),
        ("customers", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="Delivery",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("delivery_date", models.DateField()),
                ("quantity", models.PositiveIntegerField()),
                ("large_bottles", models.PositiveSmallIntegerField(default=0)),
                ("small_bottles", models.PositiveSmallIntegerField(default=0)),
                ("charge", models.BigIntegerField(default=0)),
                ("deposit", models.BigIntegerField(default=0)),
                ("large_bottles_collected", models.PositiveSmallIntegerField(default=0)),
                ("small_bottles_collected", models.PositiveSmallIntegerField(default=0)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("scheduled", "Scheduled"),
                            ("delivered", "Delivered"),
                            ("not_delivered", "Not delivered"),
                            ("paused", "Paused"),
                            ("holiday", "Holiday"),
                        ],
                        default="scheduled",
                        max_length=16,
                    ),
                ),
                ("notes", models.CharField(blank=True, max_length=255)),
                ("delivered_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "customer",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="deliveries",
                        to="customers.customer",
                    ),
                ),
                (
                    "delivery_person",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="deliveries",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "marked_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="+",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "indexes": [
                    models.Index(fields=["delivery_person", "delivery_date"], name="delivery_route_date_idx"),
                    models.Index(fields=["delivery_date", "status"], name="delivery_date_status_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(fields=["customer", "delivery_date"], name="uniq_delivery_customer_date"),
                ],
            },
        ),
    ]
