from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand
from django.db import transaction

from billing.payments import apply_top_up
from customers.models import Customer
from customers.services import assign_delivery_person, register_customer, subscribe

DEMO_CUSTOMERS = [
    {"name": "Asha Menon", "phone": "9000000001", "address": "12 Lake Road", "quantity": 1000, "top_up": 300000},
    {"name": "Ravi Kumar", "phone": "9000000002", "address": "4 Temple Street", "quantity": 500, "top_up": 150000},
    {"name": "Meera Iyer", "phone": "9000000003", "address": "88 Park Avenue", "quantity": 1500, "top_up": 20000},
]


class Command(BaseCommand):
    help = "Seed demo users, customers and wallets for local development."

    def _user(self, username, password, **defaults):
        User = get_user_model()
        user, created = User.objects.get_or_create(username=username, defaults=defaults)
        if created:
            user.set_password(password)
            user.save(update_fields=["password"])
        return user

    @transaction.atomic
    def handle(self, *args, **options):
        User = get_user_model()

        self._user(
            "admin",
            "admin1234",
            email="admin@example.com",
            role=User.Role.ADMIN,
            is_staff=True,
            is_superuser=True,
        )
        rider = self._user("rider", "rider1234", email="rider@example.com", role=User.Role.DELIVERY)

        for demo in DEMO_CUSTOMERS:
            if Customer.objects.filter(phone=demo["phone"]).exists():
                self.stdout.write(f"Customer {demo['name']} already present, skipping.")
                continue
            customer = register_customer(name=demo["name"], phone=demo["phone"], address=demo["address"])
            subscribe(customer.id, demo["quantity"])
            apply_top_up(customer.id, demo["top_up"])
            assign_delivery_person(customer.id, rider.id)
            self.stdout.write(self.style.SUCCESS(f"Seeded customer {demo['name']}."))

        self.stdout.write(self.style.SUCCESS("Demo data ready. Logins: admin/admin1234, rider/rider1234."))
