import datetime
import uuid

from django.contrib.auth import get_user_model
from django.test import TestCase, override_settings
from rest_framework.test import APIClient

from billing.ledger import wallet_balance
from billing.models import Wallet, WalletTransaction
from billing.payments import apply_top_up
from common.exceptions import InvalidRequest, InvalidState, RecordNotFound
from common.utils import days_in_month, local_today
from core.models import AuditLog
from customers.models import Customer, DeliveryModification, Pause, Subscription
from customers.services import (
    assign_delivery_person,
    cancel_subscription,
    create_pause,
    register_customer,
    remove_pause,
    set_delivery_modification,
    subscribe,
)

TODAY = datetime.date(2026, 3, 3)
TOMORROW = TODAY + datetime.timedelta(days=1)
MORNING = datetime.datetime(2026, 3, 3, 10, 0)
EVENING = datetime.datetime(2026, 3, 3, 18, 30)


class OnboardingTests(TestCase):
    def setUp(self):
        self.rider = get_user_model().objects.create_user(username="rider", password="pass1234", role="delivery")

    def test_registration_creates_empty_wallet(self):
        customer = register_customer(name="Asha", phone="9000000001", address="12 Lake Road")

        self.assertEqual(customer.status, Customer.Status.VISITOR)
        self.assertEqual(Wallet.objects.get(customer=customer).balance, 0)

    def test_subscribe_prices_quantity(self):
        customer = register_customer(name="Asha")

        with self.assertRaises(InvalidRequest):
            subscribe(customer.id, 700, today=TODAY)

        subscription = subscribe(customer.id, 1500, today=TODAY)
        self.assertEqual(subscription.daily_price, 16500)
        self.assertEqual((subscription.large_bottles, subscription.small_bottles), (1, 1))
        self.assertEqual(subscription.start_date, TODAY)
        customer.refresh_from_db()
        self.assertEqual(customer.status, Customer.Status.PENDING_APPROVAL)

        subscribe(customer.id, 500, today=TODAY)
        self.assertEqual(Subscription.objects.filter(customer=customer).count(), 1)
        self.assertEqual(Subscription.objects.get(customer=customer).daily_price, 6800)

    def test_first_assignment_requires_deposit(self):
        customer = register_customer(name="Asha")
        subscribe(customer.id, 1000, today=TODAY)
        apply_top_up(customer.id, 6999, today=TODAY)

        with self.assertRaises(InvalidRequest):
            assign_delivery_person(customer.id, self.rider.id, today=TODAY)

        customer.refresh_from_db()
        self.assertIsNone(customer.delivery_person_id)
        self.assertEqual(wallet_balance(customer.id), 6999)

        apply_top_up(customer.id, 1, today=TODAY)
        result = assign_delivery_person(customer.id, self.rider.id, today=TODAY)

        self.assertEqual(result["deposit_charged"], 7000)
        self.assertEqual(result["new_status"], Customer.Status.ACTIVE)
        self.assertEqual(wallet_balance(customer.id), 0)
        self.assertTrue(
            WalletTransaction.objects.filter(
                wallet__customer=customer, kind=WalletTransaction.Kind.DEPOSIT_CHARGE, amount=-7000
            ).exists()
        )

    def test_reassignment_is_free(self):
        other_rider = get_user_model().objects.create_user(username="rider2", password="pass1234", role="delivery")
        customer = register_customer(name="Asha")
        subscribe(customer.id, 500, today=TODAY)
        apply_top_up(customer.id, 5000, today=TODAY)
        assign_delivery_person(customer.id, self.rider.id, today=TODAY)

        result = assign_delivery_person(customer.id, other_rider.id, today=TODAY)

        self.assertEqual(result["deposit_charged"], 0)
        customer.refresh_from_db()
        self.assertEqual(customer.delivery_person, other_rider)

    def test_assignment_rejects_bad_targets(self):
        customer = register_customer(name="Asha")
        admin = get_user_model().objects.create_user(username="boss", password="pass1234", role="admin")

        with self.assertRaises(InvalidState):
            assign_delivery_person(customer.id, self.rider.id, today=TODAY)
        subscribe(customer.id, 500, today=TODAY)
        with self.assertRaises(InvalidRequest):
            assign_delivery_person(customer.id, admin.id, today=TODAY)
        with self.assertRaises(RecordNotFound):
            assign_delivery_person(uuid.uuid4(), self.rider.id, today=TODAY)

    def test_cancel_subscription_returns_to_visitor(self):
        customer = register_customer(name="Asha")
        subscribe(customer.id, 500, today=TODAY)

        self.assertEqual(cancel_subscription(customer.id, today=TODAY), Customer.Status.VISITOR)
        with self.assertRaises(InvalidState):
            cancel_subscription(customer.id, today=TODAY)

        # a subscription is either running or cancelled; day pauses live in Pause rows
        self.assertEqual(Subscription.Status.values, ["active", "cancelled"])
        subscribe(customer.id, 500, today=TODAY)
        self.assertEqual(Subscription.objects.get(customer=customer).status, Subscription.Status.ACTIVE)


class PauseTests(TestCase):
    def setUp(self):
        rider = get_user_model().objects.create_user(username="rider", password="pass1234", role="delivery")
        self.customer = register_customer(name="Asha")
        subscribe(self.customer.id, 1000, today=TODAY)
        apply_top_up(self.customer.id, 20000, today=TODAY)
        assign_delivery_person(self.customer.id, rider.id, today=TODAY)

    def test_pause_for_tomorrow_before_cutoff(self):
        result = create_pause(self.customer.id, [TOMORROW, TOMORROW], now=MORNING)

        self.assertEqual(result["created"], [TOMORROW])
        self.assertEqual(result["new_status"], Customer.Status.PAUSED)
        self.assertEqual(Pause.objects.filter(customer=self.customer).count(), 1)

        again = create_pause(self.customer.id, [TOMORROW], now=MORNING)
        self.assertEqual(again["created"], [])

    def test_pause_for_tomorrow_after_cutoff_is_rejected(self):
        with self.assertRaises(InvalidRequest):
            create_pause(self.customer.id, [TOMORROW], now=EVENING)

        result = create_pause(self.customer.id, [TOMORROW + datetime.timedelta(days=1)], now=EVENING)
        self.assertEqual(len(result["created"]), 1)

    @override_settings(BILLING_PAUSE_CUTOFF_HOUR=20)
    def test_cutoff_hour_is_configurable(self):
        result = create_pause(self.customer.id, [TOMORROW], now=EVENING)
        self.assertEqual(result["created"], [TOMORROW])

    def test_past_and_same_day_pauses_are_rejected(self):
        for day in (TODAY, TODAY - datetime.timedelta(days=1)):
            with self.assertRaises(InvalidRequest):
                create_pause(self.customer.id, [day], now=MORNING)
        with self.assertRaises(InvalidRequest):
            create_pause(self.customer.id, [], now=MORNING)

    def test_remove_pause_restores_status(self):
        create_pause(self.customer.id, [TOMORROW], now=MORNING)

        self.assertEqual(remove_pause(self.customer.id, TOMORROW, now=MORNING), Customer.Status.ACTIVE)
        with self.assertRaises(RecordNotFound):
            remove_pause(self.customer.id, TOMORROW, now=MORNING)

    def test_modification_upserts_one_row_per_day(self):
        set_delivery_modification(self.customer.id, TOMORROW, 1500, today=TODAY)
        modification = set_delivery_modification(self.customer.id, TOMORROW, 2500, notes="party", today=TODAY)

        self.assertEqual(DeliveryModification.objects.filter(customer=self.customer).count(), 1)
        self.assertEqual((modification.large_bottles, modification.small_bottles), (2, 1))
        with self.assertRaises(InvalidRequest):
            set_delivery_modification(self.customer.id, TODAY - datetime.timedelta(days=1), 500, today=TODAY)


class CustomerApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        user_model = get_user_model()
        self.admin = user_model.objects.create_user(username="admin-customers", password="pass1234", role="admin")
        self.rider = user_model.objects.create_user(username="rider", password="pass1234", role="delivery")
        self.owner = user_model.objects.create_user(username="owner", password="pass1234", role="customer")
        self.stranger = user_model.objects.create_user(username="stranger", password="pass1234", role="customer")
        self.customer = register_customer(name="Asha", user=self.owner)
        register_customer(name="Ravi", user=self.stranger)

    def test_customer_sees_only_own_profile(self):
        self.client.force_authenticate(user=self.owner)

        response = self.client.get("/api/v1/customers/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual([row["name"] for row in response.json()["results"]], ["Asha"])

    def test_subscribe_and_status_endpoint(self):
        self.client.force_authenticate(user=self.owner)

        created = self.client.post(
            f"/api/v1/customers/{self.customer.id}/subscribe/",
            {"daily_quantity": 1000},
            format="json",
        )
        status_response = self.client.get(f"/api/v1/customers/{self.customer.id}/status/")

        self.assertEqual(created.status_code, 201)
        self.assertEqual(created.json()["subscription"]["daily_price"], 11000)
        self.assertEqual(status_response.status_code, 200)
        self.assertEqual(status_response.json()["status"], Customer.Status.PENDING_APPROVAL)
        self.assertEqual(status_response.json()["wallet_balance"], 0)
        today = local_today()
        monthly = status_response.json()["monthly_payment"]
        self.assertEqual((monthly["year"], monthly["month"]), (today.year, today.month))
        self.assertEqual(monthly["total_cost"], 11000 * days_in_month(today.year, today.month))
        self.assertEqual(monthly["amount_due"], monthly["total_cost"])
        self.assertIsNone(monthly["status"])

    def test_status_endpoint_without_subscription(self):
        self.client.force_authenticate(user=self.owner)

        response = self.client.get(f"/api/v1/customers/{self.customer.id}/status/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], Customer.Status.VISITOR)
        self.assertIsNone(response.json()["monthly_payment"])

    def test_pause_request_for_another_customer_is_hidden(self):
        self.client.force_authenticate(user=self.stranger)

        response = self.client.post(
            f"/api/v1/customers/{self.customer.id}/pauses/",
            {"dates": [(local_today() + datetime.timedelta(days=3)).isoformat()]},
            format="json",
        )

        self.assertEqual(response.status_code, 404)

    def test_owner_pauses_and_unpauses(self):
        subscribe(self.customer.id, 1000)
        pause_day = local_today() + datetime.timedelta(days=3)
        self.client.force_authenticate(user=self.owner)

        created = self.client.post(
            f"/api/v1/customers/{self.customer.id}/pauses/",
            {"dates": [pause_day.isoformat()]},
            format="json",
        )
        listing = self.client.get(f"/api/v1/customers/{self.customer.id}/pauses/")
        deleted = self.client.delete(f"/api/v1/customers/{self.customer.id}/pauses/{pause_day.isoformat()}/")

        self.assertEqual(created.status_code, 201)
        self.assertEqual(created.json()["created"], [pause_day.isoformat()])
        self.assertEqual(len(listing.json()), 1)
        self.assertEqual(deleted.status_code, 200)
        self.assertFalse(Pause.objects.filter(customer=self.customer).exists())

    def test_admin_assigns_delivery_person(self):
        subscribe(self.customer.id, 500)
        apply_top_up(self.customer.id, 5000)
        self.client.force_authenticate(user=self.admin)

        response = self.client.post(
            f"/api/v1/admin/customers/{self.customer.id}/assign/",
            {"delivery_person_id": str(self.rider.id)},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["deposit_charged"], 5000)
        self.assertTrue(AuditLog.objects.filter(action="customer.assign", entity_id=str(self.customer.id)).exists())

    def test_assignment_requires_admin(self):
        self.client.force_authenticate(user=self.rider)

        with self.assertLogs("security.authorization", level="WARNING"):
            response = self.client.post(
                f"/api/v1/admin/customers/{self.customer.id}/assign/",
                {"delivery_person_id": str(self.rider.id)},
                format="json",
            )

        self.assertEqual(response.status_code, 403)
