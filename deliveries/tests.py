import datetime
import uuid

from django.contrib.auth import get_user_model
from django.test import TestCase, override_settings
from rest_framework.test import APIClient

from billing.ledger import apply_wallet_delta, current_balance, wallet_balance
from billing.models import BottleLedgerEntry, Wallet, WalletTransaction
from billing.payments import apply_top_up
from billing.pricing import BottleCount, deposit_for, price_for
from billing.status import update_status
from common.exceptions import InvalidRequest, InvalidState, RecordNotFound
from core.models import AuditLog
from customers.models import Customer, Holiday, Pause, Subscription
from customers.services import assign_delivery_person, register_customer, set_delivery_modification, subscribe
from deliveries.models import Delivery
from deliveries.scheduler import ensure_deliveries_for_all_routes, ensure_deliveries_for_window
from deliveries.settlement import NEGATIVE_BALANCE_NOTE, mark_delivery

TODAY = datetime.date(2026, 3, 3)
TOMORROW = TODAY + datetime.timedelta(days=1)


def onboard(delivery_person, *, name="Customer", quantity=1000, balance=0):
    customer = register_customer(name=name)
    subscribe(customer.id, quantity, today=TODAY)
    apply_top_up(customer.id, deposit_for(quantity), today=TODAY)
    assign_delivery_person(customer.id, delivery_person.id, today=TODAY)
    if balance:
        kind = WalletTransaction.Kind.ADMIN_CREDIT if balance > 0 else WalletTransaction.Kind.ADMIN_DEBIT
        apply_wallet_delta(Wallet.objects.get(customer=customer).id, balance, kind, "test funding", today=TODAY)
        update_status(customer.id, today=TODAY)
    customer.refresh_from_db()
    return customer


def make_delivery(customer, day=TODAY):
    subscription = Subscription.objects.get(customer=customer)
    return Delivery.objects.create(
        customer=customer,
        delivery_person_id=customer.delivery_person_id,
        delivery_date=day,
        quantity=subscription.daily_quantity,
        large_bottles=subscription.large_bottles,
        small_bottles=subscription.small_bottles,
        charge=price_for(subscription.daily_quantity),
    )


class SchedulerTests(TestCase):
    def setUp(self):
        user_model = get_user_model()
        self.rider = user_model.objects.create_user(username="rider", password="pass1234", role="delivery")
        self.other_rider = user_model.objects.create_user(username="rider2", password="pass1234", role="delivery")

    def test_window_is_idempotent_and_route_scoped(self):
        onboard(self.rider, name="A", balance=30000)
        onboard(self.rider, name="B", balance=30000)
        onboard(self.other_rider, name="C", balance=30000)

        first = ensure_deliveries_for_window(self.rider.id, TODAY, TOMORROW)
        second = ensure_deliveries_for_window(self.rider.id, TODAY, TOMORROW)

        self.assertEqual(first.created, 4)
        self.assertEqual(second.created, 0)
        self.assertEqual(second.existing, 4)
        self.assertEqual(Delivery.objects.count(), 4)
        self.assertFalse(Delivery.objects.filter(delivery_person=self.other_rider).exists())

        delivery = Delivery.objects.filter(delivery_date=TODAY).first()
        self.assertEqual(delivery.status, Delivery.Status.SCHEDULED)
        self.assertEqual(delivery.charge, 11000)
        self.assertEqual(delivery.large_bottles, 1)

    def test_existing_rows_are_never_overwritten(self):
        customer = onboard(self.rider, balance=30000)
        ensure_deliveries_for_window(self.rider.id, TODAY, TODAY)

        subscribe(customer.id, 2000, today=TODAY)
        ensure_deliveries_for_window(self.rider.id, TODAY, TODAY)

        delivery = Delivery.objects.get(customer=customer, delivery_date=TODAY)
        self.assertEqual(delivery.quantity, 1000)
        self.assertEqual(delivery.charge, 11000)

    def test_modification_overrides_subscription_for_one_day(self):
        customer = onboard(self.rider, balance=30000)
        set_delivery_modification(customer.id, TOMORROW, 1500, notes="guests", today=TODAY)

        ensure_deliveries_for_window(self.rider.id, TODAY, TOMORROW)

        regular = Delivery.objects.get(customer=customer, delivery_date=TODAY)
        modified = Delivery.objects.get(customer=customer, delivery_date=TOMORROW)
        self.assertEqual(regular.quantity, 1000)
        self.assertEqual(modified.quantity, 1500)
        self.assertEqual(modified.charge, 16500)
        self.assertEqual((modified.large_bottles, modified.small_bottles), (1, 1))
        self.assertEqual(modified.notes, "guests")
        self.assertEqual(Subscription.objects.get(customer=customer).daily_price, 11000)

    def test_zero_balance_is_scheduled_and_negative_is_skipped(self):
        zero = onboard(self.rider, name="Zero", balance=0)
        negative = onboard(self.rider, name="Negative", balance=-1)

        summary = ensure_deliveries_for_window(self.rider.id, TODAY, TODAY)

        self.assertEqual(summary.created, 1)
        self.assertEqual(summary.skipped, 1)
        self.assertTrue(Delivery.objects.filter(customer=zero).exists())
        self.assertFalse(Delivery.objects.filter(customer=negative).exists())

    def test_pause_and_holiday_markers(self):
        customer = onboard(self.rider, balance=30000)
        Pause.objects.create(customer=customer, pause_date=TOMORROW)
        Holiday.objects.create(date=TODAY, name="Festival")

        summary = ensure_deliveries_for_window(self.rider.id, TODAY, TOMORROW)

        self.assertEqual(summary.holiday, 1)
        self.assertEqual(summary.paused, 1)
        holiday = Delivery.objects.get(customer=customer, delivery_date=TODAY)
        paused = Delivery.objects.get(customer=customer, delivery_date=TOMORROW)
        self.assertEqual(holiday.status, Delivery.Status.HOLIDAY)
        self.assertEqual(paused.status, Delivery.Status.PAUSED)
        self.assertEqual(paused.charge, 0)

    def test_window_bounds_and_all_routes(self):
        onboard(self.rider, name="A", balance=30000)
        onboard(self.other_rider, name="B", balance=30000)

        with self.assertRaises(InvalidRequest):
            ensure_deliveries_for_window(self.rider.id, TOMORROW, TODAY)

        summaries = ensure_deliveries_for_all_routes(TODAY, TODAY)
        self.assertEqual(set(summaries), {str(self.rider.id), str(self.other_rider.id)})
        self.assertEqual(Delivery.objects.filter(delivery_date=TODAY).count(), 2)


class SettlementTests(TestCase):
    def setUp(self):
        self.rider = get_user_model().objects.create_user(username="rider", password="pass1234", role="delivery")

    def test_delivered_charges_and_issues_bottles(self):
        customer = onboard(self.rider, balance=20000)
        delivery = make_delivery(customer)

        result = mark_delivery(delivery.id, Delivery.Status.DELIVERED, performed_by=self.rider, today=TODAY)

        self.assertTrue(result.settled)
        self.assertEqual(result.delivery_status, Delivery.Status.DELIVERED)
        self.assertEqual(wallet_balance(customer.id), 9000)
        self.assertTrue(
            WalletTransaction.objects.filter(
                wallet__customer=customer, kind=WalletTransaction.Kind.MILK_CHARGE, amount=-11000
            ).exists()
        )
        issued = BottleLedgerEntry.objects.get(customer=customer, action=BottleLedgerEntry.Action.ISSUED)
        self.assertEqual(issued.issued_date, TODAY)
        self.assertEqual(issued.delivery_id, delivery.id)
        self.assertEqual(Subscription.objects.get(customer=customer).delivery_count, 1)

        delivery.refresh_from_db()
        self.assertEqual(delivery.status, Delivery.Status.DELIVERED)
        self.assertEqual(delivery.marked_by, self.rider)
        self.assertIsNotNone(delivery.delivered_at)

    def test_collected_bottles_close_oldest_issue(self):
        customer = onboard(self.rider, balance=30000)
        yesterday = make_delivery(customer, TODAY - datetime.timedelta(days=1))
        mark_delivery(yesterday.id, Delivery.Status.DELIVERED, today=TODAY - datetime.timedelta(days=1))

        delivery = make_delivery(customer)
        mark_delivery(delivery.id, Delivery.Status.DELIVERED, {"large": 1}, today=TODAY)

        self.assertEqual(current_balance(customer.id), BottleCount(large=1, small=0))
        first_issue = BottleLedgerEntry.objects.get(delivery=yesterday, action=BottleLedgerEntry.Action.ISSUED)
        self.assertEqual(first_issue.returned_at, TODAY)
        delivery.refresh_from_db()
        self.assertEqual(delivery.large_bottles_collected, 1)

    def test_not_delivered_charges_nothing(self):
        customer = onboard(self.rider, balance=20000)
        delivery = make_delivery(customer)

        result = mark_delivery(delivery.id, Delivery.Status.NOT_DELIVERED, notes="gate locked", today=TODAY)

        self.assertTrue(result.settled)
        self.assertEqual(wallet_balance(customer.id), 20000)
        self.assertEqual(Subscription.objects.get(customer=customer).delivery_count, 0)
        delivery.refresh_from_db()
        self.assertEqual(delivery.notes, "gate locked")

    def test_negative_balance_overrides_delivered(self):
        customer = onboard(self.rider, balance=-5000)
        delivery = make_delivery(customer)
        transactions_before = WalletTransaction.objects.count()

        result = mark_delivery(delivery.id, Delivery.Status.DELIVERED, today=TODAY)

        self.assertFalse(result.settled)
        self.assertEqual(result.delivery_status, Delivery.Status.NOT_DELIVERED)
        self.assertEqual(result.new_status, Customer.Status.INACTIVE)
        self.assertFalse(result.became_inactive)
        self.assertIn("warning", result.as_dict())
        self.assertEqual(WalletTransaction.objects.count(), transactions_before)
        self.assertEqual(wallet_balance(customer.id), -5000)
        delivery.refresh_from_db()
        self.assertEqual(delivery.status, Delivery.Status.NOT_DELIVERED)
        self.assertIn(NEGATIVE_BALANCE_NOTE, delivery.notes)

    def test_end_to_end_low_balance_then_top_up(self):
        customer = onboard(self.rider, balance=5000)
        delivery = make_delivery(customer)

        result = mark_delivery(delivery.id, Delivery.Status.DELIVERED, today=TODAY)

        self.assertTrue(result.settled)
        self.assertTrue(result.became_inactive)
        self.assertEqual(result.new_status, Customer.Status.INACTIVE)
        self.assertEqual(wallet_balance(customer.id), -6000)
        self.assertFalse(ensure_deliveries_for_window(self.rider.id, TOMORROW, TOMORROW).created)

        top_up = apply_top_up(customer.id, 20000, today=TODAY)
        self.assertEqual(top_up.new_balance, 14000)
        self.assertEqual(top_up.new_status, Customer.Status.ACTIVE)

    def test_only_scheduled_deliveries_can_be_marked(self):
        customer = onboard(self.rider, balance=30000)
        delivery = make_delivery(customer)
        mark_delivery(delivery.id, Delivery.Status.DELIVERED, today=TODAY)

        with self.assertRaises(InvalidState):
            mark_delivery(delivery.id, Delivery.Status.DELIVERED, today=TODAY)
        with self.assertRaises(RecordNotFound):
            mark_delivery(uuid.uuid4(), Delivery.Status.DELIVERED, today=TODAY)
        with self.assertRaises(InvalidRequest):
            mark_delivery(delivery.id, Delivery.Status.PAUSED, today=TODAY)
        with self.assertRaises(InvalidRequest):
            mark_delivery(delivery.id, Delivery.Status.DELIVERED, {"large": -1}, today=TODAY)
        self.assertEqual(wallet_balance(customer.id), 19000)

    @override_settings(BILLING_DEPOSIT_INTERVAL_DELIVERIES=3)
    def test_recurring_deposit_on_cadence(self):
        customer = onboard(self.rider, balance=20000)
        Subscription.objects.filter(customer=customer).update(delivery_count=2, last_deposit_at_delivery_count=0)
        delivery = make_delivery(customer)

        result = mark_delivery(delivery.id, Delivery.Status.DELIVERED, today=TODAY)

        self.assertEqual(result.deposit_charged, 7000)
        self.assertEqual(wallet_balance(customer.id), 2000)
        subscription = Subscription.objects.get(customer=customer)
        self.assertEqual(subscription.delivery_count, 3)
        self.assertEqual(subscription.last_deposit_at_delivery_count, 3)
        delivery.refresh_from_db()
        self.assertEqual(delivery.deposit, 7000)

    def test_skipped_deposit_is_retried_on_next_delivery(self):
        customer = onboard(self.rider, balance=12000)
        Subscription.objects.filter(customer=customer).update(delivery_count=119, last_deposit_at_delivery_count=0)

        with self.assertLogs("deliveries.settlement", level="WARNING"):
            first = mark_delivery(make_delivery(customer).id, Delivery.Status.DELIVERED, today=TODAY)

        self.assertTrue(first.deposit_skipped)
        self.assertEqual(first.deposit_charged, 0)
        self.assertEqual(wallet_balance(customer.id), 1000)
        subscription = Subscription.objects.get(customer=customer)
        self.assertEqual(subscription.delivery_count, 120)
        self.assertEqual(subscription.last_deposit_at_delivery_count, 0)

        apply_top_up(customer.id, 20000, today=TODAY)
        second = mark_delivery(make_delivery(customer, TOMORROW).id, Delivery.Status.DELIVERED, today=TOMORROW)

        self.assertEqual(second.deposit_charged, 7000)
        self.assertEqual(wallet_balance(customer.id), 3000)
        self.assertEqual(Subscription.objects.get(customer=customer).last_deposit_at_delivery_count, 121)


class DeliveryApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        user_model = get_user_model()
        self.admin = user_model.objects.create_user(username="admin-deliveries", password="pass1234", role="admin")
        self.rider = user_model.objects.create_user(username="rider", password="pass1234", role="delivery")
        self.other_rider = user_model.objects.create_user(username="rider2", password="pass1234", role="delivery")
        self.customer = onboard(self.rider, balance=30000)

    def test_rider_lists_today_route(self):
        self.client.force_authenticate(user=self.rider)

        response = self.client.get("/api/v1/deliveries/today/", {"date": TODAY.isoformat()})

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["summary"]["created"], 1)
        self.assertEqual(len(payload["results"]), 1)
        self.assertEqual(payload["results"][0]["customer"], str(self.customer.id))

    def test_invalid_date_is_rejected_before_scheduling(self):
        self.client.force_authenticate(user=self.rider)

        response = self.client.get("/api/v1/deliveries/today/", {"date": "2026-13-40"})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")
        self.assertIn("date", response.json()["errors"])
        self.assertFalse(Delivery.objects.exists())

    def test_admin_must_name_route(self):
        self.client.force_authenticate(user=self.admin)

        missing = self.client.get("/api/v1/deliveries/today/", {"date": TODAY.isoformat()})
        named = self.client.get(
            "/api/v1/deliveries/today/",
            {"date": TODAY.isoformat(), "delivery_person": str(self.rider.id)},
        )

        self.assertEqual(missing.status_code, 400)
        self.assertEqual(named.status_code, 200)
        self.assertEqual(len(named.json()["results"]), 1)

    def test_rider_marks_own_delivery(self):
        delivery = make_delivery(self.customer)
        self.client.force_authenticate(user=self.rider)

        response = self.client.post(
            f"/api/v1/deliveries/{delivery.id}/mark/",
            {"outcome": "delivered", "bottles_collected": {"large": 0}},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()["settled"])
        self.assertEqual(wallet_balance(self.customer.id), 19000)
        self.assertTrue(AuditLog.objects.filter(action="delivery.mark", entity_id=str(delivery.id)).exists())

        again = self.client.post(f"/api/v1/deliveries/{delivery.id}/mark/", {"outcome": "delivered"}, format="json")
        self.assertEqual(again.status_code, 409)

    def test_other_route_and_customers_cannot_mark(self):
        delivery = make_delivery(self.customer)
        customer_user = get_user_model().objects.create_user(username="cust", password="pass1234", role="customer")

        self.client.force_authenticate(user=self.other_rider)
        response = self.client.post(f"/api/v1/deliveries/{delivery.id}/mark/", {"outcome": "delivered"}, format="json")
        self.assertEqual(response.status_code, 404)

        self.client.force_authenticate(user=customer_user)
        with self.assertLogs("security.authorization", level="WARNING"):
            response = self.client.post(
                f"/api/v1/deliveries/{delivery.id}/mark/", {"outcome": "delivered"}, format="json"
            )
        self.assertEqual(response.status_code, 403)

    def test_invalid_outcome_is_rejected(self):
        delivery = make_delivery(self.customer)
        self.client.force_authenticate(user=self.rider)

        response = self.client.post(f"/api/v1/deliveries/{delivery.id}/mark/", {"outcome": "paused"}, format="json")

        self.assertEqual(response.status_code, 400)
        delivery.refresh_from_db()
        self.assertEqual(delivery.status, Delivery.Status.SCHEDULED)
