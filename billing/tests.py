import datetime
import uuid
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.db import DatabaseError
from django.test import TestCase
from rest_framework.test import APIClient

from billing.jobs import JobRegistry, build_default_registry
from billing.ledger import append_bottle_ledger, apply_wallet_delta, current_balance, wallet_balance
from billing.models import BottleLedgerEntry, MonthlyPayment, Wallet, WalletTransaction
from billing.monthly import (
    create_monthly_payment_records,
    due_date_for,
    enforce_overdue_payments,
    mark_monthly_payment_paid,
    monthly_due,
)
from billing.payments import apply_admin_adjustment, apply_top_up, process_gateway_payment, start_gateway_top_up
from billing.penalties import check_and_charge_penalties, flagged_customers, impose_penalty
from billing.pricing import (
    BottleCount,
    bottles_for,
    days_covered,
    deposit_for,
    price_for,
    should_charge_deposit,
)
from billing.status import calculate_status, can_receive_delivery, update_status
from common.exceptions import Aborted, InvalidRequest, InvalidState, RecordNotFound
from common.utils import local_today
from core.models import AuditLog
from customers.models import Customer, Pause, Subscription
from customers.services import assign_delivery_person, register_customer, subscribe
from deliveries.models import Delivery

TODAY = datetime.date(2026, 3, 3)
LARGE = BottleLedgerEntry.Size.LARGE
SMALL = BottleLedgerEntry.Size.SMALL


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


def issue_overdue(customer, size=LARGE, quantity=1, days_ago=5):
    return append_bottle_ledger(
        customer.id,
        BottleLedgerEntry.Action.ISSUED,
        size,
        quantity,
        "test issue",
        issued_date=TODAY - datetime.timedelta(days=days_ago),
        today=TODAY,
    )


class PricingTests(TestCase):
    def test_price_table(self):
        self.assertEqual(price_for(500), 6800)
        self.assertEqual(price_for(1000), 11000)
        self.assertEqual(price_for(2500), 26800)

    def test_unsupported_quantity_is_rejected(self):
        with self.assertRaises(InvalidRequest):
            price_for(750)

    def test_bottle_composition(self):
        self.assertEqual(bottles_for(500), BottleCount(large=0, small=1))
        self.assertEqual(bottles_for(1000), BottleCount(large=1, small=0))
        self.assertEqual(bottles_for(2500), BottleCount(large=2, small=1))

    def test_deposit_counts_two_bottles_per_slot(self):
        self.assertEqual(deposit_for(1000), 7000)
        self.assertEqual(deposit_for(500), 5000)
        self.assertEqual(deposit_for(1500), 12000)

    def test_deposit_cadence(self):
        self.assertFalse(should_charge_deposit(119, 0))
        self.assertTrue(should_charge_deposit(120, 0))
        self.assertFalse(should_charge_deposit(200, 120))

    def test_days_covered_is_integer_and_floors(self):
        self.assertEqual(days_covered(25000, 11000), 2)
        self.assertEqual(days_covered(-100, 11000), 0)


class LedgerTests(TestCase):
    def setUp(self):
        self.customer = register_customer(name="Ledger")
        self.wallet = Wallet.objects.get(customer=self.customer)

    def test_balance_matches_latest_transaction(self):
        apply_wallet_delta(self.wallet.id, 5000, WalletTransaction.Kind.TOP_UP, "top up", today=TODAY)
        new_balance, txn_id = apply_wallet_delta(
            self.wallet.id, -11000, WalletTransaction.Kind.MILK_CHARGE, "milk", today=TODAY
        )

        self.wallet.refresh_from_db()
        latest = WalletTransaction.objects.filter(wallet=self.wallet).order_by("-id").first()
        self.assertEqual(new_balance, -6000)
        self.assertEqual(latest.id, txn_id)
        self.assertEqual(self.wallet.balance, latest.balance_after)
        self.assertEqual(wallet_balance(self.customer.id), -6000)

    def test_negative_balance_watermark(self):
        apply_wallet_delta(self.wallet.id, -100, WalletTransaction.Kind.ADMIN_DEBIT, "debit", today=TODAY)
        apply_wallet_delta(
            self.wallet.id,
            -100,
            WalletTransaction.Kind.ADMIN_DEBIT,
            "debit",
            today=TODAY + datetime.timedelta(days=2),
        )
        self.wallet.refresh_from_db()
        self.assertEqual(self.wallet.negative_balance_since, TODAY)

        apply_wallet_delta(self.wallet.id, 200, WalletTransaction.Kind.ADMIN_CREDIT, "credit", today=TODAY)
        self.wallet.refresh_from_db()
        self.assertIsNone(self.wallet.negative_balance_since)

    def test_missing_wallet_raises_not_found(self):
        with self.assertRaises(RecordNotFound):
            apply_wallet_delta(uuid.uuid4(), 100, WalletTransaction.Kind.TOP_UP, "x")
        with self.assertRaises(RecordNotFound):
            wallet_balance(uuid.uuid4())

    def test_storage_failure_aborts_without_partial_write(self):
        with patch.object(WalletTransaction.objects, "create", side_effect=DatabaseError("disk full")):
            with self.assertRaises(Aborted):
                apply_wallet_delta(self.wallet.id, 5000, WalletTransaction.Kind.TOP_UP, "top up", today=TODAY)

        self.wallet.refresh_from_db()
        self.assertEqual(self.wallet.balance, 0)
        self.assertFalse(WalletTransaction.objects.filter(wallet=self.wallet).exists())

    def test_bottle_balances_carry_both_sizes_and_clamp_at_zero(self):
        append_bottle_ledger(self.customer.id, BottleLedgerEntry.Action.ISSUED, LARGE, 2, "issue", today=TODAY)
        append_bottle_ledger(self.customer.id, BottleLedgerEntry.Action.ISSUED, SMALL, 1, "issue", today=TODAY)
        entry = append_bottle_ledger(self.customer.id, BottleLedgerEntry.Action.RETURNED, LARGE, 5, "return", today=TODAY)

        self.assertEqual(entry.large_balance_after, 0)
        self.assertEqual(entry.small_balance_after, 1)
        self.assertEqual(current_balance(self.customer.id), BottleCount(large=0, small=1))

    def test_signed_adjustment(self):
        append_bottle_ledger(self.customer.id, BottleLedgerEntry.Action.ADJUSTMENT, SMALL, 3, "count", today=TODAY)
        append_bottle_ledger(self.customer.id, BottleLedgerEntry.Action.ADJUSTMENT, SMALL, -1, "count", today=TODAY)
        self.assertEqual(current_balance(self.customer.id), BottleCount(large=0, small=2))

        with self.assertRaises(InvalidRequest):
            append_bottle_ledger(self.customer.id, BottleLedgerEntry.Action.ISSUED, SMALL, 0, "nothing")

    def test_returns_close_oldest_issues_first(self):
        older = append_bottle_ledger(
            self.customer.id,
            BottleLedgerEntry.Action.ISSUED,
            LARGE,
            1,
            "day one",
            issued_date=TODAY - datetime.timedelta(days=2),
            today=TODAY,
        )
        newer = append_bottle_ledger(self.customer.id, BottleLedgerEntry.Action.ISSUED, LARGE, 1, "day two", today=TODAY)
        append_bottle_ledger(self.customer.id, BottleLedgerEntry.Action.RETURNED, LARGE, 1, "collected", today=TODAY)

        older.refresh_from_db()
        newer.refresh_from_db()
        self.assertEqual(older.returned_at, TODAY)
        self.assertIsNone(newer.returned_at)

    def test_unknown_customer_bottle_entry(self):
        with self.assertRaises(RecordNotFound):
            append_bottle_ledger(uuid.uuid4(), BottleLedgerEntry.Action.ISSUED, LARGE, 1, "x", today=TODAY)


class StatusEngineTests(TestCase):
    def setUp(self):
        self.rider = get_user_model().objects.create_user(username="rider", password="pass1234", role="delivery")

    def test_visitor_and_pending_approval(self):
        customer = register_customer(name="New")
        self.assertEqual(calculate_status(customer.id, today=TODAY), Customer.Status.VISITOR)

        subscribe(customer.id, 1000, today=TODAY)
        self.assertEqual(calculate_status(customer.id, today=TODAY), Customer.Status.PENDING_APPROVAL)
        self.assertFalse(can_receive_delivery(customer.id, today=TODAY))

    def test_cancelled_subscription_counts_as_none(self):
        customer = onboard(self.rider)
        Subscription.objects.filter(customer=customer).update(status=Subscription.Status.CANCELLED)
        self.assertEqual(calculate_status(customer.id, today=TODAY), Customer.Status.VISITOR)

    def test_upcoming_pause_sets_paused_but_today_still_deliverable(self):
        customer = onboard(self.rider)
        Pause.objects.create(customer=customer, pause_date=TODAY + datetime.timedelta(days=2))

        self.assertEqual(calculate_status(customer.id, today=TODAY), Customer.Status.PAUSED)
        self.assertTrue(can_receive_delivery(customer.id, today=TODAY))
        self.assertFalse(can_receive_delivery(customer.id, today=TODAY + datetime.timedelta(days=2)))

    def test_grace_boundary_on_balance(self):
        customer = onboard(self.rider, balance=0)
        self.assertEqual(calculate_status(customer.id, today=TODAY), Customer.Status.ACTIVE)
        self.assertTrue(can_receive_delivery(customer.id, today=TODAY))

        apply_wallet_delta(customer.wallet.id, -1, WalletTransaction.Kind.ADMIN_DEBIT, "one paisa", today=TODAY)
        self.assertEqual(calculate_status(customer.id, today=TODAY), Customer.Status.INACTIVE)
        self.assertFalse(can_receive_delivery(customer.id, today=TODAY))

    def test_unpaid_month_after_grace_day(self):
        customer = onboard(self.rider, balance=50000)
        day_seven = datetime.date(2026, 3, 7)
        day_eight = datetime.date(2026, 3, 8)

        self.assertEqual(calculate_status(customer.id, today=day_seven), Customer.Status.ACTIVE)
        self.assertEqual(calculate_status(customer.id, today=day_eight), Customer.Status.INACTIVE)
        self.assertFalse(can_receive_delivery(customer.id, today=day_eight))

        # assigned with an empty wallet, so the month opened unpaid
        payment = MonthlyPayment.objects.get(customer=customer, year=2026, month=3)
        self.assertEqual(payment.status, MonthlyPayment.Status.PENDING)
        mark_monthly_payment_paid(payment.id, today=day_eight)
        self.assertEqual(calculate_status(customer.id, today=day_eight), Customer.Status.ACTIVE)

    def test_calculate_is_pure_and_update_persists(self):
        customer = onboard(self.rider, balance=1000)
        Customer.objects.filter(pk=customer.pk).update(status=Customer.Status.INACTIVE)

        first = calculate_status(customer.id, today=TODAY)
        second = calculate_status(customer.id, today=TODAY)
        customer.refresh_from_db()
        self.assertEqual(first, second)
        self.assertEqual(customer.status, Customer.Status.INACTIVE)

        self.assertEqual(update_status(customer.id, today=TODAY), Customer.Status.ACTIVE)
        customer.refresh_from_db()
        self.assertEqual(customer.status, Customer.Status.ACTIVE)

    def test_unknown_customer(self):
        with self.assertRaises(RecordNotFound):
            calculate_status(uuid.uuid4(), today=TODAY)


class PenaltyEngineTests(TestCase):
    def setUp(self):
        self.rider = get_user_model().objects.create_user(username="rider", password="pass1234", role="delivery")
        self.customer = onboard(self.rider, balance=10000)

    def test_sweep_fines_overdue_bottles_once(self):
        first = issue_overdue(self.customer)
        second = issue_overdue(self.customer, days_ago=4)
        issue_overdue(self.customer, days_ago=2)

        results = check_and_charge_penalties(today=TODAY)

        self.assertEqual(len(results), 1)
        self.assertEqual(results[0].as_dict()["large_penalized"], 2)
        self.assertEqual(results[0].total_penalty, 7000)
        self.assertEqual(wallet_balance(self.customer.id), 3000)
        first.refresh_from_db()
        second.refresh_from_db()
        self.assertEqual(first.penalty_applied_at, TODAY)
        self.assertEqual(second.penalty_applied_at, TODAY)
        self.assertEqual(current_balance(self.customer.id), BottleCount(large=1, small=0))
        self.assertTrue(
            BottleLedgerEntry.objects.filter(
                customer=self.customer, action=BottleLedgerEntry.Action.PENALTY_CHARGED, quantity=2
            ).exists()
        )

        self.assertEqual(check_and_charge_penalties(today=TODAY), [])
        self.assertEqual(wallet_balance(self.customer.id), 3000)

    def test_fine_is_capped_by_bottles_held(self):
        entries = [issue_overdue(self.customer, days_ago=10 - offset) for offset in range(5)]
        append_bottle_ledger(
            self.customer.id, BottleLedgerEntry.Action.ADJUSTMENT, LARGE, -3, "recount", today=TODAY
        )

        results = check_and_charge_penalties(today=TODAY)

        self.assertEqual(results[0].large_penalized, 2)
        self.assertEqual(results[0].total_penalty, 7000)
        marked = [entry.id for entry in entries if BottleLedgerEntry.objects.get(pk=entry.id).penalty_applied_at]
        self.assertEqual(marked, [entries[0].id, entries[1].id])
        self.assertEqual(check_and_charge_penalties(today=TODAY), [])

    def test_penalty_may_push_wallet_negative(self):
        apply_wallet_delta(self.customer.wallet.id, -10000, WalletTransaction.Kind.ADMIN_DEBIT, "drain", today=TODAY)
        issue_overdue(self.customer, size=SMALL)

        results = check_and_charge_penalties(today=TODAY)

        self.assertEqual(results[0].total_penalty, 2500)
        self.assertEqual(wallet_balance(self.customer.id), -2500)
        self.customer.refresh_from_db()
        self.assertEqual(self.customer.status, Customer.Status.INACTIVE)

    def test_one_customer_failure_does_not_stop_sweep(self):
        other = onboard(self.rider, name="Other", balance=10000)
        issue_overdue(self.customer)
        issue_overdue(other)
        broken_wallet = self.customer.wallet.id

        def flaky(wallet_id, *args, **kwargs):
            if wallet_id == broken_wallet:
                raise Aborted()
            return apply_wallet_delta(wallet_id, *args, **kwargs)

        with patch("billing.penalties.apply_wallet_delta", side_effect=flaky):
            results = {result.customer_id: result for result in check_and_charge_penalties(today=TODAY)}

        self.assertFalse(results[str(self.customer.id)].success)
        self.assertIn("error", results[str(self.customer.id)].as_dict())
        self.assertTrue(results[str(other.id)].success)
        self.assertEqual(wallet_balance(self.customer.id), 10000)
        self.assertEqual(wallet_balance(other.id), 6500)

    def test_impose_partial_fine(self):
        oldest = issue_overdue(self.customer, days_ago=9)
        issue_overdue(self.customer, days_ago=8)

        result = impose_penalty(self.customer.id, 1000, 1, 0, today=TODAY)

        self.assertEqual(result.large_penalized, 1)
        self.assertEqual(wallet_balance(self.customer.id), 9000)
        oldest.refresh_from_db()
        self.assertEqual(oldest.penalty_applied_at, TODAY)

    def test_impose_rejects_without_overdue_bottles(self):
        with self.assertRaises(InvalidRequest):
            impose_penalty(self.customer.id, 1000, 1, 0, today=TODAY)

        issue_overdue(self.customer)
        with self.assertRaises(InvalidRequest):
            impose_penalty(self.customer.id, 1000, 0, 2, today=TODAY)
        with self.assertRaises(InvalidRequest):
            impose_penalty(self.customer.id, -5, 1, 0, today=TODAY)

    def test_flagged_customers(self):
        issue_overdue(self.customer, days_ago=6)
        issue_overdue(self.customer, size=SMALL, days_ago=4)

        flagged = flagged_customers(today=TODAY)

        self.assertEqual(len(flagged), 1)
        self.assertEqual(flagged[0]["large_overdue"], 1)
        self.assertEqual(flagged[0]["small_overdue"], 1)
        self.assertEqual(flagged[0]["days_overdue"], 6)
        self.assertEqual(flagged[0]["potential_fine"], 6000)


class MonthlyPaymentTests(TestCase):
    def setUp(self):
        self.rider = get_user_model().objects.create_user(username="rider", password="pass1234", role="delivery")
        self.first = datetime.date(2026, 4, 1)
        self.covered = onboard(self.rider, name="Covered", balance=341000)
        self.short = onboard(self.rider, name="Short", balance=1000)
        self.unassigned = register_customer(name="Unassigned")
        subscribe(self.unassigned.id, 500, today=TODAY)

    def test_records_are_created_once(self):
        counters = create_monthly_payment_records(2026, 4, today=self.first)

        self.assertEqual(counters["created"], 2)
        self.assertEqual(counters["auto_paid"], 1)
        self.assertEqual(counters["pending"], 1)

        paid = MonthlyPayment.objects.get(customer=self.covered, month=4)
        self.assertEqual(paid.status, MonthlyPayment.Status.PAID)
        self.assertEqual(paid.total_cost, 330000)
        self.assertEqual(paid.amount_paid, 330000)
        self.assertEqual(paid.due_date, datetime.date(2026, 4, 7))
        # flagged as covered, not debited
        self.assertEqual(wallet_balance(self.covered.id), 341000)

        pending = MonthlyPayment.objects.get(customer=self.short, month=4)
        self.assertEqual(pending.status, MonthlyPayment.Status.PENDING)
        self.assertEqual(pending.amount_due, 329000)
        self.assertFalse(MonthlyPayment.objects.filter(customer=self.unassigned).exists())

        again = create_monthly_payment_records(2026, 4, today=self.first)
        self.assertEqual(again["created"], 0)
        self.assertEqual(again["skipped"], 2)
        self.assertEqual(MonthlyPayment.objects.filter(month=4).count(), 2)

    def test_enforcement_waits_for_grace_day(self):
        create_monthly_payment_records(2026, 4, today=self.first)

        result = enforce_overdue_payments(2026, 4, today=datetime.date(2026, 4, 7))
        self.assertFalse(result["enforced"])
        self.assertFalse(MonthlyPayment.objects.filter(status=MonthlyPayment.Status.OVERDUE).exists())

        result = enforce_overdue_payments(2026, 4, today=datetime.date(2026, 4, 8))
        self.assertEqual(result["marked_overdue"], 1)
        self.short.refresh_from_db()
        self.covered.refresh_from_db()
        self.assertEqual(self.short.status, Customer.Status.INACTIVE)
        self.assertEqual(self.covered.status, Customer.Status.ACTIVE)
        self.assertEqual(
            MonthlyPayment.objects.get(customer=self.short, month=4).status,
            MonthlyPayment.Status.OVERDUE,
        )

        repeat = enforce_overdue_payments(2026, 4, today=datetime.date(2026, 4, 9))
        self.assertEqual(repeat["marked_overdue"], 0)

    def test_enforcement_skips_pending_approval_customers(self):
        payment = MonthlyPayment.objects.create(
            customer=self.unassigned,
            year=2026,
            month=3,
            total_cost=210800,
            amount_due=210800,
            status=MonthlyPayment.Status.PENDING,
            due_date=due_date_for(2026, 3),
        )

        enforce_overdue_payments(2026, 3, today=datetime.date(2026, 3, 10))

        payment.refresh_from_db()
        self.unassigned.refresh_from_db()
        self.assertEqual(payment.status, MonthlyPayment.Status.PENDING)
        self.assertEqual(self.unassigned.status, Customer.Status.PENDING_APPROVAL)

    def test_mark_paid_only_from_pending(self):
        create_monthly_payment_records(2026, 4, today=self.first)
        pending = MonthlyPayment.objects.get(customer=self.short, month=4)

        paid = mark_monthly_payment_paid(pending.id, today=self.first)
        self.assertEqual(paid.status, MonthlyPayment.Status.PAID)
        self.assertEqual(paid.amount_due, 0)

        with self.assertRaises(InvalidState):
            mark_monthly_payment_paid(pending.id, today=self.first)
        with self.assertRaises(RecordNotFound):
            mark_monthly_payment_paid(uuid.uuid4())

    def test_monthly_due_quote(self):
        quote = monthly_due(self.short.id, 2026, 2)
        self.assertEqual(quote["days"], 28)
        self.assertEqual(quote["total_cost"], 308000)
        self.assertEqual(quote["amount_due"], 307000)
        self.assertIsNone(quote["status"])

        current = monthly_due(self.short.id, 2026, 3)
        self.assertEqual(current["status"], MonthlyPayment.Status.PENDING)
        self.assertEqual(current["due_date"], datetime.date(2026, 3, 7))


class MidMonthOnboardingTests(TestCase):
    def setUp(self):
        self.rider = get_user_model().objects.create_user(username="rider", password="pass1234", role="delivery")
        self.joined = datetime.date(2026, 3, 10)
        self.customer = register_customer(name="Late joiner")
        subscribe(self.customer.id, 1000, today=self.joined)

    def test_funded_customer_assigned_after_grace_day_can_receive(self):
        apply_top_up(self.customer.id, 500000, today=self.joined)
        self.assertFalse(MonthlyPayment.objects.filter(customer=self.customer).exists())

        result = assign_delivery_person(self.customer.id, self.rider.id, today=self.joined)

        payment = MonthlyPayment.objects.get(customer=self.customer, year=2026, month=3)
        self.assertEqual(payment.status, MonthlyPayment.Status.PAID)
        self.assertEqual(payment.total_cost, 341000)
        self.assertEqual(result["new_status"], Customer.Status.ACTIVE)
        self.assertTrue(can_receive_delivery(self.customer.id, today=self.joined))
        # the month is flagged as covered; only the deposit left the wallet
        self.assertEqual(wallet_balance(self.customer.id), 493000)

    def test_short_wallet_opens_pending_month_that_top_up_settles(self):
        apply_top_up(self.customer.id, 7000, today=self.joined)
        result = assign_delivery_person(self.customer.id, self.rider.id, today=self.joined)

        payment = MonthlyPayment.objects.get(customer=self.customer, year=2026, month=3)
        self.assertEqual(payment.status, MonthlyPayment.Status.PENDING)
        self.assertEqual(payment.amount_due, 341000)
        self.assertEqual(result["new_status"], Customer.Status.INACTIVE)
        self.assertFalse(can_receive_delivery(self.customer.id, today=self.joined))

        top_up = apply_top_up(self.customer.id, 341000, today=self.joined)

        payment.refresh_from_db()
        self.assertEqual(payment.status, MonthlyPayment.Status.PAID)
        self.assertEqual(top_up.new_status, Customer.Status.ACTIVE)
        self.assertTrue(can_receive_delivery(self.customer.id, today=self.joined))
        self.assertEqual(MonthlyPayment.objects.filter(customer=self.customer).count(), 1)

    def test_month_start_run_skips_record_opened_at_assignment(self):
        apply_top_up(self.customer.id, 500000, today=self.joined)
        assign_delivery_person(self.customer.id, self.rider.id, today=self.joined)

        counters = create_monthly_payment_records(2026, 3, today=self.joined)

        self.assertEqual(counters["created"], 0)
        self.assertEqual(counters["skipped"], 1)


class PaymentTests(TestCase):
    def setUp(self):
        self.rider = get_user_model().objects.create_user(username="rider", password="pass1234", role="delivery")
        self.customer = onboard(self.rider, balance=0)

    def test_top_up_is_idempotent_per_order(self):
        first = apply_top_up(self.customer.id, 20000, order_ref="order_1", today=TODAY)
        second = apply_top_up(self.customer.id, 20000, order_ref="order_1", today=TODAY)

        self.assertFalse(first.duplicate)
        self.assertTrue(second.duplicate)
        self.assertEqual(second.transaction_id, first.transaction_id)
        self.assertEqual(wallet_balance(self.customer.id), 20000)

    def test_top_up_settles_pending_month(self):
        payment = MonthlyPayment.objects.get(customer=self.customer, year=TODAY.year, month=TODAY.month)
        self.assertEqual(payment.status, MonthlyPayment.Status.PENDING)
        self.assertEqual(payment.amount_due, 341000)

        apply_top_up(self.customer.id, 100000, today=TODAY)
        payment.refresh_from_db()
        self.assertEqual(payment.status, MonthlyPayment.Status.PENDING)
        self.assertEqual(payment.amount_due, 241000)

        apply_top_up(self.customer.id, 241000, today=TODAY)
        payment.refresh_from_db()
        self.assertEqual(payment.status, MonthlyPayment.Status.PAID)

    def test_invalid_amounts(self):
        for amount in (0, -100, True, 10.5):
            with self.assertRaises(InvalidRequest):
                apply_top_up(self.customer.id, amount, today=TODAY)

    def test_admin_debit_reactivates_nothing_and_records_kind(self):
        result = apply_admin_adjustment(self.customer.id, -500, description="broken crate", today=TODAY)

        self.assertEqual(result.new_balance, -500)
        self.assertEqual(result.new_status, Customer.Status.INACTIVE)
        self.assertEqual(
            WalletTransaction.objects.get(pk=result.transaction_id).kind,
            WalletTransaction.Kind.ADMIN_DEBIT,
        )

    def test_gateway_flow(self):
        class FakeGateway:
            def __init__(self, valid):
                self.valid = valid

            def create_order(self, amount, metadata):
                return f"order_{amount}_{metadata['customer_id'][:4]}"

            def verify_signature(self, payload):
                return self.valid

        order_ref = start_gateway_top_up(FakeGateway(True), self.customer.id, 15000)
        with self.assertRaises(InvalidRequest):
            process_gateway_payment(
                FakeGateway(False), {}, customer_id=self.customer.id, amount=15000, order_ref=order_ref, today=TODAY
            )
        self.assertEqual(wallet_balance(self.customer.id), 0)

        result = process_gateway_payment(
            FakeGateway(True), {}, customer_id=self.customer.id, amount=15000, order_ref=order_ref, today=TODAY
        )
        self.assertEqual(result.new_balance, 15000)


class JobRegistryTests(TestCase):
    def test_due_jobs_follow_the_calendar(self):
        registry = build_default_registry()

        first = registry.due(datetime.date(2026, 3, 1))
        seventh = registry.due(datetime.date(2026, 3, 7))
        eighth = registry.due(datetime.date(2026, 3, 8))

        self.assertIn("monthly_records", first)
        self.assertNotIn("overdue_enforcement", first)
        self.assertNotIn("overdue_enforcement", seventh)
        self.assertIn("overdue_enforcement", eighth)
        self.assertNotIn("monthly_records", eighth)
        self.assertIn("penalty_sweep", eighth)

    def test_failing_job_is_logged_and_others_run(self):
        registry = JobRegistry(clock=lambda: TODAY)
        calls = []

        def broken(run_date):
            raise RuntimeError("boom")

        registry.register("broken", broken)
        registry.register("works", lambda run_date: calls.append(run_date) or {"ok": 1})

        with self.assertLogs("billing.jobs", level="ERROR"):
            outcomes = registry.run_due()

        self.assertFalse(outcomes["broken"]["ok"])
        self.assertEqual(outcomes["broken"]["error"], "boom")
        self.assertTrue(outcomes["works"]["ok"])
        self.assertEqual(calls, [TODAY])

    def test_unknown_and_duplicate_jobs(self):
        registry = JobRegistry(clock=lambda: TODAY)
        registry.register("one", lambda run_date: None)
        with self.assertRaises(InvalidRequest):
            registry.register("one", lambda run_date: None)
        with self.assertRaises(InvalidRequest):
            registry.run("missing")

    def test_default_registry_runs_first_of_month(self):
        rider = get_user_model().objects.create_user(username="rider", password="pass1234", role="delivery")
        customer = onboard(rider, balance=20000)
        run_date = datetime.date(2026, 3, 1)

        outcomes = build_default_registry(clock=lambda: run_date).run_due()

        self.assertTrue(all(outcome["ok"] for outcome in outcomes.values()))
        self.assertTrue(MonthlyPayment.objects.filter(customer=customer, year=2026, month=3).exists())
        self.assertTrue(Delivery.objects.filter(customer=customer, delivery_date=run_date).exists())


class BillingApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        user_model = get_user_model()
        self.admin = user_model.objects.create_user(username="admin-billing", password="pass1234", role="admin")
        self.rider = user_model.objects.create_user(username="rider-billing", password="pass1234", role="delivery")
        self.customer = onboard(self.rider, balance=0)

    def test_admin_wallet_adjustment_is_audited(self):
        self.client.force_authenticate(user=self.admin)
        response = self.client.post(
            f"/api/v1/admin/customers/{self.customer.id}/wallet/",
            {"amount": 5000, "description": "cash received"},
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["new_balance"], 5000)
        self.assertEqual(AuditLog.objects.filter(action="wallet.adjust", entity_id=str(self.customer.id)).count(), 1)

    def test_delivery_person_cannot_adjust_wallet(self):
        self.client.force_authenticate(user=self.rider)
        with self.assertLogs("security.authorization", level="WARNING"):
            response = self.client.post(
                f"/api/v1/admin/customers/{self.customer.id}/wallet/",
                {"amount": 5000},
                format="json",
            )

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "permission_denied")

    def test_impose_without_overdue_returns_envelope(self):
        self.client.force_authenticate(user=self.admin)
        response = self.client.post(
            "/api/v1/admin/penalties/impose/",
            {"customer_id": str(self.customer.id), "fine_amount": 3500, "large_count": 1},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        payload = response.json()
        self.assertEqual(payload["code"], "invalid_request")
        self.assertEqual(payload["status"], 400)

    def test_impose_and_list_flagged(self):
        append_bottle_ledger(
            self.customer.id,
            BottleLedgerEntry.Action.ISSUED,
            LARGE,
            1,
            "old issue",
            issued_date=local_today() - datetime.timedelta(days=10),
        )
        self.client.force_authenticate(user=self.admin)

        listing = self.client.get("/api/v1/admin/penalties/")
        self.assertEqual(listing.status_code, 200)
        self.assertEqual(listing.json()["results"][0]["customer_id"], str(self.customer.id))

        response = self.client.post(
            "/api/v1/admin/penalties/impose/",
            {"customer_id": str(self.customer.id), "fine_amount": 3500, "large_count": 1},
            format="json",
        )
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["large_penalized"], 1)
        self.assertEqual(wallet_balance(self.customer.id), -3500)

    def test_mark_paid_twice_conflicts(self):
        payment = MonthlyPayment.objects.get(customer=self.customer, year=2026, month=3)
        self.client.force_authenticate(user=self.admin)

        first = self.client.post(f"/api/v1/admin/monthly-payments/{payment.id}/mark-paid/", {}, format="json")
        second = self.client.post(f"/api/v1/admin/monthly-payments/{payment.id}/mark-paid/", {}, format="json")

        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.json()["status"], "paid")
        self.assertEqual(second.status_code, 409)
        self.assertEqual(second.json()["code"], "invalid_state")

    def test_customer_sees_only_own_transactions(self):
        other = onboard(self.rider, name="Other", balance=1000)
        user = get_user_model().objects.create_user(username="cust", password="pass1234", role="customer")
        Customer.objects.filter(pk=self.customer.pk).update(user=user)
        self.client.force_authenticate(user=user)

        response = self.client.get("/api/v1/wallet-transactions/")

        self.assertEqual(response.status_code, 200)
        customers = {row["customer"] for row in response.json()["results"]}
        self.assertEqual(customers, {str(self.customer.id)})
        self.assertNotIn(str(other.id), customers)
