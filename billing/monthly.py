import datetime
import logging

from django.db import DatabaseError, transaction
from django.utils import timezone

from billing.ledger import wallet_balance
from billing.models import MonthlyPayment
from billing.status import grace_period_end_day, update_status
from common.exceptions import BillingError, InvalidState, RecordNotFound
from common.utils import days_in_month, local_today
from customers.models import Customer, Subscription

logger = logging.getLogger(__name__)

BILLABLE_SUBSCRIPTION_STATUSES = (Subscription.Status.ACTIVE,)


def due_date_for(year, month):
    return datetime.date(year, month, min(grace_period_end_day(), days_in_month(year, month)))


def monthly_total(subscription, year, month):
    return subscription.daily_price * days_in_month(year, month)


def billable_customers():
    return (
        Customer.objects.filter(
            delivery_person__isnull=False,
            subscription__status__in=BILLABLE_SUBSCRIPTION_STATUSES,
        )
        .select_related("subscription")
        .order_by("created_at", "id")
    )


def monthly_due(customer_id, year, month):
    """Read-only quote of what the month costs against the current wallet balance."""
    subscription = Subscription.objects.filter(customer_id=customer_id).first()
    if subscription is None:
        raise RecordNotFound(f"Subscription for customer {customer_id} not found.")
    total = monthly_total(subscription, year, month)
    balance = wallet_balance(customer_id)
    record = MonthlyPayment.objects.filter(customer_id=customer_id, year=year, month=month).first()
    return {
        "year": year,
        "month": month,
        "days": days_in_month(year, month),
        "daily_price": subscription.daily_price,
        "total_cost": total,
        "wallet_balance": balance,
        "amount_due": max(0, total - balance),
        "due_date": due_date_for(year, month),
        "status": record.status if record else None,
    }


def _record_defaults(subscription, balance, year, month):
    total = monthly_total(subscription, year, month)
    due_date = due_date_for(year, month)
    if balance >= total:
        return {
            "total_cost": total,
            "amount_due": 0,
            "amount_paid": total,
            "status": MonthlyPayment.Status.PAID,
            "due_date": due_date,
            "paid_at": timezone.now(),
        }
    return {
        "total_cost": total,
        "amount_due": max(0, total - balance),
        "status": MonthlyPayment.Status.PENDING,
        "due_date": due_date,
    }


def create_monthly_payment_records(year, month, *, today=None):
    """Create this month's payment record for every billable customer lacking one.

    A record whose total the wallet already covers is flagged PAID without
    debiting the wallet; deliveries keep charging day by day.
    """
    counters = {"created": 0, "auto_paid": 0, "pending": 0, "skipped": 0, "failed": 0, "errors": []}

    for customer in billable_customers():
        try:
            with transaction.atomic():
                payment, created = MonthlyPayment.objects.get_or_create(
                    customer=customer,
                    year=year,
                    month=month,
                    defaults=_record_defaults(customer.subscription, wallet_balance(customer.id), year, month),
                )
                if created:
                    update_status(customer.id, today=today)
        except (BillingError, DatabaseError) as exc:
            logger.exception("monthly_record_failed", extra={"customer_id": str(customer.id)})
            counters["failed"] += 1
            counters["errors"].append({"customer_id": str(customer.id), "error": str(exc)})
            continue

        if not created:
            counters["skipped"] += 1
            continue
        counters["created"] += 1
        if payment.status == MonthlyPayment.Status.PAID:
            counters["auto_paid"] += 1
        else:
            counters["pending"] += 1

    logger.info(
        "monthly_records_created year=%s month=%s created=%s auto_paid=%s pending=%s skipped=%s failed=%s",
        year,
        month,
        counters["created"],
        counters["auto_paid"],
        counters["pending"],
        counters["skipped"],
        counters["failed"],
    )
    return counters


def enforce_overdue_payments(year, month, *, today=None):
    """Move the month's PENDING records to OVERDUE and suspend those customers.

    Does nothing until the grace day of that month has passed. Customers still
    awaiting approval are never billed and are left untouched.
    """
    today = today or local_today()
    result = {"marked_overdue": 0, "deactivated": 0, "enforced": False}
    if today <= due_date_for(year, month):
        return result

    now = timezone.now()
    with transaction.atomic():
        overdue = list(
            MonthlyPayment.objects.filter(year=year, month=month, status=MonthlyPayment.Status.PENDING)
            .exclude(customer__status=Customer.Status.PENDING_APPROVAL)
            .values_list("id", "customer_id")
        )
        payment_ids = [payment_id for payment_id, _ in overdue]
        customer_ids = {customer_id for _, customer_id in overdue}

        result["marked_overdue"] = MonthlyPayment.objects.filter(
            id__in=payment_ids,
            status=MonthlyPayment.Status.PENDING,
        ).update(status=MonthlyPayment.Status.OVERDUE, updated_at=now)
        result["deactivated"] = (
            Customer.objects.filter(id__in=customer_ids)
            .exclude(status__in=[Customer.Status.PENDING_APPROVAL, Customer.Status.INACTIVE])
            .update(status=Customer.Status.INACTIVE, updated_at=now)
        )
    result["enforced"] = True

    logger.info(
        "overdue_payments_enforced year=%s month=%s marked_overdue=%s deactivated=%s",
        year,
        month,
        result["marked_overdue"],
        result["deactivated"],
    )
    return result


def mark_monthly_payment_paid(payment_id, *, amount_paid=None, today=None):
    """Settle a PENDING record paid outside the wallet (cash, bank transfer)."""
    with transaction.atomic():
        payment = MonthlyPayment.objects.select_for_update().filter(pk=payment_id).first()
        if payment is None:
            raise RecordNotFound(f"Monthly payment {payment_id} not found.")
        if payment.status != MonthlyPayment.Status.PENDING:
            raise InvalidState(f"Monthly payment is {payment.status}; only pending payments can be marked paid.")

        payment.status = MonthlyPayment.Status.PAID
        payment.amount_paid = payment.total_cost if amount_paid is None else amount_paid
        payment.amount_due = 0
        payment.paid_at = timezone.now()
        payment.save(update_fields=["status", "amount_paid", "amount_due", "paid_at", "updated_at"])

    update_status(payment.customer_id, today=today)
    return payment


def cover_from_wallet(customer_id, *, today=None):
    """Bring the current month's record in line with the wallet.

    Runs after a credit and after an assignment. A billable customer without a
    record for the month (anyone who joined after the 1st) gets one on the spot,
    with the same auto-PAID rule as the month-start run. A PENDING record flips
    to PAID once the balance covers the month, otherwise its `amount_due` is
    refreshed. Returns the record, or None for a customer who is not billable.
    """
    today = today or local_today()
    with transaction.atomic():
        payment = (
            MonthlyPayment.objects.select_for_update()
            .filter(customer_id=customer_id, year=today.year, month=today.month)
            .first()
        )
        if payment is None:
            customer = billable_customers().filter(pk=customer_id).first()
            if customer is None:
                return None
            payment, created = MonthlyPayment.objects.get_or_create(
                customer=customer,
                year=today.year,
                month=today.month,
                defaults=_record_defaults(
                    customer.subscription, wallet_balance(customer_id), today.year, today.month
                ),
            )
            if created:
                logger.info(
                    "monthly_record_created year=%s month=%s status=%s",
                    today.year,
                    today.month,
                    payment.status,
                    extra={"customer_id": str(customer_id)},
                )
            return payment
        if payment.status != MonthlyPayment.Status.PENDING:
            return payment

        balance = wallet_balance(customer_id)
        if balance >= payment.total_cost:
            payment.status = MonthlyPayment.Status.PAID
            payment.amount_paid = payment.total_cost
            payment.amount_due = 0
            payment.paid_at = timezone.now()
            payment.save(update_fields=["status", "amount_paid", "amount_due", "paid_at", "updated_at"])
        else:
            payment.amount_due = max(0, payment.total_cost - balance)
            payment.save(update_fields=["amount_due", "updated_at"])
    return payment
