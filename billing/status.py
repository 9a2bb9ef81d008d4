"""Customer status derivation.

Status is recomputed from subscription, assignment, pause, monthly payment and
wallet facts, first matching rule wins:

1. no (non-cancelled) subscription -> VISITOR
2. no delivery person -> PENDING_APPROVAL
3. a pause today or later -> PAUSED
4. past the grace day and this month's payment missing or unpaid -> INACTIVE
5. wallet balance >= 0 -> ACTIVE, otherwise INACTIVE
"""
import logging

from django.conf import settings
from django.utils import timezone

from billing.ledger import wallet_balance
from billing.models import MonthlyPayment
from common.exceptions import RecordNotFound
from common.utils import local_today
from customers.models import Customer, Pause, Subscription

logger = logging.getLogger(__name__)


def grace_period_end_day():
    return getattr(settings, "BILLING_GRACE_PERIOD_END_DAY", 7)


def is_past_grace_period(today):
    return today.day > grace_period_end_day()


def _get_customer(customer_id):
    customer = Customer.objects.filter(pk=customer_id).first()
    if customer is None:
        raise RecordNotFound(f"Customer {customer_id} not found.")
    return customer


def active_subscription(customer_id):
    return (
        Subscription.objects.filter(customer_id=customer_id)
        .exclude(status=Subscription.Status.CANCELLED)
        .first()
    )


def monthly_payment_outstanding(customer_id, today):
    """True when this month's payment is missing or not PAID once the grace window has passed."""
    if not is_past_grace_period(today):
        return False
    return not MonthlyPayment.objects.filter(
        customer_id=customer_id,
        year=today.year,
        month=today.month,
        status=MonthlyPayment.Status.PAID,
    ).exists()


def calculate_status(customer_id, *, today=None):
    today = today or local_today()
    customer = _get_customer(customer_id)

    if active_subscription(customer.id) is None:
        return Customer.Status.VISITOR
    if customer.delivery_person_id is None:
        return Customer.Status.PENDING_APPROVAL
    if Pause.objects.filter(customer_id=customer.id, pause_date__gte=today).exists():
        return Customer.Status.PAUSED
    if monthly_payment_outstanding(customer.id, today):
        return Customer.Status.INACTIVE
    if wallet_balance(customer.id) >= 0:
        return Customer.Status.ACTIVE
    return Customer.Status.INACTIVE


def update_status(customer_id, *, today=None):
    new_status = calculate_status(customer_id, today=today)
    updated = (
        Customer.objects.filter(pk=customer_id)
        .exclude(status=new_status)
        .update(status=new_status, updated_at=timezone.now())
    )
    if updated:
        logger.info(
            "customer_status_changed status=%s",
            new_status,
            extra={"customer_id": str(customer_id)},
        )
    return new_status


def can_receive_delivery(customer_id, *, today=None):
    """Whether a delivery may be scheduled for `today`.

    Evaluated inline from current facts rather than from the stored status,
    which can lag one recomputation behind.
    """
    today = today or local_today()
    customer = _get_customer(customer_id)

    if active_subscription(customer.id) is None:
        return False
    if customer.delivery_person_id is None:
        return False
    if Pause.objects.filter(customer_id=customer.id, pause_date=today).exists():
        return False
    if monthly_payment_outstanding(customer.id, today):
        return False
    return wallet_balance(customer.id) >= 0
