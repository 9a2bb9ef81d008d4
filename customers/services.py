import datetime
import logging

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from billing.ledger import apply_wallet_delta
from billing.models import Wallet, WalletTransaction
from billing.monthly import cover_from_wallet
from billing.pricing import bottles_for, deposit_for, price_for
from billing.status import update_status
from common.exceptions import InvalidRequest, InvalidState, RecordNotFound
from common.utils import local_now, local_today
from core.models import User
from customers.models import Customer, DeliveryModification, Pause, Subscription

logger = logging.getLogger(__name__)


def pause_cutoff_hour():
    return getattr(settings, "BILLING_PAUSE_CUTOFF_HOUR", 17)


def _get_customer(customer_id, *, lock=False):
    queryset = Customer.objects.select_for_update() if lock else Customer.objects.all()
    customer = queryset.filter(pk=customer_id).first()
    if customer is None:
        raise RecordNotFound(f"Customer {customer_id} not found.")
    return customer


def register_customer(*, name, phone="", address="", user=None):
    with transaction.atomic():
        customer = Customer.objects.create(name=name, phone=phone, address=address, user=user)
        Wallet.objects.create(customer=customer)
    logger.info("customer_registered", extra={"customer_id": str(customer.id)})
    return customer


def subscribe(customer_id, daily_quantity, *, start_date=None, today=None):
    """Create or change the customer's daily subscription."""
    price = price_for(daily_quantity)
    bottles = bottles_for(daily_quantity)
    today = today or local_today()

    with transaction.atomic():
        customer = _get_customer(customer_id, lock=True)
        subscription = Subscription.objects.filter(customer=customer).first()
        if subscription is None:
            subscription = Subscription.objects.create(
                customer=customer,
                daily_quantity=daily_quantity,
                daily_price=price,
                large_bottles=bottles.large,
                small_bottles=bottles.small,
                start_date=start_date or today,
            )
        else:
            subscription.daily_quantity = daily_quantity
            subscription.daily_price = price
            subscription.large_bottles = bottles.large
            subscription.small_bottles = bottles.small
            subscription.status = Subscription.Status.ACTIVE
            subscription.save(
                update_fields=["daily_quantity", "daily_price", "large_bottles", "small_bottles", "status", "updated_at"]
            )
        update_status(customer.id, today=today)
    return subscription


def cancel_subscription(customer_id, *, today=None):
    with transaction.atomic():
        updated = Subscription.objects.filter(customer_id=customer_id).exclude(
            status=Subscription.Status.CANCELLED
        ).update(status=Subscription.Status.CANCELLED, updated_at=timezone.now())
        if not updated:
            raise InvalidState("Customer has no active subscription.")
        return update_status(customer_id, today=today)


def assign_delivery_person(customer_id, delivery_person_id, *, performed_by=None, today=None):
    """Put a customer on a route, collecting the first bottle deposit.

    The first assignment requires the wallet to cover the deposit. Moving an
    already assigned customer to another route charges nothing.
    """
    today = today or local_today()
    delivery_person = User.objects.filter(pk=delivery_person_id, role=User.Role.DELIVERY, is_active=True).first()
    if delivery_person is None:
        raise InvalidRequest("Delivery person not found or inactive.")

    with transaction.atomic():
        customer = _get_customer(customer_id, lock=True)
        subscription = Subscription.objects.select_for_update().filter(customer=customer).first()
        if subscription is None or subscription.status == Subscription.Status.CANCELLED:
            raise InvalidState("Customer must subscribe before a delivery person can be assigned.")

        first_assignment = customer.delivery_person_id is None
        deposit = 0
        if first_assignment:
            deposit = deposit_for(subscription.daily_quantity)
            wallet = Wallet.objects.select_for_update().get(customer=customer)
            if wallet.balance < deposit:
                raise InvalidRequest(
                    f"Wallet balance {wallet.balance} does not cover the bottle deposit of {deposit}."
                )
            apply_wallet_delta(
                wallet.id,
                -deposit,
                WalletTransaction.Kind.DEPOSIT_CHARGE,
                "Initial bottle deposit",
                reference_type="assignment",
                reference_id=customer.id,
                performed_by=performed_by,
                today=today,
            )
            subscription.last_deposit_at_delivery_count = subscription.delivery_count
            subscription.save(update_fields=["last_deposit_at_delivery_count", "updated_at"])

        customer.delivery_person = delivery_person
        customer.save(update_fields=["delivery_person", "updated_at"])
        cover_from_wallet(customer.id, today=today)
        new_status = update_status(customer.id, today=today)

    logger.info(
        "delivery_person_assigned delivery_person=%s deposit=%s",
        delivery_person.id,
        deposit,
        extra={"customer_id": str(customer.id)},
    )
    return {"customer_id": str(customer.id), "deposit_charged": deposit, "new_status": new_status}


def _validate_pause_date(pause_date, now):
    today = now.date()
    if pause_date <= today:
        raise InvalidRequest("Pauses must start from tomorrow or later.")
    if pause_date == today + datetime.timedelta(days=1) and now.hour >= pause_cutoff_hour():
        raise InvalidRequest(f"Pauses for tomorrow must be requested before {pause_cutoff_hour()}:00.")


def create_pause(customer_id, pause_dates, *, now=None):
    """Add pause days; dates already paused are left as they are."""
    now = now or local_now()
    dates = sorted(set(pause_dates))
    if not dates:
        raise InvalidRequest("At least one pause date is required.")
    for pause_date in dates:
        _validate_pause_date(pause_date, now)

    created = []
    with transaction.atomic():
        customer = _get_customer(customer_id, lock=True)
        for pause_date in dates:
            _, was_created = Pause.objects.get_or_create(customer=customer, pause_date=pause_date)
            if was_created:
                created.append(pause_date)
        new_status = update_status(customer.id, today=now.date())
    return {"created": created, "new_status": new_status}


def remove_pause(customer_id, pause_date, *, now=None):
    now = now or local_now()
    _validate_pause_date(pause_date, now)
    with transaction.atomic():
        deleted, _ = Pause.objects.filter(customer_id=customer_id, pause_date=pause_date).delete()
        if not deleted:
            raise RecordNotFound("Pause not found.")
        return update_status(customer_id, today=now.date())


def set_delivery_modification(customer_id, date, quantity, *, notes="", today=None):
    """Override one day's quantity; the bottle split follows the quantity."""
    today = today or local_today()
    if date < today:
        raise InvalidRequest("Cannot modify a past delivery.")
    bottles = bottles_for(quantity)
    _get_customer(customer_id)
    modification, _ = DeliveryModification.objects.update_or_create(
        customer_id=customer_id,
        date=date,
        defaults={
            "quantity": quantity,
            "large_bottles": bottles.large,
            "small_bottles": bottles.small,
            "notes": notes,
        },
    )
    return modification
