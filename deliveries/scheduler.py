import logging
from dataclasses import dataclass, field

from django.db import DatabaseError, transaction

from billing.pricing import price_for
from billing.status import can_receive_delivery
from common.exceptions import BillingError, InvalidRequest
from common.utils import iter_dates
from customers.models import Customer, DeliveryModification, Holiday, Pause, Subscription
from deliveries.models import Delivery

logger = logging.getLogger(__name__)


@dataclass
class ScheduleSummary:
    created: int = 0
    existing: int = 0
    paused: int = 0
    holiday: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list = field(default_factory=list)

    def as_dict(self):
        return {
            "created": self.created,
            "existing": self.existing,
            "paused": self.paused,
            "holiday": self.holiday,
            "skipped": self.skipped,
            "failed": self.failed,
            "errors": self.errors,
        }


def route_customers(delivery_person_id):
    return (
        Customer.objects.filter(delivery_person_id=delivery_person_id, subscription__isnull=False)
        .exclude(subscription__status=Subscription.Status.CANCELLED)
        .select_related("subscription")
        .order_by("created_at", "id")
    )


def delivery_plan(customer, day):
    """Quantity, bottle split and notes for `day`; a same-day modification wins."""
    modification = DeliveryModification.objects.filter(customer=customer, date=day).first()
    if modification is not None:
        return modification.quantity, modification.large_bottles, modification.small_bottles, modification.notes
    subscription = customer.subscription
    return subscription.daily_quantity, subscription.large_bottles, subscription.small_bottles, ""


def _row_status(customer, day, holidays):
    if day in holidays:
        return Delivery.Status.HOLIDAY
    if Pause.objects.filter(customer=customer, pause_date=day).exists():
        return Delivery.Status.PAUSED
    if can_receive_delivery(customer.id, today=day):
        return Delivery.Status.SCHEDULED
    return None


def ensure_deliveries_for_window(delivery_person_id, day_start, day_end):
    """Create the missing delivery rows for a route over an inclusive date window.

    Existing rows are never touched, so repeated runs are harmless. Paused and
    holiday days get zero-charge marker rows instead of SCHEDULED ones.
    """
    if day_end < day_start:
        raise InvalidRequest("Window end must not be before its start.")

    summary = ScheduleSummary()
    customers = list(route_customers(delivery_person_id))
    holidays = set(Holiday.objects.filter(date__range=(day_start, day_end)).values_list("date", flat=True))

    for day in iter_dates(day_start, day_end):
        for customer in customers:
            try:
                with transaction.atomic():
                    row_status = _row_status(customer, day, holidays)
                    if row_status is None:
                        summary.skipped += 1
                        continue

                    quantity, large, small, notes = delivery_plan(customer, day)
                    charge = price_for(quantity) if row_status == Delivery.Status.SCHEDULED else 0
                    _, created = Delivery.objects.get_or_create(
                        customer=customer,
                        delivery_date=day,
                        defaults={
                            "delivery_person_id": delivery_person_id,
                            "quantity": quantity,
                            "large_bottles": large,
                            "small_bottles": small,
                            "charge": charge,
                            "status": row_status,
                            "notes": notes,
                        },
                    )
            except (BillingError, DatabaseError) as exc:
                logger.exception(
                    "delivery_schedule_failed date=%s",
                    day,
                    extra={"customer_id": str(customer.id)},
                )
                summary.failed += 1
                summary.errors.append({"customer_id": str(customer.id), "date": day.isoformat(), "error": str(exc)})
                continue

            if not created:
                summary.existing += 1
            elif row_status == Delivery.Status.HOLIDAY:
                summary.holiday += 1
            elif row_status == Delivery.Status.PAUSED:
                summary.paused += 1
            else:
                summary.created += 1

    logger.info(
        "deliveries_ensured delivery_person=%s start=%s end=%s created=%s existing=%s skipped=%s failed=%s",
        delivery_person_id,
        day_start,
        day_end,
        summary.created,
        summary.existing,
        summary.skipped,
        summary.failed,
    )
    return summary


def ensure_deliveries_for_all_routes(day_start, day_end):
    summaries = {}
    route_ids = (
        Customer.objects.filter(delivery_person__isnull=False)
        .values_list("delivery_person_id", flat=True)
        .distinct()
    )
    for delivery_person_id in route_ids:
        summaries[str(delivery_person_id)] = ensure_deliveries_for_window(delivery_person_id, day_start, day_end)
    return summaries
