import datetime
import logging
from dataclasses import dataclass

from django.conf import settings
from django.db import DatabaseError, transaction
from django.db.models import Min, Sum

from billing.ledger import append_bottle_ledger, apply_wallet_delta, current_balance, get_wallet
from billing.models import BottleLedgerEntry, WalletTransaction
from billing.status import update_status
from common.exceptions import BillingError, InvalidRequest, RecordNotFound
from common.utils import local_today
from customers.models import Customer

logger = logging.getLogger(__name__)

LARGE = BottleLedgerEntry.Size.LARGE
SMALL = BottleLedgerEntry.Size.SMALL


@dataclass
class PenaltyResult:
    customer_id: str
    large_penalized: int = 0
    small_penalized: int = 0
    total_penalty: int = 0
    success: bool = True
    error: str | None = None

    def as_dict(self):
        payload = {
            "customer_id": self.customer_id,
            "large_penalized": self.large_penalized,
            "small_penalized": self.small_penalized,
            "total_penalty": self.total_penalty,
            "success": self.success,
        }
        if self.error:
            payload["error"] = self.error
        return payload


def threshold_days():
    return getattr(settings, "BILLING_PENALTY_THRESHOLD_DAYS", 3)


def large_bottle_fine():
    return getattr(settings, "BILLING_LARGE_BOTTLE_FINE", 3500)


def small_bottle_fine():
    return getattr(settings, "BILLING_SMALL_BOTTLE_FINE", 2500)


def fine_for(large_count, small_count):
    return large_count * large_bottle_fine() + small_count * small_bottle_fine()


def overdue_entries(*, today):
    """ISSUED rows older than the threshold that were neither returned nor fined."""
    cutoff = today - datetime.timedelta(days=threshold_days())
    return BottleLedgerEntry.objects.filter(
        action=BottleLedgerEntry.Action.ISSUED,
        issued_date__lte=cutoff,
        penalty_applied_at__isnull=True,
        returned_at__isnull=True,
    )


def _select_oldest(entries, size, limit):
    """Pick the oldest rows of one size until `limit` bottles are covered.

    A row counts as fined once any of its bottles is fined.
    """
    selected = []
    covered = 0
    for entry in entries:
        if covered >= limit:
            break
        if entry.size != size:
            continue
        selected.append(entry.id)
        covered += entry.quantity
    return selected, min(covered, limit)


def _apply_penalty(customer_id, entries, large_count, small_count, fine_amount, description, *, performed_by, today):
    large_ids, large_count = _select_oldest(entries, LARGE, large_count)
    small_ids, small_count = _select_oldest(entries, SMALL, small_count)

    if fine_amount:
        apply_wallet_delta(
            get_wallet(customer_id).id,
            -fine_amount,
            WalletTransaction.Kind.PENALTY_CHARGE,
            description,
            reference_type="penalty",
            performed_by=performed_by,
            today=today,
        )
    BottleLedgerEntry.objects.filter(id__in=large_ids + small_ids).update(penalty_applied_at=today)
    if large_count:
        append_bottle_ledger(
            customer_id,
            BottleLedgerEntry.Action.PENALTY_CHARGED,
            LARGE,
            large_count,
            description,
            penalty_applied_at=today,
            today=today,
        )
    if small_count:
        append_bottle_ledger(
            customer_id,
            BottleLedgerEntry.Action.PENALTY_CHARGED,
            SMALL,
            small_count,
            description,
            penalty_applied_at=today,
            today=today,
        )
    return large_count, small_count


def _locked_overdue(customer_id, today):
    if Customer.objects.select_for_update().filter(pk=customer_id).values_list("pk", flat=True).first() is None:
        raise RecordNotFound(f"Customer {customer_id} not found.")
    return list(overdue_entries(today=today).filter(customer_id=customer_id).order_by("issued_date", "id"))


def _sum_size(entries, size):
    return sum(entry.quantity for entry in entries if entry.size == size)


def charge_customer_penalty(customer_id, *, today):
    """Fine one customer's overdue bottles, capped by what they still hold."""
    with transaction.atomic():
        entries = _locked_overdue(customer_id, today)
        held = current_balance(customer_id)
        large = min(_sum_size(entries, LARGE), held.large)
        small = min(_sum_size(entries, SMALL), held.small)
        if large == 0 and small == 0:
            return None

        fine = fine_for(large, small)
        large, small = _apply_penalty(
            customer_id,
            entries,
            large,
            small,
            fine,
            f"Unreturned bottle fine: {large} large, {small} small",
            performed_by=None,
            today=today,
        )
    update_status(customer_id, today=today)
    return PenaltyResult(customer_id=str(customer_id), large_penalized=large, small_penalized=small, total_penalty=fine)


def check_and_charge_penalties(*, today=None):
    """Daily sweep over every customer holding overdue bottles.

    A failure for one customer is recorded in its result and the sweep moves on.
    """
    today = today or local_today()
    customer_ids = overdue_entries(today=today).values_list("customer_id", flat=True).distinct()

    results = []
    for customer_id in customer_ids:
        if current_balance(customer_id).total == 0:
            continue
        try:
            result = charge_customer_penalty(customer_id, today=today)
        except (BillingError, DatabaseError) as exc:
            logger.exception("penalty_charge_failed", extra={"customer_id": str(customer_id)})
            results.append(PenaltyResult(customer_id=str(customer_id), success=False, error=str(exc)))
            continue
        if result is not None:
            results.append(result)

    logger.info(
        "penalty_sweep_completed charged=%s failed=%s",
        sum(1 for result in results if result.success),
        sum(1 for result in results if not result.success),
    )
    return results


def impose_penalty(customer_id, fine_amount, large_count, small_count, *, performed_by=None, today=None):
    """Admin-directed partial fine against the oldest overdue bottles."""
    for name, value in (("fine_amount", fine_amount), ("large_count", large_count), ("small_count", small_count)):
        if not isinstance(value, int) or isinstance(value, bool) or value < 0:
            raise InvalidRequest(f"{name} must be a non-negative integer.")

    today = today or local_today()
    with transaction.atomic():
        entries = _locked_overdue(customer_id, today)
        if not entries:
            raise InvalidRequest("Customer has no overdue bottles.")

        large = min(large_count, _sum_size(entries, LARGE))
        small = min(small_count, _sum_size(entries, SMALL))
        if large == 0 and small == 0:
            raise InvalidRequest("Requested bottle counts do not match any overdue bottles.")

        large, small = _apply_penalty(
            customer_id,
            entries,
            large,
            small,
            fine_amount,
            f"Manual bottle fine: {large} large, {small} small",
            performed_by=performed_by,
            today=today,
        )
    update_status(customer_id, today=today)
    logger.info(
        "penalty_imposed large=%s small=%s amount=%s",
        large,
        small,
        fine_amount,
        extra={"customer_id": str(customer_id)},
    )
    return PenaltyResult(
        customer_id=str(customer_id),
        large_penalized=large,
        small_penalized=small,
        total_penalty=fine_amount,
    )


def flagged_customers(*, today=None):
    today = today or local_today()
    rows = (
        overdue_entries(today=today)
        .values("customer_id", "customer__name", "size")
        .annotate(bottles=Sum("quantity"), oldest=Min("issued_date"))
        .order_by("customer_id", "size")
    )

    flagged = {}
    for row in rows:
        item = flagged.setdefault(
            row["customer_id"],
            {
                "customer_id": str(row["customer_id"]),
                "customer_name": row["customer__name"],
                "large_overdue": 0,
                "small_overdue": 0,
                "oldest_issued_date": row["oldest"],
            },
        )
        if row["size"] == LARGE:
            item["large_overdue"] = row["bottles"]
        else:
            item["small_overdue"] = row["bottles"]
        item["oldest_issued_date"] = min(item["oldest_issued_date"], row["oldest"])

    for item in flagged.values():
        item["days_overdue"] = (today - item["oldest_issued_date"]).days
        item["potential_fine"] = fine_for(item["large_overdue"], item["small_overdue"])
    return sorted(flagged.values(), key=lambda item: item["oldest_issued_date"])
