import logging
from dataclasses import dataclass

from django.db import transaction
from django.utils import timezone

from billing.ledger import append_bottle_ledger, apply_wallet_delta
from billing.models import BottleLedgerEntry, Wallet, WalletTransaction
from billing.pricing import BottleCount, deposit_for, should_charge_deposit
from billing.status import update_status
from common.exceptions import InvalidRequest, InvalidState, RecordNotFound
from common.utils import local_today
from customers.models import Customer, Subscription
from deliveries.models import Delivery

logger = logging.getLogger(__name__)

OUTCOMES = (Delivery.Status.DELIVERED, Delivery.Status.NOT_DELIVERED)
NEGATIVE_BALANCE_NOTE = "Not delivered: wallet balance is negative."


@dataclass
class SettlementResult:
    delivery_id: str
    settled: bool
    delivery_status: str
    new_status: str
    became_inactive: bool = False
    deposit_charged: int = 0
    deposit_skipped: bool = False
    warning: str | None = None

    def as_dict(self):
        payload = {
            "delivery_id": self.delivery_id,
            "settled": self.settled,
            "delivery_status": self.delivery_status,
            "new_status": self.new_status,
            "became_inactive": self.became_inactive,
            "deposit_charged": self.deposit_charged,
            "deposit_skipped": self.deposit_skipped,
        }
        if self.warning:
            payload["warning"] = self.warning
        return payload


def _collected_bottles(bottles_collected):
    if bottles_collected is None:
        return BottleCount()
    if isinstance(bottles_collected, BottleCount):
        collected = bottles_collected
    else:
        collected = BottleCount(
            large=int(bottles_collected.get("large", 0) or 0),
            small=int(bottles_collected.get("small", 0) or 0),
        )
    if collected.large < 0 or collected.small < 0:
        raise InvalidRequest("Collected bottle counts cannot be negative.")
    return collected


def _issue_and_collect(delivery, collected, today):
    description = f"Delivery {delivery.delivery_date.isoformat()}"
    for size, issued, returned in (
        (BottleLedgerEntry.Size.LARGE, delivery.large_bottles, collected.large),
        (BottleLedgerEntry.Size.SMALL, delivery.small_bottles, collected.small),
    ):
        if issued:
            append_bottle_ledger(
                delivery.customer_id,
                BottleLedgerEntry.Action.ISSUED,
                size,
                issued,
                description,
                delivery=delivery,
                issued_date=delivery.delivery_date,
                today=today,
            )
        if returned:
            append_bottle_ledger(
                delivery.customer_id,
                BottleLedgerEntry.Action.RETURNED,
                size,
                returned,
                f"Collected at {description.lower()}",
                delivery=delivery,
                today=today,
            )


def _charge_deposit_if_due(delivery, wallet_id, performed_by, today):
    """Advance the delivery count and collect the recurring deposit when it falls due.

    Returns `(charged_amount, skipped)`. A deposit that would take the wallet
    below zero is skipped and the checkpoint is left in place for the next
    delivery to retry.
    """
    subscription = Subscription.objects.select_for_update().get(customer_id=delivery.customer_id)
    subscription.delivery_count += 1
    charged, skipped = 0, False

    if should_charge_deposit(subscription.delivery_count, subscription.last_deposit_at_delivery_count):
        amount = deposit_for(delivery.quantity)
        balance = Wallet.objects.values_list("balance", flat=True).get(pk=wallet_id)
        if balance - amount >= 0:
            apply_wallet_delta(
                wallet_id,
                -amount,
                WalletTransaction.Kind.DEPOSIT_CHARGE,
                f"Bottle deposit at delivery {subscription.delivery_count}",
                reference_type="delivery",
                reference_id=delivery.id,
                performed_by=performed_by,
                today=today,
            )
            subscription.last_deposit_at_delivery_count = subscription.delivery_count
            charged = amount
        else:
            skipped = True
            logger.warning(
                "deposit_skipped_insufficient_balance balance=%s deposit=%s",
                balance,
                amount,
                extra={"customer_id": str(delivery.customer_id), "delivery_id": str(delivery.id)},
            )

    subscription.save(update_fields=["delivery_count", "last_deposit_at_delivery_count", "updated_at"])
    return charged, skipped


def mark_delivery(delivery_id, outcome, bottles_collected=None, *, notes="", performed_by=None, today=None):
    """Settle a SCHEDULED delivery as DELIVERED or NOT_DELIVERED.

    A customer whose wallet is already negative is never served: the outcome
    becomes NOT_DELIVERED and nothing is charged. That substitution is reported
    through `settled=False` and a warning, not raised.
    """
    if outcome not in OUTCOMES:
        raise InvalidRequest(f"Outcome must be one of: {', '.join(OUTCOMES)}.")
    collected = _collected_bottles(bottles_collected)
    today = today or local_today()

    with transaction.atomic():
        delivery = Delivery.objects.select_for_update().filter(pk=delivery_id).first()
        if delivery is None:
            raise RecordNotFound(f"Delivery {delivery_id} not found.")
        if delivery.status != Delivery.Status.SCHEDULED:
            raise InvalidState(f"Delivery is already {delivery.status}.")

        customer_id = delivery.customer_id
        previous_status = Customer.objects.values_list("status", flat=True).get(pk=customer_id)
        wallet = Wallet.objects.select_for_update().filter(customer_id=customer_id).first()
        if wallet is None:
            raise RecordNotFound(f"Wallet for customer {customer_id} not found.")

        settled = True
        warning = None
        deposit_charged, deposit_skipped = 0, False
        delivery_notes = [notes] if notes else []

        if wallet.balance < 0:
            if outcome == Delivery.Status.DELIVERED:
                settled = False
                warning = f"Wallet balance is {wallet.balance}; delivery recorded as not delivered."
            outcome = Delivery.Status.NOT_DELIVERED
            delivery_notes.append(NEGATIVE_BALANCE_NOTE)

        if outcome == Delivery.Status.DELIVERED:
            if delivery.charge:
                apply_wallet_delta(
                    wallet.id,
                    -delivery.charge,
                    WalletTransaction.Kind.MILK_CHARGE,
                    f"Milk delivery {delivery.delivery_date.isoformat()} ({delivery.quantity}ml)",
                    reference_type="delivery",
                    reference_id=delivery.id,
                    performed_by=performed_by,
                    today=today,
                )
            _issue_and_collect(delivery, collected, today)
            deposit_charged, deposit_skipped = _charge_deposit_if_due(delivery, wallet.id, performed_by, today)
            delivery.deposit = deposit_charged
            delivery.large_bottles_collected = collected.large
            delivery.small_bottles_collected = collected.small
            delivery.delivered_at = timezone.now()

        delivery.status = outcome
        delivery.marked_by = performed_by
        if delivery_notes:
            delivery.notes = " ".join([delivery.notes, *delivery_notes]).strip()[:255]
        delivery.save()

        new_status = update_status(customer_id, today=today)

    became_inactive = new_status == Customer.Status.INACTIVE and previous_status != Customer.Status.INACTIVE
    if became_inactive and warning is None:
        warning = "Customer is now inactive; top up the wallet to resume deliveries."

    logger.info(
        "delivery_marked outcome=%s settled=%s status=%s",
        outcome,
        settled,
        new_status,
        extra={"customer_id": str(customer_id), "delivery_id": str(delivery.id)},
    )
    return SettlementResult(
        delivery_id=str(delivery.id),
        settled=settled,
        delivery_status=outcome,
        new_status=new_status,
        became_inactive=became_inactive,
        deposit_charged=deposit_charged,
        deposit_skipped=deposit_skipped,
        warning=warning,
    )
