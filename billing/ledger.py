import logging

from django.db import DatabaseError, transaction

from billing.models import BottleLedgerEntry, Wallet, WalletTransaction
from billing.pricing import BottleCount
from common.exceptions import Aborted, InvalidRequest, RecordNotFound
from common.utils import local_today
from customers.models import Customer

logger = logging.getLogger(__name__)

DECREMENT_ACTIONS = {BottleLedgerEntry.Action.RETURNED, BottleLedgerEntry.Action.PENALTY_CHARGED}


def get_wallet(customer_id):
    wallet = Wallet.objects.filter(customer_id=customer_id).first()
    if wallet is None:
        raise RecordNotFound(f"Wallet for customer {customer_id} not found.")
    return wallet


def wallet_balance(customer_id):
    balance = Wallet.objects.filter(customer_id=customer_id).values_list("balance", flat=True).first()
    if balance is None:
        raise RecordNotFound(f"Wallet for customer {customer_id} not found.")
    return balance


def current_balance(customer_id):
    """Outstanding bottles held by the customer, read from the latest ledger row."""
    latest = (
        BottleLedgerEntry.objects.filter(customer_id=customer_id)
        .order_by("-id")
        .values("large_balance_after", "small_balance_after")
        .first()
    )
    if latest is None:
        return BottleCount()
    return BottleCount(large=latest["large_balance_after"], small=latest["small_balance_after"])


def apply_wallet_delta(
    wallet_id,
    delta,
    kind,
    description="",
    *,
    reference_type="",
    reference_id="",
    performed_by=None,
    today=None,
):
    """Move the wallet balance by `delta` and record the matching transaction row.

    Returns `(new_balance, transaction_id)`. The wallet row is locked for the
    duration so concurrent charges serialize.
    """
    if not isinstance(delta, int) or isinstance(delta, bool):
        raise InvalidRequest("Wallet delta must be an integer amount in minor units.")

    today = today or local_today()
    try:
        with transaction.atomic():
            try:
                wallet = Wallet.objects.select_for_update().get(pk=wallet_id)
            except Wallet.DoesNotExist:
                raise RecordNotFound(f"Wallet {wallet_id} not found.")

            new_balance = wallet.balance + delta
            wallet.balance = new_balance
            if new_balance < 0:
                if wallet.negative_balance_since is None:
                    wallet.negative_balance_since = today
            else:
                wallet.negative_balance_since = None
            wallet.save(update_fields=["balance", "negative_balance_since", "updated_at"])

            txn = WalletTransaction.objects.create(
                wallet=wallet,
                kind=kind,
                amount=delta,
                balance_after=new_balance,
                description=description[:255],
                reference_type=reference_type or "",
                reference_id=str(reference_id or ""),
                performed_by=performed_by,
            )
    except DatabaseError as exc:
        logger.exception("wallet_delta_aborted wallet=%s kind=%s", wallet_id, kind)
        raise Aborted() from exc

    logger.info(
        "wallet_delta_applied wallet=%s kind=%s delta=%s balance=%s",
        wallet_id,
        kind,
        delta,
        new_balance,
    )
    return new_balance, txn.id


def _next_balances(prior, action, size, quantity):
    large, small = prior.large, prior.small
    if action == BottleLedgerEntry.Action.ISSUED:
        change = quantity
    elif action in DECREMENT_ACTIONS:
        change = -quantity
    else:
        change = quantity

    if size == BottleLedgerEntry.Size.LARGE:
        large = max(0, large + change)
    else:
        small = max(0, small + change)
    return BottleCount(large=large, small=small)


def _close_returned_issues(customer_id, size, quantity, returned_on):
    """Mark the oldest open ISSUED rows as returned, as far as `quantity` covers them."""
    remaining = quantity
    open_issues = (
        BottleLedgerEntry.objects.select_for_update()
        .filter(
            customer_id=customer_id,
            action=BottleLedgerEntry.Action.ISSUED,
            size=size,
            returned_at__isnull=True,
            penalty_applied_at__isnull=True,
        )
        .order_by("issued_date", "id")
    )
    closed = []
    for entry in open_issues:
        if entry.quantity > remaining:
            break
        remaining -= entry.quantity
        closed.append(entry.id)
        if remaining == 0:
            break
    if closed:
        BottleLedgerEntry.objects.filter(id__in=closed).update(returned_at=returned_on)
    return closed


def append_bottle_ledger(
    customer_id,
    action,
    size,
    quantity,
    description="",
    *,
    delivery=None,
    issued_date=None,
    penalty_applied_at=None,
    today=None,
):
    """Append one bottle movement and carry both running balances forward.

    Decrements never take a balance below zero. ADJUSTMENT accepts a signed
    quantity; every other action requires a positive one.
    """
    if action == BottleLedgerEntry.Action.ADJUSTMENT:
        if quantity == 0:
            raise InvalidRequest("Adjustment quantity must be non-zero.")
    elif quantity <= 0:
        raise InvalidRequest("Bottle quantity must be positive.")

    today = today or local_today()
    try:
        with transaction.atomic():
            if Customer.objects.select_for_update().filter(pk=customer_id).values_list("pk", flat=True).first() is None:
                raise RecordNotFound(f"Customer {customer_id} not found.")

            balances = _next_balances(current_balance(customer_id), action, size, quantity)
            if action == BottleLedgerEntry.Action.ISSUED and issued_date is None:
                issued_date = today

            entry = BottleLedgerEntry.objects.create(
                customer_id=customer_id,
                delivery=delivery,
                action=action,
                size=size,
                quantity=quantity,
                large_balance_after=balances.large,
                small_balance_after=balances.small,
                description=description[:255],
                issued_date=issued_date,
                penalty_applied_at=penalty_applied_at,
            )

            if action == BottleLedgerEntry.Action.RETURNED:
                _close_returned_issues(customer_id, size, quantity, today)
    except DatabaseError as exc:
        logger.exception("bottle_ledger_aborted", extra={"customer_id": str(customer_id)})
        raise Aborted() from exc

    return entry
