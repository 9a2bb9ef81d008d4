import logging
from dataclasses import dataclass
from typing import Protocol

from django.conf import settings
from django.db import transaction

from billing.ledger import apply_wallet_delta, get_wallet
from billing.models import WalletTransaction
from billing.monthly import cover_from_wallet
from billing.status import update_status
from common.exceptions import InvalidRequest
from common.utils import local_today

logger = logging.getLogger(__name__)

GATEWAY_REFERENCE_TYPE = "gateway_order"


class PaymentGateway(Protocol):
    def create_order(self, amount: int, metadata: dict) -> str: ...

    def verify_signature(self, payload: dict) -> bool: ...


@dataclass
class WalletResult:
    new_balance: int
    transaction_id: int | None
    new_status: str
    duplicate: bool = False

    def as_dict(self):
        return {
            "new_balance": self.new_balance,
            "transaction_id": self.transaction_id,
            "new_status": self.new_status,
            "duplicate": self.duplicate,
        }


def _validate_amount(amount, *, allow_negative=False):
    if not isinstance(amount, int) or isinstance(amount, bool):
        raise InvalidRequest("Amount must be an integer in minor units.")
    if amount == 0 or (amount < 0 and not allow_negative):
        raise InvalidRequest("Amount must be greater than zero.")
    limit = getattr(settings, "BILLING_MAX_TOP_UP", 10_000_000)
    if abs(amount) > limit:
        raise InvalidRequest(f"Amount exceeds the maximum of {limit}.")


def apply_top_up(customer_id, amount, *, order_ref="", performed_by=None, today=None):
    """Credit the wallet once per gateway order and re-derive status.

    A repeated `order_ref` returns the original transaction untouched.
    """
    _validate_amount(amount)
    today = today or local_today()
    wallet = get_wallet(customer_id)

    with transaction.atomic():
        if order_ref:
            existing = WalletTransaction.objects.filter(
                kind=WalletTransaction.Kind.TOP_UP,
                reference_type=GATEWAY_REFERENCE_TYPE,
                reference_id=order_ref,
            ).first()
            if existing is not None:
                logger.info("top_up_duplicate order_ref=%s", order_ref, extra={"customer_id": str(customer_id)})
                return WalletResult(
                    new_balance=get_wallet(customer_id).balance,
                    transaction_id=existing.id,
                    new_status=update_status(customer_id, today=today),
                    duplicate=True,
                )

        new_balance, transaction_id = apply_wallet_delta(
            wallet.id,
            amount,
            WalletTransaction.Kind.TOP_UP,
            "Wallet top-up",
            reference_type=GATEWAY_REFERENCE_TYPE if order_ref else "",
            reference_id=order_ref,
            performed_by=performed_by,
            today=today,
        )
        cover_from_wallet(customer_id, today=today)
        new_status = update_status(customer_id, today=today)

    return WalletResult(new_balance=new_balance, transaction_id=transaction_id, new_status=new_status)


def apply_admin_adjustment(customer_id, amount, *, description="", performed_by=None, today=None):
    """Signed manual credit or debit by an administrator."""
    _validate_amount(amount, allow_negative=True)
    today = today or local_today()
    wallet = get_wallet(customer_id)
    kind = WalletTransaction.Kind.ADMIN_CREDIT if amount > 0 else WalletTransaction.Kind.ADMIN_DEBIT

    with transaction.atomic():
        new_balance, transaction_id = apply_wallet_delta(
            wallet.id,
            amount,
            kind,
            description or f"Admin {'credit' if amount > 0 else 'debit'}",
            reference_type="admin",
            performed_by=performed_by,
            today=today,
        )
        if amount > 0:
            cover_from_wallet(customer_id, today=today)
        new_status = update_status(customer_id, today=today)

    return WalletResult(new_balance=new_balance, transaction_id=transaction_id, new_status=new_status)


def start_gateway_top_up(gateway: PaymentGateway, customer_id, amount):
    _validate_amount(amount)
    get_wallet(customer_id)
    return gateway.create_order(amount, {"customer_id": str(customer_id)})


def process_gateway_payment(gateway: PaymentGateway, payload, *, customer_id, amount, order_ref, today=None):
    """Apply a gateway-confirmed payment; the signature must verify first."""
    if not gateway.verify_signature(payload):
        logger.warning("gateway_signature_invalid order_ref=%s", order_ref, extra={"customer_id": str(customer_id)})
        raise InvalidRequest("Payment signature verification failed.")
    return apply_top_up(customer_id, amount, order_ref=order_ref, today=today)
