"""Price, deposit and bottle composition for a daily milk quantity.

All amounts are integers in minor currency units (paise).
"""
from dataclasses import dataclass

from django.conf import settings

from common.exceptions import InvalidRequest

LARGE_BOTTLE_ML = 1000
SMALL_BOTTLE_ML = 500

PRICE_TABLE = {
    500: 6800,
    1000: 11000,
    1500: 16500,
    2000: 21500,
    2500: 26800,
}
ALLOWED_QUANTITIES = tuple(sorted(PRICE_TABLE))

LARGE_BOTTLE_DEPOSIT = 3500
SMALL_BOTTLE_DEPOSIT = 2500
# Two bottles rotate per slot: one at the doorstep, one in transit.
BOTTLES_IN_ROTATION = 2


@dataclass(frozen=True)
class BottleCount:
    large: int = 0
    small: int = 0

    @property
    def total(self):
        return self.large + self.small

    def as_dict(self):
        return {"large": self.large, "small": self.small}


def validate_quantity(quantity):
    if quantity not in PRICE_TABLE:
        allowed = ", ".join(str(value) for value in ALLOWED_QUANTITIES)
        raise InvalidRequest(f"Unsupported daily quantity {quantity}ml. Allowed: {allowed}.")
    return quantity


def price_for(quantity):
    return PRICE_TABLE[validate_quantity(quantity)]


def bottles_for(quantity):
    validate_quantity(quantity)
    large = quantity // LARGE_BOTTLE_ML
    remainder = quantity % LARGE_BOTTLE_ML
    small = 1 if remainder * 2 >= SMALL_BOTTLE_ML else 0
    return BottleCount(large=large, small=small)


def deposit_for_bottles(bottles):
    return (
        bottles.large * LARGE_BOTTLE_DEPOSIT * BOTTLES_IN_ROTATION
        + bottles.small * SMALL_BOTTLE_DEPOSIT * BOTTLES_IN_ROTATION
    )


def deposit_for(quantity):
    return deposit_for_bottles(bottles_for(quantity))


def deposit_interval():
    return getattr(settings, "BILLING_DEPOSIT_INTERVAL_DELIVERIES", 120)


def should_charge_deposit(delivery_count, last_deposit_at):
    """True once `deposit_interval()` deliveries have passed since the last deposit."""
    return delivery_count - (last_deposit_at or 0) >= deposit_interval()


def days_covered(balance, daily_price):
    """Whole days the balance pays for. Display only; never used for billing."""
    if daily_price <= 0 or balance <= 0:
        return 0
    return balance // daily_price
