from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

from fanbilling.core.errors import ValidationError

CENT = Decimal("0.01")

Amount = Union[str, int, float, Decimal]


def to_cents(amount: Amount) -> int:
    """Convert a decimal currency amount ("12.50", 12.5, Decimal) to integer cents.

    Floats go through ``str`` first so 0.1 + 0.2 style drift never reaches the ledger.
    """
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount).strip())
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError("Invalid amount", details={"amount": str(amount)}) from exc
    if not value.is_finite():
        raise ValidationError("Invalid amount", details={"amount": str(amount)})
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> str:
    return str((Decimal(int(cents)) / 100).quantize(CENT))


def round_half_up(numerator: int, denominator: int) -> int:
    if denominator <= 0:
        return 0
    return int((Decimal(numerator) / Decimal(denominator)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def platform_fee_cents(amount_cents: int, fee_bps: int) -> int:
    # Floor; the artist never loses a fractional cent to rounding.
    return int(amount_cents) * int(fee_bps) // 10000


def net_of_fee_cents(amount_cents: int, fee_bps: int) -> int:
    return int(amount_cents) - platform_fee_cents(amount_cents, fee_bps)
