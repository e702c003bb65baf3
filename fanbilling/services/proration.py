from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Tuple

from fanbilling.core.money import from_cents, round_half_up
from fanbilling.core.time import DAY_SECONDS, iso_from_ts


def _ceil_days(seconds: int) -> int:
    return -(-int(seconds) // DAY_SECONDS)


def period_day_counts(period_start: int, period_end: int, at: int) -> Tuple[int, int]:
    """(total_days, days_remaining) for a billing period, both rounded up to whole days."""
    total = max(1, _ceil_days(period_end - period_start))
    remaining = max(0, _ceil_days(period_end - at))
    return total, min(remaining, total)


@dataclass(frozen=True)
class Proration:
    current_amount_cents: int
    new_amount_cents: int
    credit_cents: int
    charge_cents: int
    net_cents: int
    days_remaining: int
    total_days: int
    effective_at: int

    @property
    def next_invoice_cents(self) -> int:
        return self.new_amount_cents

    def as_payload(self) -> Dict[str, Any]:
        return {
            "current_amount": from_cents(self.current_amount_cents),
            "new_amount": from_cents(self.new_amount_cents),
            "proration_amount": from_cents(self.net_cents),
            "credit_amount": from_cents(self.credit_cents),
            "charge_amount": from_cents(self.charge_cents),
            "next_invoice_amount": from_cents(self.next_invoice_cents),
            "days_remaining": self.days_remaining,
            "total_days_in_period": self.total_days,
            "effective_date": iso_from_ts(self.effective_at),
        }


def compute_proration(
    current_amount_cents: int,
    new_amount_cents: int,
    period_start: int,
    period_end: int,
    effective_at: int,
) -> Proration:
    """Prorate a mid-cycle price change.

    Credit is the unused share of the current amount, charge the new amount for the same
    days. Rounding is half-up to whole cents and is applied to the net difference once,
    so ``charge - credit == net`` always holds. A change at or after the period end nets zero.
    """
    total, remaining = period_day_counts(period_start, period_end, effective_at)
    if effective_at >= period_end:
        remaining = 0
    credit = round_half_up(current_amount_cents * remaining, total)
    net = round_half_up((new_amount_cents - current_amount_cents) * remaining, total)
    return Proration(
        current_amount_cents=int(current_amount_cents),
        new_amount_cents=int(new_amount_cents),
        credit_cents=credit,
        charge_cents=credit + net,
        net_cents=net,
        days_remaining=remaining,
        total_days=total,
        effective_at=int(effective_at),
    )
