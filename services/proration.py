"""Mid-term plan change proration.

Both the unused value of the current plan and the cost of the new plan are
computed over the days left in the current period, using a fixed period
length per cycle (30 days monthly, 365 yearly)::

    credit   = current_price * remaining / total
    prorata  = new_price     * remaining / total
    due      = round(prorata - credit)

Positive ``amount_due`` must be paid before the change applies; zero or
negative means an immediate swap with a credit.
"""

from __future__ import annotations

import datetime
import math
from dataclasses import dataclass
from decimal import Decimal

from services.errors import ProrationNotApplicable, ValidationError
from utils import as_utc, format_amount, round_whole, to_decimal

PERIOD_DAYS = {"monthly": 30, "yearly": 365}


@dataclass(frozen=True)
class ProrationResult:
    remaining_days: int
    total_days: int
    current_plan_credit: Decimal
    new_plan_prorata_cost: Decimal
    amount_due: Decimal

    @property
    def is_credit(self) -> bool:
        return self.amount_due <= 0

    @property
    def credit_amount(self) -> Decimal:
        return abs(self.amount_due) if self.amount_due < 0 else Decimal("0")

    def as_metadata(self) -> dict:
        """JSON-safe breakdown stored on the transaction row."""
        return {
            "proration": True,
            "remaining_days": self.remaining_days,
            "total_days": self.total_days,
            "current_plan_credit": str(round_whole(self.current_plan_credit)),
            "new_plan_prorata_cost": str(round_whole(self.new_plan_prorata_cost)),
            "amount_due": str(self.amount_due),
        }

    def describe(self, currency: str = "XOF") -> str:
        if self.amount_due > 0:
            return (
                f"Vous avez {self.remaining_days} jours restants. "
                f"Crédit: {format_amount(self.current_plan_credit, currency)}. "
                f"Coût prorata nouveau forfait: "
                f"{format_amount(self.new_plan_prorata_cost, currency)}. "
                f"Total à payer: {format_amount(self.amount_due, currency)}."
            )
        if self.amount_due < 0:
            return (
                f"Vous avez {self.remaining_days} jours restants. Un crédit de "
                f"{format_amount(self.credit_amount, currency)} sera appliqué à votre compte."
            )
        return f"Vous avez {self.remaining_days} jours restants. Aucun montant supplémentaire dû."


def remaining_days_until(ends_at: datetime.datetime, now: datetime.datetime) -> int:
    """Whole days left before *ends_at*, a started day counting as a full one."""
    seconds = (as_utc(ends_at) - as_utc(now)).total_seconds()
    if seconds <= 0:
        return 0
    return math.ceil(seconds / 86400)


def calculate_proration(
    current_price,
    current_cycle: str,
    ends_at: datetime.datetime,
    new_price,
    now: datetime.datetime,
) -> ProrationResult:
    """Compute what switching plans costs for the rest of the current period.

    *current_price* is the current plan's price for its own cycle and
    *new_price* the target plan's price for the target cycle.

    Raises:
        ProrationNotApplicable: the current cycle is ``lifetime`` or there is
            no end date to prorate against.
    """
    if current_cycle == "lifetime":
        raise ProrationNotApplicable("Un abonnement à vie ne se calcule pas au prorata")
    if current_cycle not in PERIOD_DAYS:
        raise ValidationError(f"Cycle de facturation invalide: {current_cycle}")
    if ends_at is None:
        raise ProrationNotApplicable("Abonnement sans date de fin")

    current = to_decimal(current_price) or Decimal("0")
    new = to_decimal(new_price) or Decimal("0")
    if current < 0 or new < 0:
        raise ValidationError("Les prix des forfaits ne peuvent pas être négatifs")

    total_days = PERIOD_DAYS[current_cycle]
    # A 31-day month must not credit more than one period
    remaining = min(remaining_days_until(ends_at, now), total_days)

    credit = current * remaining / total_days
    prorata = new * remaining / total_days
    return ProrationResult(
        remaining_days=remaining,
        total_days=total_days,
        current_plan_credit=credit,
        new_plan_prorata_cost=prorata,
        amount_due=round_whole(prorata - credit),
    )
