"""Installment schedule generation for financed sales.

A schedule is N monthly échéances starting one calendar month after the
sale date.  Every line carries the agreed monthly payment except the last,
which absorbs whatever is needed so that::

    down_payment + sum(amounts) == total_price

Example: 1 000 000 total, 100 000 down, 3 x 300 000 -> the last line is
300 000.  With 3 x 299 999 the last line becomes 300 002.
"""

from __future__ import annotations

import datetime
from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal

from services.errors import ValidationError
from utils import WHOLE_UNIT, add_months, to_decimal


@dataclass(frozen=True)
class ScheduledInstallment:
    sequence: int
    due_date: datetime.date
    amount: Decimal


def _require_amount(value, field: str) -> Decimal:
    amount = to_decimal(value)
    if amount is None:
        raise ValidationError(f"Montant invalide pour {field}: {value!r}")
    return amount


def suggest_monthly_payment(total_price, down_payment, count: int) -> Decimal:
    """Whole-unit monthly amount for *count* installments (floor).

    Flooring keeps the remainder positive so it lands on the last line.
    """
    if not count or count <= 0:
        raise ValidationError("Le nombre d'échéances doit être supérieur à 0")
    financed = _require_amount(total_price, "total_price") - _require_amount(
        down_payment or 0, "down_payment"
    )
    return (financed / count).quantize(WHOLE_UNIT, rounding=ROUND_FLOOR)


def generate_schedule(
    sale_date: datetime.date,
    total_price,
    down_payment,
    monthly_payment,
    count: int,
) -> list[ScheduledInstallment]:
    """Return the ordered ``(sequence, due_date, amount)`` lines for a sale.

    Raises:
        ValidationError: count <= 0, monthly payment <= 0, negative down
            payment, down payment covering the whole price, or monthly
            payments that overshoot the financed amount.
    """
    if sale_date is None:
        raise ValidationError("Date de vente requise")
    if count is None or int(count) <= 0:
        raise ValidationError("Le nombre d'échéances doit être supérieur à 0")
    count = int(count)

    total = _require_amount(total_price, "total_price")
    down = _require_amount(down_payment if down_payment is not None else 0, "down_payment")
    monthly = _require_amount(monthly_payment, "monthly_payment")

    if monthly <= 0:
        raise ValidationError("La mensualité doit être supérieure à 0")
    if down < 0:
        raise ValidationError("L'apport initial ne peut pas être négatif")
    if down >= total:
        raise ValidationError("L'apport initial couvre déjà le prix total")

    last_amount = total - down - monthly * (count - 1)
    if last_amount <= 0:
        raise ValidationError(
            f"{count} mensualités de {monthly} dépassent le montant financé ({total - down})"
        )

    lines = []
    for i in range(count):
        amount = last_amount if i == count - 1 else monthly
        lines.append(
            ScheduledInstallment(
                sequence=i + 1,
                due_date=add_months(sale_date, i + 1),
                amount=amount,
            )
        )
    return lines
