"""Utility / helper functions used across the application."""

from __future__ import annotations

import datetime
import logging
from datetime import timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional

from dateutil.relativedelta import relativedelta

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Datetime helpers
# ---------------------------------------------------------------------------

def utc_now() -> datetime.datetime:
    """Return current UTC datetime.  Used as SQLAlchemy column default."""
    return datetime.datetime.now(timezone.utc)


def as_utc(value: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def add_months(start: datetime.date, months: int) -> datetime.date:
    """Step *start* forward by calendar months, clipping the day to month end.

    ``add_months(date(2026, 1, 31), 1)`` -> ``date(2026, 2, 28)``.
    """
    return start + relativedelta(months=months)


def parse_date(raw: Optional[str]) -> Optional[datetime.date]:
    if not raw:
        return None
    try:
        return datetime.datetime.strptime(raw, "%Y-%m-%d").date()
    except (ValueError, TypeError):
        logger.warning("Could not parse date: %r", raw)
        return None


# ---------------------------------------------------------------------------
# Money helpers
# ---------------------------------------------------------------------------

WHOLE_UNIT = Decimal("1")


def to_decimal(value) -> Optional[Decimal]:
    """Convert *value* to ``Decimal`` without passing through binary floats.

    Returns ``None`` for empty or unparseable input.
    """
    if value is None or value == "":
        return None
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        logger.warning("Could not convert %r to Decimal", value)
        return None


def round_whole(amount: Decimal) -> Decimal:
    """Round half-up to whole currency units (XOF, XAF and friends have no minor unit)."""
    return amount.quantize(WHOLE_UNIT, rounding=ROUND_HALF_UP)


def format_amount(amount, currency: str = "XOF") -> str:
    """Format a whole-unit amount with thin grouping: ``12 500 XOF``."""
    value = round_whole(to_decimal(amount) or Decimal("0"))
    return f"{int(value):,}".replace(",", " ") + f" {currency}"


# ---------------------------------------------------------------------------
# Safe type conversions
# ---------------------------------------------------------------------------

def safe_int(value, default: int = 0) -> int:
    """Safely convert *value* to ``int``, returning *default* on failure."""
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (ValueError, TypeError):
        logger.warning("Could not convert %r to int, using default %s", value, default)
        return default
