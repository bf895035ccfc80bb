"""Installment ledger: sales, their échéances and payment reconciliation."""

from __future__ import annotations

import datetime
import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from models import VALID_ASSET_TYPES, VALID_PAYMENT_TYPES, Installment, Sale
from services.audit import log_action
from services.errors import PersistenceError, ValidationError
from services.schedule import ScheduledInstallment, generate_schedule
from utils import add_months, to_decimal, utc_now

logger = logging.getLogger(__name__)


def _today() -> datetime.date:
    return utc_now().date()


# ---------------------------------------------------------------------------
# Sale creation
# ---------------------------------------------------------------------------

def create_schedule(sale: Sale, installments: list[ScheduledInstallment]) -> list[Installment]:
    """Insert all schedule rows for *sale* inside the caller's transaction.

    Raises ``PersistenceError`` if the batch cannot be flushed; the caller
    rolls back the sale along with it.
    """
    rows = [
        Installment(
            agency_id=sale.agency_id,
            sale_id=sale.id,
            sequence=line.sequence,
            due_date=line.due_date,
            amount=line.amount,
            status="pending",
        )
        for line in installments
    ]
    try:
        db.session.add_all(rows)
        db.session.flush()
    except SQLAlchemyError as e:
        raise PersistenceError(f"Erreur création échéancier: {e}") from e
    return rows


def create_sale(
    agency_id: int,
    *,
    asset_ref: str,
    buyer_name: str,
    total_price,
    payment_type: str = "cash",
    asset_type: str = "parcel",
    buyer_phone: Optional[str] = None,
    sale_date: Optional[datetime.date] = None,
    down_payment=0,
    monthly_payment=None,
    total_installments: int = 0,
    notes: Optional[str] = None,
) -> Sale:
    """Confirm a sale and, for installment sales, its whole schedule.

    Sale and schedule are committed together or not at all.
    """
    if payment_type not in VALID_PAYMENT_TYPES:
        raise ValidationError(f"Type de paiement invalide: {payment_type}")
    if asset_type not in VALID_ASSET_TYPES:
        raise ValidationError(f"Type de bien invalide: {asset_type}")
    if not asset_ref or not buyer_name:
        raise ValidationError("Bien et acquéreur requis")
    total = to_decimal(total_price)
    if total is None or total <= 0:
        raise ValidationError("Le prix total doit être supérieur à 0")
    sale_date = sale_date or _today()

    schedule: list[ScheduledInstallment] = []
    if payment_type == "installment":
        schedule = generate_schedule(
            sale_date, total, down_payment, monthly_payment, total_installments
        )
        sale = Sale(
            agency_id=agency_id,
            asset_type=asset_type,
            asset_ref=asset_ref,
            buyer_name=buyer_name,
            buyer_phone=buyer_phone,
            sale_date=sale_date,
            total_price=total,
            payment_type="installment",
            down_payment=to_decimal(down_payment) or Decimal("0"),
            monthly_payment=to_decimal(monthly_payment),
            total_installments=len(schedule),
            paid_installments=0,
            status="in_progress",
            notes=notes,
        )
    else:
        sale = Sale(
            agency_id=agency_id,
            asset_type=asset_type,
            asset_ref=asset_ref,
            buyer_name=buyer_name,
            buyer_phone=buyer_phone,
            sale_date=sale_date,
            total_price=total,
            payment_type="cash",
            down_payment=total,
            monthly_payment=None,
            total_installments=0,
            paid_installments=0,
            status="complete",
            notes=notes,
        )

    try:
        db.session.add(sale)
        db.session.flush()
        if schedule:
            create_schedule(sale, schedule)
        log_action(
            agency_id, "create", "sale", sale.id,
            f"{payment_type} {total} ({len(schedule)} échéances)",
        )
        db.session.commit()
    except PersistenceError:
        db.session.rollback()
        logger.error("Sale creation rolled back for agency %s (schedule failed)", agency_id)
        raise
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error("Sale creation rolled back for agency %s: %s", agency_id, e)
        raise PersistenceError(f"Erreur création vente: {e}") from e

    logger.info(
        "Created %s sale %s for agency %s (%s installments)",
        payment_type, sale.id, agency_id, len(schedule),
    )
    return sale


def cancel_sale(sale_id: int) -> Sale:
    """Flag a sale as cancelled.  Ledger rows are kept as financial record."""
    sale = db.session.get(Sale, sale_id)
    if sale is None:
        raise ValidationError(f"Vente introuvable: {sale_id}")
    if sale.status == "cancelled":
        return sale
    if sale.status == "complete":
        raise ValidationError("Une vente soldée ne peut pas être annulée")
    sale.status = "cancelled"
    sale.cancelled_at = utc_now()
    log_action(sale.agency_id, "cancel", "sale", sale.id)
    db.session.commit()
    logger.info("Cancelled sale %s", sale.id)
    return sale


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------

def _recompute_sale_progress(sale: Sale) -> None:
    """Derive ``paid_installments`` and completion from the ledger rows."""
    paid = (
        db.session.query(func.count(Installment.id))
        .filter(Installment.sale_id == sale.id, Installment.status == "paid")
        .scalar()
    )
    sale.paid_installments = min(paid, sale.total_installments)
    if sale.total_installments and sale.paid_installments == sale.total_installments:
        sale.status = "complete"


def pay_installment(
    installment_id: int,
    paid_amount,
    paid_date: Optional[datetime.date] = None,
    method: Optional[str] = None,
    *,
    receipt_number: Optional[str] = None,
    commit: bool = True,
) -> Installment:
    """Mark an installment paid and roll the result up into its sale.

    Re-invoking on an installment that is already ``paid`` changes nothing
    and returns it, which makes webhook replays safe.
    """
    installment = (
        Installment.query.filter_by(id=installment_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if installment is None:
        raise ValidationError(f"Échéance introuvable: {installment_id}")
    if installment.status == "paid":
        logger.info("Installment %s already paid (no-op)", installment_id)
        return installment

    amount = to_decimal(paid_amount)
    if amount is None or amount <= 0:
        raise ValidationError("Le montant payé doit être supérieur à 0")

    sale = (
        Sale.query.filter_by(id=installment.sale_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if sale.status == "cancelled":
        raise ValidationError("La vente est annulée")

    installment.status = "paid"
    installment.paid_amount = amount
    installment.paid_date = paid_date or _today()
    installment.payment_method = method
    installment.receipt_number = receipt_number
    try:
        db.session.flush()
        _recompute_sale_progress(sale)
        log_action(
            installment.agency_id, "pay", "installment", installment.id,
            f"{amount} via {method or 'n/a'}",
        )
        if commit:
            db.session.commit()
        else:
            db.session.flush()
    except SQLAlchemyError as e:
        db.session.rollback()
        raise PersistenceError(f"Erreur enregistrement paiement: {e}") from e

    logger.info(
        "Installment %s paid (sale %s: %s/%s)",
        installment.id, sale.id, sale.paid_installments, sale.total_installments,
    )
    return installment


# ---------------------------------------------------------------------------
# Read-side views
# ---------------------------------------------------------------------------

def effective_status(installment: Installment, today: Optional[datetime.date] = None) -> str:
    """``overdue`` is derived: pending and past due.  Storage keeps ``pending``."""
    today = today or _today()
    if installment.status == "pending" and installment.due_date < today:
        return "overdue"
    return installment.status


def _open_installments(agency_id: int):
    return (
        Installment.query.join(Sale, Installment.sale_id == Sale.id)
        .filter(
            Installment.agency_id == agency_id,
            Installment.status == "pending",
            Sale.status != "cancelled",
        )
    )


def list_overdue(agency_id: int, today: Optional[datetime.date] = None) -> list[Installment]:
    today = today or _today()
    return (
        _open_installments(agency_id)
        .filter(Installment.due_date < today)
        .order_by(Installment.due_date)
        .all()
    )


def list_upcoming(
    agency_id: int,
    months_ahead: int = 1,
    today: Optional[datetime.date] = None,
) -> list[Installment]:
    """Pending installments due between *today* and *months_ahead* months out."""
    today = today or _today()
    horizon = add_months(today, months_ahead)
    return (
        _open_installments(agency_id)
        .filter(Installment.due_date >= today, Installment.due_date <= horizon)
        .order_by(Installment.due_date)
        .all()
    )


def sale_summary(sale: Sale, today: Optional[datetime.date] = None) -> dict:
    """Totals for display: collected, outstanding, next due line, overdue count."""
    today = today or _today()
    collected = Decimal(sale.down_payment or 0)
    overdue = 0
    next_due = None
    for line in sale.installments:
        if line.status == "paid":
            collected += Decimal(line.paid_amount or line.amount)
        elif effective_status(line, today) == "overdue":
            overdue += 1
        elif next_due is None:
            next_due = line
    outstanding = max(Decimal(sale.total_price) - collected, Decimal("0"))
    return {
        "collected": collected,
        "outstanding": outstanding,
        "overdue_count": overdue,
        "next_due_date": next_due.due_date if next_due else None,
        "next_due_amount": next_due.amount if next_due else None,
    }
