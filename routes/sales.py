"""Sales and installment ledger routes."""

from flask import Blueprint, abort, jsonify, request

from extensions import csrf, limiter
from models import Installment, Sale
from services.checkout import start_installment_checkout
from services.installments import (
    cancel_sale,
    create_sale,
    effective_status,
    list_overdue,
    list_upcoming,
    pay_installment,
    sale_summary,
)
from services.tenant import agency_get_or_404, require_agency
from utils import parse_date, safe_int

sales_bp = Blueprint("sales", __name__, url_prefix="/api")
csrf.exempt(sales_bp)


def _money(value):
    return str(value) if value is not None else None


def _installment_json(inst: Installment) -> dict:
    return {
        "id": inst.id,
        "sale_id": inst.sale_id,
        "sequence": inst.sequence,
        "due_date": inst.due_date.isoformat(),
        "amount": _money(inst.amount),
        "status": effective_status(inst),
        "paid_date": inst.paid_date.isoformat() if inst.paid_date else None,
        "paid_amount": _money(inst.paid_amount),
        "payment_method": inst.payment_method,
        "receipt_number": inst.receipt_number,
    }


def _sale_json(sale: Sale) -> dict:
    summary = sale_summary(sale)
    return {
        "id": sale.id,
        "asset_type": sale.asset_type,
        "asset_ref": sale.asset_ref,
        "buyer_name": sale.buyer_name,
        "buyer_phone": sale.buyer_phone,
        "sale_date": sale.sale_date.isoformat(),
        "total_price": _money(sale.total_price),
        "payment_type": sale.payment_type,
        "down_payment": _money(sale.down_payment),
        "monthly_payment": _money(sale.monthly_payment),
        "total_installments": sale.total_installments,
        "paid_installments": sale.paid_installments,
        "status": sale.status,
        "collected": _money(summary["collected"]),
        "outstanding": _money(summary["outstanding"]),
        "overdue_count": summary["overdue_count"],
        "next_due_date": summary["next_due_date"].isoformat() if summary["next_due_date"] else None,
        "next_due_amount": _money(summary["next_due_amount"]),
    }


# ---------------------------------------------------------------------------
# Sales
# ---------------------------------------------------------------------------

@sales_bp.route("/sales", methods=["POST"])
def create():
    """Confirm a sale; installment sales get their full schedule at once."""
    agency_id = require_agency()
    data = request.get_json(silent=True) or {}
    sale = create_sale(
        agency_id,
        asset_ref=(data.get("asset_ref") or "").strip(),
        buyer_name=(data.get("buyer_name") or "").strip(),
        total_price=data.get("total_price"),
        payment_type=data.get("payment_type", "cash"),
        asset_type=data.get("asset_type", "parcel"),
        buyer_phone=data.get("buyer_phone"),
        sale_date=parse_date(data.get("sale_date")),
        down_payment=data.get("down_payment") or 0,
        monthly_payment=data.get("monthly_payment"),
        total_installments=safe_int(data.get("total_installments")),
        notes=data.get("notes"),
    )
    return jsonify({"success": True, "sale": _sale_json(sale)}), 201


@sales_bp.route("/sales/<int:sale_id>")
def detail(sale_id):
    sale = agency_get_or_404(Sale, sale_id)
    return jsonify(_sale_json(sale))


@sales_bp.route("/sales/<int:sale_id>/cancel", methods=["POST"])
def cancel(sale_id):
    sale = agency_get_or_404(Sale, sale_id)
    sale = cancel_sale(sale.id)
    return jsonify({"success": True, "sale": _sale_json(sale)})


@sales_bp.route("/sales/<int:sale_id>/installments")
def installments(sale_id):
    sale = agency_get_or_404(Sale, sale_id)
    return jsonify([_installment_json(i) for i in sale.installments])


# ---------------------------------------------------------------------------
# Installments
# ---------------------------------------------------------------------------

@sales_bp.route("/installments/<int:installment_id>/pay", methods=["POST"])
def pay(installment_id):
    """Record a payment collected outside the platform (cash, transfer)."""
    inst = agency_get_or_404(Installment, installment_id)
    data = request.get_json(silent=True) or {}
    inst = pay_installment(
        inst.id,
        data.get("paid_amount", inst.amount),
        paid_date=parse_date(data.get("paid_date")),
        method=data.get("payment_method") or "cash",
        receipt_number=data.get("receipt_number"),
    )
    return jsonify({"success": True, "installment": _installment_json(inst)})


@sales_bp.route("/installments/<int:installment_id>/checkout", methods=["POST"])
@limiter.limit("10 per minute")
def checkout(installment_id):
    """Pay one installment online through a payment provider."""
    agency_id = require_agency()
    data = request.get_json(silent=True) or {}
    result = start_installment_checkout(
        agency_id,
        installment_id,
        data.get("payment_method") or "",
        customer_phone=data.get("customer_phone"),
        country_code=data.get("country_code"),
        provider=data.get("provider"),
        return_url=data.get("return_url"),
    )
    return jsonify(result.to_dict())


@sales_bp.route("/installments/overdue")
def overdue():
    agency_id = require_agency()
    return jsonify([_installment_json(i) for i in list_overdue(agency_id)])


@sales_bp.route("/installments/upcoming")
def upcoming():
    """Installments due within ``?months=`` (default 1)."""
    agency_id = require_agency()
    months = min(max(safe_int(request.args.get("months"), 1), 1), 24)
    return jsonify([_installment_json(i) for i in list_upcoming(agency_id, months)])
