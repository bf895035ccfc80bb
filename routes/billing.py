"""Subscription checkout, payment history and provider webhook routes."""

from flask import Blueprint, abort, jsonify, request

from extensions import csrf, limiter
from models import PaymentTransaction, SubscriptionPlan
from services.billing import cancel_subscription, get_agency_subscription, get_plan_limits
from services.checkout import CheckoutRequest, start_checkout
from services.errors import ValidationError
from services.gateways import PROVIDERS
from services.tenant import agency_query, require_agency
from services.webhooks import reconcile, refresh_transaction
from utils import safe_int

billing_bp = Blueprint("billing", __name__, url_prefix="/api/billing")
csrf.exempt(billing_bp)


def _transaction_json(tx: PaymentTransaction) -> dict:
    return {
        "id": tx.id,
        "amount": str(tx.amount),
        "currency": tx.currency,
        "provider": tx.provider,
        "payment_method": tx.payment_method,
        "billing_cycle": tx.billing_cycle,
        "plan_id": tx.plan_id,
        "installment_id": tx.installment_id,
        "status": tx.status,
        "provider_reference": tx.provider_reference,
        "provider_status": tx.provider_status,
        "error_message": tx.error_message,
        "metadata": tx.meta or {},
        "created_at": tx.created_at.isoformat() if tx.created_at else None,
        "completed_at": tx.completed_at.isoformat() if tx.completed_at else None,
    }


# ---------------------------------------------------------------------------
# Agency endpoints
# ---------------------------------------------------------------------------

@billing_bp.route("/plans")
def plans():
    """Plans an agency can subscribe to."""
    rows = (
        SubscriptionPlan.query.filter_by(is_active=True)
        .order_by(SubscriptionPlan.sort_order)
        .all()
    )
    return jsonify([
        {
            "id": p.id,
            "name": p.name,
            "slug": p.slug,
            "price_monthly": str(p.price_monthly or 0),
            "price_yearly": str(p.price_yearly or 0),
            "price_lifetime": str(p.price_lifetime) if p.price_lifetime is not None else None,
            "currency": p.currency,
        }
        for p in rows
    ])


@billing_bp.route("/checkout", methods=["POST"])
@limiter.limit("10 per minute")
def checkout():
    """Start a subscription payment (or apply a free/credit change directly)."""
    agency_id = require_agency()
    req = CheckoutRequest.from_json(request.get_json(silent=True) or {})
    result = start_checkout(agency_id, req)
    return jsonify(result.to_dict())


@billing_bp.route("/subscription")
def subscription():
    """Current subscription, its plan and limits."""
    agency_id = require_agency()
    sub = get_agency_subscription(agency_id)
    if sub is None:
        return jsonify({"subscription": None, "limits": get_plan_limits(agency_id)})
    return jsonify({
        "subscription": {
            "id": sub.id,
            "plan_id": sub.plan_id,
            "plan_name": sub.plan.name,
            "status": sub.status,
            "billing_cycle": sub.billing_cycle,
            "starts_at": sub.starts_at.isoformat() if sub.starts_at else None,
            "ends_at": sub.ends_at.isoformat() if sub.ends_at else None,
            "cancelled_at": sub.cancelled_at.isoformat() if sub.cancelled_at else None,
        },
        "limits": get_plan_limits(agency_id),
    })


@billing_bp.route("/subscription/cancel", methods=["POST"])
def cancel():
    """Cancel the subscription; access runs until the end of the period."""
    agency_id = require_agency()
    sub = cancel_subscription(agency_id)
    if sub is None:
        abort(404)
    return jsonify({"success": True, "status": sub.status})


@billing_bp.route("/transactions")
def transactions():
    """Payment history, newest first."""
    limit = min(max(safe_int(request.args.get("limit"), 50), 1), 200)
    rows = (
        agency_query(PaymentTransaction)
        .order_by(PaymentTransaction.created_at.desc(), PaymentTransaction.id.desc())
        .limit(limit)
        .all()
    )
    return jsonify([_transaction_json(tx) for tx in rows])


@billing_bp.route("/transactions/<int:transaction_id>")
def transaction_status(transaction_id):
    """Transaction detail; pending rows are refreshed from the provider first."""
    agency_id = require_agency()
    tx = refresh_transaction(agency_id, transaction_id)
    if tx is None:
        abort(404)
    return jsonify(_transaction_json(tx))


# ---------------------------------------------------------------------------
# Provider callbacks (server-to-server)
# ---------------------------------------------------------------------------

@billing_bp.route("/webhooks/<provider>", methods=["POST"])
@limiter.exempt
def webhook(provider):
    """Provider callback.  Acknowledged with 200 unless signature or body is bad."""
    if provider not in PROVIDERS:
        abort(404)
    try:
        outcome = reconcile(provider, request.get_data(), request.headers)
    except ValidationError:
        # provider switched off: acknowledge so it stops retrying
        return jsonify({"received": True, "action": "ignored"}), 200
    return jsonify(outcome.to_dict()), 200
