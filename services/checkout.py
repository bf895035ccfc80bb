"""Checkout orchestration for subscriptions and online installment payments.

Flow::

    requested -> (free plan | proration credit | amount due)
              -> PaymentTransaction(pending) -> gateway call
              -> [webhook / status poll] -> completed | failed

Plan, cycle and method are checked before anything is written.  Corridor,
currency and phone only matter when money is collected, so they are
resolved just before the pending row is inserted; free activations and
credit swaps never reach a gateway.  A gateway call is never retried:
if it fails the pending row is closed as ``failed`` with the reason.
"""

from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional

from flask import current_app, has_request_context, request
from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from models import VALID_BILLING_CYCLES, Agency, Installment, PaymentTransaction, Sale
from services.audit import log_action
from services.billing import (
    get_active_plan,
    get_active_subscription,
    swap_plan,
    upsert_active_subscription,
)
from services.errors import GatewayError, PersistenceError, ValidationError
from services.gateways import PROVIDERS, GatewayAdapter, PaymentRequest, get_gateway
from services.proration import calculate_proration
from utils import format_amount, safe_int, to_decimal, utc_now

logger = logging.getLogger(__name__)

VALID_PAYMENT_METHODS = {"orange_money", "mtn_money", "moov", "wave", "airtel", "card"}

CYCLE_LABELS = {"monthly": "Mensuel", "yearly": "Annuel", "lifetime": "À vie"}


@dataclass
class CheckoutRequest:
    plan_id: int
    billing_cycle: str
    payment_method: str
    customer_phone: Optional[str] = None
    country_code: Optional[str] = None
    provider: Optional[str] = None
    proration: bool = False
    return_url: Optional[str] = None

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "CheckoutRequest":
        """Build from a request body; ``proration`` only needs to be truthy."""
        data = data or {}
        return cls(
            plan_id=safe_int(data.get("plan_id")),
            billing_cycle=data.get("billing_cycle") or "monthly",
            payment_method=data.get("payment_method") or "",
            customer_phone=data.get("customer_phone"),
            country_code=data.get("country_code"),
            provider=data.get("provider"),
            proration=bool(data.get("proration")),
            return_url=data.get("return_url"),
        )


@dataclass
class CheckoutResult:
    success: bool
    transaction_id: Optional[int] = None
    payment_url: Optional[str] = None
    status: Optional[str] = None
    message: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"success": self.success, "transaction_id": self.transaction_id}
        if self.payment_url:
            out["payment_url"] = self.payment_url
        if self.status:
            out["status"] = self.status
        if self.message:
            out["message"] = self.message
        out.update(self.extra)
        return out


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _callback_url(provider: str) -> str:
    base = current_app.config["BILLING"].callback_base_url
    if not base and has_request_context():
        base = request.host_url.rstrip("/")
    return f"{base}/api/billing/webhooks/{provider}"


def _load_agency(agency_id: int) -> Agency:
    agency = db.session.get(Agency, agency_id)
    if agency is None or not agency.is_active:
        raise ValidationError("Agence introuvable ou inactive")
    return agency


@dataclass
class _Route:
    """Gateway, corridor and payer resolved for one checkout."""
    gateway: GatewayAdapter
    provider: str
    country_code: str
    currency: str
    provider_code: Optional[str]
    phone: str


def _check_payment_method(payment_method: str) -> None:
    if payment_method not in VALID_PAYMENT_METHODS:
        raise ValidationError(f"Méthode de paiement invalide: {payment_method or '(vide)'}")


def _resolve_route(
    agency: Agency,
    payment_method: str,
    provider: Optional[str],
    country_code: Optional[str],
    customer_phone: Optional[str],
) -> _Route:
    _check_payment_method(payment_method)
    provider = provider or current_app.config["BILLING"].default_provider
    country = (
        country_code or agency.country_code or current_app.config["APP"].default_country
    ).upper()
    gateway = get_gateway(provider)
    provider_code = gateway.resolve_provider_code(country, payment_method)
    currency = gateway.currency_for(country)
    phone = gateway.format_customer_phone(customer_phone or agency.phone, country)
    return _Route(gateway, provider, country, currency, provider_code, phone)


def _require_phone(route: _Route, payment_method: str) -> None:
    if not route.phone and route.gateway.requires_phone(payment_method):
        raise ValidationError(
            f"Numéro de téléphone invalide pour {route.country_code}. "
            "Vérifiez le numéro du payeur."
        )


def _mark_failed(tx: PaymentTransaction, message: str) -> None:
    """Close *tx* as failed in its own commit (the gateway call is over)."""
    try:
        tx.status = "failed"
        tx.error_message = message
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error("Could not mark transaction %s failed: %s", tx.id, e)


def _dispatch(
    route: _Route,
    tx: PaymentTransaction,
    *,
    description: str,
    agency: Agency,
    return_url: Optional[str],
    metadata: Dict[str, Any],
) -> CheckoutResult:
    """Insert the pending row, call the provider, record the outcome."""
    try:
        db.session.add(tx)
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error("Could not create pending transaction for agency %s: %s", agency.id, e)
        raise PersistenceError(f"Erreur création transaction: {e}") from e

    payment = PaymentRequest(
        transaction_id=tx.id,
        amount=Decimal(tx.amount),
        currency=tx.currency,
        country_code=route.country_code,
        payment_method=tx.payment_method,
        customer_phone=route.phone,
        description=description,
        provider_code=route.provider_code,
        reference=tx.provider_reference,
        customer_name=agency.name,
        customer_email=agency.email or "",
        callback_url=_callback_url(route.provider),
        return_url=return_url or "",
        metadata=metadata,
    )
    try:
        response = route.gateway.initiate_payment(payment)
    except GatewayError as e:
        logger.error("Gateway %s failed for transaction %s: %s", route.provider, tx.id, e.message)
        _mark_failed(tx, e.message)
        e.transaction_id = tx.id
        raise

    try:
        tx.provider_reference = response.reference
        tx.provider_status = response.provider_status
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error("Could not store provider reference for transaction %s: %s", tx.id, e)
        _mark_failed(tx, f"Référence fournisseur non enregistrée: {response.reference}")
        raise PersistenceError(
            f"Erreur enregistrement référence: {e}", transaction_id=tx.id
        ) from e

    logger.info(
        "Checkout %s dispatched via %s (ref=%s, %s %s)",
        tx.id, route.provider, response.reference, tx.amount, tx.currency,
    )
    if route.gateway.flow == "push":
        return CheckoutResult(
            success=True,
            transaction_id=tx.id,
            status="awaiting_confirmation",
            message="Confirmez le paiement sur votre téléphone.",
        )
    return CheckoutResult(success=True, transaction_id=tx.id, payment_url=response.payment_url)


# ---------------------------------------------------------------------------
# Subscription checkout
# ---------------------------------------------------------------------------

def start_checkout(agency_id: int, req: CheckoutRequest) -> CheckoutResult:
    """Start paying for *req.plan_id*, or apply the change directly when nothing is due.

    Raises:
        ValidationError: bad plan, cycle, method or phone (nothing written).
        UnsupportedCorridorError: provider does not serve country/method.
        GatewayError: provider call failed (transaction marked failed).
        PersistenceError: storage failure.
    """
    if not req.plan_id:
        raise ValidationError("Forfait requis")
    if req.billing_cycle not in VALID_BILLING_CYCLES:
        raise ValidationError(f"Cycle de facturation invalide: {req.billing_cycle}")
    _check_payment_method(req.payment_method)
    if req.provider and req.provider not in PROVIDERS:
        raise ValidationError(f"Fournisseur de paiement inconnu: {req.provider}")
    agency = _load_agency(agency_id)

    sub = get_active_subscription(agency_id, lock=True)
    plan = get_active_plan(req.plan_id)
    price = to_decimal(plan.price_for(req.billing_cycle))
    if price is None:
        raise ValidationError(
            f"Le forfait {plan.name} n'est pas proposé en {CYCLE_LABELS[req.billing_cycle].lower()}"
        )

    amount = price
    metadata: Dict[str, Any] = {"plan_id": plan.id, "billing_cycle": req.billing_cycle}
    description = f"Abonnement {plan.name} - {CYCLE_LABELS[req.billing_cycle]}"

    changes_plan = sub is not None and (
        sub.plan_id != plan.id or sub.billing_cycle != req.billing_cycle
    )
    if changes_plan:
        metadata["previous_plan_id"] = sub.plan_id
    # Leaving a lifetime subscription is a plain switch at full price
    prorate = (
        req.proration
        and changes_plan
        and sub.billing_cycle != "lifetime"
        and sub.ends_at is not None
    )
    if prorate:
        proration = calculate_proration(
            sub.plan.price_for(sub.billing_cycle),
            sub.billing_cycle,
            sub.ends_at,
            price,
            utc_now(),
        )
        metadata.update(proration.as_metadata())

        if proration.is_credit:
            return _apply_credit_swap(agency, sub, plan, req, proration, metadata)

        amount = proration.amount_due
        description = (
            f"Changement forfait vers {plan.name} (prorata {proration.remaining_days} jours)"
        )

    if amount == 0:
        try:
            upsert_active_subscription(agency_id, plan.id, req.billing_cycle)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            raise PersistenceError(f"Erreur activation abonnement: {e}") from e
        logger.info("Free plan %s activated for agency %s", plan.id, agency_id)
        return CheckoutResult(
            success=True,
            status="active",
            message=f"Forfait {plan.name} activé.",
        )

    route = _resolve_route(
        agency, req.payment_method, req.provider, req.country_code, req.customer_phone
    )
    if (plan.currency or "XOF") != route.currency:
        raise ValidationError(
            f"Le forfait est facturé en {plan.currency}, "
            f"{route.country_code} paie en {route.currency}"
        )
    _require_phone(route, req.payment_method)
    tx = PaymentTransaction(
        agency_id=agency_id,
        plan_id=plan.id,
        subscription_id=sub.id if sub else None,
        amount=amount,
        currency=route.currency,
        provider=route.provider,
        payment_method=req.payment_method,
        billing_cycle=req.billing_cycle,
        status="pending",
        provider_reference=route.gateway.new_reference(),
        customer_phone=route.phone or None,
        meta=metadata,
    )
    return _dispatch(
        route, tx,
        description=description,
        agency=agency,
        return_url=req.return_url,
        metadata={"agency_id": agency_id, "plan_id": plan.id, "billing_cycle": req.billing_cycle},
    )


def _apply_credit_swap(agency, sub, plan, req, proration, metadata) -> CheckoutResult:
    """Nothing to pay: switch plans now and keep a zero-amount record of it.

    No gateway is involved, so the provider and method are recorded as requested.
    """
    provider = req.provider or current_app.config["BILLING"].default_provider
    currency = plan.currency or current_app.config["APP"].base_currency
    metadata["credit_amount"] = str(proration.credit_amount)
    try:
        swap_plan(sub, plan.id, req.billing_cycle)
        tx = PaymentTransaction(
            agency_id=agency.id,
            plan_id=plan.id,
            subscription_id=sub.id,
            amount=Decimal("0"),
            currency=currency,
            provider=provider,
            payment_method=req.payment_method,
            billing_cycle=req.billing_cycle,
            status="completed",
            completed_at=utc_now(),
            meta=metadata,
        )
        db.session.add(tx)
        db.session.flush()
        log_action(
            agency.id, "proration_credit", "payment_transaction", tx.id,
            f"credit {proration.credit_amount} {currency}",
        )
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        raise PersistenceError(f"Erreur changement de forfait: {e}") from e

    logger.info(
        "Agency %s switched to plan %s with credit %s", agency.id, plan.id, proration.credit_amount
    )
    if proration.credit_amount > 0:
        message = (
            f"Forfait changé avec un crédit de "
            f"{format_amount(proration.credit_amount, currency)}"
        )
    else:
        message = f"Forfait changé vers {plan.name}."
    return CheckoutResult(
        success=True,
        transaction_id=tx.id,
        status="completed",
        message=message,
        extra={"credit_amount": str(proration.credit_amount)},
    )


# ---------------------------------------------------------------------------
# Installment checkout
# ---------------------------------------------------------------------------

def start_installment_checkout(
    agency_id: int,
    installment_id: int,
    payment_method: str,
    customer_phone: Optional[str] = None,
    country_code: Optional[str] = None,
    provider: Optional[str] = None,
    return_url: Optional[str] = None,
) -> CheckoutResult:
    """Collect one échéance online; the webhook marks it paid."""
    agency = _load_agency(agency_id)
    installment = Installment.query.filter_by(id=installment_id, agency_id=agency_id).first()
    if installment is None:
        raise ValidationError(f"Échéance introuvable: {installment_id}")
    if installment.status == "paid":
        raise ValidationError("Cette échéance est déjà payée")
    sale: Sale = installment.sale
    if sale.status == "cancelled":
        raise ValidationError("La vente est annulée")

    route = _resolve_route(
        agency, payment_method, provider, country_code, customer_phone or sale.buyer_phone
    )
    base_currency = current_app.config["APP"].base_currency
    if route.currency != base_currency:
        raise ValidationError(
            f"Les échéances sont en {base_currency}, {route.country_code} paie en {route.currency}"
        )
    _require_phone(route, payment_method)

    window = datetime.timedelta(minutes=current_app.config["BILLING"].pending_expiry_minutes)
    in_flight = PaymentTransaction.query.filter(
        PaymentTransaction.installment_id == installment.id,
        PaymentTransaction.status == "pending",
        PaymentTransaction.created_at >= utc_now() - window,
    ).first()
    if in_flight is not None:
        raise ValidationError(
            "Un paiement est déjà en cours pour cette échéance",
            transaction_id=in_flight.id,
        )

    tx = PaymentTransaction(
        agency_id=agency_id,
        installment_id=installment.id,
        amount=installment.amount,
        currency=route.currency,
        provider=route.provider,
        payment_method=payment_method,
        status="pending",
        provider_reference=route.gateway.new_reference(),
        customer_phone=route.phone or None,
        meta={"sale_id": sale.id, "sequence": installment.sequence},
    )
    return _dispatch(
        route, tx,
        description=f"Échéance {installment.sequence}/{sale.total_installments} {sale.asset_ref}",
        agency=agency,
        return_url=return_url,
        metadata={"agency_id": agency_id, "sale_id": sale.id, "installment_id": installment.id},
    )


# ---------------------------------------------------------------------------
# Housekeeping
# ---------------------------------------------------------------------------

def expire_stale_transactions(
    max_age: Optional[datetime.timedelta] = None,
    now: Optional[datetime.datetime] = None,
) -> int:
    """Fail ``pending`` transactions older than *max_age* (config default)."""
    if max_age is None:
        max_age = datetime.timedelta(
            minutes=current_app.config["BILLING"].pending_expiry_minutes
        )
    cutoff = (now or utc_now()) - max_age
    stale = (
        PaymentTransaction.query.filter(
            PaymentTransaction.status == "pending",
            PaymentTransaction.created_at < cutoff,
        )
        .with_for_update()
        .populate_existing()
        .all()
    )
    for tx in stale:
        tx.status = "failed"
        tx.error_message = "Transaction expirée: aucune confirmation du fournisseur"
        log_action(tx.agency_id, "expire", "payment_transaction", tx.id)
    try:
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        raise PersistenceError(f"Erreur expiration transactions: {e}") from e
    if stale:
        logger.info("Expired %d stale pending transactions", len(stale))
    return len(stale)
