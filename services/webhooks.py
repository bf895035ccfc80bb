"""Provider callbacks and status polls, reconciled onto PaymentTransaction rows.

Transitions::

    pending   -> completed | failed | refunded
    completed -> refunded
    (anything else on a terminal row is a replay and keeps its status;
     a late "completed" on a failed row is flagged in error_message)

Webhooks and polls for the same transaction serialize on the row lock; the
``version`` column turns any write that slipped past it into a stale-data
error instead of a silent overwrite.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from models import PaymentTransaction
from services.audit import log_action
from services.billing import upsert_active_subscription
from services.errors import (
    GatewayError,
    MalformedWebhookError,
    PersistenceError,
    ValidationError,
    WebhookSignatureError,
)
from services.gateways import WebhookEvent, get_gateway
from services.installments import pay_installment
from utils import utc_now

logger = logging.getLogger(__name__)


@dataclass
class ReconcileOutcome:
    """What a callback did: ``updated``, ``replay_noop``, ``ignored`` or ``not_found``."""
    action: str
    transaction_id: Optional[int] = None
    status: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "received": True,
            "action": self.action,
            "transaction_id": self.transaction_id,
            "status": self.status,
        }


def reconcile(provider: str, raw_body: bytes, headers) -> ReconcileOutcome:
    """Verify, parse and apply one provider callback.

    Raises:
        WebhookSignatureError: signature check failed.
        MalformedWebhookError: body is not a JSON object or names no payment.
    """
    gateway = get_gateway(provider)
    if not gateway.verify_signature(raw_body, headers):
        logger.warning("Rejected %s webhook: invalid signature", provider)
        raise WebhookSignatureError("Signature invalide")

    try:
        payload = json.loads(raw_body or b"")
    except ValueError:
        raise MalformedWebhookError("Corps de requête JSON invalide")
    if not isinstance(payload, dict):
        raise MalformedWebhookError("Corps de requête JSON invalide")

    event = gateway.parse_webhook(payload, headers)
    if event is None:
        raise MalformedWebhookError("Référence de paiement manquante")
    logger.info(
        "%s webhook for ref %s: %s -> %s",
        provider, event.reference, event.provider_status, event.status,
    )
    return apply_event(provider, event)


def apply_event(provider: str, event: WebhookEvent) -> ReconcileOutcome:
    """Lock the transaction named by *event* and move it forward."""
    tx = (
        PaymentTransaction.query.filter_by(provider=provider, provider_reference=event.reference)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if tx is None:
        logger.warning("No %s transaction for reference %s", provider, event.reference)
        return ReconcileOutcome("not_found")

    try:
        outcome = _transition(tx, event)
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error("Reconciliation of transaction %s rolled back: %s", tx.id, e)
        raise PersistenceError(f"Erreur rapprochement paiement: {e}", transaction_id=tx.id) from e
    return outcome


def _transition(tx: PaymentTransaction, event: WebhookEvent) -> ReconcileOutcome:
    if event.status is None or event.status == "pending":
        if not tx.is_terminal and event.provider_status:
            tx.provider_status = event.provider_status
        return ReconcileOutcome("ignored", tx.id, tx.status)

    if tx.is_terminal:
        if tx.status == "completed" and event.status == "refunded":
            tx.status = "refunded"
            tx.provider_status = event.provider_status
            log_action(tx.agency_id, "refund", "payment_transaction", tx.id, f"{tx.amount} {tx.currency}")
            logger.info("Transaction %s refunded", tx.id)
            return ReconcileOutcome("updated", tx.id, tx.status)
        if tx.status == "failed" and event.status == "completed":
            # Provider collected the money after we gave up on the row
            logger.error(
                "Transaction %s is failed but %s reports it paid (%s), needs follow-up",
                tx.id, tx.provider, event.provider_status,
            )
            tx.provider_status = event.provider_status
            flag = f"Paiement confirmé par {tx.provider} après clôture, à régulariser"
            if not (tx.error_message or "").startswith(flag):
                tx.error_message = f"{flag} (précédent: {tx.error_message or 'n/a'})"
            return ReconcileOutcome("replay_noop", tx.id, tx.status)
        logger.info("Transaction %s already %s, replay ignored", tx.id, tx.status)
        return ReconcileOutcome("replay_noop", tx.id, tx.status)

    tx.provider_status = event.provider_status
    if event.status == "completed":
        tx.status = "completed"
        tx.completed_at = utc_now()
        _fulfil(tx)
        log_action(tx.agency_id, "complete", "payment_transaction", tx.id, f"{tx.amount} {tx.currency}")
        logger.info("Transaction %s completed", tx.id)
    elif event.status == "failed":
        tx.status = "failed"
        tx.error_message = event.error_message or "Paiement échoué"
        logger.info("Transaction %s failed: %s", tx.id, tx.error_message)
    else:
        tx.status = event.status
        logger.info("Transaction %s moved to %s", tx.id, tx.status)
    return ReconcileOutcome("updated", tx.id, tx.status)


def _fulfil(tx: PaymentTransaction) -> None:
    """Apply the business effect of a completed payment, inside the caller's unit of work."""
    if tx.installment_id:
        try:
            pay_installment(
                tx.installment_id,
                tx.amount,
                method=f"{tx.provider}:{tx.payment_method}",
                receipt_number=tx.provider_reference,
                commit=False,
            )
        except ValidationError as e:
            # Money was collected; keep the payment and flag it for follow-up
            logger.error("Installment %s not settled by transaction %s: %s", tx.installment_id, tx.id, e)
            tx.error_message = f"Paiement reçu mais échéance non soldée: {e.message}"
        return

    if not tx.plan_id:
        return
    # Prorated or not, a paid plan starts a fresh period from now
    sub = upsert_active_subscription(tx.agency_id, tx.plan_id, tx.billing_cycle)
    tx.subscription_id = sub.id


def refresh_transaction(agency_id: int, transaction_id: int) -> Optional[PaymentTransaction]:
    """Poll the provider for a pending transaction and apply what it reports.

    Returns ``None`` if the transaction does not belong to the agency.
    """
    tx = PaymentTransaction.query.filter_by(id=transaction_id, agency_id=agency_id).first()
    if tx is None:
        return None
    if tx.is_terminal or not tx.provider or not tx.provider_reference:
        return tx

    try:
        gateway = get_gateway(tx.provider)
        event = gateway.fetch_status(tx.provider_reference)
    except (GatewayError, ValidationError) as e:
        logger.warning("Status poll for transaction %s failed: %s", tx.id, e)
        return tx
    if event is not None:
        apply_event(tx.provider, event)
    return tx
