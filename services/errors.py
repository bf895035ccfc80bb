"""Error taxonomy for the ledger and billing engine.

Validation and corridor errors are raised before any external call or
write.  Gateway and persistence errors raised after a transaction row
exists are always mirrored into that row's ``error_message``.
"""

from __future__ import annotations

from typing import Optional


class LedgerError(Exception):
    """Base class; ``http_status`` is what the API layer answers with."""

    http_status = 400

    def __init__(self, message: str, *, transaction_id: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.transaction_id = transaction_id


class ValidationError(LedgerError):
    """Bad schedule parameters or missing/invalid checkout fields."""

    http_status = 422


class ProrationNotApplicable(ValidationError):
    """The current subscription cannot be prorated (e.g. lifetime)."""


class UnsupportedCorridorError(LedgerError):
    """No gateway mapping for the (country, payment method) pair."""

    http_status = 400

    def __init__(self, provider: str, country_code: str, payment_method: str):
        super().__init__(
            f"Méthode de paiement {payment_method} non disponible pour {country_code} "
            f"({provider})"
        )
        self.provider = provider
        self.country_code = country_code
        self.payment_method = payment_method


class GatewayError(LedgerError):
    """The provider rejected the request, timed out or answered garbage."""

    http_status = 502


class PersistenceError(LedgerError):
    """Storage failure; the whole unit of work has been rolled back."""

    http_status = 500


class WebhookSignatureError(LedgerError):
    """A provider callback failed signature verification."""

    http_status = 401


class MalformedWebhookError(LedgerError):
    """Callback body is not JSON or lacks the provider reference."""

    http_status = 400
