"""Wave checkout sessions."""

from __future__ import annotations

import hmac
import logging
from typing import Any, Dict, Optional

from services.errors import GatewayError
from services.gateways.base import (
    GatewayResponse,
    PaymentRequest,
    RedirectGateway,
    WebhookEvent,
    hmac_sha256_hex,
    international_number,
)

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "Wave-Signature"

CHECKOUT_STATUS_MAP = {
    "complete": "completed",
    "cancelled": "failed",
    "expired": "failed",
    "open": "pending",
}


class WaveGateway(RedirectGateway):
    name = "wave"
    corridors = {
        "CI": {"wave": None},
        "SN": {"wave": None},
    }
    # the payer identifies inside the Wave app
    phone_optional_methods = frozenset({"wave"})

    def __init__(self, api_key: str, api_url: str, webhook_secret: str = "", timeout: int = 30):
        super().__init__(timeout)
        self.api_key = api_key
        self.api_url = api_url.rstrip("/")
        self.webhook_secret = webhook_secret

    def _auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    def format_customer_phone(self, phone: Optional[str], country_code: str) -> str:
        number = international_number(phone, country_code)
        return f"+{number}" if number else ""

    def initiate_payment(self, request: PaymentRequest) -> GatewayResponse:
        error_url = request.return_url or f"{request.callback_url}?status=error"
        success_url = request.return_url or f"{request.callback_url}?status=success"
        payload = {
            "amount": str(int(request.amount)),
            "currency": request.currency,
            "error_url": error_url,
            "success_url": success_url,
            "client_reference": str(request.transaction_id),
        }
        data = self._request("POST", f"{self.api_url}/checkout/sessions", payload)
        session_id = data.get("id")
        launch_url = data.get("wave_launch_url")
        if not session_id or not launch_url:
            raise GatewayError("Réponse Wave invalide: session de paiement absente")

        logger.info("Wave session %s created for tx %s", session_id, request.transaction_id)
        return GatewayResponse(
            reference=str(session_id),
            provider_status=data.get("checkout_status", "open"),
            payment_url=launch_url,
            raw=data,
        )

    def verify_signature(self, raw_body: bytes, headers) -> bool:
        """HMAC-SHA256 hex of the raw body, required once a secret is configured."""
        if not self.webhook_secret:
            return True
        signature = (headers or {}).get(SIGNATURE_HEADER, "")
        if not signature:
            return False
        return hmac.compare_digest(hmac_sha256_hex(self.webhook_secret, raw_body), signature)

    def parse_webhook(self, payload: Dict[str, Any], headers=None) -> Optional[WebhookEvent]:
        data = payload.get("data")
        if not isinstance(data, dict) or not data.get("id"):
            return None
        event_type = payload.get("type", "")
        provider_status = str(data.get("checkout_status") or "")
        if event_type == "checkout.session.completed":
            status = CHECKOUT_STATUS_MAP.get(provider_status)
        elif event_type == "checkout.session.payment_failed":
            status = "failed"
        else:
            logger.info("Ignoring Wave event type: %s", event_type)
            status = None
        error = None
        if status == "failed":
            last_error = data.get("last_payment_error") or {}
            error = last_error.get("message") or f"Paiement Wave {provider_status or 'échoué'}"
        return WebhookEvent(
            reference=str(data["id"]),
            status=status,
            provider_status=provider_status or event_type,
            error_message=error,
            raw=payload,
        )

    def fetch_status(self, reference: str) -> Optional[WebhookEvent]:
        data = self._request("GET", f"{self.api_url}/checkout/sessions/{reference}")
        provider_status = str(data.get("checkout_status") or "")
        status = CHECKOUT_STATUS_MAP.get(provider_status)
        return WebhookEvent(
            reference=str(reference),
            status=status,
            provider_status=provider_status,
            error_message=f"Paiement Wave {provider_status}" if status == "failed" else None,
            raw=data,
        )
