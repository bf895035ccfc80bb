"""FedaPay hosted checkout (Côte d'Ivoire)."""

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

SIGNATURE_HEADER = "X-FEDAPAY-SIGNATURE"

STATUS_MAP = {
    "approved": "completed",
    "transferred": "completed",
    "declined": "failed",
    "canceled": "failed",
    "cancelled": "failed",
    "expired": "failed",
    "refunded": "refunded",
    "pending": "pending",
    "created": "pending",
}


class FedapayGateway(RedirectGateway):
    name = "fedapay"
    corridors = {
        "CI": {
            "orange_money": "orange_ci",
            "mtn_money": "mtn_open_ci",
            "wave": "wave_ci",
            "moov": "moov_ci",
            "card": None,
        },
    }
    phone_optional_methods = frozenset({"card"})

    def __init__(self, secret_key: str, api_url: str, webhook_secret: str = "", timeout: int = 30):
        super().__init__(timeout)
        self.secret_key = secret_key
        self.api_url = api_url.rstrip("/")
        self.webhook_secret = webhook_secret

    def _auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.secret_key}"}

    def format_customer_phone(self, phone: Optional[str], country_code: str) -> str:
        """``+225`` followed by the 10-digit (or legacy 8-digit) number."""
        if (country_code or "").upper() != "CI":
            return ""
        number = international_number(phone, "CI")
        return f"+{number}" if number else ""

    def initiate_payment(self, request: PaymentRequest) -> GatewayResponse:
        firstname, _, lastname = (request.customer_name or "").partition(" ")
        customer: Dict[str, Any] = {
            "firstname": firstname or request.customer_name,
            "lastname": lastname,
            "email": request.customer_email,
        }
        if request.customer_phone:
            customer["phone_number"] = {
                "number": request.customer_phone,
                "country": request.country_code.lower(),
            }
        payload: Dict[str, Any] = {
            "description": self.truncate_description(request.description),
            "amount": int(request.amount),
            "currency": {"iso": request.currency},
            "callback_url": request.return_url or request.callback_url,
            "customer": customer,
            "custom_metadata": {"transaction_id": request.transaction_id, **request.metadata},
        }
        if request.provider_code:
            payload["mode"] = request.provider_code

        data = self._request("POST", f"{self.api_url}/transactions", payload)
        transaction = data.get("v1/transaction") or {}
        reference = transaction.get("id")
        if not reference:
            raise GatewayError("Réponse FedaPay invalide: transaction absente")

        payment_url = transaction.get("payment_url")
        if not payment_url:
            token = self._request("POST", f"{self.api_url}/transactions/{reference}/token")
            payment_url = token.get("url")
        if not payment_url:
            raise GatewayError("FedaPay n'a pas renvoyé d'URL de paiement")

        logger.info("FedaPay transaction %s created for tx %s", reference, request.transaction_id)
        return GatewayResponse(
            reference=str(reference),
            provider_status=transaction.get("status", "pending"),
            payment_url=payment_url,
            raw=transaction,
        )

    def verify_signature(self, raw_body: bytes, headers) -> bool:
        """Check ``X-FEDAPAY-SIGNATURE: t=<ts>,s=<hmac>`` when a secret is set."""
        if not self.webhook_secret:
            return True
        header = (headers or {}).get(SIGNATURE_HEADER, "")
        parts = dict(
            item.split("=", 1) for item in header.split(",") if "=" in item
        )
        timestamp, signature = parts.get("t"), parts.get("s")
        if not timestamp or not signature:
            return False
        expected = hmac_sha256_hex(self.webhook_secret, timestamp.encode() + b"." + raw_body)
        return hmac.compare_digest(expected, signature)

    def parse_webhook(self, payload: Dict[str, Any], headers=None) -> Optional[WebhookEvent]:
        entity = payload.get("entity")
        if not isinstance(entity, dict) or entity.get("id") is None:
            return None
        if entity.get("name", "transaction") != "transaction":
            return None
        provider_status = str(entity.get("status") or "")
        status = STATUS_MAP.get(provider_status)
        error = None
        if status == "failed":
            error = f"Paiement FedaPay {provider_status}"
        return WebhookEvent(
            reference=str(entity["id"]),
            status=status,
            provider_status=provider_status,
            error_message=error,
            raw=payload,
        )

    def fetch_status(self, reference: str) -> Optional[WebhookEvent]:
        data = self._request("GET", f"{self.api_url}/transactions/{reference}")
        transaction = data.get("v1/transaction") or {}
        provider_status = str(transaction.get("status") or "")
        status = STATUS_MAP.get(provider_status)
        return WebhookEvent(
            reference=str(reference),
            status=status,
            provider_status=provider_status,
            error_message=f"Paiement FedaPay {provider_status}" if status == "failed" else None,
            raw=transaction,
        )
