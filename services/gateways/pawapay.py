"""PawaPay mobile-money deposits (push flow, multi-country)."""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Optional

from services.errors import GatewayError
from services.gateways.base import (
    GatewayResponse,
    PaymentRequest,
    PushGateway,
    WebhookEvent,
    international_number,
)

logger = logging.getLogger(__name__)

# Correspondent codes, see https://docs.pawapay.io/countries_and_correspondents
CORRESPONDENTS: Dict[str, Dict[str, str]] = {
    "CI": {"mtn_money": "MTN_MOMO_CIV", "orange_money": "ORANGE_CIV", "moov": "MOOV_CIV"},
    "SN": {"orange_money": "ORANGE_SEN", "mtn_money": "MTN_MOMO_SEN"},
    "BF": {"orange_money": "ORANGE_BFA", "moov": "MOOV_BFA"},
    "BJ": {"mtn_money": "MTN_MOMO_BEN", "moov": "MOOV_BEN"},
    "CM": {"mtn_money": "MTN_MOMO_CMR", "orange_money": "ORANGE_CMR"},
    "GH": {"mtn_money": "MTN_MOMO_GHA", "airtel": "AIRTELTIGO_GHA"},
    "UG": {"mtn_money": "MTN_MOMO_UGA", "airtel": "AIRTEL_UGA"},
    "TZ": {"airtel": "AIRTEL_TZA"},
    "ZM": {"mtn_money": "MTN_MOMO_ZMB", "airtel": "AIRTEL_ZMB"},
    "KE": {"mtn_money": "MPESA_KEN"},
}

STATUS_MAP = {
    "COMPLETED": "completed",
    "FAILED": "failed",
    "REJECTED": "failed",
    "SUBMITTED": "pending",
    "ACCEPTED": "pending",
    "ENQUEUED": "pending",
    # DUPLICATE_IGNORED is acknowledged without action
}


def _failure_message(data: Dict[str, Any]) -> Optional[str]:
    reason = data.get("failureReason") or data.get("rejectionReason")
    if not isinstance(reason, dict):
        return None
    code = reason.get("failureCode") or reason.get("rejectionCode") or ""
    message = reason.get("failureMessage") or reason.get("rejectionMessage") or ""
    return f"{code}: {message}".strip(": ") or None


class PawapayGateway(PushGateway):
    name = "pawapay"
    corridors = CORRESPONDENTS

    def __init__(self, api_token: str, api_url: str, timeout: int = 30):
        super().__init__(timeout)
        self.api_token = api_token
        self.api_url = api_url.rstrip("/")

    def _auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_token}"}

    def format_customer_phone(self, phone: Optional[str], country_code: str) -> str:
        """MSISDN: country code and national number, digits only."""
        return international_number(phone, country_code)

    def new_reference(self) -> Optional[str]:
        return str(uuid.uuid4())

    def initiate_payment(self, request: PaymentRequest) -> GatewayResponse:
        deposit_id = request.reference or self.new_reference()
        payload = {
            "depositId": deposit_id,
            "amount": str(int(request.amount)),
            "currency": request.currency,
            "country": request.country_code,
            "correspondent": request.provider_code,
            "payer": {"type": "MSISDN", "address": {"value": request.customer_phone}},
            "statementDescription": self.truncate_description(request.description),
            "metadata": [
                {"fieldName": key, "fieldValue": str(value)}
                for key, value in {"transaction_id": request.transaction_id, **request.metadata}.items()
            ],
        }
        data = self._request("POST", f"{self.api_url}/deposits", payload)
        provider_status = str(data.get("status") or "")
        if provider_status == "REJECTED":
            raise GatewayError(
                f"Dépôt PawaPay rejeté: {_failure_message(data) or 'raison inconnue'}"
            )

        logger.info(
            "PawaPay deposit %s %s for tx %s",
            deposit_id, provider_status or "SUBMITTED", request.transaction_id,
        )
        return GatewayResponse(
            reference=deposit_id,
            provider_status=provider_status or "SUBMITTED",
            raw=data,
        )

    def _event_from(self, data: Dict[str, Any], reference: str) -> WebhookEvent:
        provider_status = str(data.get("status") or "")
        status = STATUS_MAP.get(provider_status)
        error = None
        if status == "failed":
            error = _failure_message(data) or f"Dépôt PawaPay {provider_status}"
        return WebhookEvent(
            reference=reference,
            status=status,
            provider_status=provider_status,
            error_message=error,
            raw=data,
        )

    def parse_webhook(self, payload: Dict[str, Any], headers=None) -> Optional[WebhookEvent]:
        deposit_id = payload.get("depositId")
        if not deposit_id:
            return None
        return self._event_from(payload, str(deposit_id))

    def fetch_status(self, reference: str) -> Optional[WebhookEvent]:
        data = self._request("GET", f"{self.api_url}/deposits/{reference}")
        # the deposits endpoint answers with a list
        if isinstance(data, list):
            data = data[0] if data else {}
        if not data:
            return None
        return self._event_from(data, str(reference))
