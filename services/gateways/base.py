"""Common contract for payment gateways.

Two flows exist:

* ``redirect``: the provider hosts a checkout page; we hand its URL back
  to the caller and learn the outcome from the webhook (or a status poll).
* ``push``: the provider sends a payment prompt straight to the payer's
  phone; only the webhook tells us how it ended.

Adapters differ in phone formats, corridor codes and payload shapes.  What
they share lives here: corridor lookup, currency per country, MSISDN
normalization, description truncation and the HTTP plumbing.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional

import requests
from requests.exceptions import RequestException

from services.errors import GatewayError, UnsupportedCorridorError

logger = logging.getLogger(__name__)


CURRENCY_BY_COUNTRY: Dict[str, str] = {
    "CI": "XOF",
    "SN": "XOF",
    "BF": "XOF",
    "BJ": "XOF",
    "CM": "XAF",
    "GH": "GHS",
    "UG": "UGX",
    "TZ": "TZS",
    "ZM": "ZMW",
    "KE": "KES",
}


@dataclass(frozen=True)
class DialPlan:
    """National numbering rules for one country.

    ``lengths`` are the accepted national significant number lengths.
    ``trunk_prefix`` is dropped when dialled nationally (Ghana ``0244…``).
    ``zero_prefixed_length`` marks plans where numbers of that length keep a
    significant leading ``0`` (Côte d'Ivoire since 2021); a number one digit
    short of it gets the ``0`` restored.
    """
    dial_code: str
    lengths: tuple
    trunk_prefix: Optional[str] = None
    zero_prefixed_length: Optional[int] = None


DIAL_PLANS: Dict[str, DialPlan] = {
    "CI": DialPlan("225", (10, 8), zero_prefixed_length=10),
    "SN": DialPlan("221", (9,)),
    "BF": DialPlan("226", (8,)),
    "BJ": DialPlan("229", (10, 8), zero_prefixed_length=10),
    "CM": DialPlan("237", (9,)),
    "GH": DialPlan("233", (9,), trunk_prefix="0"),
    "UG": DialPlan("256", (9,), trunk_prefix="0"),
    "TZ": DialPlan("255", (9,), trunk_prefix="0"),
    "ZM": DialPlan("260", (9,), trunk_prefix="0"),
    "KE": DialPlan("254", (9,), trunk_prefix="0"),
}


def digits_only(phone: Optional[str]) -> str:
    return "".join(ch for ch in (phone or "") if ch.isdigit())


def national_number(phone: Optional[str], country_code: str) -> str:
    """Return the national significant number, or "" when it cannot be trusted.

    Never guesses: anything that does not land on an accepted length for the
    country is rejected.
    """
    plan = DIAL_PLANS.get((country_code or "").upper())
    digits = digits_only(phone)
    if plan is None or not digits:
        return ""

    valid = set(plan.lengths)
    if digits.startswith("00" + plan.dial_code):
        digits = digits[2:]
    if digits.startswith(plan.dial_code) and len(digits) - len(plan.dial_code) in valid | {
        n - 1 for n in valid
    }:
        digits = digits[len(plan.dial_code):]

    if plan.trunk_prefix and digits.startswith(plan.trunk_prefix) and len(digits) - 1 in valid:
        digits = digits[len(plan.trunk_prefix):]

    if plan.zero_prefixed_length:
        if len(digits) == plan.zero_prefixed_length - 1 and not digits.startswith("0"):
            digits = "0" + digits
        if len(digits) == plan.zero_prefixed_length and not digits.startswith("0"):
            return ""

    if len(digits) not in valid:
        logger.warning(
            "Rejected %s phone number: %s digits (expected %s)",
            country_code, len(digits), sorted(valid),
        )
        return ""
    return digits


def international_number(phone: Optional[str], country_code: str) -> str:
    """Country code plus national number, digits only (``2250707123456``)."""
    number = national_number(phone, country_code)
    if not number:
        return ""
    return DIAL_PLANS[country_code.upper()].dial_code + number


def hmac_sha256_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------

@dataclass
class PaymentRequest:
    """Everything an adapter needs to start collecting one payment."""
    transaction_id: int
    amount: Decimal
    currency: str
    country_code: str
    payment_method: str
    customer_phone: str
    description: str
    provider_code: Optional[str] = None
    reference: Optional[str] = None
    customer_name: str = ""
    customer_email: str = ""
    callback_url: str = ""
    return_url: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GatewayResponse:
    reference: str
    provider_status: str = ""
    payment_url: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class WebhookEvent:
    """A provider callback reduced to what the reconciler needs.

    ``status`` is one of ``completed``, ``failed``, ``refunded``, ``pending``,
    or ``None`` when the event is to be acknowledged and ignored.
    """
    reference: str
    status: Optional[str]
    provider_status: str = ""
    error_message: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Adapters
# ---------------------------------------------------------------------------

class GatewayAdapter(ABC):
    """Uniform contract over a payment provider."""

    name: str = ""
    flow: str = ""
    description_limit: int = 255
    # country -> payment method -> provider code (None: provider picks)
    corridors: Dict[str, Dict[str, Optional[str]]] = {}
    phone_optional_methods: frozenset = frozenset()

    def __init__(self, timeout: int = 30):
        self.timeout = timeout

    # -- corridor & formatting ------------------------------------------------

    def resolve_provider_code(self, country_code: str, payment_method: str) -> Optional[str]:
        """Map ``(country, method)`` to the provider's correspondent/mode code.

        Raises:
            UnsupportedCorridorError: the pair is not in the lookup table.
        """
        methods = self.corridors.get((country_code or "").upper())
        if methods is None or payment_method not in methods:
            raise UnsupportedCorridorError(self.name, country_code, payment_method)
        return methods[payment_method]

    def currency_for(self, country_code: str) -> str:
        currency = CURRENCY_BY_COUNTRY.get((country_code or "").upper())
        if currency is None:
            raise UnsupportedCorridorError(self.name, country_code, "*")
        return currency

    def truncate_description(self, text: str) -> str:
        return (text or "")[: self.description_limit]

    def requires_phone(self, payment_method: str) -> bool:
        return payment_method not in self.phone_optional_methods

    def new_reference(self) -> Optional[str]:
        """Reference we choose ourselves before calling out; ``None`` if the provider assigns it."""
        return None

    @abstractmethod
    def format_customer_phone(self, phone: Optional[str], country_code: str) -> str:
        """Provider-shaped phone number, or "" when the input is not valid."""

    # -- payment lifecycle ------------------------------------------------------

    @abstractmethod
    def initiate_payment(self, request: PaymentRequest) -> GatewayResponse:
        """Create the payment at the provider.  Raises ``GatewayError``."""

    @abstractmethod
    def parse_webhook(self, payload: Dict[str, Any], headers=None) -> Optional[WebhookEvent]:
        """Turn a callback body into a ``WebhookEvent``; ``None`` if it is not ours."""

    def verify_signature(self, raw_body: bytes, headers) -> bool:
        return True

    def fetch_status(self, reference: str) -> Optional[WebhookEvent]:
        """Ask the provider for the current state; ``None`` if unsupported."""
        return None

    # -- HTTP -------------------------------------------------------------------

    def _auth_headers(self) -> Dict[str, str]:
        return {}

    def _request(self, method: str, url: str, payload: Optional[dict] = None) -> Any:
        headers = {"Content-Type": "application/json", **self._auth_headers()}
        try:
            response = requests.request(
                method, url, json=payload, headers=headers, timeout=self.timeout
            )
        except requests.exceptions.Timeout:
            logger.error("%s %s timed out after %ss", self.name, url, self.timeout)
            raise GatewayError(f"Délai dépassé en contactant {self.name}")
        except RequestException as e:
            logger.error("%s request error on %s: %s", self.name, url, e)
            raise GatewayError(f"Impossible de contacter {self.name}: {e}")

        try:
            data = response.json()
        except ValueError:
            data = {}
        logger.info("%s %s -> HTTP %s", self.name, url, response.status_code)

        if not response.ok:
            message = self._error_message(data) or f"HTTP {response.status_code}"
            logger.error("%s error: %s", self.name, message)
            raise GatewayError(f"Erreur {self.name}: {message}")
        return data

    @staticmethod
    def _error_message(data: Any) -> str:
        if not isinstance(data, dict):
            return ""
        error = data.get("error")
        if isinstance(error, dict):
            error = error.get("message")
        return str(data.get("message") or error or "")


class RedirectGateway(GatewayAdapter):
    """Provider-hosted checkout page; the caller must open ``payment_url``."""

    flow = "redirect"


class PushGateway(GatewayAdapter):
    """Prompt pushed to the payer's phone; confirmation arrives by webhook only."""

    flow = "push"
    description_limit = 22
