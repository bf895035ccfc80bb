"""Payment gateway adapters and the factory that builds them from config."""

from __future__ import annotations

from flask import current_app

from services.errors import ValidationError
from services.gateways.base import (
    CURRENCY_BY_COUNTRY,
    GatewayAdapter,
    GatewayResponse,
    PaymentRequest,
    PushGateway,
    RedirectGateway,
    WebhookEvent,
)
from services.gateways.fedapay import FedapayGateway
from services.gateways.pawapay import PawapayGateway
from services.gateways.wave import WaveGateway

PROVIDERS = ("fedapay", "wave", "pawapay")


def get_gateway(name: str) -> GatewayAdapter:
    """Build the adapter for *name* from the app's provider configuration.

    Raises:
        ValidationError: unknown provider, or provider switched off.
    """
    timeout = current_app.config["BILLING"].gateway_timeout_seconds
    if name == "fedapay":
        cfg = current_app.config["FEDAPAY"]
        if cfg.enabled:
            return FedapayGateway(cfg.secret_key, cfg.api_url, cfg.webhook_secret, timeout)
    elif name == "wave":
        cfg = current_app.config["WAVE"]
        if cfg.enabled:
            return WaveGateway(cfg.api_key, cfg.api_url, cfg.webhook_secret, timeout)
    elif name == "pawapay":
        cfg = current_app.config["PAWAPAY"]
        if cfg.enabled:
            return PawapayGateway(cfg.api_token, cfg.api_url, timeout)
    else:
        raise ValidationError(f"Fournisseur de paiement inconnu: {name}")
    raise ValidationError(f"Fournisseur de paiement désactivé: {name}")


__all__ = [
    "CURRENCY_BY_COUNTRY",
    "GatewayAdapter",
    "GatewayResponse",
    "PaymentRequest",
    "PushGateway",
    "RedirectGateway",
    "WebhookEvent",
    "FedapayGateway",
    "PawapayGateway",
    "WaveGateway",
    "PROVIDERS",
    "get_gateway",
]
