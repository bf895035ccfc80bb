from dataclasses import dataclass


@dataclass
class AppConfig:
    name: str
    secret_key: str
    base_currency: str
    default_country: str


@dataclass
class BillingConfig:
    default_provider: str
    gateway_timeout_seconds: int
    pending_expiry_minutes: int
    callback_base_url: str


@dataclass
class FedapayConfig:
    enabled: bool
    secret_key: str
    webhook_secret: str
    api_url: str


@dataclass
class WaveConfig:
    enabled: bool
    api_key: str
    webhook_secret: str
    api_url: str


@dataclass
class PawapayConfig:
    enabled: bool
    api_token: str
    api_url: str
