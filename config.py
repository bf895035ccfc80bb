"""Configuration loading: YAML file + environment-variable overrides."""

from __future__ import annotations

import logging
import os
import secrets

import yaml

from config_models import AppConfig, BillingConfig, FedapayConfig, PawapayConfig, WaveConfig

logger = logging.getLogger(__name__)


def _env_flag(name: str, default) -> bool:
    return os.environ.get(name, str(default)).lower() in ("true", "1", "yes")


def load_config():
    """Load configuration from *config.yaml* with env-var overrides.

    Environment variables take precedence over config.yaml values.
    Returns (AppConfig, BillingConfig, FedapayConfig, WaveConfig,
    PawapayConfig, database_uri).
    """
    config_path = os.environ.get("CONFIG_PATH", "config.yaml")
    raw: dict = {}
    if os.path.exists(config_path):
        with open(config_path, "r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}

    app_cfg = raw.get("app", {})
    billing_cfg = raw.get("billing", {})
    fedapay_cfg = raw.get("fedapay", {})
    wave_cfg = raw.get("wave", {})
    pawapay_cfg = raw.get("pawapay", {})
    db_cfg = raw.get("database", {})

    secret_key = os.environ.get("APP_SECRET_KEY", app_cfg.get("secret_key", ""))
    if not secret_key or secret_key == "change-me":
        secret_key = secrets.token_hex(32)
        logger.warning(
            "Using auto-generated secret key. Set APP_SECRET_KEY env var "
            "or app.secret_key in config.yaml for stable sessions across restarts."
        )

    fedapay_secret = os.environ.get("FEDAPAY_SECRET_KEY", fedapay_cfg.get("secret_key", ""))
    # Sandbox keys are prefixed, the API host follows the key
    default_fedapay_url = (
        "https://sandbox-api.fedapay.com/v1"
        if not fedapay_secret or fedapay_secret.startswith("sk_sandbox_")
        else "https://api.fedapay.com/v1"
    )

    pawapay_sandbox = _env_flag("PAWAPAY_SANDBOX", pawapay_cfg.get("sandbox", True))
    default_pawapay_url = (
        "https://api.sandbox.pawapay.io" if pawapay_sandbox else "https://api.pawapay.io"
    )

    return (
        AppConfig(
            name=app_cfg.get("name", "ImmoLedger"),
            secret_key=secret_key,
            base_currency=app_cfg.get("base_currency", "XOF"),
            default_country=os.environ.get(
                "DEFAULT_COUNTRY", app_cfg.get("default_country", "CI")
            ).upper(),
        ),
        BillingConfig(
            default_provider=os.environ.get(
                "BILLING_DEFAULT_PROVIDER", billing_cfg.get("default_provider", "fedapay")
            ),
            gateway_timeout_seconds=int(
                os.environ.get(
                    "BILLING_GATEWAY_TIMEOUT", billing_cfg.get("gateway_timeout_seconds", 30)
                )
            ),
            pending_expiry_minutes=int(
                os.environ.get(
                    "BILLING_PENDING_EXPIRY_MINUTES",
                    billing_cfg.get("pending_expiry_minutes", 60),
                )
            ),
            callback_base_url=os.environ.get(
                "BILLING_CALLBACK_BASE_URL", billing_cfg.get("callback_base_url", "")
            ).rstrip("/"),
        ),
        FedapayConfig(
            enabled=_env_flag("FEDAPAY_ENABLED", fedapay_cfg.get("enabled", False)),
            secret_key=fedapay_secret,
            webhook_secret=os.environ.get(
                "FEDAPAY_WEBHOOK_SECRET", fedapay_cfg.get("webhook_secret", "")
            ),
            api_url=os.environ.get(
                "FEDAPAY_API_URL", fedapay_cfg.get("api_url", default_fedapay_url)
            ),
        ),
        WaveConfig(
            enabled=_env_flag("WAVE_ENABLED", wave_cfg.get("enabled", False)),
            api_key=os.environ.get("WAVE_API_KEY", wave_cfg.get("api_key", "")),
            webhook_secret=os.environ.get(
                "WAVE_WEBHOOK_SECRET", wave_cfg.get("webhook_secret", "")
            ),
            api_url=os.environ.get(
                "WAVE_API_URL", wave_cfg.get("api_url", "https://api.wave.com/v1")
            ),
        ),
        PawapayConfig(
            enabled=_env_flag("PAWAPAY_ENABLED", pawapay_cfg.get("enabled", False)),
            api_token=os.environ.get("PAWAPAY_API_TOKEN", pawapay_cfg.get("api_token", "")),
            api_url=os.environ.get(
                "PAWAPAY_API_URL", pawapay_cfg.get("api_url", default_pawapay_url)
            ),
        ),
        os.environ.get("DATABASE_URI", db_cfg.get("uri", "sqlite:///ledger.db")),
    )


def enable_sqlite_fks(dbapi_conn, _connection_record):
    """Enable foreign key enforcement for SQLite connections.

    pysqlite opens transactions lazily on its own, which breaks SAVEPOINT.
    Its implicit BEGIN is disabled here and ``sqlite_begin`` emits one
    instead.
    """
    dbapi_conn.isolation_level = None
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def sqlite_begin(conn):
    """Emit our own BEGIN for SQLite (see ``enable_sqlite_fks``)."""
    conn.exec_driver_sql("BEGIN")
