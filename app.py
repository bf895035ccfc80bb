"""Application factory: clean entry point for the Flask application."""

from __future__ import annotations

import datetime
import logging
import os
from decimal import Decimal

import click
from dotenv import load_dotenv
from flask import Flask, jsonify
from sqlalchemy import event
from werkzeug.exceptions import HTTPException

from config import enable_sqlite_fks, load_config, sqlite_begin
from extensions import csrf, db, limiter
from models import (
    Agency,
    AgencySubscription,
    AuditLog,
    Installment,
    PaymentTransaction,
    Sale,
    SubscriptionPlan,
)
from routes import register_blueprints
from services.errors import LedgerError
from services.tenant import load_current_agency

load_dotenv()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


DEFAULT_PLANS = [
    {
        "slug": "free", "name": "Gratuit", "sort_order": 0,
        "price_monthly": Decimal("0"), "price_yearly": Decimal("0"), "price_lifetime": None,
        "max_properties": 5, "max_tenants": 10, "max_users": 1,
    },
    {
        "slug": "basic", "name": "Essentiel", "sort_order": 1,
        "price_monthly": Decimal("15000"), "price_yearly": Decimal("150000"),
        "price_lifetime": None,
        "max_properties": 50, "max_tenants": 100, "max_users": 3,
    },
    {
        "slug": "pro", "name": "Professionnel", "sort_order": 2,
        "price_monthly": Decimal("35000"), "price_yearly": Decimal("350000"),
        "price_lifetime": Decimal("1000000"),
        "max_properties": 0, "max_tenants": 0, "max_users": 0,
    },
]


def _seed_plans(currency: str):
    """Insert the default plans on an empty catalogue."""
    if SubscriptionPlan.query.first() is not None:
        return
    for values in DEFAULT_PLANS:
        db.session.add(SubscriptionPlan(currency=currency, is_active=True, **values))
    db.session.commit()
    logger.info("Seeded %d default subscription plans", len(DEFAULT_PLANS))


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app():
    """Create and configure the Flask application."""
    app_cfg, billing_cfg, fedapay_cfg, wave_cfg, pawapay_cfg, db_uri = load_config()

    app = Flask(__name__)
    app.config["SQLALCHEMY_DATABASE_URI"] = db_uri
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.secret_key = app_cfg.secret_key
    app.config["APP"] = app_cfg
    app.config["BILLING"] = billing_cfg
    app.config["FEDAPAY"] = fedapay_cfg
    app.config["WAVE"] = wave_cfg
    app.config["PAWAPAY"] = pawapay_cfg
    app.config["RATELIMIT_ENABLED"] = os.environ.get("RATELIMIT_ENABLED", "true").lower() in (
        "true", "1", "yes",
    )

    # Initialize extensions
    csrf.init_app(app)
    limiter.init_app(app)
    db.init_app(app)

    # SQLite: foreign keys on, and real SAVEPOINT support
    if db_uri.startswith("sqlite"):
        with app.app_context():
            event.listen(db.engine, "connect", enable_sqlite_fks)
            event.listen(db.engine, "begin", sqlite_begin)

    with app.app_context():
        db.create_all()
        _seed_plans(app_cfg.base_currency)

    register_blueprints(app)

    # ------------------------------------------------------------------
    # Request hooks
    # ------------------------------------------------------------------

    app.before_request(load_current_agency)

    @app.after_request
    def set_security_headers(response):
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        if os.environ.get("FLASK_ENV") == "production":
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response

    # ------------------------------------------------------------------
    # Error handlers
    # ------------------------------------------------------------------

    @app.errorhandler(LedgerError)
    def ledger_error(error):
        db.session.rollback()
        if error.http_status >= 500:
            logger.error("%s: %s", type(error).__name__, error.message)
        else:
            logger.info("%s: %s", type(error).__name__, error.message)
        body = {"success": False, "error": error.message}
        if error.transaction_id is not None:
            body["transaction_id"] = error.transaction_id
        return jsonify(body), error.http_status

    @app.errorhandler(HTTPException)
    def http_error(error):
        messages = {
            403: "Agence non identifiée.",
            404: "Ressource introuvable.",
            429: "Trop de tentatives. Réessayez plus tard.",
        }
        message = messages.get(error.code, error.description)
        return jsonify({"success": False, "error": message}), error.code

    @app.errorhandler(500)
    def server_error(_error):
        db.session.rollback()
        return jsonify({"success": False, "error": "Erreur interne du serveur."}), 500

    # ------------------------------------------------------------------
    # CLI commands (run from cron)
    # ------------------------------------------------------------------

    @app.cli.command("expire-pending")
    @click.option("--minutes", type=int, default=None,
                  help="Age after which pending transactions fail (default: config).")
    def expire_pending_command(minutes):
        """Mark stale pending payment transactions as failed."""
        from services.checkout import expire_stale_transactions
        max_age = datetime.timedelta(minutes=minutes) if minutes else None
        count = expire_stale_transactions(max_age)
        click.echo(f"{count} transaction(s) expired.")

    @app.cli.command("expire-subscriptions")
    def expire_subscriptions_command():
        """Flag subscriptions whose period has ended as expired."""
        from services.billing import expire_lapsed_subscriptions
        count = expire_lapsed_subscriptions()
        click.echo(f"{count} subscription(s) expired.")

    return app


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app = create_app()
    debug_mode = os.environ.get("FLASK_DEBUG", "false").lower() in (
        "true",
        "1",
        "yes",
    )
    host = os.environ.get("FLASK_HOST", "127.0.0.1")
    port = int(os.environ.get("FLASK_PORT", 5000))
    logger.info("Starting application on %s:%s (debug=%s)", host, port, debug_mode)
    app.run(host=host, port=port, debug=debug_mode)
