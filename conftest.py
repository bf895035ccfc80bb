"""Shared pytest fixtures: in-memory app, test client and seed data."""

import os

import pytest

os.environ["DATABASE_URI"] = "sqlite://"  # In-memory database for tests
os.environ["APP_SECRET_KEY"] = "test-secret-key"
os.environ["CONFIG_PATH"] = "config.test-absent.yaml"
os.environ["RATELIMIT_ENABLED"] = "false"
os.environ["BILLING_CALLBACK_BASE_URL"] = "https://ledger.example.ci"
os.environ["FEDAPAY_ENABLED"] = "true"
os.environ["FEDAPAY_SECRET_KEY"] = "sk_sandbox_test"
os.environ["FEDAPAY_WEBHOOK_SECRET"] = ""
os.environ["WAVE_ENABLED"] = "true"
os.environ["WAVE_API_KEY"] = "wave_test_key"
os.environ["WAVE_WEBHOOK_SECRET"] = "wave-secret"
os.environ["PAWAPAY_ENABLED"] = "true"
os.environ["PAWAPAY_API_TOKEN"] = "pawapay-test-token"

from app import Agency, SubscriptionPlan, create_app, db  # noqa: E402


@pytest.fixture
def app():
    """Create application for testing."""
    application = create_app()
    application.config["TESTING"] = True
    yield application


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture
def ctx(app):
    """Push an app context for service-level tests (do not mix with ``client``)."""
    with app.app_context():
        yield app


@pytest.fixture
def agency_id(app):
    with app.app_context():
        agency = Agency(
            name="Immo Plateau",
            email="contact@immo-plateau.ci",
            phone="07 07 12 34 56",
            country_code="CI",
        )
        db.session.add(agency)
        db.session.commit()
        return agency.id


@pytest.fixture
def other_agency_id(app):
    with app.app_context():
        agency = Agency(name="Cocody Habitat", phone="0505050505", country_code="CI")
        db.session.add(agency)
        db.session.commit()
        return agency.id


@pytest.fixture
def plans(app):
    """Map of seeded plan slug -> id."""
    with app.app_context():
        return {p.slug: p.id for p in SubscriptionPlan.query.all()}


def agency_headers(agency_id):
    return {"X-Agency-Id": str(agency_id)}
