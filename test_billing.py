"""Tests for subscription checkout, installment checkout and the subscription store."""

import datetime
from decimal import Decimal
from unittest.mock import Mock, patch

import pytest
import requests

from app import AgencySubscription, Installment, PaymentTransaction, SubscriptionPlan, db
from conftest import agency_headers
from services.billing import (
    expire_lapsed_subscriptions,
    get_agency_subscription,
    period_end,
    upsert_active_subscription,
)
from services.checkout import expire_stale_transactions
from services.installments import create_sale, pay_installment
from utils import as_utc, utc_now

HTTP = "services.gateways.base.requests.request"


def _response(status=200, payload=None):
    resp = Mock()
    resp.status_code = status
    resp.ok = status < 400
    resp.json.return_value = payload or {}
    return resp


def _fedapay_ok(reference=9876):
    return _response(200, {"v1/transaction": {
        "id": reference, "status": "pending",
        "payment_url": f"https://checkout.fedapay.com/{reference}",
    }})


def _subscribe(app, agency_id, plan_id, cycle="monthly", days_left=10):
    with app.app_context():
        now = utc_now()
        sub = AgencySubscription(
            agency_id=agency_id,
            plan_id=plan_id,
            status="active",
            billing_cycle=cycle,
            starts_at=now - datetime.timedelta(days=20),
            ends_at=None if cycle == "lifetime" else now + datetime.timedelta(days=days_left),
        )
        db.session.add(sub)
        db.session.commit()
        return sub.id


def _checkout(client, agency_id, **body):
    payload = {"billing_cycle": "monthly", "payment_method": "orange_money"}
    payload.update(body)
    return client.post("/api/billing/checkout", json=payload, headers=agency_headers(agency_id))


class TestSubscriptionCheckout:
    def test_free_plan_activates_without_transaction(self, client, app, agency_id, plans):
        with patch(HTTP) as call:
            resp = _checkout(client, agency_id, plan_id=plans["free"])
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["success"] is True
        assert data["status"] == "active"
        assert data["transaction_id"] is None
        call.assert_not_called()
        with app.app_context():
            sub = AgencySubscription.query.filter_by(agency_id=agency_id).one()
            assert sub.status == "active"
            assert sub.plan_id == plans["free"]
            assert PaymentTransaction.query.count() == 0

    def test_free_plan_ignores_payment_corridor(self, client, app, agency_id, plans):
        # airtel is not served by pawapay in CI, but nothing is collected
        with patch(HTTP) as call:
            resp = _checkout(client, agency_id, plan_id=plans["free"], provider="pawapay",
                             payment_method="airtel")
        assert resp.status_code == 200
        assert resp.get_json()["status"] == "active"
        call.assert_not_called()
        with app.app_context():
            assert get_agency_subscription(agency_id).plan_id == plans["free"]

    def test_paid_plan_returns_payment_url(self, client, app, agency_id, plans):
        with patch(HTTP, return_value=_fedapay_ok()) as call:
            resp = _checkout(client, agency_id, plan_id=plans["basic"])
        data = resp.get_json()
        assert resp.status_code == 200
        assert data["payment_url"] == "https://checkout.fedapay.com/9876"
        payload = call.call_args.kwargs["json"]
        assert payload["callback_url"] == "https://ledger.example.ci/api/billing/webhooks/fedapay"
        with app.app_context():
            tx = db.session.get(PaymentTransaction, data["transaction_id"])
            assert tx.status == "pending"
            assert tx.amount == Decimal("15000")
            assert tx.currency == "XOF"
            assert tx.provider == "fedapay"
            assert tx.provider_reference == "9876"
            assert tx.customer_phone == "+2250707123456"
            # nothing activates before the webhook
            assert AgencySubscription.query.filter_by(agency_id=agency_id).first() is None

    def test_gateway_timeout_marks_transaction_failed(self, client, app, agency_id, plans):
        with patch(HTTP, side_effect=requests.exceptions.Timeout("slow")):
            resp = _checkout(client, agency_id, plan_id=plans["basic"])
        assert resp.status_code == 502
        data = resp.get_json()
        assert data["success"] is False
        with app.app_context():
            tx = db.session.get(PaymentTransaction, data["transaction_id"])
            assert tx.status == "failed"
            assert "fedapay" in tx.error_message

    def test_unsupported_corridor_writes_nothing(self, client, app, agency_id, plans):
        with patch(HTTP) as call:
            resp = _checkout(
                client, agency_id, plan_id=plans["basic"], provider="pawapay", payment_method="airtel"
            )
        assert resp.status_code == 400
        assert "airtel" in resp.get_json()["error"]
        call.assert_not_called()
        with app.app_context():
            assert PaymentTransaction.query.count() == 0

    def test_invalid_phone_writes_nothing(self, client, app, agency_id, plans):
        with patch(HTTP) as call:
            resp = _checkout(client, agency_id, plan_id=plans["basic"], customer_phone="12 34")
        assert resp.status_code == 422
        call.assert_not_called()
        with app.app_context():
            assert PaymentTransaction.query.count() == 0

    @pytest.mark.parametrize(
        "overrides",
        [
            {"billing_cycle": "weekly"},
            {"payment_method": "bitcoin"},
            {"provider": "kkiapay"},
            {"plan_id": 9999},
            {"billing_cycle": "lifetime"},  # basic has no lifetime price
        ],
    )
    def test_rejected_requests(self, client, app, agency_id, plans, overrides):
        body = {"plan_id": plans["basic"]}
        body.update(overrides)
        resp = _checkout(client, agency_id, **body)
        assert resp.status_code == 422
        with app.app_context():
            assert PaymentTransaction.query.count() == 0

    def test_inactive_plan_rejected(self, client, app, agency_id, plans):
        with app.app_context():
            db.session.get(SubscriptionPlan, plans["basic"]).is_active = False
            db.session.commit()
        resp = _checkout(client, agency_id, plan_id=plans["basic"])
        assert resp.status_code == 422

    def test_push_flow_awaits_confirmation(self, client, app, agency_id, plans):
        with patch(HTTP, return_value=_response(200, {"status": "ACCEPTED"})) as call:
            resp = _checkout(client, agency_id, plan_id=plans["pro"], provider="pawapay",
                             payment_method="mtn_money")
        data = resp.get_json()
        assert data["status"] == "awaiting_confirmation"
        assert "payment_url" not in data
        payload = call.call_args.kwargs["json"]
        assert payload["correspondent"] == "MTN_MOMO_CIV"
        assert payload["payer"]["address"]["value"] == "2250707123456"
        with app.app_context():
            tx = db.session.get(PaymentTransaction, data["transaction_id"])
            assert tx.provider_reference == payload["depositId"]
            assert tx.provider_status == "ACCEPTED"

    def test_currency_mismatch_rejected(self, client, agency_id, plans):
        resp = _checkout(client, agency_id, plan_id=plans["basic"], provider="pawapay",
                         country_code="GH", payment_method="mtn_money", customer_phone="0244123456")
        assert resp.status_code == 422


class TestProratedCheckout:
    def test_downgrade_swaps_with_credit(self, client, app, agency_id, plans):
        _subscribe(app, agency_id, plans["pro"], days_left=10)
        with app.app_context():
            ends_before = get_agency_subscription(agency_id).ends_at
        with patch(HTTP) as call:
            resp = _checkout(client, agency_id, plan_id=plans["basic"], proration=True)
        data = resp.get_json()
        assert resp.status_code == 200
        assert data["status"] == "completed"
        assert data["credit_amount"] == "6667"
        assert "crédit" in data["message"]
        call.assert_not_called()
        with app.app_context():
            sub = get_agency_subscription(agency_id)
            assert sub.plan_id == plans["basic"]
            assert sub.ends_at == ends_before
            tx = db.session.get(PaymentTransaction, data["transaction_id"])
            assert tx.amount == 0
            assert tx.status == "completed"
            assert tx.meta["previous_plan_id"] == plans["pro"]
            assert tx.meta["credit_amount"] == "6667"
            assert tx.meta["remaining_days"] == 10

    def test_upgrade_charges_difference(self, client, app, agency_id, plans):
        _subscribe(app, agency_id, plans["basic"], days_left=15)
        with patch(HTTP, return_value=_fedapay_ok(555)) as call:
            resp = _checkout(client, agency_id, plan_id=plans["pro"], proration=True)
        assert resp.status_code == 200
        assert call.call_args.kwargs["json"]["amount"] == 10000
        assert "prorata 15 jours" in call.call_args.kwargs["json"]["description"]
        with app.app_context():
            tx = db.session.get(PaymentTransaction, resp.get_json()["transaction_id"])
            assert tx.amount == Decimal("10000")
            assert tx.meta["proration"] is True
            # plan only changes once the payment is confirmed
            assert get_agency_subscription(agency_id).plan_id == plans["basic"]

    def test_client_amount_is_not_trusted(self, client, app, agency_id, plans):
        _subscribe(app, agency_id, plans["basic"], days_left=15)
        with patch(HTTP, return_value=_fedapay_ok(556)) as call:
            _checkout(client, agency_id, plan_id=plans["pro"], proration={"amount_due": -99999})
        assert call.call_args.kwargs["json"]["amount"] == 10000

    def test_leaving_lifetime_charges_full_price(self, client, app, agency_id, plans):
        _subscribe(app, agency_id, plans["pro"], cycle="lifetime")
        with patch(HTTP, return_value=_fedapay_ok(557)) as call:
            resp = _checkout(client, agency_id, plan_id=plans["basic"], proration=True)
        assert resp.status_code == 200
        assert call.call_args.kwargs["json"]["amount"] == 15000
        with app.app_context():
            tx = db.session.get(PaymentTransaction, resp.get_json()["transaction_id"])
            assert tx.amount == Decimal("15000")
            assert tx.status == "pending"
            assert "proration" not in tx.meta
            assert tx.meta["previous_plan_id"] == plans["pro"]


class TestInstallmentCheckout:
    def _sale(self, app, agency_id):
        with app.app_context():
            sale = create_sale(
                agency_id,
                asset_ref="Lot 3 - Grand-Bassam",
                buyer_name="Yao Serge",
                buyer_phone="05 05 05 05 05",
                total_price=600000,
                payment_type="installment",
                sale_date=datetime.date(2026, 1, 10),
                down_payment=0,
                monthly_payment=200000,
                total_installments=3,
            )
            return [i.id for i in sale.installments]

    def test_checkout_one_installment(self, client, app, agency_id):
        first_id = self._sale(app, agency_id)[0]
        with patch(HTTP, return_value=_fedapay_ok(777)) as call:
            resp = client.post(
                f"/api/installments/{first_id}/checkout",
                json={"payment_method": "mtn_money"},
                headers=agency_headers(agency_id),
            )
        data = resp.get_json()
        assert resp.status_code == 200
        assert data["payment_url"].endswith("/777")
        payload = call.call_args.kwargs["json"]
        assert payload["mode"] == "mtn_open_ci"
        assert payload["customer"]["phone_number"]["number"] == "+2250505050505"
        with app.app_context():
            tx = db.session.get(PaymentTransaction, data["transaction_id"])
            assert tx.installment_id == first_id
            assert tx.plan_id is None
            assert tx.amount == Decimal("200000")

    def test_in_flight_payment_blocks_second_checkout(self, client, app, agency_id):
        first_id = self._sale(app, agency_id)[0]
        headers = agency_headers(agency_id)
        with patch(HTTP, return_value=_fedapay_ok(778)):
            client.post(f"/api/installments/{first_id}/checkout",
                        json={"payment_method": "mtn_money"}, headers=headers)
        with patch(HTTP) as call:
            resp = client.post(f"/api/installments/{first_id}/checkout",
                               json={"payment_method": "mtn_money"}, headers=headers)
        assert resp.status_code == 422
        call.assert_not_called()

    def test_paid_installment_rejected(self, client, app, agency_id):
        first_id = self._sale(app, agency_id)[0]
        with app.app_context():
            pay_installment(first_id, 200000, method="cash")
        resp = client.post(f"/api/installments/{first_id}/checkout",
                           json={"payment_method": "mtn_money"}, headers=agency_headers(agency_id))
        assert resp.status_code == 422

    def test_other_agency_installment(self, client, app, agency_id, other_agency_id):
        first_id = self._sale(app, agency_id)[0]
        resp = client.post(f"/api/installments/{first_id}/checkout",
                           json={"payment_method": "mtn_money"},
                           headers=agency_headers(other_agency_id))
        assert resp.status_code == 422
        with app.app_context():
            assert db.session.get(Installment, first_id).status == "pending"


class TestSubscriptionStore:
    def test_period_end(self):
        start = datetime.datetime(2026, 1, 31, tzinfo=datetime.timezone.utc)
        assert period_end(start, "monthly").date() == datetime.date(2026, 2, 28)
        assert period_end(start, "yearly").date() == datetime.date(2027, 1, 31)
        assert period_end(start, "lifetime") is None

    def test_upsert_keeps_single_row(self, ctx, agency_id, plans):
        upsert_active_subscription(agency_id, plans["basic"], "monthly")
        db.session.commit()
        upsert_active_subscription(agency_id, plans["pro"], "lifetime")
        db.session.commit()
        rows = AgencySubscription.query.filter_by(agency_id=agency_id).all()
        assert len(rows) == 1
        assert rows[0].plan_id == plans["pro"]
        assert rows[0].ends_at is None

    def test_concurrent_insert_falls_back_to_update(self, ctx, agency_id, plans):
        existing = upsert_active_subscription(agency_id, plans["basic"], "monthly")
        db.session.commit()
        # Simulate losing the race: the first read saw no row
        with patch(
            "services.billing.get_agency_subscription",
            side_effect=[None, existing],
        ):
            sub = upsert_active_subscription(agency_id, plans["pro"], "yearly")
        db.session.commit()
        assert sub.id == existing.id
        rows = AgencySubscription.query.filter_by(agency_id=agency_id).all()
        assert len(rows) == 1
        assert rows[0].plan_id == plans["pro"]
        assert rows[0].billing_cycle == "yearly"

    def test_expire_lapsed_subscriptions(self, app, agency_id, plans):
        _subscribe(app, agency_id, plans["basic"], days_left=-1)
        with app.app_context():
            assert expire_lapsed_subscriptions() == 1
            assert get_agency_subscription(agency_id).status == "expired"

    def test_subscription_endpoint_and_cancel(self, client, app, agency_id, plans):
        _subscribe(app, agency_id, plans["basic"], days_left=12)
        headers = agency_headers(agency_id)
        data = client.get("/api/billing/subscription", headers=headers).get_json()
        assert data["subscription"]["status"] == "active"
        assert data["limits"]["max_users"] == 3
        resp = client.post("/api/billing/subscription/cancel", headers=headers)
        assert resp.get_json()["status"] == "cancelled"
        with app.app_context():
            sub = get_agency_subscription(agency_id)
            assert sub.cancelled_at is not None
            assert as_utc(sub.ends_at) > utc_now()


class TestPendingExpiry:
    def _pending(self, app, agency_id, plan_id, age_minutes):
        with app.app_context():
            tx = PaymentTransaction(
                agency_id=agency_id, plan_id=plan_id, amount=Decimal("15000"), currency="XOF",
                provider="fedapay", payment_method="orange_money", billing_cycle="monthly",
                status="pending", provider_reference=f"ref-{age_minutes}",
                created_at=utc_now() - datetime.timedelta(minutes=age_minutes),
            )
            db.session.add(tx)
            db.session.commit()
            return tx.id

    def test_expires_only_stale_rows(self, app, agency_id, plans):
        old_id = self._pending(app, agency_id, plans["basic"], 120)
        fresh_id = self._pending(app, agency_id, plans["basic"], 5)
        with app.app_context():
            assert expire_stale_transactions() == 1
            assert db.session.get(PaymentTransaction, old_id).status == "failed"
            assert "expirée" in db.session.get(PaymentTransaction, old_id).error_message
            assert db.session.get(PaymentTransaction, fresh_id).status == "pending"

    def test_cli_command(self, app, agency_id, plans):
        self._pending(app, agency_id, plans["basic"], 30)
        runner = app.test_cli_runner()
        result = runner.invoke(args=["expire-pending", "--minutes", "10"])
        assert result.exit_code == 0
        assert "1 transaction(s) expired." in result.output
