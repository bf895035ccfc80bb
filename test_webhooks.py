"""Tests for provider webhooks and status polling."""

import datetime
import json
from decimal import Decimal
from unittest.mock import Mock, patch

from app import AgencySubscription, AuditLog, Installment, PaymentTransaction, Sale, db
from conftest import agency_headers
from services.billing import expire_lapsed_subscriptions, get_agency_subscription
from services.gateways.base import hmac_sha256_hex
from services.installments import cancel_sale, create_sale
from utils import as_utc, utc_now


def _pending(app, agency_id, plan_id=None, provider="fedapay", reference="4242", **extra):
    with app.app_context():
        values = dict(
            agency_id=agency_id,
            plan_id=plan_id,
            amount=Decimal("15000"),
            currency="XOF",
            provider=provider,
            payment_method="orange_money",
            billing_cycle="monthly" if plan_id else None,
            status="pending",
            provider_reference=reference,
        )
        values.update(extra)
        tx = PaymentTransaction(**values)
        db.session.add(tx)
        db.session.commit()
        return tx.id


def _fedapay_event(client, reference="4242", status="approved"):
    body = {"name": "transaction.updated", "entity": {"id": int(reference), "status": status}}
    return client.post("/api/billing/webhooks/fedapay", json=body)


def _wave_post(client, body, secret="wave-secret", signature=None):
    raw = json.dumps(body).encode()
    headers = {"Content-Type": "application/json"}
    if signature is None and secret:
        signature = hmac_sha256_hex(secret, raw)
    if signature:
        headers["Wave-Signature"] = signature
    return client.post("/api/billing/webhooks/wave", data=raw, headers=headers)


def _wave_body(session_id, checkout_status="complete", event="checkout.session.completed"):
    return {
        "type": event,
        "data": {"id": session_id, "checkout_status": checkout_status, "client_reference": "1"},
    }


class TestSubscriptionWebhooks:
    def test_completion_activates_subscription(self, client, app, agency_id, plans):
        tx_id = _pending(app, agency_id, plans["basic"])
        resp = _fedapay_event(client)
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["action"] == "updated"
        assert data["status"] == "completed"
        with app.app_context():
            tx = db.session.get(PaymentTransaction, tx_id)
            assert tx.status == "completed"
            assert tx.completed_at is not None
            sub = get_agency_subscription(agency_id)
            assert sub.status == "active"
            assert sub.plan_id == plans["basic"]
            assert sub.ends_at is not None
            assert tx.subscription_id == sub.id

    def test_replay_is_noop(self, client, app, agency_id, plans):
        tx_id = _pending(app, agency_id, plans["basic"])
        _fedapay_event(client)
        with app.app_context():
            completed_at = db.session.get(PaymentTransaction, tx_id).completed_at
            ends_at = get_agency_subscription(agency_id).ends_at
            audits = AuditLog.query.count()

        resp = _fedapay_event(client)
        assert resp.status_code == 200
        assert resp.get_json()["action"] == "replay_noop"
        with app.app_context():
            assert db.session.get(PaymentTransaction, tx_id).completed_at == completed_at
            assert get_agency_subscription(agency_id).ends_at == ends_at
            assert AuditLog.query.count() == audits
            assert AgencySubscription.query.count() == 1

    def test_failure_records_reason(self, client, app, agency_id, plans):
        tx_id = _pending(app, agency_id, plans["basic"])
        resp = _fedapay_event(client, status="declined")
        assert resp.get_json()["status"] == "failed"
        with app.app_context():
            tx = db.session.get(PaymentTransaction, tx_id)
            assert tx.status == "failed"
            assert "declined" in tx.error_message
            assert get_agency_subscription(agency_id) is None

    def test_late_completion_on_failed_row_is_flagged(self, client, app, agency_id, plans):
        tx_id = _pending(app, agency_id, plans["basic"])
        _fedapay_event(client, status="declined")
        resp = _fedapay_event(client, status="approved")
        assert resp.get_json()["action"] == "replay_noop"
        _fedapay_event(client, status="approved")
        with app.app_context():
            tx = db.session.get(PaymentTransaction, tx_id)
            assert tx.status == "failed"
            assert tx.provider_status == "approved"
            assert tx.error_message.startswith("Paiement confirmé par fedapay après clôture")
            assert tx.error_message.count("Paiement confirmé") == 1
            assert "declined" in tx.error_message
            assert get_agency_subscription(agency_id) is None

    def test_refund_after_completion(self, client, app, agency_id, plans):
        tx_id = _pending(app, agency_id, plans["basic"])
        _fedapay_event(client)
        resp = _fedapay_event(client, status="refunded")
        assert resp.get_json()["status"] == "refunded"
        # refunded is terminal
        resp = _fedapay_event(client, status="approved")
        assert resp.get_json()["action"] == "replay_noop"
        with app.app_context():
            assert db.session.get(PaymentTransaction, tx_id).status == "refunded"

    def test_pending_status_only_updates_provider_status(self, client, app, agency_id, plans):
        tx_id = _pending(app, agency_id, plans["basic"])
        resp = _fedapay_event(client, status="pending")
        assert resp.get_json()["action"] == "ignored"
        with app.app_context():
            tx = db.session.get(PaymentTransaction, tx_id)
            assert tx.status == "pending"
            assert tx.provider_status == "pending"

    def test_prorated_payment_starts_new_period(self, client, app, agency_id, plans):
        with app.app_context():
            sub = AgencySubscription(
                agency_id=agency_id, plan_id=plans["basic"], status="active",
                billing_cycle="monthly", starts_at=utc_now() - datetime.timedelta(days=25),
                ends_at=utc_now() + datetime.timedelta(days=5),
            )
            db.session.add(sub)
            db.session.commit()
        _pending(
            app, agency_id, plans["pro"], amount=Decimal("164167"), billing_cycle="lifetime",
            meta={"proration": True, "previous_plan_id": plans["basic"]},
        )
        before = utc_now()
        _fedapay_event(client)
        with app.app_context():
            sub = get_agency_subscription(agency_id)
            assert sub.plan_id == plans["pro"]
            assert sub.billing_cycle == "lifetime"
            assert sub.ends_at is None
            assert as_utc(sub.starts_at) >= before
            assert expire_lapsed_subscriptions(utc_now() + datetime.timedelta(days=6)) == 0
            assert get_agency_subscription(agency_id).status == "active"

    def test_prorated_monthly_payment_renews_from_now(self, client, app, agency_id, plans):
        with app.app_context():
            sub = AgencySubscription(
                agency_id=agency_id, plan_id=plans["basic"], status="active",
                billing_cycle="monthly", starts_at=utc_now() - datetime.timedelta(days=15),
                ends_at=utc_now() + datetime.timedelta(days=15),
            )
            db.session.add(sub)
            db.session.commit()
        _pending(
            app, agency_id, plans["pro"], amount=Decimal("10000"),
            meta={"proration": True, "previous_plan_id": plans["basic"]},
        )
        _fedapay_event(client)
        with app.app_context():
            sub = get_agency_subscription(agency_id)
            assert sub.plan_id == plans["pro"]
            assert as_utc(sub.ends_at) > utc_now() + datetime.timedelta(days=27)

    def test_unknown_reference_is_acknowledged(self, client, app, agency_id, plans):
        _pending(app, agency_id, plans["basic"])
        resp = _fedapay_event(client, reference="1")
        assert resp.status_code == 200
        assert resp.get_json()["action"] == "not_found"

    def test_same_reference_other_provider_not_matched(self, client, app, agency_id, plans):
        tx_id = _pending(app, agency_id, plans["basic"], provider="wave", reference="4242")
        resp = _fedapay_event(client)
        assert resp.get_json()["action"] == "not_found"
        with app.app_context():
            assert db.session.get(PaymentTransaction, tx_id).status == "pending"


class TestWebhookRejections:
    def test_wave_signature_required(self, client, app, agency_id, plans):
        tx_id = _pending(app, agency_id, plans["basic"], provider="wave",
                         reference="cos-1", payment_method="wave")
        resp = _wave_post(client, _wave_body("cos-1"), signature="not-a-signature")
        assert resp.status_code == 401
        assert resp.get_json()["success"] is False
        resp = _wave_post(client, _wave_body("cos-1"), secret=None)
        assert resp.status_code == 401
        with app.app_context():
            assert db.session.get(PaymentTransaction, tx_id).status == "pending"

    def test_wave_signed_completion(self, client, app, agency_id, plans):
        tx_id = _pending(app, agency_id, plans["basic"], provider="wave",
                         reference="cos-2", payment_method="wave")
        resp = _wave_post(client, _wave_body("cos-2"))
        assert resp.status_code == 200
        with app.app_context():
            assert db.session.get(PaymentTransaction, tx_id).status == "completed"

    def test_wave_other_event_types_ignored(self, client, app, agency_id, plans):
        _pending(app, agency_id, plans["basic"], provider="wave", reference="cos-3")
        resp = _wave_post(client, _wave_body("cos-3", event="merchant.payment_received"))
        assert resp.get_json()["action"] == "ignored"

    def test_malformed_body(self, client):
        resp = client.post(
            "/api/billing/webhooks/fedapay", data=b"{not json",
            headers={"Content-Type": "application/json"},
        )
        assert resp.status_code == 400
        resp = client.post("/api/billing/webhooks/fedapay", json=[1, 2])
        assert resp.status_code == 400
        resp = client.post("/api/billing/webhooks/pawapay", json={"status": "COMPLETED"})
        assert resp.status_code == 400

    def test_unknown_provider(self, client):
        resp = client.post("/api/billing/webhooks/stripe", json={})
        assert resp.status_code == 404


class TestInstallmentWebhooks:
    def _sale(self, app, agency_id):
        with app.app_context():
            sale = create_sale(
                agency_id,
                asset_ref="Lot 21 - Anyama",
                buyer_name="Bamba Awa",
                buyer_phone="0707000000",
                total_price=400000,
                payment_type="installment",
                sale_date=datetime.date(2026, 2, 1),
                down_payment=0,
                monthly_payment=200000,
                total_installments=2,
            )
            return sale.id, sale.installments[0].id

    def test_completion_pays_installment(self, client, app, agency_id):
        sale_id, inst_id = self._sale(app, agency_id)
        tx_id = _pending(app, agency_id, provider="pawapay", reference="dep-1",
                         installment_id=inst_id, amount=Decimal("200000"), payment_method="mtn_money")
        resp = client.post("/api/billing/webhooks/pawapay",
                           json={"depositId": "dep-1", "status": "COMPLETED"})
        assert resp.get_json()["status"] == "completed"
        with app.app_context():
            inst = db.session.get(Installment, inst_id)
            assert inst.status == "paid"
            assert inst.paid_amount == Decimal("200000")
            assert inst.receipt_number == "dep-1"
            assert db.session.get(Sale, sale_id).paid_installments == 1
            assert db.session.get(PaymentTransaction, tx_id).error_message is None

    def test_replayed_completion_pays_once(self, client, app, agency_id):
        sale_id, inst_id = self._sale(app, agency_id)
        _pending(app, agency_id, provider="pawapay", reference="dep-9",
                 installment_id=inst_id, amount=Decimal("200000"), payment_method="mtn_money")
        body = {"depositId": "dep-9", "status": "COMPLETED"}
        client.post("/api/billing/webhooks/pawapay", json=body)
        with app.app_context():
            audits = AuditLog.query.count()

        resp = client.post("/api/billing/webhooks/pawapay", json=body)
        assert resp.status_code == 200
        assert resp.get_json()["action"] == "replay_noop"
        with app.app_context():
            assert db.session.get(Sale, sale_id).paid_installments == 1
            assert Installment.query.filter_by(sale_id=sale_id, status="paid").count() == 1
            assert AuditLog.query.count() == audits

    def test_pawapay_failure_reason(self, client, app, agency_id):
        _, inst_id = self._sale(app, agency_id)
        tx_id = _pending(app, agency_id, provider="pawapay", reference="dep-2",
                         installment_id=inst_id, amount=Decimal("200000"))
        client.post("/api/billing/webhooks/pawapay", json={
            "depositId": "dep-2", "status": "FAILED",
            "failureReason": {"failureCode": "INSUFFICIENT_BALANCE", "failureMessage": "Solde insuffisant"},
        })
        with app.app_context():
            tx = db.session.get(PaymentTransaction, tx_id)
            assert tx.status == "failed"
            assert "INSUFFICIENT_BALANCE" in tx.error_message
            assert db.session.get(Installment, inst_id).status == "pending"

    def test_payment_on_cancelled_sale_is_flagged(self, client, app, agency_id):
        sale_id, inst_id = self._sale(app, agency_id)
        tx_id = _pending(app, agency_id, provider="pawapay", reference="dep-3",
                         installment_id=inst_id, amount=Decimal("200000"))
        with app.app_context():
            cancel_sale(sale_id)
        client.post("/api/billing/webhooks/pawapay", json={"depositId": "dep-3", "status": "COMPLETED"})
        with app.app_context():
            tx = db.session.get(PaymentTransaction, tx_id)
            assert tx.status == "completed"
            assert tx.error_message.startswith("Paiement reçu mais échéance non soldée")
            assert db.session.get(Installment, inst_id).status == "pending"


class TestStatusPolling:
    def test_pending_transaction_refreshed(self, client, app, agency_id, plans):
        tx_id = _pending(app, agency_id, plans["basic"])
        resp = Mock(status_code=200, ok=True)
        resp.json.return_value = {"v1/transaction": {"id": 4242, "status": "approved"}}
        with patch("services.gateways.base.requests.request", return_value=resp) as call:
            data = client.get(
                f"/api/billing/transactions/{tx_id}", headers=agency_headers(agency_id)
            ).get_json()
        assert call.call_args.args[0] == "GET"
        assert call.call_args.args[1].endswith("/transactions/4242")
        assert data["status"] == "completed"
        with app.app_context():
            assert get_agency_subscription(agency_id).status == "active"

    def test_poll_failure_returns_stored_state(self, client, app, agency_id, plans):
        tx_id = _pending(app, agency_id, plans["basic"])
        resp = Mock(status_code=503, ok=False)
        resp.json.return_value = {"message": "maintenance"}
        with patch("services.gateways.base.requests.request", return_value=resp):
            r = client.get(f"/api/billing/transactions/{tx_id}", headers=agency_headers(agency_id))
        assert r.status_code == 200
        assert r.get_json()["status"] == "pending"

    def test_terminal_transaction_not_polled(self, client, app, agency_id, plans):
        tx_id = _pending(app, agency_id, plans["basic"], status="failed")
        with patch("services.gateways.base.requests.request") as call:
            r = client.get(f"/api/billing/transactions/{tx_id}", headers=agency_headers(agency_id))
        assert r.get_json()["status"] == "failed"
        call.assert_not_called()

    def test_other_agency_gets_404(self, client, app, agency_id, other_agency_id, plans):
        tx_id = _pending(app, agency_id, plans["basic"])
        r = client.get(f"/api/billing/transactions/{tx_id}", headers=agency_headers(other_agency_id))
        assert r.status_code == 404

    def test_history_is_scoped_to_agency(self, client, app, agency_id, other_agency_id, plans):
        _pending(app, agency_id, plans["basic"], reference="a")
        _pending(app, other_agency_id, plans["basic"], reference="b")
        rows = client.get("/api/billing/transactions", headers=agency_headers(agency_id)).get_json()
        assert [r["provider_reference"] for r in rows] == ["a"]
