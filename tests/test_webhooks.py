"""
Integration tests for the gateway webhook endpoints.

Signature verification is real for the Stripe happy path and for the
header checks; elsewhere the adapter's verify_webhook is an AsyncMock that
returns the decoded payload, so tests focus on dispatch and reconciliation.
"""
import hashlib
import hmac
import json
import time
from unittest.mock import AsyncMock, patch

from app import models
from app.config import settings
from app.services import payments as payments_module
from tests.conftest import make_txn
from tests.payloads import (
    stripe_intent_event,
    stripe_charge_refunded,
    stripe_dispute,
    paypal_capture_event,
    paypal_approval_reversed,
    braintree_notification,
)

WEBHOOK_SECRET = "whsec_test_secret"


def mock_gateway(name, payload):
    m = AsyncMock()
    m.gateway_name = name
    m.verify_webhook = AsyncMock(return_value=payload)
    return m


def stripe_signature(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    timestamp = int(time.time())
    signed = f"{timestamp}.{body.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def post_event(client, gateway, payload, path=None):
    with patch.dict(payments_module.GATEWAY_MAP, {gateway: mock_gateway(gateway, payload)}):
        return client.post(f"/api/v1/webhooks/{path or gateway.lower()}", content=b"{}")


def ledger(db):
    return db.query(models.WebhookEvent).order_by(models.WebhookEvent.id).all()


# ---------------------------------------------------------------------------
# Signature verification
# ---------------------------------------------------------------------------
class TestSignatures:
    def test_valid_stripe_signature_applies_event(self, client, db):
        txn = make_txn(db, "TXN_1", gateway_order_id="pi_1")
        body = json.dumps(stripe_intent_event(
            "payment_intent.succeeded", intent_id="pi_1", charge_id="ch_1", transaction_id="TXN_1",
        )).encode("utf-8")

        with patch.object(settings, "STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET):
            resp = client.post(
                "/api/v1/webhooks/stripe",
                content=body,
                headers={"Stripe-Signature": stripe_signature(body), "Content-Type": "application/json"},
            )

        assert resp.status_code == 200
        assert resp.json() == {"received": True, "outcome": "applied", "transaction_id": "TXN_1"}
        db.refresh(txn)
        assert txn.status == models.COMPLETED
        assert txn.gateway_capture_id == "ch_1"

    def test_tampered_stripe_body_rejected(self, client, db):
        txn = make_txn(db, "TXN_1", gateway_order_id="pi_1")
        body = json.dumps(stripe_intent_event("payment_intent.succeeded", intent_id="pi_1")).encode("utf-8")
        signature = stripe_signature(body)
        tampered = body.replace(b"pi_1", b"pi_2")

        with patch.object(settings, "STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET):
            resp = client.post("/api/v1/webhooks/stripe", content=tampered,
                               headers={"Stripe-Signature": signature})

        assert resp.status_code == 400
        assert resp.json()["error"] == "SIGNATURE_INVALID"
        db.refresh(txn)
        assert txn.status == models.PENDING
        assert ledger(db) == []

    def test_missing_stripe_signature_rejected(self, client, db):
        with patch.object(settings, "STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET):
            resp = client.post("/api/v1/webhooks/stripe", content=b"{}")
        assert resp.status_code == 400

    def test_paypal_without_transmission_headers_rejected(self, client, db):
        resp = client.post("/api/v1/webhooks/paypal", content=b'{"id": "WH-1"}')
        assert resp.status_code == 401
        assert resp.json()["error"] == "SIGNATURE_INVALID"

    def test_braintree_without_signature_rejected(self, client, db):
        resp = client.post(
            "/api/v1/webhooks/braintree",
            content=b"bt_payload=abc",
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        assert resp.status_code == 400

    def test_unreadable_payload_is_400(self, client, db):
        resp = post_event(client, models.STRIPE, {"id": "evt_1"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "MALFORMED_WEBHOOK"


# ---------------------------------------------------------------------------
# Acknowledgement semantics
# ---------------------------------------------------------------------------
class TestAcknowledgement:
    def test_correlation_miss_acknowledged(self, client, db):
        resp = post_event(client, models.STRIPE, stripe_intent_event(
            "payment_intent.succeeded", intent_id="pi_unknown", charge_id="ch_unknown", event_id="evt_miss",
        ))
        assert resp.status_code == 200
        assert resp.json()["outcome"] == "correlation_miss"
        assert resp.json()["transaction_id"] is None
        assert [(e.event_id, e.outcome) for e in ledger(db)] == [("evt_miss", "correlation_miss")]

    def test_unhandled_event_type_ignored(self, client, db):
        resp = post_event(client, models.STRIPE, {
            "id": "evt_cust", "type": "customer.created", "data": {"object": {"id": "cus_1"}},
        })
        assert resp.status_code == 200
        assert resp.json()["outcome"] == "ignored"

    def test_duplicate_delivery_acknowledged_once_applied(self, client, db):
        txn = make_txn(db, "TXN_1", gateway_order_id="pi_1")
        payload = stripe_intent_event("payment_intent.succeeded", intent_id="pi_1", event_id="evt_dup")

        first = post_event(client, models.STRIPE, payload)
        version = db.get(models.Transaction, "TXN_1").version
        second = post_event(client, models.STRIPE, payload)

        assert first.json()["outcome"] == "applied"
        assert second.status_code == 200
        assert second.json()["outcome"] == "duplicate"
        db.refresh(txn)
        assert txn.version == version
        assert len(ledger(db)) == 1

    def test_redelivered_miss_is_duplicate(self, client, db):
        payload = stripe_intent_event("payment_intent.succeeded", intent_id="pi_x", event_id="evt_x")
        post_event(client, models.STRIPE, payload)
        assert post_event(client, models.STRIPE, payload).json()["outcome"] == "duplicate"

    def test_out_of_order_processing_after_completed_is_stale(self, client, db):
        txn = make_txn(db, "TXN_1", status=models.COMPLETED, gateway_order_id="pi_1", gateway_capture_id="ch_1")
        resp = post_event(client, models.STRIPE, stripe_intent_event(
            "payment_intent.processing", intent_id="pi_1", charge_id="ch_1", event_id="evt_late",
        ))
        assert resp.json()["outcome"] == "stale"
        db.refresh(txn)
        assert txn.status == models.COMPLETED
        assert "payment_intent.processing" in txn.notes

    def test_dispute_annotates(self, client, db):
        txn = make_txn(db, "TXN_1", status=models.COMPLETED, gateway_order_id="pi_1", gateway_capture_id="ch_1")
        resp = post_event(client, models.STRIPE, stripe_dispute(charge_id="ch_1"))
        assert resp.json()["outcome"] == "annotated"
        db.refresh(txn)
        assert txn.status == models.COMPLETED
        assert txn.metadata_["dispute_id"] == "dp_1"
        assert txn.metadata_["dispute_reason"] == "fraudulent"


# ---------------------------------------------------------------------------
# Refunds through webhooks
# ---------------------------------------------------------------------------
class TestRefundWebhooks:
    def test_charge_refunded_books_one_refund(self, client, db):
        txn = make_txn(db, "TXN_1", amount=100.0, status=models.COMPLETED,
                       gateway_order_id="pi_1", gateway_capture_id="ch_1")
        payload = stripe_charge_refunded(charge_id="ch_1", refund_id="re_1", amount=3000)

        resp = post_event(client, models.STRIPE, payload)
        post_event(client, models.STRIPE, payload)

        assert resp.json()["outcome"] == "applied"
        db.refresh(txn)
        assert txn.status == models.PARTIALLY_REFUNDED
        assert txn.amount == 100.0
        refunds = db.query(models.Transaction).filter(models.Transaction.type == models.REFUND).all()
        assert len(refunds) == 1
        assert refunds[0].amount == 30.0

    def test_same_refund_under_new_event_id_not_rebooked(self, client, db):
        make_txn(db, "TXN_1", amount=100.0, status=models.COMPLETED, gateway_capture_id="ch_1")
        post_event(client, models.STRIPE, stripe_charge_refunded(charge_id="ch_1", refund_id="re_1",
                                                                 event_id="evt_a"))
        resp = post_event(client, models.STRIPE, stripe_charge_refunded(charge_id="ch_1", refund_id="re_1",
                                                                        event_id="evt_b"))
        assert resp.json()["outcome"] == "duplicate"
        assert db.query(models.Transaction).filter(models.Transaction.type == models.REFUND).count() == 1


# ---------------------------------------------------------------------------
# End-to-end scenarios
# ---------------------------------------------------------------------------
class TestScenarios:
    def test_paypal_abandoned_checkout_then_unrelated_capture(self, client, db):
        abandoned = make_txn(db, "TXN_PP1", amount=20.0, gateway=models.PAYPAL, payment_method="PAYPAL",
                             gateway_order_id="ORDER1")

        resp = post_event(client, models.PAYPAL, paypal_approval_reversed(order_id="ORDER1"))
        assert resp.json()["outcome"] == "applied"
        db.refresh(abandoned)
        assert abandoned.status == models.CANCELLED

        # No other transaction for the order: logged miss, still acknowledged
        capture = paypal_capture_event("PAYMENT.CAPTURE.COMPLETED", capture_id="CAP2", order_id="ORDER1",
                                       event_id="WH-CAP2")
        resp = post_event(client, models.PAYPAL, capture)
        assert resp.status_code == 200
        assert resp.json()["outcome"] == "correlation_miss"
        db.refresh(abandoned)
        assert abandoned.status == models.CANCELLED
        assert abandoned.gateway_capture_id is None

    def test_paypal_capture_for_shared_order_goes_to_live_attempt(self, client, db):
        make_txn(db, "TXN_PP1", amount=20.0, gateway=models.PAYPAL, payment_method="PAYPAL",
                 gateway_order_id="ORDER1", status=models.CANCELLED)
        retry = make_txn(db, "TXN_PP2", amount=20.0, gateway=models.PAYPAL, payment_method="PAYPAL",
                         gateway_order_id="ORDER1")

        resp = post_event(client, models.PAYPAL, paypal_capture_event(
            "PAYMENT.CAPTURE.COMPLETED", capture_id="CAP2", order_id="ORDER1", fee="0.98",
        ))

        assert resp.json() == {"received": True, "outcome": "applied", "transaction_id": "TXN_PP2"}
        db.refresh(retry)
        assert retry.status == models.COMPLETED
        assert retry.gateway_capture_id == "CAP2"
        assert retry.net_amount == 19.02
        assert db.get(models.Transaction, "TXN_PP1").status == models.CANCELLED

    def test_braintree_settlement(self, client, db):
        txn = make_txn(db, "TXN_BT1", amount=25.0, gateway=models.BRAINTREE, gateway_order_id="bt_1",
                       status=models.PROCESSING)
        resp = post_event(client, models.BRAINTREE, braintree_notification(
            braintree_id="bt_1", order_id="TXN_BT1", fee="0.75",
        ))
        assert resp.json()["outcome"] == "applied"
        db.refresh(txn)
        assert txn.status == models.COMPLETED
        assert txn.net_amount == 24.25
        assert txn.metadata_["braintree_status"] == "settled"


# ---------------------------------------------------------------------------
# GET probes
# ---------------------------------------------------------------------------
class TestProbe:
    def test_probe_reports_active(self, client):
        resp = client.get("/api/v1/webhooks/stripe")
        assert resp.status_code == 200
        assert resp.json() == {"status": "endpoint active", "gateway": "STRIPE"}

    def test_probe_unknown_gateway(self, client):
        assert client.get("/api/v1/webhooks/square").status_code == 404
