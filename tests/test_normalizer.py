"""
Pure unit tests for app/services/normalizer.py.

No database required — all functions are pure transformations.
Covers: the three gateways, event -> status maps, correlation references,
amount units, timestamp formats, metadata filtering, edge cases.
"""
import pytest
from datetime import datetime

from app import models
from app.services.normalizer import normalize, filter_metadata, GatewayReference
from tests.payloads import (
    stripe_intent_event,
    stripe_charge_refunded,
    stripe_dispute,
    paypal_capture_event,
    paypal_refund_event,
    paypal_approval_reversed,
    braintree_notification,
)


# ---------------------------------------------------------------------------
# normalize() — Stripe (cents, epoch timestamps)
# ---------------------------------------------------------------------------
class TestNormalizeStripe:
    def test_succeeded_maps_to_completed(self):
        event = normalize(models.STRIPE, stripe_intent_event("payment_intent.succeeded"))
        assert event.target_status == models.COMPLETED
        assert event.handled is True

    def test_processing_failed_canceled(self):
        assert normalize(models.STRIPE, stripe_intent_event("payment_intent.processing")).target_status \
            == models.PROCESSING
        assert normalize(models.STRIPE, stripe_intent_event("payment_intent.payment_failed")).target_status \
            == models.FAILED
        assert normalize(models.STRIPE, stripe_intent_event("payment_intent.canceled")).target_status \
            == models.CANCELLED

    def test_reference_carries_all_three_ids(self):
        event = normalize(models.STRIPE, stripe_intent_event(
            "payment_intent.succeeded", intent_id="pi_9", charge_id="ch_9", transaction_id="TXN_A"
        ))
        assert event.reference.capture_id == "ch_9"
        assert event.reference.transaction_id == "TXN_A"
        assert event.reference.order_id == "pi_9"

    def test_amounts_converted_from_cents(self):
        event = normalize(models.STRIPE, stripe_intent_event("payment_intent.succeeded", amount=5000, fee=175))
        assert event.amount == 50.00
        assert event.fee_amount == 1.75
        assert event.currency == "USD"

    def test_epoch_timestamp_to_naive_utc(self):
        event = normalize(models.STRIPE, stripe_intent_event("payment_intent.succeeded"))
        assert event.occurred_at == datetime(2024, 1, 15, 10, 23, 45)

    def test_failure_reason_in_metadata(self):
        event = normalize(models.STRIPE, stripe_intent_event("payment_intent.payment_failed", error="Card declined"))
        assert event.reason == "Card declined"
        assert event.metadata["failure_code"] == "card_declined"
        assert event.metadata["failure_reason"] == "Card declined"

    def test_charge_refunded_extracts_refund(self):
        event = normalize(models.STRIPE, stripe_charge_refunded(refund_id="re_7", amount=3000))
        assert event.target_status == models.REFUNDED
        assert event.refund_id == "re_7"
        assert event.refund_amount == 30.00
        assert event.reference.capture_id == "ch_123"

    def test_charge_refunded_without_refund_list_only_annotates(self):
        event = normalize(models.STRIPE, stripe_charge_refunded(with_refunds=False))
        assert event.handled is True
        assert event.target_status is None

    def test_dispute_is_annotation(self):
        event = normalize(models.STRIPE, stripe_dispute())
        assert event.handled is True
        assert event.target_status is None
        assert event.metadata["dispute_id"] == "dp_1"
        assert event.metadata["dispute_amount"] == 50.00

    def test_unlisted_event_not_handled(self):
        payload = {"id": "evt_x", "type": "customer.created", "data": {"object": {"id": "cus_1"}}}
        event = normalize(models.STRIPE, payload)
        assert event.handled is False
        assert event.reference.is_empty()

    def test_missing_type_raises(self):
        with pytest.raises(KeyError):
            normalize(models.STRIPE, {"id": "evt_x", "data": {"object": {}}})


# ---------------------------------------------------------------------------
# normalize() — PayPal (decimal strings, RFC3339 timestamps)
# ---------------------------------------------------------------------------
class TestNormalizePayPal:
    def test_capture_completed(self):
        event = normalize(models.PAYPAL, paypal_capture_event(
            "PAYMENT.CAPTURE.COMPLETED", capture_id="CAP9", order_id="ORD9", custom_id="TXN_B", fee="0.89"
        ))
        assert event.target_status == models.COMPLETED
        assert event.reference.capture_id == "CAP9"
        assert event.reference.transaction_id == "TXN_B"
        assert event.reference.order_id == "ORD9"
        assert event.amount == 20.00
        assert event.fee_amount == 0.89

    def test_capture_pending_and_denied(self):
        assert normalize(models.PAYPAL, paypal_capture_event("PAYMENT.CAPTURE.PENDING")).target_status \
            == models.PROCESSING
        denied = normalize(models.PAYPAL, paypal_capture_event("PAYMENT.CAPTURE.DENIED", reason="DECLINED"))
        assert denied.target_status == models.FAILED
        assert denied.reason == "DECLINED"

    def test_rfc3339_timestamp(self):
        event = normalize(models.PAYPAL, paypal_capture_event("PAYMENT.CAPTURE.COMPLETED"))
        assert event.occurred_at == datetime(2024, 1, 15, 10, 23, 45)

    def test_refund_finds_capture_through_up_link(self):
        event = normalize(models.PAYPAL, paypal_refund_event(refund_id="REF9", capture_id="CAP9", value="5.00"))
        assert event.target_status == models.REFUNDED
        assert event.refund_id == "REF9"
        assert event.refund_amount == 5.00
        assert event.reference.capture_id == "CAP9"

    def test_approval_reversed_cancels_by_order(self):
        event = normalize(models.PAYPAL, paypal_approval_reversed(order_id="ORD5"))
        assert event.target_status == models.CANCELLED
        assert event.reference.order_id == "ORD5"
        assert event.reference.capture_id is None

    def test_order_approved_is_annotation(self):
        payload = {
            "id": "WH-O1",
            "event_type": "CHECKOUT.ORDER.APPROVED",
            "resource": {
                "id": "ORD1",
                "purchase_units": [{"custom_id": "TXN_C"}],
                "payer": {"email_address": "payer@example.com"},
            },
        }
        event = normalize(models.PAYPAL, payload)
        assert event.handled is True
        assert event.target_status is None
        assert event.reference.transaction_id == "TXN_C"
        assert event.metadata["payer_email"] == "payer@example.com"

    def test_unlisted_event_not_handled(self):
        event = normalize(models.PAYPAL, {"id": "WH-X", "event_type": "BILLING.PLAN.CREATED", "resource": {}})
        assert event.handled is False


# ---------------------------------------------------------------------------
# normalize() — Braintree (parsed notifications)
# ---------------------------------------------------------------------------
class TestNormalizeBraintree:
    def test_settled(self):
        event = normalize(models.BRAINTREE, braintree_notification(braintree_id="bt_9", order_id="TXN_D", fee="0.75"))
        assert event.target_status == models.COMPLETED
        assert event.reference.capture_id == "bt_9"
        assert event.reference.transaction_id == "TXN_D"
        assert event.fee_amount == 0.75

    def test_settlement_declined(self):
        event = normalize(models.BRAINTREE, braintree_notification(kind="transaction_settlement_declined"))
        assert event.target_status == models.FAILED
        assert event.reason == "Declined"

    def test_event_id_stable_across_redelivery(self):
        first = normalize(models.BRAINTREE, braintree_notification(braintree_id="bt_9"))
        second = normalize(models.BRAINTREE, braintree_notification(braintree_id="bt_9"))
        assert first.event_id == second.event_id == "transaction_settled:bt_9"

    def test_unlisted_kind_not_handled(self):
        event = normalize(models.BRAINTREE, {"kind": "subscription_charged_successfully", "transaction": None})
        assert event.handled is False
        assert event.event_id is None


# ---------------------------------------------------------------------------
# Metadata and references
# ---------------------------------------------------------------------------
class TestMetadata:
    def test_unknown_keys_dropped(self):
        kept = filter_metadata(models.STRIPE, {"charge_id": "ch_1", "favourite_colour": "blue"})
        assert kept == {"charge_id": "ch_1"}

    def test_none_values_dropped(self):
        assert filter_metadata(models.PAYPAL, {"order_id": None, "capture_id": "CAP1"}) == {"capture_id": "CAP1"}

    def test_keys_are_per_source(self):
        assert filter_metadata(models.BRAINTREE, {"charge_id": "ch_1"}) == {}

    def test_event_metadata_is_filtered(self):
        event = normalize(models.STRIPE, stripe_intent_event("payment_intent.succeeded"))
        assert set(event.metadata) <= {
            "payment_intent_id", "charge_id", "receipt_email", "payment_method_type",
            "failure_code", "failure_reason", "cancellation_reason",
        }
        assert event.metadata["payment_method_type"] == "card"


class TestReference:
    def test_blank_ids_are_empty(self):
        assert GatewayReference(capture_id="", transaction_id=None, order_id="").is_empty()

    def test_unknown_gateway_raises(self):
        with pytest.raises(ValueError):
            normalize("square", {})
