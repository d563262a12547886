"""
Normalizes heterogeneous gateway webhook payloads to a standard event.

Each gateway uses different event vocabularies, id fields, amount units and
timestamp formats. This module maps all of them to a GatewayEvent: the
target status (if the event drives one), the identifiers used to correlate
it with a local transaction, and a bounded set of metadata keys.
"""
from typing import Dict, Any, Optional
from datetime import datetime, timezone
import logging

from app import models

logger = logging.getLogger(__name__)


# Event type -> target status. A None target means "handled, annotate only".
STRIPE_EVENT_STATUS = {
    "payment_intent.processing": models.PROCESSING,
    "payment_intent.succeeded": models.COMPLETED,
    "payment_intent.payment_failed": models.FAILED,
    "payment_intent.canceled": models.CANCELLED,
    "charge.refunded": models.REFUNDED,
    "refund.created": models.REFUNDED,
    "charge.dispute.created": None,
}

PAYPAL_EVENT_STATUS = {
    "PAYMENT.CAPTURE.PENDING": models.PROCESSING,
    "PAYMENT.CAPTURE.COMPLETED": models.COMPLETED,
    "PAYMENT.CAPTURE.DENIED": models.FAILED,
    "PAYMENT.CAPTURE.REFUNDED": models.REFUNDED,
    "CHECKOUT.PAYMENT-APPROVAL.REVERSED": models.CANCELLED,
    "PAYMENT.AUTHORIZATION.VOIDED": models.CANCELLED,
    "CHECKOUT.ORDER.APPROVED": None,
    "CHECKOUT.ORDER.COMPLETED": None,
}

BRAINTREE_EVENT_STATUS = {
    "transaction_settled": models.COMPLETED,
    "transaction_settlement_declined": models.FAILED,
}

EVENT_STATUS_MAPS = {
    models.STRIPE: STRIPE_EVENT_STATUS,
    models.PAYPAL: PAYPAL_EVENT_STATUS,
    models.BRAINTREE: BRAINTREE_EVENT_STATUS,
}

# Metadata keys each event source may write; anything else is dropped.
KNOWN_METADATA_KEYS = {
    models.STRIPE: {
        "payment_intent_id", "charge_id", "receipt_email", "payment_method_type",
        "failure_code", "failure_reason", "cancellation_reason",
        "dispute_id", "dispute_status", "dispute_reason", "dispute_amount",
    },
    models.PAYPAL: {
        "order_id", "capture_id", "capture_status", "status_reason", "payer_email", "refund_id",
    },
    models.BRAINTREE: {
        "braintree_transaction_id", "braintree_status", "kind",
    },
    models.MANUAL: {
        "created_via", "created_by", "capture_status", "cancellation_reason", "failure_reason",
        "register_id", "cashier_id", "receipt_number", "merchant_reference", "updated_by",
    },
}


def filter_metadata(source: str, values: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Keep only the documented keys for ``source`` with non-null values."""
    allowed = KNOWN_METADATA_KEYS.get(source, set())
    kept = {}
    for key, value in (values or {}).items():
        if value is None:
            continue
        if key not in allowed:
            logger.debug("Dropping unknown %s metadata key %r", source, key)
            continue
        kept[key] = value
    return kept


class GatewayReference:
    """Identifiers an event carries, in decreasing specificity."""

    def __init__(
        self,
        capture_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
        order_id: Optional[str] = None,
    ):
        self.capture_id = capture_id or None
        self.transaction_id = transaction_id or None
        self.order_id = order_id or None

    def is_empty(self) -> bool:
        return not (self.capture_id or self.transaction_id or self.order_id)

    def __repr__(self):
        return (
            f"GatewayReference(capture_id={self.capture_id!r}, "
            f"transaction_id={self.transaction_id!r}, order_id={self.order_id!r})"
        )


class GatewayEvent:
    """
    A verified gateway signal in canonical form.

    Also used as the evidence record for locally initiated calls (capture,
    cancel, refund), in which case ``event_id`` is None and ``source`` is
    MANUAL.
    """

    def __init__(
        self,
        source: str,
        event_type: str,
        event_id: Optional[str] = None,
        handled: bool = True,
        target_status: Optional[str] = None,
        reference: Optional[GatewayReference] = None,
        amount: Optional[float] = None,
        currency: Optional[str] = None,
        fee_amount: Optional[float] = None,
        refund_id: Optional[str] = None,
        refund_amount: Optional[float] = None,
        reason: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None,
        payload: Optional[Dict[str, Any]] = None,
    ):
        self.source = source
        self.event_type = event_type
        self.event_id = event_id
        self.handled = handled
        self.target_status = target_status
        self.reference = reference or GatewayReference()
        self.amount = amount
        self.currency = currency
        self.fee_amount = fee_amount
        self.refund_id = refund_id
        self.refund_amount = refund_amount
        self.reason = reason
        self.occurred_at = occurred_at
        self.metadata = filter_metadata(source, metadata)
        self.payload = payload

    def describe(self) -> str:
        label = f"{self.source} {self.event_type}"
        return f"{label} ({self.event_id})" if self.event_id else label


def _from_epoch(value) -> Optional[datetime]:
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)
    except (ValueError, OSError, OverflowError):
        return None


def _from_iso(value) -> Optional[datetime]:
    """PayPal RFC3339 (``2024-01-15T10:23:45Z``) -> naive UTC."""
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def _cents(value) -> Optional[float]:
    if value is None:
        return None
    return round(int(value) / 100.0, 2)


def _decimal(value) -> Optional[float]:
    if value is None or value == "":
        return None
    return round(float(value), 2)


def _upper(value) -> Optional[str]:
    return value.upper() if value else None


def _normalize_stripe(payload: Dict[str, Any]) -> GatewayEvent:
    event_type = payload["type"]
    obj = payload["data"]["object"]
    obj_metadata = obj.get("metadata") or {}
    occurred_at = _from_epoch(payload.get("created"))

    common = dict(
        source=models.STRIPE,
        event_type=event_type,
        event_id=payload.get("id"),
        handled=event_type in STRIPE_EVENT_STATUS,
        target_status=STRIPE_EVENT_STATUS.get(event_type),
        occurred_at=occurred_at,
        payload=payload,
    )

    if event_type.startswith("payment_intent."):
        error = obj.get("last_payment_error") or {}
        method_types = obj.get("payment_method_types") or []
        charge_id = obj.get("latest_charge")
        if isinstance(charge_id, dict):
            charge_id = charge_id.get("id")
        return GatewayEvent(
            reference=GatewayReference(
                capture_id=charge_id,
                transaction_id=obj_metadata.get("transaction_id"),
                order_id=obj.get("id"),
            ),
            amount=_cents(obj.get("amount_received") or obj.get("amount")),
            currency=_upper(obj.get("currency")),
            fee_amount=_cents(obj.get("application_fee_amount")),
            reason=error.get("message") or obj.get("cancellation_reason"),
            metadata={
                "payment_intent_id": obj.get("id"),
                "charge_id": charge_id,
                "receipt_email": obj.get("receipt_email"),
                "payment_method_type": method_types[0] if method_types else None,
                "failure_code": error.get("code"),
                "failure_reason": error.get("message"),
                "cancellation_reason": obj.get("cancellation_reason"),
            },
            **common,
        )

    if event_type == "refund.created":
        return GatewayEvent(
            reference=GatewayReference(
                capture_id=obj.get("charge"),
                transaction_id=obj_metadata.get("transaction_id"),
                order_id=obj.get("payment_intent"),
            ),
            currency=_upper(obj.get("currency")),
            refund_id=obj.get("id"),
            refund_amount=_cents(obj.get("amount")),
            reason=obj.get("reason"),
            metadata={"charge_id": obj.get("charge"), "payment_intent_id": obj.get("payment_intent")},
            **common,
        )

    if event_type == "charge.refunded":
        refunds = (obj.get("refunds") or {}).get("data") or []
        latest = refunds[0] if refunds else None
        if latest is None:
            # Newer API versions omit the refund list; the refund.created event carries it
            common["target_status"] = None
        return GatewayEvent(
            reference=GatewayReference(
                capture_id=obj.get("id"),
                transaction_id=obj_metadata.get("transaction_id"),
                order_id=obj.get("payment_intent"),
            ),
            currency=_upper(obj.get("currency")),
            refund_id=latest.get("id") if latest else None,
            refund_amount=_cents(latest.get("amount")) if latest else None,
            reason=latest.get("reason") if latest else None,
            metadata={"charge_id": obj.get("id"), "payment_intent_id": obj.get("payment_intent")},
            **common,
        )

    if event_type == "charge.dispute.created":
        return GatewayEvent(
            reference=GatewayReference(
                capture_id=obj.get("charge"),
                order_id=obj.get("payment_intent"),
            ),
            reason=obj.get("reason"),
            metadata={
                "dispute_id": obj.get("id"),
                "dispute_status": obj.get("status"),
                "dispute_reason": obj.get("reason"),
                "dispute_amount": _cents(obj.get("amount")),
            },
            **common,
        )

    return GatewayEvent(reference=GatewayReference(), **common)


def _paypal_capture_from_links(resource: Dict[str, Any]) -> Optional[str]:
    """Refund resources point at their capture through the ``up`` link."""
    for link in resource.get("links") or []:
        if link.get("rel") == "up" and "/captures/" in link.get("href", ""):
            return link["href"].rstrip("/").rsplit("/", 1)[-1]
    return None


def _normalize_paypal(payload: Dict[str, Any]) -> GatewayEvent:
    event_type = payload["event_type"]
    resource = payload.get("resource") or {}
    related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
    amount = resource.get("amount") or {}
    status_details = resource.get("status_details") or {}

    common = dict(
        source=models.PAYPAL,
        event_type=event_type,
        event_id=payload.get("id"),
        handled=event_type in PAYPAL_EVENT_STATUS,
        target_status=PAYPAL_EVENT_STATUS.get(event_type),
        occurred_at=_from_iso(resource.get("create_time") or payload.get("create_time")),
        payload=payload,
    )

    if event_type == "PAYMENT.CAPTURE.REFUNDED":
        capture_id = _paypal_capture_from_links(resource)
        return GatewayEvent(
            reference=GatewayReference(
                capture_id=capture_id,
                transaction_id=resource.get("custom_id"),
                order_id=related.get("order_id"),
            ),
            currency=amount.get("currency_code"),
            refund_id=resource.get("id"),
            refund_amount=_decimal(amount.get("value")),
            reason=resource.get("note_to_payer"),
            metadata={"capture_id": capture_id, "refund_id": resource.get("id")},
            **common,
        )

    if event_type.startswith("PAYMENT.CAPTURE."):
        breakdown = resource.get("seller_receivable_breakdown") or {}
        fee = (breakdown.get("paypal_fee") or {}).get("value")
        return GatewayEvent(
            reference=GatewayReference(
                capture_id=resource.get("id"),
                transaction_id=resource.get("custom_id"),
                order_id=related.get("order_id"),
            ),
            amount=_decimal(amount.get("value")),
            currency=amount.get("currency_code"),
            fee_amount=_decimal(fee),
            reason=status_details.get("reason"),
            metadata={
                "capture_id": resource.get("id"),
                "capture_status": resource.get("status"),
                "status_reason": status_details.get("reason"),
                "order_id": related.get("order_id"),
            },
            **common,
        )

    if event_type.startswith("CHECKOUT.ORDER."):
        units = resource.get("purchase_units") or [{}]
        payer = resource.get("payer") or {}
        return GatewayEvent(
            reference=GatewayReference(
                transaction_id=units[0].get("custom_id"),
                order_id=resource.get("id"),
            ),
            metadata={"order_id": resource.get("id"), "payer_email": payer.get("email_address")},
            **common,
        )

    if event_type == "CHECKOUT.PAYMENT-APPROVAL.REVERSED":
        return GatewayEvent(
            reference=GatewayReference(order_id=resource.get("order_id")),
            reason="payment approval reversed",
            metadata={"order_id": resource.get("order_id")},
            **common,
        )

    if event_type == "PAYMENT.AUTHORIZATION.VOIDED":
        return GatewayEvent(
            reference=GatewayReference(
                transaction_id=resource.get("custom_id"),
                order_id=related.get("order_id"),
            ),
            reason="authorization voided",
            metadata={"order_id": related.get("order_id")},
            **common,
        )

    return GatewayEvent(reference=GatewayReference(), **common)


def _normalize_braintree(payload: Dict[str, Any]) -> GatewayEvent:
    kind = payload["kind"]
    txn = payload.get("transaction") or {}
    braintree_id = txn.get("id")
    return GatewayEvent(
        source=models.BRAINTREE,
        event_type=kind,
        # Notifications carry no id of their own; kind + transaction is stable across redelivery
        event_id=f"{kind}:{braintree_id}" if braintree_id else None,
        handled=kind in BRAINTREE_EVENT_STATUS,
        target_status=BRAINTREE_EVENT_STATUS.get(kind),
        reference=GatewayReference(
            capture_id=braintree_id,
            transaction_id=txn.get("order_id"),
        ),
        amount=_decimal(txn.get("amount")),
        currency=txn.get("currency_iso_code"),
        fee_amount=_decimal(txn.get("service_fee_amount")),
        reason=txn.get("processor_response_text"),
        occurred_at=_from_iso(payload.get("timestamp")),
        metadata={
            "braintree_transaction_id": braintree_id,
            "braintree_status": txn.get("status"),
            "kind": kind,
        },
        payload=payload,
    )


EVENT_PARSERS = {
    models.STRIPE: _normalize_stripe,
    models.PAYPAL: _normalize_paypal,
    models.BRAINTREE: _normalize_braintree,
}


def normalize(gateway_name: str, payload: Dict[str, Any]) -> GatewayEvent:
    """
    Maps a gateway's verified webhook payload to a GatewayEvent.

    Args:
        gateway_name: One of STRIPE, PAYPAL, BRAINTREE
        payload: The decoded body returned by the gateway adapter's verify_webhook

    Raises:
        ValueError: unknown gateway
        KeyError / TypeError: payload is missing its event type or shape
    """
    parser = EVENT_PARSERS.get(gateway_name)
    if parser is None:
        raise ValueError(f"Unknown gateway: {gateway_name}")
    return parser(payload)
