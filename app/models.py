from datetime import datetime, timezone
import secrets
import time

from sqlalchemy import (
    Column, String, Float, DateTime, Integer, Text, JSON, UniqueConstraint, Index,
)
from sqlalchemy.orm import validates

from app.database import Base


# Status
PENDING = "PENDING"
PROCESSING = "PROCESSING"
COMPLETED = "COMPLETED"
FAILED = "FAILED"
CANCELLED = "CANCELLED"
REFUNDED = "REFUNDED"
PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"

STATUSES = (PENDING, PROCESSING, COMPLETED, FAILED, CANCELLED, REFUNDED, PARTIALLY_REFUNDED)

# Amount, currency and gateway ids are frozen once a transaction settles or is cancelled
SETTLED_STATUSES = (COMPLETED, REFUNDED, PARTIALLY_REFUNDED, CANCELLED)

# Type
SALE = "SALE"
PAYMENT = "PAYMENT"
REFUND = "REFUND"

TYPES = (SALE, PAYMENT, REFUND)

# Gateways
STRIPE = "STRIPE"
PAYPAL = "PAYPAL"
BRAINTREE = "BRAINTREE"
MANUAL = "MANUAL"

GATEWAYS = (STRIPE, PAYPAL, BRAINTREE, MANUAL)

PAYMENT_METHODS = ("CARD", "PAYPAL", "CASH", "CHECK", "BANK_TRANSFER")
CURRENCIES = ("USD", "EUR", "GBP", "INR", "CAD", "AUD")
FEE_TYPES = ("PROCESSING_FEE", "GATEWAY_FEE", "TRANSACTION_FEE", "SERVICE_FEE")


def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _base36(number: int) -> str:
    digits = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"
    out = ""
    while number:
        number, rem = divmod(number, 36)
        out = digits[rem] + out
    return out or "0"


def generate_transaction_id():
    """TXN_<base36 epoch millis>_<6 random hex chars>, upper-case."""
    return f"TXN_{_base36(int(time.time() * 1000))}_{secrets.token_hex(3).upper()}"


class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(String, primary_key=True, default=generate_transaction_id)
    merchant_id = Column(String, nullable=False, index=True)
    sale_id = Column(String, nullable=True, index=True)
    parent_transaction_id = Column(String, nullable=True, index=True)

    type = Column(String, nullable=False, default=SALE)
    status = Column(String, nullable=False, default=PENDING, index=True)
    payment_method = Column(String, nullable=False)
    gateway = Column(String, nullable=False)

    amount = Column(Float, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    fee_amount = Column(Float, nullable=False, default=0.0)
    fee_type = Column(String, nullable=True)
    net_amount = Column(Float, nullable=False)

    # Alternate keys, assigned over the transaction's life
    gateway_order_id = Column(String, nullable=True, index=True)
    gateway_capture_id = Column(String, nullable=True, index=True)
    gateway_refund_id = Column(String, nullable=True, unique=True)

    description = Column(String(500), nullable=True)
    customer_name = Column(String(200), nullable=True)
    customer_email = Column(String, nullable=True)
    customer_phone = Column(String(20), nullable=True)

    metadata_ = Column("metadata", JSON, nullable=False, default=dict)
    provider_payload = Column(JSON, nullable=True)
    notes = Column(Text, nullable=False, default="")

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    processed_at = Column(DateTime, nullable=True, index=True)

    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_transactions_merchant_status", "merchant_id", "status"),
        Index("ix_transactions_merchant_created", "merchant_id", "created_at"),
    )

    @validates("amount", "currency", "gateway_order_id", "gateway_capture_id")
    def _freeze_settled_fields(self, key, value):
        current = getattr(self, key)
        if self.status in SETTLED_STATUSES and current is not None and value != current:
            raise ValueError(
                f"{key} of transaction {self.id} cannot change once {self.status}"
            )
        return value

    def append_note(self, text: str, at=None):
        stamp = (at or utcnow()).strftime("%Y-%m-%dT%H:%M:%SZ")
        line = f"[{stamp}] {text}"
        self.notes = f"{self.notes}\n{line}" if self.notes else line

    @property
    def note_lines(self):
        return self.notes.splitlines() if self.notes else []


class WebhookEvent(Base):
    """One row per gateway event ever received; (gateway, event_id) is the dedupe key."""

    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    gateway = Column(String, nullable=False)
    event_id = Column(String, nullable=False)
    event_type = Column(String, nullable=False)
    transaction_id = Column(String, nullable=True, index=True)
    outcome = Column(String, nullable=False)
    received_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("gateway", "event_id", name="uq_webhook_events_gateway_event"),
    )
