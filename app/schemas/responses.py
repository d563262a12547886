from pydantic import BaseModel
from typing import Optional, List, Dict, Any
from datetime import datetime

from app import models


class CustomerSnapshotResponse(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class TransactionResponse(BaseModel):
    id: str
    merchant_id: str
    sale_id: Optional[str] = None
    parent_transaction_id: Optional[str] = None
    type: str
    status: str
    payment_method: str
    gateway: str
    amount: float
    currency: str
    fee_amount: float
    fee_type: Optional[str] = None
    net_amount: float
    gateway_order_id: Optional[str] = None
    gateway_capture_id: Optional[str] = None
    gateway_refund_id: Optional[str] = None
    description: Optional[str] = None
    customer: CustomerSnapshotResponse
    metadata: Dict[str, Any] = {}
    notes: List[str] = []
    created_at: datetime
    updated_at: datetime
    processed_at: Optional[datetime] = None


def transaction_response(txn: models.Transaction) -> TransactionResponse:
    return TransactionResponse(
        id=txn.id,
        merchant_id=txn.merchant_id,
        sale_id=txn.sale_id,
        parent_transaction_id=txn.parent_transaction_id,
        type=txn.type,
        status=txn.status,
        payment_method=txn.payment_method,
        gateway=txn.gateway,
        amount=txn.amount,
        currency=txn.currency,
        fee_amount=txn.fee_amount,
        fee_type=txn.fee_type,
        net_amount=txn.net_amount,
        gateway_order_id=txn.gateway_order_id,
        gateway_capture_id=txn.gateway_capture_id,
        gateway_refund_id=txn.gateway_refund_id,
        description=txn.description,
        customer=CustomerSnapshotResponse(
            name=txn.customer_name,
            email=txn.customer_email,
            phone=txn.customer_phone,
        ),
        metadata=txn.metadata_ or {},
        notes=txn.note_lines,
        created_at=txn.created_at,
        updated_at=txn.updated_at,
        processed_at=txn.processed_at,
    )


class CreateTransactionResponse(BaseModel):
    transaction: TransactionResponse
    client_data: Dict[str, Any] = {}  # client_secret / approve_url handed to the checkout UI


class TransitionResponse(BaseModel):
    transaction: TransactionResponse
    outcome: str  # "applied" | "duplicate" | "stale" | "illegal" | "annotated"
    detail: str
    refund_transaction: Optional[TransactionResponse] = None


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class TransactionListResponse(BaseModel):
    transactions: List[TransactionResponse]
    pagination: Pagination


class PaymentMethodBreakdown(BaseModel):
    payment_method: str
    count: int
    amount: float
    net_amount: float


class TypeBreakdown(BaseModel):
    type: str
    count: int
    amount: float


class StatusBreakdown(BaseModel):
    status: str
    count: int
    amount: float


class CustomerBreakdown(BaseModel):
    email: str
    name: Optional[str] = None
    transaction_count: int
    total_amount: float
    average_amount: float


class DailyTotal(BaseModel):
    date: str  # YYYY-MM-DD
    count: int
    amount: float


class StatisticsResponse(BaseModel):
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    total_amount: float
    total_net_amount: float
    total_fees: float
    transaction_count: int
    average_amount: float
    min_amount: float
    max_amount: float
    total_refunded: float
    refund_count: int
    payment_methods: List[PaymentMethodBreakdown]
    type_breakdown: List[TypeBreakdown]
    status_breakdown: List[StatusBreakdown]
    top_customers: List[CustomerBreakdown]
    time_series: List[DailyTotal]
    recent_transactions: List[TransactionResponse]


class WebhookAck(BaseModel):
    received: bool = True
    outcome: str  # "applied" | "duplicate" | "stale" | "illegal" | "annotated" | "ignored" | "correlation_miss"
    transaction_id: Optional[str] = None


class ErrorResponse(BaseModel):
    error: str
    detail: Optional[str] = None
    transaction: Optional[TransactionResponse] = None
