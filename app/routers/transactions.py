from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app import models
from app.database import get_db
from app.repository import TransactionRepository, SORTABLE_COLUMNS
from app.schemas.requests import CreateTransactionRequest, CancelRequest, RefundRequest, UpdateTransactionRequest
from app.schemas.responses import (
    CreateTransactionResponse,
    ErrorResponse,
    Pagination,
    StatisticsResponse,
    TransactionListResponse,
    TransactionResponse,
    TransitionResponse,
    transaction_response,
)
from app.security import get_current_merchant
from app.services import payments
from app.services.reconciliation import TransitionResult

router = APIRouter()

STATISTICS_DEFAULT_DAYS = 30


def _transition_response(result: TransitionResult) -> TransitionResponse:
    return TransitionResponse(
        transaction=transaction_response(result.transaction),
        outcome=result.outcome,
        detail=result.detail,
        refund_transaction=(
            transaction_response(result.refund_transaction) if result.refund_transaction else None
        ),
    )


def _error_with_transaction(status_code: int, error: str, detail: str, txn: models.Transaction) -> JSONResponse:
    body = ErrorResponse(error=error, detail=detail, transaction=transaction_response(txn))
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


@router.post("", status_code=201, response_model=CreateTransactionResponse,
             responses={502: {"model": ErrorResponse}})
async def create_transaction(
    request: CreateTransactionRequest,
    merchant_id: str = Depends(get_current_merchant),
    db: Session = Depends(get_db),
):
    """
    Create a transaction.

    - MANUAL (cash, check, bank transfer): recorded COMPLETED immediately
    - STRIPE / PAYPAL / BRAINTREE: persisted PENDING, then the gateway order is created
    - If the gateway call fails the transaction is still returned (502) so it can be tracked
    """
    result = await payments.initiate_transaction(db, merchant_id, request)
    if result.error is not None:
        return _error_with_transaction(502, result.error.code, result.error.message, result.transaction)
    return CreateTransactionResponse(
        transaction=transaction_response(result.transaction),
        client_data=result.client_data,
    )


@router.get("", response_model=TransactionListResponse)
def list_transactions(
    status: Optional[str] = Query(None),
    type: Optional[str] = Query(None),
    payment_method: Optional[str] = Query(None),
    gateway: Optional[str] = Query(None),
    sale_id: Optional[str] = Query(None),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    search: Optional[str] = Query(None, max_length=100),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    sort_by: str = Query("created_at", pattern="^(" + "|".join(SORTABLE_COLUMNS) + ")$"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    merchant_id: str = Depends(get_current_merchant),
    db: Session = Depends(get_db),
):
    items, total = TransactionRepository(db).search(
        merchant_id,
        status=status.upper() if status else None,
        type=type.upper() if type else None,
        payment_method=payment_method.upper() if payment_method else None,
        gateway=gateway.upper() if gateway else None,
        sale_id=sale_id,
        start_date=start_date,
        end_date=end_date,
        search=search,
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return TransactionListResponse(
        transactions=[transaction_response(txn) for txn in items],
        pagination=Pagination(page=page, limit=limit, total=total, pages=(total + limit - 1) // limit),
    )


@router.get("/statistics", response_model=StatisticsResponse)
def get_statistics(
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    merchant_id: str = Depends(get_current_merchant),
    db: Session = Depends(get_db),
):
    """
    Revenue over captured sales plus refund, type, status, payment method and
    customer breakdowns. Defaults to the last 30 days.
    """
    if start_date is None and end_date is None:
        start_date = models.utcnow() - timedelta(days=STATISTICS_DEFAULT_DAYS)
    stats = TransactionRepository(db).statistics(merchant_id, start_date, end_date)
    stats["recent_transactions"] = [transaction_response(txn) for txn in stats["recent_transactions"]]
    return StatisticsResponse(start_date=start_date, end_date=end_date, **stats)


@router.get("/{transaction_id}", response_model=TransactionResponse)
def get_transaction(
    transaction_id: str,
    merchant_id: str = Depends(get_current_merchant),
    db: Session = Depends(get_db),
):
    return transaction_response(payments.get_merchant_transaction(db, merchant_id, transaction_id))


@router.put("/{transaction_id}", response_model=TransactionResponse)
def update_transaction(
    transaction_id: str,
    request: UpdateTransactionRequest,
    merchant_id: str = Depends(get_current_merchant),
    db: Session = Depends(get_db),
):
    """
    Append a note, correct the customer snapshot or add metadata.
    Works on terminal transactions too; status and amounts cannot be edited here.
    """
    result = payments.update_transaction(
        db, merchant_id, transaction_id,
        notes=request.notes,
        customer=request.customer.model_dump(exclude_unset=True) if request.customer else None,
        metadata=request.metadata,
    )
    return transaction_response(result.transaction)


@router.post("/{transaction_id}/capture", response_model=TransitionResponse,
             responses={402: {"model": ErrorResponse}, 409: {"model": ErrorResponse}})
async def capture_transaction(
    transaction_id: str,
    merchant_id: str = Depends(get_current_merchant),
    db: Session = Depends(get_db),
):
    """
    Capture a PENDING / PROCESSING transaction through its gateway.

    - 200: COMPLETED, or still PROCESSING when the gateway settles asynchronously
    - 402: the gateway declined or errored; the transaction is FAILED
    - 409: the transaction is already in a terminal state
    """
    result = await payments.capture_transaction(db, merchant_id, transaction_id)
    txn = result.transaction
    if txn.status == models.FAILED and result.applied:
        reason = (txn.metadata_ or {}).get("failure_reason") or "capture failed"
        return _error_with_transaction(402, "PAYMENT_DECLINED", reason, txn)
    return _transition_response(result)


@router.post("/{transaction_id}/cancel", response_model=TransitionResponse,
             responses={409: {"model": ErrorResponse}})
def cancel_transaction(
    transaction_id: str,
    request: Optional[CancelRequest] = None,
    merchant_id: str = Depends(get_current_merchant),
    db: Session = Depends(get_db),
):
    reason = request.reason if request else CancelRequest().reason
    return _transition_response(payments.cancel_transaction(db, merchant_id, transaction_id, reason))


@router.post("/{transaction_id}/refund", response_model=TransitionResponse,
             responses={409: {"model": ErrorResponse}, 422: {"model": ErrorResponse}})
def refund_transaction(
    transaction_id: str,
    request: RefundRequest,
    merchant_id: str = Depends(get_current_merchant),
    db: Session = Depends(get_db),
):
    """
    Book a refund against a COMPLETED or PARTIALLY_REFUNDED transaction.

    Creates a REFUND transaction; the original amount never changes and its
    status follows the cumulative refunded amount.
    """
    result = payments.refund_transaction(
        db, merchant_id, transaction_id,
        amount=request.amount,
        reason=request.reason,
        refund_id=request.refund_id,
    )
    return _transition_response(result)
