"""
Merchant-initiated payment flows.

Orchestrates:
1. Validate and persist the local transaction (PENDING, or COMPLETED for manual payments)
2. Route to the gateway adapter
3. Call the gateway with a bounded timeout
4. Hand the outcome to the reconciliation engine
"""
import asyncio
import logging
from typing import Dict, Any, Optional

from sqlalchemy.orm import Session

from app import models
from app.config import settings
from app.exceptions import GatewayError, TransactionNotFound
from app.gateways.braintree_gateway import BraintreeGateway
from app.gateways.paypal_gateway import PayPalGateway
from app.gateways.stripe_gateway import StripeGateway
from app.repository import TransactionRepository
from app.services.reconciliation import ReconciliationEngine, TransitionResult, local_event
from app.services.normalizer import GatewayReference

logger = logging.getLogger(__name__)


GATEWAY_MAP = {
    models.STRIPE: StripeGateway(),
    models.PAYPAL: PayPalGateway(),
    models.BRAINTREE: BraintreeGateway(),
}


class InitiationResult:
    def __init__(
        self,
        transaction: models.Transaction,
        client_data: Optional[Dict[str, Any]] = None,
        error: Optional[GatewayError] = None,
    ):
        self.transaction = transaction
        self.client_data = client_data or {}
        self.error = error


def get_merchant_transaction(db: Session, merchant_id: str, transaction_id: str) -> models.Transaction:
    """Other merchants' transactions are reported as not found."""
    txn = TransactionRepository(db).get_for_merchant(transaction_id, merchant_id)
    if txn is None:
        raise TransactionNotFound(transaction_id)
    return txn


async def initiate_transaction(db: Session, merchant_id: str, request) -> InitiationResult:
    """
    Create a transaction and, for gateway payments, the gateway-side order.

    The PENDING row is committed before the gateway is called. If the gateway
    never answers the row stays PENDING with a note; if it rejects the order
    the row becomes FAILED. Either way the caller gets the transaction back.
    """
    engine = ReconciliationEngine(TransactionRepository(db))
    customer = request.customer.model_dump() if request.customer else None

    if request.gateway == models.MANUAL:
        txn = engine.create_completed(
            merchant_id=merchant_id,
            amount=request.amount,
            currency=request.currency,
            payment_method=request.payment_method,
            type=request.type,
            sale_id=request.sale_id,
            description=request.description,
            customer=customer,
        )
        return InitiationResult(txn)

    txn = engine.create_pending(
        merchant_id=merchant_id,
        amount=request.amount,
        currency=request.currency,
        gateway=request.gateway,
        payment_method=request.payment_method,
        type=request.type,
        sale_id=request.sale_id,
        description=request.description,
        customer=customer,
    )

    gateway = GATEWAY_MAP[request.gateway]
    options = {
        "payment_method_nonce": request.payment_method_nonce,
        "return_url": request.return_url,
        "cancel_url": request.cancel_url,
        "connected_account": request.connected_account,
    }
    try:
        order = await asyncio.wait_for(
            gateway.create_order(txn, **options),
            timeout=settings.GATEWAY_TIMEOUT_SECONDS,
        )
    except asyncio.TimeoutError:
        error = GatewayError(
            gateway.gateway_name,
            f"no answer within {settings.GATEWAY_TIMEOUT_SECONDS}s",
            reached_gateway=False,
        )
        return InitiationResult(_order_failed(engine, txn, error), error=error)
    except GatewayError as e:
        return InitiationResult(_order_failed(engine, txn, e), error=e)

    engine.attach_order(txn, order.order_id, payload=order.raw)
    logger.info("Created %s order %s for %s", gateway.gateway_name, order.order_id, txn.id,
                extra={"transaction_id": txn.id, "gateway": gateway.gateway_name})
    return InitiationResult(txn, client_data=order.client_data)


def _order_failed(engine: ReconciliationEngine, txn: models.Transaction, error: GatewayError) -> models.Transaction:
    logger.error("Order creation failed for %s: %s", txn.id, error.message,
                 extra={"transaction_id": txn.id, "gateway": error.gateway})
    if not error.reached_gateway:
        evidence = local_event("order.unreached", reason=f"never reached gateway: {error.message}")
        return engine.annotate(txn, evidence).transaction

    evidence = local_event(
        "order.rejected",
        reason=f"gateway rejected order: {error.message}",
        metadata={"failure_reason": error.message},
    )
    return engine.apply_transition(txn, models.FAILED, evidence).transaction


async def capture_transaction(db: Session, merchant_id: str, transaction_id: str) -> TransitionResult:
    txn = get_merchant_transaction(db, merchant_id, transaction_id)
    engine = ReconciliationEngine(TransactionRepository(db))
    return await engine.capture(txn, GATEWAY_MAP.get(txn.gateway))


def cancel_transaction(db: Session, merchant_id: str, transaction_id: str, reason: str) -> TransitionResult:
    txn = get_merchant_transaction(db, merchant_id, transaction_id)
    return ReconciliationEngine(TransactionRepository(db)).cancel(txn, reason)


def refund_transaction(
    db: Session,
    merchant_id: str,
    transaction_id: str,
    amount: Optional[float],
    reason: Optional[str] = None,
    refund_id: Optional[str] = None,
) -> TransitionResult:
    """
    Book a merchant-initiated refund. Defaults to the remaining refundable balance.
    """
    repo = TransactionRepository(db)
    txn = get_merchant_transaction(db, merchant_id, transaction_id)
    if amount is None:
        amount = round(txn.amount - repo.refunded_total(txn.id), 2)
    evidence = local_event(
        "refund.requested",
        reference=GatewayReference(transaction_id=txn.id),
        refund_id=refund_id,
        refund_amount=amount,
        reason=reason,
    )
    return ReconciliationEngine(repo).record_refund(txn, amount, refund_id, evidence, strict=True)


def update_transaction(
    db: Session,
    merchant_id: str,
    transaction_id: str,
    notes: Optional[str] = None,
    customer: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> TransitionResult:
    txn = get_merchant_transaction(db, merchant_id, transaction_id)
    return ReconciliationEngine(TransactionRepository(db)).update_details(
        txn, merchant_id, notes=notes, customer=customer, metadata=metadata,
    )
