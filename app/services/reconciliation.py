"""
Transaction reconciliation engine.

Owns a payment transaction's status lifecycle:

    PENDING -> PROCESSING -> COMPLETED -> PARTIALLY_REFUNDED -> REFUNDED
                          -> FAILED
    PENDING / PROCESSING -> CANCELLED   (PROCESSING only while nothing is captured)

Inputs are merchant calls (create, capture, cancel, refund) and gateway
webhooks that were already verified and normalized. Every operation re-reads
the transaction, decides, and commits the whole change or nothing. Concurrent
writers are detected through the row's version column; the loser re-reads
and decides again, which makes last-writer-wins safe because a duplicate or
older event never moves the status.
"""
import asyncio
import logging
from typing import Optional, Dict, Any, Callable

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from app import models
from app.config import settings
from app.exceptions import (
    GatewayError,
    IllegalTransition,
    InvalidRefund,
    InvalidTransactionRequest,
    PersistenceError,
    ReconciliationError,
    TerminalStateError,
)
from app.gateways.base import BaseGateway, CAPTURE_COMPLETED, CAPTURE_DECLINED
from app.repository import TransactionRepository
from app.services.normalizer import GatewayEvent, GatewayReference

logger = logging.getLogger(__name__)


NET_AMOUNT_EPSILON = 0.005

LEGAL_TRANSITIONS = {
    models.PENDING: {models.PROCESSING, models.CANCELLED},
    models.PROCESSING: {models.COMPLETED, models.FAILED, models.CANCELLED},
    models.COMPLETED: {models.PARTIALLY_REFUNDED, models.REFUNDED},
    models.PARTIALLY_REFUNDED: {models.PARTIALLY_REFUNDED, models.REFUNDED},
    models.FAILED: set(),
    models.CANCELLED: set(),
    models.REFUNDED: set(),
}

# Position along the lifecycle; equal ranks are alternative outcomes, not successors
STATUS_RANK = {
    models.PENDING: 0,
    models.PROCESSING: 1,
    models.COMPLETED: 2,
    models.FAILED: 2,
    models.CANCELLED: 2,
    models.PARTIALLY_REFUNDED: 3,
    models.REFUNDED: 4,
}

REFUNDABLE_STATUSES = (models.COMPLETED, models.PARTIALLY_REFUNDED)
CANCELLABLE_STATUSES = (models.PENDING, models.PROCESSING)
PRIMARY_TERMINAL_STATUSES = (
    models.COMPLETED, models.FAILED, models.CANCELLED, models.REFUNDED, models.PARTIALLY_REFUNDED,
)

# Outcomes
APPLIED = "applied"
ANNOTATED = "annotated"
DUPLICATE = "duplicate"
STALE = "stale"
ILLEGAL = "illegal"


class TransitionResult:
    def __init__(
        self,
        transaction: models.Transaction,
        outcome: str,
        detail: str = "",
        refund_transaction: Optional[models.Transaction] = None,
    ):
        self.transaction = transaction
        self.outcome = outcome
        self.detail = detail
        self.refund_transaction = refund_transaction

    @property
    def applied(self) -> bool:
        return self.outcome == APPLIED


def local_event(event_type: str, **kwargs) -> GatewayEvent:
    return GatewayEvent(source=models.MANUAL, event_type=event_type, **kwargs)


def _sentence(text: str) -> str:
    return text[:1].upper() + text[1:]


def _transition_path(current: str, target: str):
    """Legal edges from ``current`` to ``target``, or None."""
    if target in LEGAL_TRANSITIONS[current]:
        return [target]
    # Gateways that auto-capture never announce PROCESSING
    if current == models.PENDING and target in (models.COMPLETED, models.FAILED):
        return [models.PROCESSING, target]
    return None


class ReconciliationEngine:
    def __init__(self, repository: TransactionRepository):
        self.repo = repository

    # ------------------------------------------------------------------
    # creation
    # ------------------------------------------------------------------

    def create_pending(
        self,
        merchant_id: str,
        amount: float,
        currency: str,
        gateway: str,
        payment_method: str,
        type: str = models.SALE,
        sale_id: Optional[str] = None,
        description: Optional[str] = None,
        customer: Optional[Dict[str, Any]] = None,
    ) -> models.Transaction:
        """
        Persist a PENDING transaction before any gateway is contacted, so a
        correlation key exists even if the gateway call never happens.
        """
        self._validate_new(amount, currency, gateway, type)
        if gateway == models.MANUAL:
            raise InvalidTransactionRequest("Manual payments are recorded as completed, not pending")

        txn = self._new_transaction(
            merchant_id, amount, currency, gateway, payment_method, type,
            sale_id, description, customer, status=models.PENDING,
        )
        txn.append_note(f"Created pending {gateway} transaction for {currency} {amount:.2f}")
        self._persist_new(txn)
        logger.info("Created pending transaction %s", txn.id,
                    extra={"transaction_id": txn.id, "gateway": gateway, "merchant_id": merchant_id})
        return txn

    def create_completed(
        self,
        merchant_id: str,
        amount: float,
        currency: str,
        payment_method: str,
        type: str = models.SALE,
        sale_id: Optional[str] = None,
        description: Optional[str] = None,
        customer: Optional[Dict[str, Any]] = None,
        created_by: Optional[str] = None,
    ) -> models.Transaction:
        """Cash, check and other manual payments are settled the moment they are recorded."""
        self._validate_new(amount, currency, models.MANUAL, type)
        txn = self._new_transaction(
            merchant_id, amount, currency, models.MANUAL, payment_method, type,
            sale_id, description, customer, status=models.COMPLETED,
        )
        txn.processed_at = models.utcnow()
        txn.metadata_ = {"created_via": "manual-api", "created_by": created_by or merchant_id}
        txn.append_note(f"Manual {payment_method} payment recorded")
        self._persist_new(txn)
        logger.info("Recorded manual transaction %s", txn.id,
                    extra={"transaction_id": txn.id, "merchant_id": merchant_id})
        return txn

    def _validate_new(self, amount, currency, gateway, type):
        if amount is None or amount <= 0:
            raise InvalidTransactionRequest("Amount must be greater than 0")
        if currency not in models.CURRENCIES:
            raise InvalidTransactionRequest(f"Unsupported currency {currency}")
        if gateway not in models.GATEWAYS:
            raise InvalidTransactionRequest(f"Unknown gateway {gateway}")
        if type == models.REFUND:
            raise InvalidTransactionRequest("Refund transactions are created through refunds")

    def _new_transaction(self, merchant_id, amount, currency, gateway, payment_method, type,
                         sale_id, description, customer, status) -> models.Transaction:
        customer = customer or {}
        amount = round(amount, 2)
        return models.Transaction(
            id=models.generate_transaction_id(),
            merchant_id=merchant_id,
            sale_id=sale_id,
            type=type,
            status=status,
            payment_method=payment_method,
            gateway=gateway,
            amount=amount,
            currency=currency,
            fee_amount=0.0,
            net_amount=amount,
            description=description,
            customer_name=customer.get("name"),
            customer_email=customer.get("email"),
            customer_phone=customer.get("phone"),
            metadata_={},
            notes="",
        )

    def _persist_new(self, txn: models.Transaction):
        try:
            self.repo.add(txn)
            self.repo.commit()
        except SQLAlchemyError as e:
            self.repo.rollback()
            logger.error("Could not persist transaction %s: %s", txn.id, e)
            raise PersistenceError(f"Could not persist transaction {txn.id}") from e

    def attach_order(self, txn: models.Transaction, order_id: str, payload: Optional[Dict[str, Any]] = None):
        """Record the gateway order id a PENDING transaction acquired at creation."""
        event = local_event("order.created", reference=GatewayReference(order_id=order_id), payload=payload)

        def decide(t):
            self._assign_reference(t, event.reference)
            self._record_evidence(t, event, f"Gateway order {order_id} created")
            return TransitionResult(t, ANNOTATED, "order attached")

        return self._run(txn, decide)

    # ------------------------------------------------------------------
    # correlation
    # ------------------------------------------------------------------

    def correlate(self, reference: GatewayReference) -> Optional[models.Transaction]:
        """
        Find the local transaction an event refers to.

        Capture id first (assigned last, names one settlement attempt), then
        the internal id the gateway echoes back, then the order id (assigned
        first, shared by every event of the order). First match wins.
        """
        lookups = (
            ("capture_id", reference.capture_id, self.repo.find_by_capture_id),
            ("transaction_id", reference.transaction_id, self.repo.get),
            ("order_id", reference.order_id,
             lambda order_id: self.repo.find_by_order_id(order_id, capture_id=reference.capture_id)),
        )
        try:
            for label, value, lookup in lookups:
                if not value:
                    continue
                txn = lookup(value)
                if txn is not None:
                    logger.debug("Correlated %s=%s to %s", label, value, txn.id)
                    return txn
        except SQLAlchemyError as e:
            self.repo.rollback()
            raise PersistenceError("Correlation lookup failed") from e

        logger.warning("No local transaction for %r", reference)
        return None

    # ------------------------------------------------------------------
    # transitions
    # ------------------------------------------------------------------

    def apply_transition(
        self,
        txn: models.Transaction,
        target_status: str,
        evidence: Optional[GatewayEvent] = None,
    ) -> TransitionResult:
        """
        Move ``txn`` to ``target_status`` if the state machine allows it.

        Repeats are no-ops, events for an earlier stage are recorded as stale,
        anything else is recorded and refused. Refund targets create a REFUND
        transaction instead of touching the original amount.
        """
        evidence = evidence or local_event("transition.requested")
        if target_status in (models.REFUNDED, models.PARTIALLY_REFUNDED):
            return self.record_refund(txn, evidence.refund_amount, evidence.refund_id, evidence)
        return self._run(txn, lambda t: self._decide_transition(t, target_status, evidence), evidence)

    def _decide_transition(self, txn: models.Transaction, target: str, evidence: GatewayEvent) -> TransitionResult:
        current = txn.status
        if current == target:
            return TransitionResult(txn, DUPLICATE, f"already {target}")

        path = _transition_path(current, target)
        if path and target == models.CANCELLED and current == models.PROCESSING and self._funds_captured(txn, evidence):
            path = None

        if path is None:
            outcome = STALE if STATUS_RANK[current] > STATUS_RANK[target] else ILLEGAL
            detail = f"{outcome} {target} request ignored while {current}"
            self._record_evidence(txn, evidence, _sentence(detail))
            logger.info("Transaction %s: %s (%s)", txn.id, detail, evidence.describe(),
                        extra={"transaction_id": txn.id})
            return TransitionResult(txn, outcome, detail)

        self._assign_reference(txn, evidence.reference)
        for status in path:
            self._enter(txn, status, evidence)
        summary = " -> ".join([current] + path)
        if evidence.reason:
            summary = f"{summary} ({evidence.reason})"
        self._record_evidence(txn, evidence, summary)
        logger.info("Transaction %s: %s via %s", txn.id, summary, evidence.describe(),
                    extra={"transaction_id": txn.id})
        return TransitionResult(txn, APPLIED, summary)

    def _funds_captured(self, txn: models.Transaction, evidence: GatewayEvent) -> bool:
        return bool(txn.gateway_capture_id or evidence.reference.capture_id)

    def _enter(self, txn: models.Transaction, status: str, evidence: GatewayEvent):
        if status == models.COMPLETED:
            if evidence.fee_amount is not None:
                txn.fee_amount = round(evidence.fee_amount, 2)
                txn.fee_type = txn.fee_type or "PROCESSING_FEE"
            txn.processed_at = evidence.occurred_at or models.utcnow()
        txn.status = status
        if status in (models.COMPLETED, models.FAILED, models.CANCELLED):
            self.reconcile_net_amount(txn)

    def _assign_reference(self, txn: models.Transaction, reference: GatewayReference):
        """Fill alternate keys the transaction does not have yet; never overwrite."""
        if txn.status in models.SETTLED_STATUSES:
            return
        if reference.order_id and not txn.gateway_order_id:
            txn.gateway_order_id = reference.order_id
        if reference.capture_id and not txn.gateway_capture_id:
            txn.gateway_capture_id = reference.capture_id

    def reconcile_net_amount(self, txn: models.Transaction) -> float:
        """net = amount - fee; a stored value that disagrees is replaced and logged."""
        expected = round(txn.amount - (txn.fee_amount or 0.0), 2)
        stored = txn.net_amount
        if stored is not None and abs(stored - expected) > NET_AMOUNT_EPSILON:
            logger.warning(
                "Transaction %s net amount %.2f disagrees with amount - fee = %.2f; using recomputed value",
                txn.id, stored, expected, extra={"transaction_id": txn.id},
            )
        txn.net_amount = expected
        return expected

    def _record_evidence(self, txn: models.Transaction, evidence: GatewayEvent, summary: str):
        txn.append_note(f"{evidence.describe()}: {summary}")
        if evidence.metadata:
            merged = dict(txn.metadata_ or {})
            merged.update(evidence.metadata)
            txn.metadata_ = merged
        if evidence.payload is not None:
            txn.provider_payload = evidence.payload

    def annotate(self, txn: models.Transaction, evidence: GatewayEvent) -> TransitionResult:
        """Record an event that carries information but no status change."""
        def decide(t):
            self._record_evidence(t, evidence, evidence.reason or "recorded")
            return TransitionResult(t, ANNOTATED, f"{evidence.event_type} recorded")

        return self._run(txn, decide, evidence)

    def update_details(
        self,
        txn: models.Transaction,
        updated_by: str,
        notes: Optional[str] = None,
        customer: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> TransitionResult:
        """
        Merchant edits: append a note, correct the customer snapshot, add
        known metadata keys. Allowed in every status; status, amounts and
        gateway ids are never touched.
        """
        evidence = local_event("details.updated", metadata=dict(metadata or {}, updated_by=updated_by))

        def decide(t):
            changed = []
            for field, value in (customer or {}).items():
                setattr(t, f"customer_{field}", value)
                changed.append(f"customer {field}")
            changed.extend(sorted(k for k in evidence.metadata if k != "updated_by"))
            summary = f"updated by {updated_by}"
            if changed:
                summary += f" ({', '.join(changed)})"
            if notes:
                summary += f": {notes}"
            self._record_evidence(t, evidence, _sentence(summary))
            return TransitionResult(t, ANNOTATED, "details updated")

        return self._run(txn, decide, evidence)

    # ------------------------------------------------------------------
    # cancel
    # ------------------------------------------------------------------

    def cancel(self, txn: models.Transaction, reason: str, evidence: Optional[GatewayEvent] = None) -> TransitionResult:
        """
        PENDING, or PROCESSING with nothing captured, -> CANCELLED.
        Repeating a cancel is a no-op; anything else raises.
        """
        evidence = evidence or local_event(
            "cancel.requested", reason=reason, metadata={"cancellation_reason": reason},
        )

        def decide(t):
            if t.status == models.CANCELLED:
                return TransitionResult(t, DUPLICATE, "already CANCELLED")
            if t.status not in CANCELLABLE_STATUSES:
                raise TerminalStateError(t.id, t.status, "cancel")
            if t.status == models.PROCESSING and self._funds_captured(t, evidence):
                raise IllegalTransition(
                    f"Transaction {t.id} has captured funds and cannot be cancelled; refund it instead",
                    {"transaction_id": t.id, "status": t.status},
                )
            return self._decide_transition(t, models.CANCELLED, evidence)

        return self._run(txn, decide, evidence)

    # ------------------------------------------------------------------
    # refunds
    # ------------------------------------------------------------------

    def record_refund(
        self,
        txn: models.Transaction,
        amount: Optional[float],
        refund_id: Optional[str],
        evidence: Optional[GatewayEvent] = None,
        strict: bool = False,
    ) -> TransitionResult:
        """
        Book a refund against a COMPLETED / PARTIALLY_REFUNDED transaction.

        Creates one REFUND transaction per gateway refund id and sets the
        original's status from the cumulative refunded amount. The original
        amount is never changed.

        With ``strict`` (merchant-initiated refunds) a refund that cannot
        apply raises instead of being recorded as evidence.
        """
        evidence = evidence or local_event("refund.requested", refund_id=refund_id, refund_amount=amount)
        refund_id = refund_id or f"REF_{models.generate_transaction_id()}"

        def decide(original):
            existing = self.repo.find_refund(refund_id)
            if existing is not None and existing.parent_transaction_id == original.id:
                return TransitionResult(original, DUPLICATE, f"refund {refund_id} already recorded", existing)
            if existing is not None:
                # Refund ids are unique across all transactions and tenants
                detail = f"refund id {refund_id} is already bound to another transaction"
                if strict:
                    raise InvalidRefund(_sentence(detail), {"transaction_id": original.id, "refund_id": refund_id})
                self._record_evidence(original, evidence, _sentence(detail))
                logger.warning("Transaction %s: %s", original.id, detail, extra={"transaction_id": original.id})
                return TransitionResult(original, ILLEGAL, detail)

            if original.type == models.REFUND or original.status not in REFUNDABLE_STATUSES:
                if strict and original.status in PRIMARY_TERMINAL_STATUSES and original.type != models.REFUND:
                    raise TerminalStateError(original.id, original.status, "refund")
                if strict:
                    raise IllegalTransition(
                        f"Transaction {original.id} cannot be refunded while {original.status}",
                        {"transaction_id": original.id, "status": original.status},
                    )
                outcome = STALE if original.status == models.REFUNDED else ILLEGAL
                detail = f"{outcome} refund {refund_id} ignored while {original.status}"
                self._record_evidence(original, evidence, _sentence(detail))
                logger.info("Transaction %s: %s", original.id, detail, extra={"transaction_id": original.id})
                return TransitionResult(original, outcome, detail)

            if amount is None or amount <= 0:
                if strict:
                    raise InvalidRefund("Refund amount must be greater than 0", {"transaction_id": original.id})
                detail = f"refund {refund_id} without a positive amount ignored"
                self._record_evidence(original, evidence, _sentence(detail))
                logger.warning("Transaction %s: %s", original.id, detail, extra={"transaction_id": original.id})
                return TransitionResult(original, ILLEGAL, detail)

            refund_amount = round(amount, 2)
            already = self.repo.refunded_total(original.id)
            total = round(already + refund_amount, 2)
            if strict and total > original.amount + NET_AMOUNT_EPSILON:
                raise InvalidRefund(
                    f"Refund of {refund_amount:.2f} exceeds the refundable balance "
                    f"{original.amount - already:.2f}",
                    {"transaction_id": original.id, "refunded": already, "amount": original.amount},
                )
            if total > original.amount + NET_AMOUNT_EPSILON:
                logger.warning(
                    "Transaction %s refunded %.2f of %.2f; gateway reports more than was charged",
                    original.id, total, original.amount, extra={"transaction_id": original.id},
                )

            refund = models.Transaction(
                id=models.generate_transaction_id(),
                merchant_id=original.merchant_id,
                sale_id=original.sale_id,
                parent_transaction_id=original.id,
                type=models.REFUND,
                status=models.COMPLETED,
                payment_method=original.payment_method,
                gateway=original.gateway,
                amount=refund_amount,
                currency=original.currency,
                fee_amount=0.0,
                net_amount=refund_amount,
                gateway_refund_id=refund_id,
                description=f"Refund for transaction {original.id}",
                customer_name=original.customer_name,
                customer_email=original.customer_email,
                customer_phone=original.customer_phone,
                metadata_={},
                notes="",
                processed_at=evidence.occurred_at or models.utcnow(),
            )
            refund.append_note(f"Refund of {original.currency} {refund_amount:.2f} for {original.id}")
            self.repo.add(refund)

            previous = original.status
            original.status = (
                models.REFUNDED if total >= original.amount - NET_AMOUNT_EPSILON
                else models.PARTIALLY_REFUNDED
            )
            summary = (
                f"{previous} -> {original.status}: refund {refund_id} of "
                f"{original.currency} {refund_amount:.2f} (total refunded {total:.2f})"
            )
            self._record_evidence(original, evidence, summary)
            logger.info("Transaction %s: %s", original.id, summary, extra={"transaction_id": original.id})
            return TransitionResult(original, APPLIED, summary, refund)

        return self._run(txn, decide, evidence)

    # ------------------------------------------------------------------
    # synchronous capture
    # ------------------------------------------------------------------

    async def capture(self, txn: models.Transaction, gateway: BaseGateway) -> TransitionResult:
        """
        Capture through the gateway client.

        Declines and errors leave the transaction FAILED with the reason in
        its notes; a timeout leaves it PROCESSING because the gateway may
        still have captured, and the webhook will settle it.
        """
        self._refresh(txn)
        if txn.status == models.COMPLETED:
            return TransitionResult(txn, DUPLICATE, "already captured")
        if txn.status in PRIMARY_TERMINAL_STATUSES:
            raise TerminalStateError(txn.id, txn.status, "capture")
        if txn.gateway == models.MANUAL or not txn.gateway_order_id:
            raise InvalidTransactionRequest(
                f"Transaction {txn.id} has no gateway order to capture",
                {"transaction_id": txn.id, "gateway": txn.gateway},
            )

        self.apply_transition(txn, models.PROCESSING, local_event("capture.initiated"))

        try:
            result = await asyncio.wait_for(gateway.capture(txn), timeout=settings.GATEWAY_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            detail = f"capture timed out after {settings.GATEWAY_TIMEOUT_SECONDS}s; awaiting gateway webhook"
            logger.error("Transaction %s: %s", txn.id, detail, extra={"transaction_id": txn.id})
            return self.annotate(txn, local_event("capture.timeout", reason=detail))
        except GatewayError as e:
            return self._capture_failed(txn, e.message)
        except ReconciliationError:
            raise
        except Exception as e:  # gateway SDKs raise their own hierarchies
            logger.exception("Unexpected %s capture error for %s", gateway.gateway_name, txn.id)
            return self._capture_failed(txn, f"{type(e).__name__}: {e}")

        evidence = local_event(
            "capture.result",
            reference=GatewayReference(capture_id=result.capture_id),
            fee_amount=result.fee_amount,
            reason=result.reason,
            metadata={"capture_status": result.status},
            payload=result.raw,
        )
        if result.status == CAPTURE_COMPLETED:
            return self.apply_transition(txn, models.COMPLETED, evidence)
        if result.status == CAPTURE_DECLINED:
            return self._capture_failed(txn, result.reason or "declined by gateway", evidence)

        # Still settling: keep PROCESSING, remember the capture id for the webhook
        def decide(t):
            self._assign_reference(t, evidence.reference)
            self._record_evidence(t, evidence, "capture pending at gateway")
            return TransitionResult(t, ANNOTATED, "capture pending")

        return self._run(txn, decide, evidence)

    def _capture_failed(self, txn, reason: str, evidence: Optional[GatewayEvent] = None) -> TransitionResult:
        logger.error("Capture failed for %s: %s", txn.id, reason, extra={"transaction_id": txn.id})
        evidence = evidence or local_event("capture.failed")
        evidence.reason = f"capture failed: {reason}"
        evidence.metadata = dict(evidence.metadata, failure_reason=reason)
        return self.apply_transition(txn, models.FAILED, evidence)

    # ------------------------------------------------------------------
    # unit of work
    # ------------------------------------------------------------------

    def _refresh(self, txn: models.Transaction):
        try:
            self.repo.refresh(txn)
        except SQLAlchemyError as e:
            self.repo.rollback()
            raise PersistenceError(f"Could not read transaction {txn.id}") from e

    def _run(
        self,
        txn: models.Transaction,
        decide: Callable[[models.Transaction], TransitionResult],
        evidence: Optional[GatewayEvent] = None,
    ) -> TransitionResult:
        """
        Re-read, decide, commit. A concurrent writer surfaces as
        StaleDataError; the decision is then re-made on fresh state.
        """
        event_key = None
        if evidence is not None and evidence.event_id:
            event_key = (evidence.source, evidence.event_id)

        for attempt in range(1, settings.MAX_TRANSITION_RETRIES + 1):
            try:
                self.repo.refresh(txn)
                if event_key and self.repo.event_seen(*event_key):
                    return TransitionResult(txn, DUPLICATE, f"event {event_key[1]} already processed")

                result = decide(txn)

                if event_key:
                    self.repo.add_event(
                        evidence.source, evidence.event_id, evidence.event_type, txn.id, result.outcome,
                    )
                self.repo.commit()
                return result
            except StaleDataError:
                self.repo.rollback()
                logger.info("Concurrent update on %s, re-deciding (attempt %d)", txn.id, attempt,
                            extra={"transaction_id": txn.id})
            except IntegrityError as e:
                self.repo.rollback()
                if event_key:
                    # Another worker recorded the same event first
                    self._refresh(txn)
                    return TransitionResult(txn, DUPLICATE, f"event {event_key[1]} already processed")
                raise PersistenceError(f"Integrity error updating {txn.id}") from e
            except ReconciliationError:
                self.repo.rollback()
                raise
            except SQLAlchemyError as e:
                self.repo.rollback()
                logger.error("Persistence failure on %s: %s", txn.id, e, extra={"transaction_id": txn.id})
                raise PersistenceError(f"Could not update transaction {txn.id}") from e

        raise PersistenceError(
            f"Transaction {txn.id} kept changing; gave up after {settings.MAX_TRANSITION_RETRIES} attempts"
        )
