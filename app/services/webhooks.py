"""
Webhook dispatch.

Orchestrates:
1. Verify the raw body with the gateway adapter (rejected before anything else)
2. Normalize to a GatewayEvent
3. Dedupe on (gateway, event id)
4. Correlate to a local transaction
5. Apply the target status, or annotate
6. Record the outcome

Once verified, an event is always acknowledged: misses and ignored types are
logged and recorded, never retried by the gateway.
"""
import asyncio
import logging
from typing import Mapping, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.exceptions import MalformedWebhook, PersistenceError, SignatureInvalid
from app.repository import TransactionRepository
from app.services import payments
from app.services.normalizer import normalize, GatewayEvent
from app.services.reconciliation import ReconciliationEngine, DUPLICATE

logger = logging.getLogger(__name__)


IGNORED = "ignored"
CORRELATION_MISS = "correlation_miss"


class WebhookOutcome:
    def __init__(self, gateway: str, outcome: str, event: Optional[GatewayEvent] = None,
                 transaction_id: Optional[str] = None):
        self.gateway = gateway
        self.outcome = outcome
        self.event = event
        self.transaction_id = transaction_id


async def _verify(gateway_name: str, headers: Mapping[str, str], raw_body: bytes) -> dict:
    gateway = payments.GATEWAY_MAP[gateway_name]
    try:
        return await asyncio.wait_for(
            gateway.verify_webhook(headers, raw_body),
            timeout=settings.GATEWAY_TIMEOUT_SECONDS,
        )
    except asyncio.TimeoutError:
        raise SignatureInvalid(gateway_name, "verification timed out", status_code=401)


def _record_unmatched(repo: TransactionRepository, event: GatewayEvent, outcome: str) -> str:
    """Record an event no transaction will see, so redelivery is recognised."""
    if not event.event_id:
        return outcome
    try:
        repo.add_event(event.source, event.event_id, event.event_type, None, outcome)
        repo.commit()
    except IntegrityError:
        repo.rollback()
        return DUPLICATE
    except SQLAlchemyError as e:
        repo.rollback()
        raise PersistenceError(f"Could not record {event.describe()}") from e
    return outcome


async def process_webhook(gateway_name: str, headers: Mapping[str, str], raw_body: bytes,
                          db: Session) -> WebhookOutcome:
    """
    Process one verified gateway delivery.

    Raises:
        SignatureInvalid: the body could not be authenticated (gateway should retry)
        MalformedWebhook: authenticated but not an event we can read
        PersistenceError: the outcome could not be stored (gateway should retry)
    """
    payload = await _verify(gateway_name, headers, raw_body)

    try:
        event = normalize(gateway_name, payload)
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        logger.error("Malformed %s webhook: %s", gateway_name, e, extra={"gateway": gateway_name})
        raise MalformedWebhook(f"Unreadable {gateway_name} event: {e}", {"gateway": gateway_name})

    log_extra = {"gateway": gateway_name, "event_id": event.event_id}
    repo = TransactionRepository(db)

    try:
        seen = bool(event.event_id) and repo.event_seen(event.source, event.event_id)
    except SQLAlchemyError as e:
        repo.rollback()
        raise PersistenceError("Event ledger lookup failed") from e
    if seen:
        logger.info("Duplicate delivery of %s", event.describe(), extra=log_extra)
        return WebhookOutcome(gateway_name, DUPLICATE, event)

    if not event.handled:
        logger.info("Ignoring unhandled event %s", event.describe(), extra=log_extra)
        return WebhookOutcome(gateway_name, _record_unmatched(repo, event, IGNORED), event)

    engine = ReconciliationEngine(repo)
    txn = engine.correlate(event.reference)
    if txn is None:
        logger.warning("Correlation miss for %s %r", event.describe(), event.reference, extra=log_extra)
        return WebhookOutcome(gateway_name, _record_unmatched(repo, event, CORRELATION_MISS), event)

    if event.target_status is None:
        result = engine.annotate(txn, event)
    else:
        result = engine.apply_transition(txn, event.target_status, event)

    logger.info("%s -> %s: %s", event.describe(), txn.id, result.outcome,
                extra=dict(log_extra, transaction_id=txn.id))
    return WebhookOutcome(gateway_name, result.outcome, event, txn.id)
