import asyncio
import logging
from typing import Dict, Any, Mapping, Optional
from urllib.parse import parse_qs

import braintree
from braintree.exceptions import (
    InvalidChallengeError,
    InvalidSignatureError,
    RequestTimeoutError,
    ServiceUnavailableError,
)
from braintree.exceptions.braintree_error import BraintreeError

from app import models
from app.config import settings
from app.exceptions import GatewayError, SignatureInvalid
from app.gateways.base import (
    BaseGateway, OrderResult, CaptureResult,
    CAPTURE_COMPLETED, CAPTURE_PENDING, CAPTURE_DECLINED,
)

logger = logging.getLogger(__name__)

CAPTURE_STATUS_MAP = {
    "settled": CAPTURE_COMPLETED,
    "submitted_for_settlement": CAPTURE_PENDING,
    "settling": CAPTURE_PENDING,
    "settlement_pending": CAPTURE_PENDING,
    "settlement_declined": CAPTURE_DECLINED,
    "processor_declined": CAPTURE_DECLINED,
    "gateway_rejected": CAPTURE_DECLINED,
    "failed": CAPTURE_DECLINED,
    "voided": CAPTURE_DECLINED,
}

ENVIRONMENTS = {
    "sandbox": braintree.Environment.Sandbox,
    "production": braintree.Environment.Production,
}


def _transaction_dict(txn) -> Optional[Dict[str, Any]]:
    if txn is None:
        return None
    return {
        "id": txn.id,
        "order_id": getattr(txn, "order_id", None),
        "status": getattr(txn, "status", None),
        "amount": str(txn.amount) if getattr(txn, "amount", None) is not None else None,
        "currency_iso_code": getattr(txn, "currency_iso_code", None),
        "service_fee_amount": (
            str(txn.service_fee_amount) if getattr(txn, "service_fee_amount", None) is not None else None
        ),
        "processor_response_text": getattr(txn, "processor_response_text", None),
    }


class BraintreeGateway(BaseGateway):
    """
    Braintree authorize-then-settle.
    The internal transaction id is the Braintree ``order_id``; settlement
    webhooks echo it back.
    """

    def __init__(self):
        self._gateway = None

    @property
    def gateway_name(self) -> str:
        return models.BRAINTREE

    @property
    def client(self) -> braintree.BraintreeGateway:
        if self._gateway is None:
            self._gateway = braintree.BraintreeGateway(
                braintree.Configuration(
                    environment=ENVIRONMENTS.get(settings.BRAINTREE_ENVIRONMENT, braintree.Environment.Sandbox),
                    merchant_id=settings.BRAINTREE_MERCHANT_ID,
                    public_key=settings.BRAINTREE_PUBLIC_KEY,
                    private_key=settings.BRAINTREE_PRIVATE_KEY,
                    timeout=settings.GATEWAY_TIMEOUT_SECONDS,
                )
            )
        return self._gateway

    async def _run(self, fn, *args):
        try:
            result = await asyncio.to_thread(fn, *args)
        except (RequestTimeoutError,
                ServiceUnavailableError) as e:
            raise GatewayError(self.gateway_name, type(e).__name__, reached_gateway=False)
        except BraintreeError as e:
            raise GatewayError(self.gateway_name, str(e) or type(e).__name__)
        if not result.is_success:
            raise GatewayError(self.gateway_name, result.message)
        return result

    async def create_order(self, transaction: models.Transaction, **options) -> OrderResult:
        nonce = options.get("payment_method_nonce")
        if not nonce:
            raise GatewayError(self.gateway_name, "payment_method_nonce is required")
        result = await self._run(self.client.transaction.sale, {
            "amount": f"{transaction.amount:.2f}",
            "payment_method_nonce": nonce,
            "order_id": transaction.id,
            "options": {"submit_for_settlement": False},
        })
        return OrderResult(
            order_id=result.transaction.id,
            raw=_transaction_dict(result.transaction),
        )

    async def capture(self, transaction: models.Transaction) -> CaptureResult:
        result = await self._run(self.client.transaction.submit_for_settlement, transaction.gateway_order_id)
        txn = result.transaction
        fee = getattr(txn, "service_fee_amount", None)
        return CaptureResult(
            capture_id=txn.id,
            status=CAPTURE_STATUS_MAP.get(txn.status, CAPTURE_PENDING),
            fee_amount=round(float(fee), 2) if fee is not None else None,
            reason=getattr(txn, "processor_response_text", None),
            raw=_transaction_dict(txn),
        )

    async def verify_webhook(self, headers: Mapping[str, str], raw_body: bytes) -> Dict[str, Any]:
        params = parse_qs(raw_body.decode("utf-8", errors="replace"))
        signature = (params.get("bt_signature") or [None])[0]
        payload = (params.get("bt_payload") or [None])[0]
        if not signature or not payload:
            raise SignatureInvalid(self.gateway_name, "missing bt_signature or bt_payload")
        try:
            notification = self.client.webhook_notification.parse(signature, payload)
        except (InvalidSignatureError,
                InvalidChallengeError) as e:
            raise SignatureInvalid(self.gateway_name, type(e).__name__)

        timestamp = getattr(notification, "timestamp", None)
        return {
            "kind": notification.kind,
            "timestamp": timestamp.isoformat() if timestamp else None,
            "transaction": _transaction_dict(getattr(notification, "transaction", None)),
        }
