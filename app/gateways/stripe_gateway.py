import asyncio
import json
import logging
from typing import Dict, Any, Mapping

import stripe

from app import models
from app.config import settings
from app.exceptions import GatewayError, SignatureInvalid
from app.gateways.base import (
    BaseGateway, OrderResult, CaptureResult,
    CAPTURE_COMPLETED, CAPTURE_PENDING, CAPTURE_DECLINED,
)

logger = logging.getLogger(__name__)

# PaymentIntent status after a capture call -> capture outcome
CAPTURE_STATUS_MAP = {
    "succeeded": CAPTURE_COMPLETED,
    "processing": CAPTURE_PENDING,
    "requires_capture": CAPTURE_PENDING,
    "canceled": CAPTURE_DECLINED,
    "requires_payment_method": CAPTURE_DECLINED,
}


def _to_cents(amount: float) -> int:
    return int(round(amount * 100))


class StripeGateway(BaseGateway):
    """
    Stripe PaymentIntents with manual capture.
    The internal transaction id travels in PaymentIntent metadata and comes
    back on every payment_intent.* webhook.
    """

    @property
    def gateway_name(self) -> str:
        return models.STRIPE

    def _call(self, fn, *args, **kwargs):
        try:
            return fn(*args, api_key=settings.STRIPE_SECRET_KEY, **kwargs)
        except stripe.APIConnectionError as e:
            raise GatewayError(self.gateway_name, str(e), reached_gateway=False)
        except stripe.StripeError as e:
            raise GatewayError(self.gateway_name, e.user_message or str(e))

    async def create_order(self, transaction: models.Transaction, **options) -> OrderResult:
        params = dict(
            amount=_to_cents(transaction.amount),
            currency=transaction.currency.lower(),
            capture_method="manual",
            description=transaction.description,
            receipt_email=transaction.customer_email or None,
            metadata={
                "transaction_id": transaction.id,
                "merchant_id": transaction.merchant_id,
            },
            idempotency_key=transaction.id,
        )
        if options.get("connected_account"):
            params["stripe_account"] = options["connected_account"]

        intent = await asyncio.to_thread(self._call, stripe.PaymentIntent.create, **params)
        return OrderResult(
            order_id=intent["id"],
            client_data={"client_secret": intent["client_secret"]},
            raw={"id": intent["id"], "status": intent["status"]},
        )

    async def capture(self, transaction: models.Transaction) -> CaptureResult:
        intent = await asyncio.to_thread(
            self._call,
            stripe.PaymentIntent.capture,
            transaction.gateway_order_id,
            expand=["latest_charge.balance_transaction"],
        )
        # Expanded objects are StripeObjects; unexpanded ones are plain id strings
        charge = getattr(intent, "latest_charge", None)
        if charge is None or isinstance(charge, str):
            capture_id, balance = charge, None
        else:
            capture_id, balance = charge.id, getattr(charge, "balance_transaction", None)
        fee_cents = None
        if balance is not None and not isinstance(balance, str):
            fee_cents = getattr(balance, "fee", None)
        if fee_cents is None:
            fee_cents = getattr(intent, "application_fee_amount", None)
        error = getattr(intent, "last_payment_error", None)

        return CaptureResult(
            capture_id=capture_id,
            status=CAPTURE_STATUS_MAP.get(intent.status, CAPTURE_PENDING),
            fee_amount=round(fee_cents / 100.0, 2) if fee_cents is not None else None,
            reason=getattr(error, "message", None) if error is not None else None,
            raw={"id": intent.id, "status": intent.status},
        )

    async def verify_webhook(self, headers: Mapping[str, str], raw_body: bytes) -> Dict[str, Any]:
        signature = headers.get("stripe-signature")
        if not settings.STRIPE_WEBHOOK_SECRET:
            logger.error("Stripe webhook secret not configured")
            raise SignatureInvalid(self.gateway_name, "webhook secret not configured")
        if not signature:
            raise SignatureInvalid(self.gateway_name, "missing Stripe-Signature header")
        try:
            stripe.Webhook.construct_event(raw_body, signature, settings.STRIPE_WEBHOOK_SECRET)
        except ValueError:
            raise SignatureInvalid(self.gateway_name, "invalid payload")
        except stripe.SignatureVerificationError:
            raise SignatureInvalid(self.gateway_name, "signature mismatch")
        return json.loads(raw_body)
