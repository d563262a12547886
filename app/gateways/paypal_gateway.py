import json
import logging
from typing import Dict, Any, Mapping, Optional

import httpx

from app import models
from app.config import settings
from app.exceptions import GatewayError, SignatureInvalid
from app.gateways.base import (
    BaseGateway, OrderResult, CaptureResult,
    CAPTURE_COMPLETED, CAPTURE_PENDING, CAPTURE_DECLINED,
)

logger = logging.getLogger(__name__)

TRANSMISSION_HEADERS = (
    "paypal-auth-algo",
    "paypal-cert-url",
    "paypal-transmission-id",
    "paypal-transmission-sig",
    "paypal-transmission-time",
)

CAPTURE_STATUS_MAP = {
    "COMPLETED": CAPTURE_COMPLETED,
    "PENDING": CAPTURE_PENDING,
    "DECLINED": CAPTURE_DECLINED,
    "FAILED": CAPTURE_DECLINED,
}


class PayPalGateway(BaseGateway):
    """
    PayPal Orders v2 over REST.
    The internal transaction id is sent as the purchase unit ``custom_id`` and
    is echoed back on capture and refund webhooks.
    """

    @property
    def gateway_name(self) -> str:
        return models.PAYPAL

    async def _request(self, method: str, path: str, token: Optional[str] = None, **kwargs) -> Dict[str, Any]:
        headers = kwargs.pop("headers", {})
        if token:
            headers["Authorization"] = f"Bearer {token}"
        try:
            async with httpx.AsyncClient(
                base_url=settings.PAYPAL_API_BASE,
                timeout=settings.GATEWAY_TIMEOUT_SECONDS,
            ) as client:
                response = await client.request(method, path, headers=headers, **kwargs)
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as e:
            detail = e.response.text[:500]
            raise GatewayError(self.gateway_name, f"{e.response.status_code} {detail}")
        except httpx.TransportError as e:
            raise GatewayError(self.gateway_name, str(e) or type(e).__name__, reached_gateway=False)

    async def _access_token(self) -> str:
        body = await self._request(
            "POST",
            "/v1/oauth2/token",
            auth=(settings.PAYPAL_CLIENT_ID, settings.PAYPAL_CLIENT_SECRET),
            data={"grant_type": "client_credentials"},
        )
        return body["access_token"]

    async def create_order(self, transaction: models.Transaction, **options) -> OrderResult:
        token = await self._access_token()
        value = f"{transaction.amount:.2f}"
        order = await self._request(
            "POST",
            "/v2/checkout/orders",
            token=token,
            headers={"PayPal-Request-Id": transaction.id, "Prefer": "return=representation"},
            json={
                "intent": "CAPTURE",
                "purchase_units": [{
                    "reference_id": transaction.sale_id or transaction.id,
                    "custom_id": transaction.id,
                    "description": transaction.description or "POS purchase",
                    "amount": {
                        "currency_code": transaction.currency,
                        "value": value,
                        "breakdown": {"item_total": {"currency_code": transaction.currency, "value": value}},
                    },
                }],
                "application_context": {
                    "shipping_preference": "NO_SHIPPING",
                    "user_action": "PAY_NOW",
                    "return_url": options.get("return_url"),
                    "cancel_url": options.get("cancel_url"),
                },
            },
        )
        approve_url = next(
            (link["href"] for link in order.get("links", []) if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        return OrderResult(
            order_id=order["id"],
            client_data={"approve_url": approve_url},
            raw={"id": order["id"], "status": order.get("status")},
        )

    async def capture(self, transaction: models.Transaction) -> CaptureResult:
        token = await self._access_token()
        body = await self._request(
            "POST",
            f"/v2/checkout/orders/{transaction.gateway_order_id}/capture",
            token=token,
            headers={"PayPal-Request-Id": f"{transaction.id}-capture"},
            json={},
        )
        captures = body["purchase_units"][0]["payments"]["captures"]
        capture = captures[0]
        breakdown = capture.get("seller_receivable_breakdown") or {}
        fee = (breakdown.get("paypal_fee") or {}).get("value")
        return CaptureResult(
            capture_id=capture["id"],
            status=CAPTURE_STATUS_MAP.get(capture.get("status"), CAPTURE_PENDING),
            fee_amount=round(float(fee), 2) if fee is not None else None,
            reason=(capture.get("status_details") or {}).get("reason"),
            raw={"order_id": body.get("id"), "status": body.get("status"), "capture_id": capture["id"]},
        )

    async def verify_webhook(self, headers: Mapping[str, str], raw_body: bytes) -> Dict[str, Any]:
        missing = [name for name in TRANSMISSION_HEADERS if not headers.get(name)]
        if missing:
            raise SignatureInvalid(self.gateway_name, f"missing headers {', '.join(missing)}", status_code=401)
        try:
            event = json.loads(raw_body)
        except ValueError:
            raise SignatureInvalid(self.gateway_name, "invalid payload")

        try:
            token = await self._access_token()
            result = await self._request(
                "POST",
                "/v1/notifications/verify-webhook-signature",
                token=token,
                json={
                    "auth_algo": headers["paypal-auth-algo"],
                    "cert_url": headers["paypal-cert-url"],
                    "transmission_id": headers["paypal-transmission-id"],
                    "transmission_sig": headers["paypal-transmission-sig"],
                    "transmission_time": headers["paypal-transmission-time"],
                    "webhook_id": settings.PAYPAL_WEBHOOK_ID,
                    "webhook_event": event,
                },
            )
        except GatewayError as e:
            logger.error("PayPal webhook verification call failed: %s", e.message)
            raise SignatureInvalid(self.gateway_name, "verification unavailable", status_code=401)

        if result.get("verification_status") != "SUCCESS":
            raise SignatureInvalid(self.gateway_name, "signature mismatch", status_code=401)
        return event
