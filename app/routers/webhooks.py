from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from app import models
from app.database import get_db
from app.schemas.responses import WebhookAck
from app.services.webhooks import process_webhook

router = APIRouter()


async def _receive(gateway_name: str, request: Request, db: Session) -> WebhookAck:
    # Raw bytes first: signatures are computed over the exact body sent
    raw_body = await request.body()
    result = await process_webhook(gateway_name, request.headers, raw_body, db)
    return WebhookAck(outcome=result.outcome, transaction_id=result.transaction_id)


@router.post("/stripe", response_model=WebhookAck)
async def stripe_webhook(request: Request, db: Session = Depends(get_db)):
    """
    Stripe events, verified against the ``Stripe-Signature`` header.

    - 400: signature missing or invalid, payload unreadable
    - 200: everything else, including events that match no transaction
    """
    return await _receive(models.STRIPE, request, db)


@router.post("/paypal", response_model=WebhookAck)
async def paypal_webhook(request: Request, db: Session = Depends(get_db)):
    """PayPal events, verified through PayPal's verify-webhook-signature API (401 on failure)."""
    return await _receive(models.PAYPAL, request, db)


@router.post("/braintree", response_model=WebhookAck)
async def braintree_webhook(request: Request, db: Session = Depends(get_db)):
    """Braintree notifications, form-encoded ``bt_signature`` / ``bt_payload``."""
    return await _receive(models.BRAINTREE, request, db)


@router.get("/{gateway}")
def webhook_probe(gateway: str):
    name = gateway.upper()
    if name not in (models.STRIPE, models.PAYPAL, models.BRAINTREE):
        raise HTTPException(status_code=404, detail=f"No webhook endpoint for {gateway}")
    return {"status": "endpoint active", "gateway": name}
