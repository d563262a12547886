from pydantic import BaseModel, field_validator, model_validator
from typing import Optional, Dict, Any

from app import models


class CustomerSnapshot(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v):
        if v is not None and len(v) > 20:
            raise ValueError("phone cannot exceed 20 characters")
        return v


class CreateTransactionRequest(BaseModel):
    amount: float
    currency: str = "USD"
    gateway: str
    payment_method: str
    type: str = models.SALE
    sale_id: Optional[str] = None
    description: Optional[str] = None
    customer: Optional[CustomerSnapshot] = None

    # Gateway-specific order options
    payment_method_nonce: Optional[str] = None  # Braintree
    return_url: Optional[str] = None  # PayPal
    cancel_url: Optional[str] = None  # PayPal
    connected_account: Optional[str] = None  # Stripe Connect

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v):
        if v <= 0:
            raise ValueError("amount must be greater than 0")
        return round(v, 2)

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v):
        v = v.upper()
        if v not in models.CURRENCIES:
            raise ValueError(f"currency must be one of {', '.join(models.CURRENCIES)}")
        return v

    @field_validator("gateway")
    @classmethod
    def validate_gateway(cls, v):
        v = v.upper()
        if v not in models.GATEWAYS:
            raise ValueError(f"gateway must be one of {', '.join(models.GATEWAYS)}")
        return v

    @field_validator("payment_method")
    @classmethod
    def validate_payment_method(cls, v):
        v = v.upper()
        if v not in models.PAYMENT_METHODS:
            raise ValueError(f"payment_method must be one of {', '.join(models.PAYMENT_METHODS)}")
        return v

    @field_validator("type")
    @classmethod
    def validate_type(cls, v):
        v = v.upper()
        if v not in (models.SALE, models.PAYMENT):
            raise ValueError("type must be SALE or PAYMENT")
        return v

    @field_validator("description")
    @classmethod
    def validate_description(cls, v):
        if v is not None and len(v) > 500:
            raise ValueError("description cannot exceed 500 characters")
        return v

    @model_validator(mode="after")
    def validate_gateway_options(self):
        if self.gateway == models.BRAINTREE and not self.payment_method_nonce:
            raise ValueError("payment_method_nonce is required for BRAINTREE")
        if self.gateway == models.MANUAL and self.payment_method in ("CARD", "PAYPAL"):
            raise ValueError(f"{self.payment_method} payments must go through a gateway")
        return self


class CancelRequest(BaseModel):
    reason: str = "cancelled by merchant"

    @field_validator("reason")
    @classmethod
    def validate_reason(cls, v):
        if not v.strip():
            raise ValueError("reason cannot be empty")
        return v.strip()


class RefundRequest(BaseModel):
    amount: Optional[float] = None  # Defaults to the remaining balance
    reason: Optional[str] = None
    refund_id: Optional[str] = None

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v):
        if v is not None and v <= 0:
            raise ValueError("amount must be greater than 0")
        return round(v, 2) if v is not None else v


class UpdateTransactionRequest(BaseModel):
    """Notes are appended, never replaced; metadata keys outside the known set are dropped."""

    notes: Optional[str] = None
    customer: Optional[CustomerSnapshot] = None
    metadata: Optional[Dict[str, Any]] = None

    @field_validator("notes")
    @classmethod
    def validate_notes(cls, v):
        if v is None:
            return v
        v = v.strip()
        if not v:
            raise ValueError("notes cannot be empty")
        if len(v) > 1000:
            raise ValueError("notes cannot exceed 1000 characters")
        return v

    @model_validator(mode="after")
    def require_change(self):
        if self.notes is None and self.customer is None and self.metadata is None:
            raise ValueError("provide at least one of notes, customer, metadata")
        return self
