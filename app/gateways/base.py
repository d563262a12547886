from abc import ABC, abstractmethod
from typing import Dict, Any, Mapping, Optional

from app import models


CAPTURE_COMPLETED = "COMPLETED"
CAPTURE_PENDING = "PENDING"
CAPTURE_DECLINED = "DECLINED"


class OrderResult:
    """Outcome of creating the gateway-side order / intent / authorization."""

    def __init__(self, order_id: str, client_data: Optional[Dict[str, Any]] = None,
                 raw: Optional[Dict[str, Any]] = None):
        self.order_id = order_id
        self.client_data = client_data or {}
        self.raw = raw or {}


class CaptureResult:
    def __init__(self, capture_id: Optional[str], status: str,
                 fee_amount: Optional[float] = None, reason: Optional[str] = None,
                 raw: Optional[Dict[str, Any]] = None):
        self.capture_id = capture_id
        self.status = status
        self.fee_amount = fee_amount
        self.reason = reason
        self.raw = raw or {}


class BaseGateway(ABC):
    """Abstract base for the payment gateway adapters."""

    @property
    @abstractmethod
    def gateway_name(self) -> str:
        pass

    @abstractmethod
    async def create_order(self, transaction: models.Transaction, **options) -> OrderResult:
        """
        Create the gateway-side order for a PENDING transaction.
        Raises GatewayError; ``reached_gateway`` tells a rejection from an unreachable gateway.
        """
        pass

    @abstractmethod
    async def capture(self, transaction: models.Transaction) -> CaptureResult:
        """Settle a previously created order. Raises GatewayError."""
        pass

    @abstractmethod
    async def verify_webhook(self, headers: Mapping[str, str], raw_body: bytes) -> Dict[str, Any]:
        """
        Verify the raw webhook bytes and return the decoded payload.
        Raises SignatureInvalid.
        """
        pass
