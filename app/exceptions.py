"""
Typed failures raised by the reconciliation engine and gateway adapters.

Every error carries a machine-readable ``code`` and the HTTP status the API
layer answers with, so routers never have to tell "the engine crashed" apart
from "the engine decided the operation was illegal".
"""
from typing import Optional, Dict, Any


class ReconciliationError(Exception):
    """Base class for all expected failures."""

    code = "RECONCILIATION_ERROR"
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class InvalidTransactionRequest(ReconciliationError):
    code = "INVALID_REQUEST"
    status_code = 422


class TransactionNotFound(ReconciliationError):
    code = "TRANSACTION_NOT_FOUND"
    status_code = 404

    def __init__(self, transaction_id: str):
        super().__init__(f"Transaction {transaction_id} not found", {"transaction_id": transaction_id})


class TerminalStateError(ReconciliationError):
    """The transaction already reached a state the operation cannot leave."""

    code = "TERMINAL_STATE"
    status_code = 409

    def __init__(self, transaction_id: str, status: str, operation: str):
        super().__init__(
            f"Transaction {transaction_id} is already in terminal state {status}; cannot {operation}",
            {"transaction_id": transaction_id, "status": status, "operation": operation},
        )


class IllegalTransition(ReconciliationError):
    code = "ILLEGAL_TRANSITION"
    status_code = 409


class InvalidRefund(ReconciliationError):
    code = "INVALID_REFUND"
    status_code = 422


class SignatureInvalid(ReconciliationError):
    """Webhook authenticity could not be established; the gateway should retry."""

    code = "SIGNATURE_INVALID"

    def __init__(self, gateway: str, reason: str, status_code: int = 400):
        super().__init__(f"{gateway} webhook verification failed: {reason}", {"gateway": gateway})
        self.status_code = status_code


class MalformedWebhook(ReconciliationError):
    code = "MALFORMED_WEBHOOK"
    status_code = 400


class GatewayError(ReconciliationError):
    """
    A gateway SDK/API call failed.

    ``reached_gateway`` is False when the request never got an answer
    (connection error, timeout) and True when the gateway rejected it.
    """

    code = "GATEWAY_ERROR"
    status_code = 502

    def __init__(self, gateway: str, message: str, reached_gateway: bool = True):
        super().__init__(f"{gateway}: {message}", {"gateway": gateway, "reached_gateway": reached_gateway})
        self.gateway = gateway
        self.reached_gateway = reached_gateway


class PersistenceError(ReconciliationError):
    code = "PERSISTENCE_ERROR"
    status_code = 503
