"""Billing exceptions

Structured errors raised by the credit services. API handlers in
``app.core.middleware`` turn them into JSON responses.
"""
from decimal import Decimal
from typing import Any, Dict, Optional


def _as_number(value: Any) -> Any:
    """JSON-friendly number (Decimal -> float)"""
    if isinstance(value, Decimal):
        return float(value)
    return value


class BillingError(Exception):
    """Base exception for billing-related errors"""

    def __init__(self, message: str, code: str = "BILLING_ERROR", details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Convert exception to dictionary for API responses"""
        return {
            "message": self.message,
            "error": self.code,
            "data": {key: _as_number(value) for key, value in self.details.items()},
        }


class InsufficientCreditsError(BillingError):
    """Raised when a user cannot afford an operation.

    The payload (required / available / shortfall / estimatedTokens) is read
    directly by the client billing UI.
    """

    def __init__(
        self,
        required: Decimal,
        available: Decimal,
        estimated_tokens: Optional[Dict[str, int]] = None,
        message: str = "Insufficient credits",
    ):
        self.required = Decimal(str(required))
        self.available = Decimal(str(available))
        self.shortfall = self.required - self.available
        self.estimated_tokens = estimated_tokens
        super().__init__(
            message=message,
            code="INSUFFICIENT_CREDITS",
            details={
                "required": self.required,
                "available": self.available,
                "shortfall": self.shortfall,
                "estimatedTokens": estimated_tokens,
            },
        )


class CreditOperationError(BillingError):
    """Raised when a ledger operation is not permitted (bad amount, double reversal, ...)"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, code="CREDIT_OPERATION_ERROR", details=details)


class DuplicateTransactionError(BillingError):
    """Raised when an idempotency key was already used by another transaction"""

    def __init__(self, idempotency_key: str, transaction_id: Optional[int] = None):
        self.idempotency_key = idempotency_key
        self.transaction_id = transaction_id
        super().__init__(
            message="Transaction already recorded",
            code="DUPLICATE_TRANSACTION",
            details={"idempotencyKey": idempotency_key, "transactionId": transaction_id},
        )


class AIServiceError(Exception):
    """Raised when the AI provider call fails"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)
