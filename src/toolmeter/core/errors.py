"""
Error taxonomy for toolmeter.

Business refusals (insufficient balance) are modelled as errors so that the
ledger can signal them, but the billing gate converts them into structured
refusals before they reach the invoking layer.
"""

from __future__ import annotations

from typing import Any


class MeteringError(Exception):
    """Base exception for all toolmeter errors."""

    def __init__(
        self,
        message: str,
        code: str = "METERING_ERROR",
        status_code: int = 500,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(MeteringError):
    """Raised when input to an operation is malformed."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, "VALIDATION_ERROR", 400, details)


class ConfigurationError(MeteringError):
    """Raised when the billing configuration is unusable."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, "CONFIGURATION_ERROR", 500, details)


class InsufficientBalanceError(MeteringError):
    """Raised by the ledger when a reservation cannot be covered."""

    def __init__(
        self,
        account_id: str,
        required: int,
        available: int,
        reason: str = "insufficient_balance",
    ):
        super().__init__(
            f"Account {account_id} needs {required} but has {available}",
            "PAYMENT_REQUIRED",
            402,
            {"required": required, "available": available, "reason": reason},
        )
        self.account_id = account_id
        self.required = required
        self.available = available
        self.reason = reason


class StorageError(MeteringError):
    """Raised when a storage backend fails or rejects an operation."""

    def __init__(
        self,
        message: str,
        operation: str,
        entity: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(
            f"{operation} failed: {message}",
            "STORAGE_ERROR",
            503,
            {"operation": operation, "entity": entity, **(details or {})},
        )
        self.operation = operation
        self.entity = entity


class NotFoundError(MeteringError):
    """Raised when a referenced record does not exist."""

    def __init__(self, entity: str, key: str):
        super().__init__(f"{entity} not found: {key}", "NOT_FOUND", 404, {"entity": entity, "key": key})
        self.entity = entity
        self.key = key


class ReservationError(MeteringError):
    """Raised for unknown reservations or illegal reservation transitions."""

    def __init__(self, reservation_id: str, message: str):
        super().__init__(message, "RESERVATION_ERROR", 409, {"reservation_id": reservation_id})
        self.reservation_id = reservation_id


class WebhookProcessingError(MeteringError):
    """Raised when a webhook event cannot be translated or applied."""

    def __init__(self, event_id: str, message: str, retryable: bool = True):
        super().__init__(message, "WEBHOOK_PROCESSING_ERROR", 500, {"event_id": event_id})
        self.event_id = event_id
        self.retryable = retryable
