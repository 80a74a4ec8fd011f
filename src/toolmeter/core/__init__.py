"""Core configuration, domain models and errors."""

from toolmeter.core.config import Settings, get_settings, reload_settings
from toolmeter.core.errors import (
    ConfigurationError,
    InsufficientBalanceError,
    MeteringError,
    NotFoundError,
    ReservationError,
    StorageError,
    ValidationError,
    WebhookProcessingError,
)
from toolmeter.core.models import (
    Account,
    AccountStatus,
    BillingModel,
    CreditTransaction,
    PaymentIntentInfo,
    Reservation,
    SubscriptionState,
    SubscriptionStatus,
    TransactionType,
    UsageRecord,
    WebhookEvent,
    WebhookStatus,
)

__all__ = [
    "Settings",
    "get_settings",
    "reload_settings",
    "MeteringError",
    "ValidationError",
    "ConfigurationError",
    "InsufficientBalanceError",
    "StorageError",
    "NotFoundError",
    "ReservationError",
    "WebhookProcessingError",
    "Account",
    "AccountStatus",
    "BillingModel",
    "CreditTransaction",
    "PaymentIntentInfo",
    "Reservation",
    "SubscriptionState",
    "SubscriptionStatus",
    "TransactionType",
    "UsageRecord",
    "WebhookEvent",
    "WebhookStatus",
]
