"""
toolmeter - Usage metering and billing for tool invocations

Prices tool calls under one of five billing models, reserves the charge
before the tool runs, and commits or releases it afterwards.
"""

__version__ = "0.1.0"

from toolmeter.billing.gate import Authorization, Refusal
from toolmeter.core.config import Settings, get_settings
from toolmeter.core.errors import (
    InsufficientBalanceError,
    MeteringError,
    StorageError,
    ValidationError,
)
from toolmeter.core.models import Account, BillingModel, UsageRecord
from toolmeter.meter import Meter, configure_meter, get_meter

__all__ = [
    "Meter",
    "get_meter",
    "configure_meter",
    "Settings",
    "get_settings",
    "Authorization",
    "Refusal",
    "Account",
    "BillingModel",
    "UsageRecord",
    "MeteringError",
    "ValidationError",
    "InsufficientBalanceError",
    "StorageError",
]
