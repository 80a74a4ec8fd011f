"""
Domain models for toolmeter.

Dataclasses for accounts, usage, ledger entries, subscriptions, payment
intents, webhook events and reservations. Money and credits are integers
(minor currency units or whole credits).
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    """Current UTC time (timezone-aware)."""
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    """Generate a prefixed unique identifier."""
    return f"{prefix}_{uuid.uuid4().hex}"


class BillingModel(str, Enum):
    """Pricing strategies."""

    PER_CALL = "per-call"
    SUBSCRIPTION = "subscription"
    USAGE_BASED = "usage-based"
    FREEMIUM = "freemium"
    CREDIT_SYSTEM = "credit-system"


class AccountStatus(str, Enum):
    """Account lifecycle status."""

    ACTIVE = "active"
    SUSPENDED = "suspended"
    DELETED = "deleted"


class TransactionType(str, Enum):
    """Credit transaction type."""

    PURCHASE = "purchase"
    CONSUMPTION = "consumption"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"
    EXPIRY = "expiry"


class SubscriptionStatus(str, Enum):
    """Subscription status."""

    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class PaymentStatus(str, Enum):
    """Payment intent status, as reported by the payment provider."""

    REQUIRES_PAYMENT_METHOD = "requires_payment_method"
    REQUIRES_CONFIRMATION = "requires_confirmation"
    REQUIRES_ACTION = "requires_action"
    PROCESSING = "processing"
    REQUIRES_CAPTURE = "requires_capture"
    CANCELED = "canceled"
    SUCCEEDED = "succeeded"


class WebhookStatus(str, Enum):
    """Webhook event processing status."""

    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


class ReservationStatus(str, Enum):
    """Reservation lifecycle."""

    HELD = "held"
    COMMITTED = "committed"
    RELEASED = "released"


class CounterScope(str, Enum):
    """Which period counter a reservation incremented."""

    NONE = "none"
    ACCOUNT = "account"
    SUBSCRIPTION = "subscription"


@dataclass
class Account:
    """A billable party."""

    id: str = field(default_factory=lambda: new_id("acct"))
    status: AccountStatus = AccountStatus.ACTIVE
    email: str | None = None
    name: str | None = None
    external_customer_id: str | None = None  # payment provider customer (cus_xxx)
    default_payment_method_id: str | None = None
    credit_balance: int = 0
    subscription_id: str | None = None

    # Cumulative usage
    total_calls: int = 0
    total_spent: int = 0

    # Current usage window (non-subscription models)
    period_calls: int = 0
    period_units: int = 0
    period_start: datetime | None = None
    period_end: datetime | None = None

    ledger_sequence: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        """Check if the account may be billed."""
        return self.status == AccountStatus.ACTIVE

    @property
    def has_payment_method(self) -> bool:
        """Whether a payment method is on file with the provider."""
        return self.default_payment_method_id is not None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        data = asdict(self)
        data["status"] = self.status.value
        for key in ("period_start", "period_end", "created_at", "updated_at"):
            value = data[key]
            data[key] = value.isoformat() if value else None
        return data


@dataclass(frozen=True)
class UsageRecord:
    """Immutable record of one invocation attempt."""

    account_id: str
    tool_name: str
    cost: int
    success: bool
    id: str = field(default_factory=lambda: new_id("usage"))
    unit: str = "usd"
    timestamp: datetime = field(default_factory=utcnow)
    error_code: str | None = None
    billing_model: str | None = None
    reservation_id: str | None = None
    duration_ms: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


@dataclass(frozen=True)
class CreditTransaction:
    """One balance mutation. Append-only."""

    account_id: str
    type: TransactionType
    amount: int
    balance_after: int
    sequence: int
    id: str = field(default_factory=lambda: new_id("ctx"))
    timestamp: datetime = field(default_factory=utcnow)
    description: str | None = None
    reference_id: str | None = None
    idempotency_key: str | None = None
    reservation_id: str | None = None
    expires_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def balance_before(self) -> int:
        """Balance immediately before this transaction."""
        return self.balance_after - self.amount

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        data = asdict(self)
        data["type"] = self.type.value
        data["timestamp"] = self.timestamp.isoformat()
        data["expires_at"] = self.expires_at.isoformat() if self.expires_at else None
        return data


@dataclass
class SubscriptionState:
    """Plan subscription with period-bounded call counters."""

    account_id: str
    plan_id: str
    current_period_start: datetime
    current_period_end: datetime
    calls_included: int
    overage_rate: int
    id: str = field(default_factory=lambda: new_id("sub"))
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    interval: str = "month"
    calls_used: int = 0
    max_calls: int | None = None
    external_id: str | None = None  # payment provider subscription (sub_xxx)
    cancel_at_period_end: bool = False
    canceled_at: datetime | None = None
    trial_end: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        """Check if the subscription covers calls."""
        return self.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)

    @property
    def calls_remaining(self) -> int:
        """Included calls left in the current period."""
        return max(0, self.calls_included - self.calls_used)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        data = asdict(self)
        data["status"] = self.status.value
        for key in (
            "current_period_start",
            "current_period_end",
            "canceled_at",
            "trial_end",
            "created_at",
            "updated_at",
        ):
            value = data[key]
            data[key] = value.isoformat() if value else None
        return data


@dataclass
class PaymentIntentInfo:
    """A charge initiated with the payment provider."""

    id: str  # provider reference (pi_xxx)
    account_id: str
    amount: int
    currency: str
    status: PaymentStatus
    purpose: str = "credit_purchase"
    package_id: str | None = None
    credits: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None


@dataclass
class WebhookEvent:
    """A payment provider event and its processing state."""

    id: str  # provider event id (evt_xxx), unique
    type: str
    payload: dict[str, Any]
    status: WebhookStatus = WebhookStatus.PENDING
    retry_count: int = 0
    next_retry_at: datetime | None = None
    last_error: str | None = None
    received_at: datetime = field(default_factory=utcnow)
    processed_at: datetime | None = None


@dataclass
class Reservation:
    """A provisional hold taken before a tool runs."""

    account_id: str
    tool_name: str
    billing_model: str
    amount: int  # price charged on commit
    unit: str
    id: str = field(default_factory=lambda: new_id("rsv"))
    debit: int = 0  # amount held from the balance
    units: int = 1
    counter: CounterScope = CounterScope.NONE
    counter_period_start: datetime | None = None
    subscription_id: str | None = None
    status: ReservationStatus = ReservationStatus.HELD
    transaction_id: str | None = None
    basis: str = "list"
    created_at: datetime = field(default_factory=utcnow)
    expires_at: datetime | None = None
    finalized_at: datetime | None = None

    @property
    def is_held(self) -> bool:
        return self.status == ReservationStatus.HELD


@dataclass(frozen=True)
class AccountSnapshot:
    """Locked view of an account handed to a reservation decision."""

    account: Account
    subscription: SubscriptionState | None = None


@dataclass(frozen=True)
class Hold:
    """What a reservation decision asks storage to apply atomically."""

    amount: int
    unit: str
    debit: int = 0
    counter: CounterScope = CounterScope.NONE
    units: int = 1
    basis: str = "list"
    # Account counter window the decision was made against
    period_start: datetime | None = None
    period_end: datetime | None = None


# ==================== ANALYTICS ====================


@dataclass
class RevenueStats:
    """Revenue aggregated over a period."""

    period_start: datetime
    period_end: datetime
    total_revenue: int = 0
    charged_calls: int = 0
    revenue_by_tool: dict[str, int] = field(default_factory=dict)

    @property
    def average_revenue_per_call(self) -> float:
        if self.charged_calls == 0:
            return 0.0
        return self.total_revenue / self.charged_calls

    def to_dict(self) -> dict[str, Any]:
        return {
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "total_revenue": self.total_revenue,
            "charged_calls": self.charged_calls,
            "revenue_by_tool": self.revenue_by_tool,
            "average_revenue_per_call": self.average_revenue_per_call,
        }


@dataclass
class UsageStats:
    """Invocation counts aggregated over a period."""

    period_start: datetime
    period_end: datetime
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    unique_accounts: int = 0
    calls_by_tool: dict[str, int] = field(default_factory=dict)

    @property
    def success_rate(self) -> float:
        if self.total_calls == 0:
            return 0.0
        return self.successful_calls / self.total_calls

    def to_dict(self) -> dict[str, Any]:
        return {
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "total_calls": self.total_calls,
            "successful_calls": self.successful_calls,
            "failed_calls": self.failed_calls,
            "unique_accounts": self.unique_accounts,
            "calls_by_tool": self.calls_by_tool,
            "success_rate": self.success_rate,
        }


@dataclass
class CustomerStats:
    """Account counts."""

    total: int = 0
    active: int = 0
    suspended: int = 0
    deleted: int = 0
    new_in_period: int = 0
    with_active_subscription: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class BillingSummary:
    """Per-account billing totals for a period."""

    account_id: str
    period_start: datetime
    period_end: datetime
    unit: str
    total_calls: int = 0
    total_charged: int = 0
    credits_purchased: int = 0
    credits_used: int = 0
    start_balance: int = 0
    end_balance: int = 0
    subscription: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["period_start"] = self.period_start.isoformat()
        data["period_end"] = self.period_end.isoformat()
        return data
