"""
Storage adapter contract.

Every backend implements this interface with identical observable
behaviour; ``tests/conformance`` is the executable definition of parity.
The balance and idempotency invariants live here, not in callers:

* ``credit_balance`` never goes below zero.
* Each balance mutation appends exactly one credit transaction with
  ``balance_after = previous balance + amount`` in the same unit of work.
* ``reserve`` is the only operation that fails for insufficient funds and
  it checks and decrements atomically.
* Idempotency keys (reservation ids, external event ids, transaction
  idempotency keys) are enforced by storage-level uniqueness.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable

from toolmeter.core.models import (
    Account,
    AccountSnapshot,
    AccountStatus,
    CreditTransaction,
    CustomerStats,
    Hold,
    PaymentIntentInfo,
    PaymentStatus,
    Reservation,
    RevenueStats,
    SubscriptionState,
    TransactionType,
    UsageRecord,
    UsageStats,
    WebhookEvent,
    WebhookStatus,
)

# Pure, synchronous decision run while the account is locked. Returns the
# hold to apply or raises InsufficientBalanceError.
ReserveDecision = Callable[[AccountSnapshot], Hold]

# Account fields callers may change directly. Balances, counters and the
# ledger sequence only move through the ledger and reservation operations.
ACCOUNT_PROFILE_FIELDS = frozenset(
    {
        "status",
        "email",
        "name",
        "external_customer_id",
        "default_payment_method_id",
        "metadata",
    }
)

SUBSCRIPTION_MUTABLE_FIELDS = frozenset(
    {
        "plan_id",
        "status",
        "interval",
        "calls_included",
        "overage_rate",
        "max_calls",
        "external_id",
        "cancel_at_period_end",
        "canceled_at",
        "trial_end",
    }
)


class StorageAdapter(ABC):
    """Abstract interface for account, usage, ledger and event storage."""

    name: str = "abstract"

    # ==================== LIFECYCLE ====================

    @abstractmethod
    async def initialize(self) -> None:
        """Open connections and create the schema if configured to."""

    @abstractmethod
    async def close(self) -> None:
        """Release connections."""

    @abstractmethod
    async def health_check(self) -> bool:
        """Return True when the backend answers a trivial query."""

    # ==================== ACCOUNTS ====================

    @abstractmethod
    async def create_account(self, account: Account) -> Account:
        """Insert a new account. Raises StorageError if the id exists."""

    @abstractmethod
    async def get_account(self, account_id: str) -> Account | None:
        ...

    @abstractmethod
    async def get_account_by_external_id(self, external_customer_id: str) -> Account | None:
        ...

    @abstractmethod
    async def update_account(self, account_id: str, **fields: Any) -> Account:
        """
        Update profile fields (see ``ACCOUNT_PROFILE_FIELDS``).

        Raises:
            NotFoundError: account does not exist
            ValidationError: a non-profile field was passed
        """

    @abstractmethod
    async def list_accounts(
        self,
        status: AccountStatus | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Account]:
        """Accounts ordered by creation time."""

    async def delete_account(self, account_id: str) -> Account:
        """Soft delete: accounts referenced by usage history are never removed."""
        return await self.update_account(account_id, status=AccountStatus.DELETED)

    @abstractmethod
    async def rollover_account_period(
        self,
        account_id: str,
        expected_period_end: datetime | None,
        new_start: datetime,
        new_end: datetime,
    ) -> bool:
        """
        Reset the account's window counters and move its window, but only if
        the stored ``period_end`` still equals ``expected_period_end``.

        Returns True when this call performed the rollover.
        """

    # ==================== USAGE RECORDS ====================

    @abstractmethod
    async def insert_usage_record(self, record: UsageRecord) -> UsageRecord:
        """
        Append a usage record. When ``reservation_id`` is set and a record
        for it already exists, the existing record is returned unchanged.
        """

    @abstractmethod
    async def query_usage_records(
        self,
        account_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
    ) -> list[UsageRecord]:
        """Records with ``start <= timestamp < end``, oldest first."""

    @abstractmethod
    async def count_usage_records(
        self,
        account_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> int:
        ...

    # ==================== PAYMENT INTENTS ====================

    @abstractmethod
    async def create_payment_intent(self, intent: PaymentIntentInfo) -> PaymentIntentInfo:
        """Insert an intent; an existing intent with the same id is returned as-is."""

    @abstractmethod
    async def get_payment_intent(self, intent_id: str) -> PaymentIntentInfo | None:
        ...

    @abstractmethod
    async def update_payment_intent(
        self,
        intent_id: str,
        status: PaymentStatus,
        completed_at: datetime | None = None,
    ) -> PaymentIntentInfo:
        ...

    @abstractmethod
    async def list_payment_intents(self, account_id: str) -> list[PaymentIntentInfo]:
        ...

    # ==================== SUBSCRIPTIONS ====================

    @abstractmethod
    async def create_subscription(self, subscription: SubscriptionState) -> SubscriptionState:
        """Insert a subscription and make it the account's current one."""

    @abstractmethod
    async def get_subscription(self, subscription_id: str) -> SubscriptionState | None:
        ...

    @abstractmethod
    async def get_subscription_by_external_id(self, external_id: str) -> SubscriptionState | None:
        ...

    async def get_subscription_for_account(self, account_id: str) -> SubscriptionState | None:
        """The subscription currently referenced by the account."""
        account = await self.get_account(account_id)
        if account is None or account.subscription_id is None:
            return None
        return await self.get_subscription(account.subscription_id)

    @abstractmethod
    async def update_subscription(self, subscription_id: str, **fields: Any) -> SubscriptionState:
        """Update fields listed in ``SUBSCRIPTION_MUTABLE_FIELDS``."""

    @abstractmethod
    async def rollover_subscription(
        self,
        subscription_id: str,
        expected_period_end: datetime,
        new_start: datetime,
        new_end: datetime,
    ) -> bool:
        """
        Reset ``calls_used`` and move the period, only if the stored
        ``current_period_end`` equals ``expected_period_end``.
        """

    # ==================== CREDIT LEDGER ====================

    @abstractmethod
    async def apply_credit_change(
        self,
        account_id: str,
        amount: int,
        type: TransactionType,
        description: str | None = None,
        reference_id: str | None = None,
        idempotency_key: str | None = None,
        expires_at: datetime | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> CreditTransaction:
        """
        Apply a signed balance change and append its transaction atomically.

        Negative amounts larger than the balance are clamped so the balance
        lands on zero; the appended transaction carries the clamped amount.
        A repeated ``idempotency_key`` returns the original transaction
        without applying anything.

        Raises:
            NotFoundError: account does not exist
        """

    @abstractmethod
    async def list_credit_transactions(
        self,
        account_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
        type: TransactionType | None = None,
        limit: int | None = None,
    ) -> list[CreditTransaction]:
        """Transactions in ledger sequence order."""

    @abstractmethod
    async def get_transaction_by_idempotency_key(self, key: str) -> CreditTransaction | None:
        ...

    @abstractmethod
    async def list_expiring_purchases(self, now: datetime) -> list[CreditTransaction]:
        """Purchase transactions whose ``expires_at`` is at or before ``now``."""

    # ==================== RESERVATIONS ====================

    @abstractmethod
    async def reserve(
        self,
        account_id: str,
        decide: ReserveDecision,
        tool_name: str,
        billing_model: str,
        expires_at: datetime,
        now: datetime | None = None,
    ) -> Reservation:
        """
        Lock the account (and its subscription), run ``decide`` on the locked
        snapshot and apply the returned hold in one unit of work:

        * ``hold.debit`` is taken from the balance with a consumption
          transaction (InsufficientBalanceError if not covered);
        * the selected counter is incremented, resetting the account window
          first when ``hold.period_start`` differs from the stored one;
        * a held reservation is inserted.

        Raises:
            NotFoundError: account does not exist
            InsufficientBalanceError: raised by ``decide`` or by the debit check
        """

    @abstractmethod
    async def commit_reservation(self, reservation_id: str, now: datetime | None = None) -> Reservation:
        """
        Finalize a held reservation and add its amount to the account's
        cumulative totals. Committing an already committed reservation is a
        no-op returning it.

        Raises:
            ReservationError: unknown id or already released
        """

    @abstractmethod
    async def release_reservation(
        self,
        reservation_id: str,
        now: datetime | None = None,
        reason: str | None = None,
    ) -> Reservation:
        """
        Undo a held reservation: refund the debit with a refund transaction and
        give back the counter increment if its window is still current.
        Releasing an already released reservation is a no-op returning it.

        Raises:
            ReservationError: unknown id or already committed
        """

    @abstractmethod
    async def get_reservation(self, reservation_id: str) -> Reservation | None:
        ...

    @abstractmethod
    async def list_expired_reservations(self, now: datetime, limit: int = 100) -> list[Reservation]:
        """Held reservations whose ``expires_at`` has passed."""

    # ==================== WEBHOOK EVENTS ====================

    @abstractmethod
    async def record_webhook_event(self, event: WebhookEvent) -> tuple[WebhookEvent, bool]:
        """
        Insert an event keyed by its external id.

        Returns:
            The stored event and whether this call created it.
        """

    @abstractmethod
    async def get_webhook_event(self, event_id: str) -> WebhookEvent | None:
        ...

    @abstractmethod
    async def update_webhook_event(
        self,
        event_id: str,
        status: WebhookStatus,
        retry_count: int | None = None,
        next_retry_at: datetime | None = None,
        last_error: str | None = None,
        processed_at: datetime | None = None,
    ) -> WebhookEvent:
        """Set processing state. ``next_retry_at`` is always overwritten."""

    @abstractmethod
    async def list_webhook_events(
        self,
        status: WebhookStatus | None = None,
        limit: int = 100,
    ) -> list[WebhookEvent]:
        """Events by status, oldest first."""

    @abstractmethod
    async def list_webhook_events_due(self, now: datetime, limit: int = 100) -> list[WebhookEvent]:
        """Pending or failed events whose ``next_retry_at`` is at or before ``now``."""

    # ==================== ANALYTICS ====================

    @abstractmethod
    async def get_revenue_stats(self, start: datetime, end: datetime) -> RevenueStats:
        ...

    @abstractmethod
    async def get_usage_stats(self, start: datetime, end: datetime) -> UsageStats:
        ...

    @abstractmethod
    async def get_customer_stats(self, start: datetime, end: datetime) -> CustomerStats:
        ...
