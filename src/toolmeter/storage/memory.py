"""
In-process storage backend.

All state lives in dictionaries guarded by one ``asyncio.Lock``; every
operation runs entirely under the lock, which makes each of them atomic
with respect to other coroutines on the same event loop. Intended for tests
and development; nothing survives a restart.
"""

from __future__ import annotations

import asyncio
import copy
from collections import defaultdict
from datetime import datetime
from typing import Any

import structlog

from toolmeter.core.errors import (
    InsufficientBalanceError,
    NotFoundError,
    ReservationError,
    StorageError,
    ValidationError,
)
from toolmeter.core.models import (
    Account,
    AccountSnapshot,
    AccountStatus,
    CounterScope,
    CreditTransaction,
    CustomerStats,
    PaymentIntentInfo,
    PaymentStatus,
    Reservation,
    ReservationStatus,
    RevenueStats,
    SubscriptionState,
    TransactionType,
    UsageRecord,
    UsageStats,
    WebhookEvent,
    WebhookStatus,
    utcnow,
)
from toolmeter.storage.base import (
    ACCOUNT_PROFILE_FIELDS,
    SUBSCRIPTION_MUTABLE_FIELDS,
    ReserveDecision,
    StorageAdapter,
)

logger = structlog.get_logger()


def _in_range(ts: datetime, start: datetime | None, end: datetime | None) -> bool:
    if start is not None and ts < start:
        return False
    if end is not None and ts >= end:
        return False
    return True


class MemoryStorage(StorageAdapter):
    """Dictionary-backed storage adapter."""

    name = "memory"

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._accounts: dict[str, Account] = {}
        self._usage: list[UsageRecord] = []
        self._usage_by_reservation: dict[str, UsageRecord] = {}
        self._intents: dict[str, PaymentIntentInfo] = {}
        self._subscriptions: dict[str, SubscriptionState] = {}
        self._transactions: dict[str, list[CreditTransaction]] = defaultdict(list)
        self._transactions_by_key: dict[str, CreditTransaction] = {}
        self._reservations: dict[str, Reservation] = {}
        self._webhooks: dict[str, WebhookEvent] = {}

    async def initialize(self) -> None:
        logger.debug("Memory storage ready")

    async def close(self) -> None:
        pass

    async def health_check(self) -> bool:
        return True

    # ==================== ACCOUNTS ====================

    async def create_account(self, account: Account) -> Account:
        async with self._lock:
            if account.id in self._accounts:
                raise StorageError("account already exists", "create_account", "account")
            stored = copy.deepcopy(account)
            self._accounts[stored.id] = stored
            return copy.deepcopy(stored)

    async def get_account(self, account_id: str) -> Account | None:
        account = self._accounts.get(account_id)
        return copy.deepcopy(account) if account else None

    async def get_account_by_external_id(self, external_customer_id: str) -> Account | None:
        for account in self._accounts.values():
            if account.external_customer_id == external_customer_id:
                return copy.deepcopy(account)
        return None

    async def update_account(self, account_id: str, **fields: Any) -> Account:
        invalid = set(fields) - ACCOUNT_PROFILE_FIELDS
        if invalid:
            raise ValidationError(f"Cannot update account fields: {sorted(invalid)}")
        async with self._lock:
            account = self._require_account(account_id)
            for key, value in fields.items():
                setattr(account, key, value)
            account.updated_at = utcnow()
            return copy.deepcopy(account)

    async def list_accounts(
        self,
        status: AccountStatus | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Account]:
        accounts = [a for a in self._accounts.values() if status is None or a.status == status]
        accounts.sort(key=lambda a: (a.created_at, a.id))
        return [copy.deepcopy(a) for a in accounts[offset : offset + limit]]

    async def rollover_account_period(
        self,
        account_id: str,
        expected_period_end: datetime | None,
        new_start: datetime,
        new_end: datetime,
    ) -> bool:
        async with self._lock:
            account = self._require_account(account_id)
            if account.period_end != expected_period_end:
                return False
            account.period_calls = 0
            account.period_units = 0
            account.period_start = new_start
            account.period_end = new_end
            account.updated_at = utcnow()
            return True

    # ==================== USAGE RECORDS ====================

    async def insert_usage_record(self, record: UsageRecord) -> UsageRecord:
        async with self._lock:
            if record.reservation_id and record.reservation_id in self._usage_by_reservation:
                return self._usage_by_reservation[record.reservation_id]
            stored = copy.deepcopy(record)
            self._usage.append(stored)
            if stored.reservation_id:
                self._usage_by_reservation[stored.reservation_id] = stored
            return stored

    async def query_usage_records(
        self,
        account_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
    ) -> list[UsageRecord]:
        records = [
            r for r in self._usage
            if r.account_id == account_id and _in_range(r.timestamp, start, end)
        ]
        records.sort(key=lambda r: r.timestamp)
        return records[:limit] if limit is not None else records

    async def count_usage_records(
        self,
        account_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> int:
        return len(await self.query_usage_records(account_id, start, end))

    # ==================== PAYMENT INTENTS ====================

    async def create_payment_intent(self, intent: PaymentIntentInfo) -> PaymentIntentInfo:
        async with self._lock:
            if intent.id not in self._intents:
                self._intents[intent.id] = copy.deepcopy(intent)
            return copy.deepcopy(self._intents[intent.id])

    async def get_payment_intent(self, intent_id: str) -> PaymentIntentInfo | None:
        intent = self._intents.get(intent_id)
        return copy.deepcopy(intent) if intent else None

    async def update_payment_intent(
        self,
        intent_id: str,
        status: PaymentStatus,
        completed_at: datetime | None = None,
    ) -> PaymentIntentInfo:
        async with self._lock:
            intent = self._intents.get(intent_id)
            if intent is None:
                raise NotFoundError("payment_intent", intent_id)
            intent.status = status
            intent.updated_at = utcnow()
            if completed_at is not None:
                intent.completed_at = completed_at
            return copy.deepcopy(intent)

    async def list_payment_intents(self, account_id: str) -> list[PaymentIntentInfo]:
        intents = [i for i in self._intents.values() if i.account_id == account_id]
        intents.sort(key=lambda i: i.created_at)
        return [copy.deepcopy(i) for i in intents]

    # ==================== SUBSCRIPTIONS ====================

    async def create_subscription(self, subscription: SubscriptionState) -> SubscriptionState:
        async with self._lock:
            account = self._require_account(subscription.account_id)
            if subscription.id in self._subscriptions:
                raise StorageError("subscription already exists", "create_subscription", "subscription")
            stored = copy.deepcopy(subscription)
            self._subscriptions[stored.id] = stored
            account.subscription_id = stored.id
            account.updated_at = utcnow()
            return copy.deepcopy(stored)

    async def get_subscription(self, subscription_id: str) -> SubscriptionState | None:
        subscription = self._subscriptions.get(subscription_id)
        return copy.deepcopy(subscription) if subscription else None

    async def get_subscription_by_external_id(self, external_id: str) -> SubscriptionState | None:
        for subscription in self._subscriptions.values():
            if subscription.external_id == external_id:
                return copy.deepcopy(subscription)
        return None

    async def update_subscription(self, subscription_id: str, **fields: Any) -> SubscriptionState:
        invalid = set(fields) - SUBSCRIPTION_MUTABLE_FIELDS
        if invalid:
            raise ValidationError(f"Cannot update subscription fields: {sorted(invalid)}")
        async with self._lock:
            subscription = self._require_subscription(subscription_id)
            for key, value in fields.items():
                setattr(subscription, key, value)
            subscription.updated_at = utcnow()
            return copy.deepcopy(subscription)

    async def rollover_subscription(
        self,
        subscription_id: str,
        expected_period_end: datetime,
        new_start: datetime,
        new_end: datetime,
    ) -> bool:
        async with self._lock:
            subscription = self._require_subscription(subscription_id)
            if subscription.current_period_end != expected_period_end:
                return False
            subscription.calls_used = 0
            subscription.current_period_start = new_start
            subscription.current_period_end = new_end
            subscription.updated_at = utcnow()
            return True

    # ==================== CREDIT LEDGER ====================

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
        async with self._lock:
            if idempotency_key and idempotency_key in self._transactions_by_key:
                return self._transactions_by_key[idempotency_key]
            account = self._require_account(account_id)
            return self._append_transaction(
                account,
                max(amount, -account.credit_balance),
                type,
                description=description,
                reference_id=reference_id,
                idempotency_key=idempotency_key,
                expires_at=expires_at,
                metadata=metadata or {},
            )

    async def list_credit_transactions(
        self,
        account_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
        type: TransactionType | None = None,
        limit: int | None = None,
    ) -> list[CreditTransaction]:
        transactions = [
            t for t in self._transactions.get(account_id, [])
            if _in_range(t.timestamp, start, end) and (type is None or t.type == type)
        ]
        return transactions[:limit] if limit is not None else transactions

    async def get_transaction_by_idempotency_key(self, key: str) -> CreditTransaction | None:
        return self._transactions_by_key.get(key)

    async def list_expiring_purchases(self, now: datetime) -> list[CreditTransaction]:
        return [
            t
            for transactions in self._transactions.values()
            for t in transactions
            if t.type == TransactionType.PURCHASE and t.expires_at is not None and t.expires_at <= now
        ]

    # ==================== RESERVATIONS ====================

    async def reserve(
        self,
        account_id: str,
        decide: ReserveDecision,
        tool_name: str,
        billing_model: str,
        expires_at: datetime,
        now: datetime | None = None,
    ) -> Reservation:
        now = now or utcnow()
        async with self._lock:
            account = self._require_account(account_id)
            subscription = (
                self._subscriptions.get(account.subscription_id) if account.subscription_id else None
            )
            hold = decide(
                AccountSnapshot(
                    account=copy.deepcopy(account),
                    subscription=copy.deepcopy(subscription),
                )
            )
            if hold.debit < 0 or hold.amount < 0:
                raise ValidationError("Reservation amounts must be non-negative")
            if hold.debit > account.credit_balance:
                raise InsufficientBalanceError(account_id, hold.debit, account.credit_balance)
            if hold.counter == CounterScope.SUBSCRIPTION and subscription is None:
                raise ValidationError(f"Account {account_id} has no subscription to count against")

            reservation = Reservation(
                account_id=account_id,
                tool_name=tool_name,
                billing_model=billing_model,
                amount=hold.amount,
                unit=hold.unit,
                debit=hold.debit,
                counter=hold.counter,
                units=hold.units,
                basis=hold.basis,
                created_at=now,
                expires_at=expires_at,
            )

            if hold.debit:
                txn = self._append_transaction(
                    account,
                    -hold.debit,
                    TransactionType.CONSUMPTION,
                    description=f"Reserved for {tool_name}",
                    reference_id=reservation.id,
                    idempotency_key=f"reserve:{reservation.id}",
                    reservation_id=reservation.id,
                    timestamp=now,
                )
                reservation.transaction_id = txn.id

            if hold.counter == CounterScope.ACCOUNT:
                if account.period_start != hold.period_start:
                    account.period_calls = 0
                    account.period_units = 0
                    account.period_start = hold.period_start
                    account.period_end = hold.period_end
                account.period_calls += 1
                account.period_units += hold.units
                reservation.counter_period_start = account.period_start
            elif hold.counter == CounterScope.SUBSCRIPTION:
                subscription.calls_used += 1
                subscription.updated_at = now
                reservation.subscription_id = subscription.id
                reservation.counter_period_start = subscription.current_period_start

            account.updated_at = now
            self._reservations[reservation.id] = reservation
            return copy.deepcopy(reservation)

    async def commit_reservation(self, reservation_id: str, now: datetime | None = None) -> Reservation:
        now = now or utcnow()
        async with self._lock:
            reservation = self._require_reservation(reservation_id)
            if reservation.status == ReservationStatus.COMMITTED:
                return copy.deepcopy(reservation)
            if reservation.status == ReservationStatus.RELEASED:
                raise ReservationError(reservation_id, f"Reservation {reservation_id} was already released")

            account = self._require_account(reservation.account_id)
            account.total_calls += 1
            account.total_spent += reservation.amount
            account.updated_at = now
            reservation.status = ReservationStatus.COMMITTED
            reservation.finalized_at = now
            return copy.deepcopy(reservation)

    async def release_reservation(
        self,
        reservation_id: str,
        now: datetime | None = None,
        reason: str | None = None,
    ) -> Reservation:
        now = now or utcnow()
        async with self._lock:
            reservation = self._require_reservation(reservation_id)
            if reservation.status == ReservationStatus.RELEASED:
                return copy.deepcopy(reservation)
            if reservation.status == ReservationStatus.COMMITTED:
                raise ReservationError(reservation_id, f"Reservation {reservation_id} was already committed")

            account = self._require_account(reservation.account_id)
            if reservation.debit:
                self._append_transaction(
                    account,
                    reservation.debit,
                    TransactionType.REFUND,
                    description=reason or f"Released reservation for {reservation.tool_name}",
                    reference_id=reservation.id,
                    idempotency_key=f"release:{reservation.id}",
                    reservation_id=reservation.id,
                    timestamp=now,
                )

            if reservation.counter == CounterScope.ACCOUNT:
                if account.period_start == reservation.counter_period_start:
                    account.period_calls = max(0, account.period_calls - 1)
                    account.period_units = max(0, account.period_units - reservation.units)
            elif reservation.counter == CounterScope.SUBSCRIPTION and reservation.subscription_id:
                subscription = self._subscriptions.get(reservation.subscription_id)
                if subscription and subscription.current_period_start == reservation.counter_period_start:
                    subscription.calls_used = max(0, subscription.calls_used - 1)
                    subscription.updated_at = now

            account.updated_at = now
            reservation.status = ReservationStatus.RELEASED
            reservation.finalized_at = now
            return copy.deepcopy(reservation)

    async def get_reservation(self, reservation_id: str) -> Reservation | None:
        reservation = self._reservations.get(reservation_id)
        return copy.deepcopy(reservation) if reservation else None

    async def list_expired_reservations(self, now: datetime, limit: int = 100) -> list[Reservation]:
        expired = [
            r for r in self._reservations.values()
            if r.status == ReservationStatus.HELD and r.expires_at is not None and r.expires_at <= now
        ]
        expired.sort(key=lambda r: r.expires_at)
        return [copy.deepcopy(r) for r in expired[:limit]]

    # ==================== WEBHOOK EVENTS ====================

    async def record_webhook_event(self, event: WebhookEvent) -> tuple[WebhookEvent, bool]:
        async with self._lock:
            existing = self._webhooks.get(event.id)
            if existing is not None:
                return copy.deepcopy(existing), False
            self._webhooks[event.id] = copy.deepcopy(event)
            return copy.deepcopy(event), True

    async def get_webhook_event(self, event_id: str) -> WebhookEvent | None:
        event = self._webhooks.get(event_id)
        return copy.deepcopy(event) if event else None

    async def update_webhook_event(
        self,
        event_id: str,
        status: WebhookStatus,
        retry_count: int | None = None,
        next_retry_at: datetime | None = None,
        last_error: str | None = None,
        processed_at: datetime | None = None,
    ) -> WebhookEvent:
        async with self._lock:
            event = self._webhooks.get(event_id)
            if event is None:
                raise NotFoundError("webhook_event", event_id)
            event.status = status
            event.next_retry_at = next_retry_at
            if retry_count is not None:
                event.retry_count = retry_count
            if last_error is not None:
                event.last_error = last_error
            if processed_at is not None:
                event.processed_at = processed_at
            return copy.deepcopy(event)

    async def list_webhook_events(
        self,
        status: WebhookStatus | None = None,
        limit: int = 100,
    ) -> list[WebhookEvent]:
        events = [e for e in self._webhooks.values() if status is None or e.status == status]
        events.sort(key=lambda e: e.received_at)
        return [copy.deepcopy(e) for e in events[:limit]]

    async def list_webhook_events_due(self, now: datetime, limit: int = 100) -> list[WebhookEvent]:
        due = [
            e for e in self._webhooks.values()
            if e.status in (WebhookStatus.PENDING, WebhookStatus.FAILED)
            and e.next_retry_at is not None
            and e.next_retry_at <= now
        ]
        due.sort(key=lambda e: e.next_retry_at)
        return [copy.deepcopy(e) for e in due[:limit]]

    # ==================== ANALYTICS ====================

    async def get_revenue_stats(self, start: datetime, end: datetime) -> RevenueStats:
        stats = RevenueStats(period_start=start, period_end=end)
        for record in self._usage:
            if record.cost > 0 and _in_range(record.timestamp, start, end):
                stats.total_revenue += record.cost
                stats.charged_calls += 1
                stats.revenue_by_tool[record.tool_name] = (
                    stats.revenue_by_tool.get(record.tool_name, 0) + record.cost
                )
        return stats

    async def get_usage_stats(self, start: datetime, end: datetime) -> UsageStats:
        stats = UsageStats(period_start=start, period_end=end)
        accounts: set[str] = set()
        for record in self._usage:
            if not _in_range(record.timestamp, start, end):
                continue
            stats.total_calls += 1
            if record.success:
                stats.successful_calls += 1
            else:
                stats.failed_calls += 1
            accounts.add(record.account_id)
            stats.calls_by_tool[record.tool_name] = stats.calls_by_tool.get(record.tool_name, 0) + 1
        stats.unique_accounts = len(accounts)
        return stats

    async def get_customer_stats(self, start: datetime, end: datetime) -> CustomerStats:
        stats = CustomerStats()
        for account in self._accounts.values():
            stats.total += 1
            if account.status == AccountStatus.ACTIVE:
                stats.active += 1
            elif account.status == AccountStatus.SUSPENDED:
                stats.suspended += 1
            elif account.status == AccountStatus.DELETED:
                stats.deleted += 1
            if _in_range(account.created_at, start, end):
                stats.new_in_period += 1
            subscription = self._subscriptions.get(account.subscription_id or "")
            if subscription is not None and subscription.is_active:
                stats.with_active_subscription += 1
        return stats

    # ==================== INTERNAL ====================

    def _require_account(self, account_id: str) -> Account:
        account = self._accounts.get(account_id)
        if account is None:
            raise NotFoundError("account", account_id)
        return account

    def _require_subscription(self, subscription_id: str) -> SubscriptionState:
        subscription = self._subscriptions.get(subscription_id)
        if subscription is None:
            raise NotFoundError("subscription", subscription_id)
        return subscription

    def _require_reservation(self, reservation_id: str) -> Reservation:
        reservation = self._reservations.get(reservation_id)
        if reservation is None:
            raise ReservationError(reservation_id, f"Unknown reservation {reservation_id}")
        return reservation

    def _append_transaction(
        self,
        account: Account,
        amount: int,
        type: TransactionType,
        timestamp: datetime | None = None,
        **fields: Any,
    ) -> CreditTransaction:
        account.credit_balance += amount
        account.ledger_sequence += 1
        account.updated_at = utcnow()
        txn = CreditTransaction(
            account_id=account.id,
            type=type,
            amount=amount,
            balance_after=account.credit_balance,
            sequence=account.ledger_sequence,
            timestamp=timestamp or utcnow(),
            **fields,
        )
        self._transactions[account.id].append(txn)
        if txn.idempotency_key:
            self._transactions_by_key[txn.idempotency_key] = txn
        return txn
