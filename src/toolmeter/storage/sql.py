"""
Shared SQLAlchemy async implementation of the storage contract.

Each operation runs in one ``AsyncSession`` unit of work that commits on
success and rolls back on any exception. Balance-affecting operations take
row locks (``SELECT ... FOR UPDATE``) on the account, and on its
subscription or the reservation where involved, so the check-and-decrement
in ``reserve`` is atomic on server databases. Dialect specifics (engine
options, SQLite write serialization) live in the backend subclasses.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar

import structlog
from sqlalchemy import case, func, select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

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
    SubscriptionStatus,
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
from toolmeter.storage.tables import (
    AccountTable,
    Base,
    CreditTransactionTable,
    PaymentIntentTable,
    ReservationTable,
    SubscriptionTable,
    UsageRecordTable,
    WebhookEventTable,
)

logger = structlog.get_logger()

T = TypeVar("T")


# ==================== ROW MAPPING ====================


def _to_account(row: AccountTable) -> Account:
    return Account(
        id=row.id,
        status=AccountStatus(row.status),
        email=row.email,
        name=row.name,
        external_customer_id=row.external_customer_id,
        default_payment_method_id=row.default_payment_method_id,
        credit_balance=row.credit_balance,
        subscription_id=row.subscription_id,
        total_calls=row.total_calls,
        total_spent=row.total_spent,
        period_calls=row.period_calls,
        period_units=row.period_units,
        period_start=row.period_start,
        period_end=row.period_end,
        ledger_sequence=row.ledger_sequence,
        metadata=dict(row.metadata_json or {}),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _account_row(account: Account) -> AccountTable:
    return AccountTable(
        id=account.id,
        status=account.status.value,
        email=account.email,
        name=account.name,
        external_customer_id=account.external_customer_id,
        default_payment_method_id=account.default_payment_method_id,
        credit_balance=account.credit_balance,
        subscription_id=account.subscription_id,
        total_calls=account.total_calls,
        total_spent=account.total_spent,
        period_calls=account.period_calls,
        period_units=account.period_units,
        period_start=account.period_start,
        period_end=account.period_end,
        ledger_sequence=account.ledger_sequence,
        metadata_json=dict(account.metadata),
        created_at=account.created_at,
        updated_at=account.updated_at,
    )


def _to_usage(row: UsageRecordTable) -> UsageRecord:
    return UsageRecord(
        id=row.id,
        account_id=row.account_id,
        tool_name=row.tool_name,
        cost=row.cost,
        unit=row.unit,
        success=row.success,
        timestamp=row.timestamp,
        error_code=row.error_code,
        billing_model=row.billing_model,
        reservation_id=row.reservation_id,
        duration_ms=row.duration_ms,
        metadata=dict(row.metadata_json or {}),
    )


def _to_intent(row: PaymentIntentTable) -> PaymentIntentInfo:
    return PaymentIntentInfo(
        id=row.id,
        account_id=row.account_id,
        amount=row.amount,
        currency=row.currency,
        status=PaymentStatus(row.status),
        purpose=row.purpose,
        package_id=row.package_id,
        credits=row.credits,
        metadata=dict(row.metadata_json or {}),
        created_at=row.created_at,
        updated_at=row.updated_at,
        completed_at=row.completed_at,
    )


def _to_subscription(row: SubscriptionTable) -> SubscriptionState:
    return SubscriptionState(
        id=row.id,
        account_id=row.account_id,
        plan_id=row.plan_id,
        status=SubscriptionStatus(row.status),
        interval=row.interval,
        current_period_start=row.current_period_start,
        current_period_end=row.current_period_end,
        calls_included=row.calls_included,
        calls_used=row.calls_used,
        overage_rate=row.overage_rate,
        max_calls=row.max_calls,
        external_id=row.external_id,
        cancel_at_period_end=row.cancel_at_period_end,
        canceled_at=row.canceled_at,
        trial_end=row.trial_end,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _to_transaction(row: CreditTransactionTable) -> CreditTransaction:
    return CreditTransaction(
        id=row.id,
        account_id=row.account_id,
        type=TransactionType(row.type),
        amount=row.amount,
        balance_after=row.balance_after,
        sequence=row.sequence,
        timestamp=row.timestamp,
        description=row.description,
        reference_id=row.reference_id,
        idempotency_key=row.idempotency_key,
        reservation_id=row.reservation_id,
        expires_at=row.expires_at,
        metadata=dict(row.metadata_json or {}),
    )


def _to_reservation(row: ReservationTable) -> Reservation:
    return Reservation(
        id=row.id,
        account_id=row.account_id,
        tool_name=row.tool_name,
        billing_model=row.billing_model,
        amount=row.amount,
        unit=row.unit,
        debit=row.debit,
        counter=CounterScope(row.counter),
        units=row.units,
        counter_period_start=row.counter_period_start,
        subscription_id=row.subscription_id,
        status=ReservationStatus(row.status),
        transaction_id=row.transaction_id,
        basis=row.basis,
        created_at=row.created_at,
        expires_at=row.expires_at,
        finalized_at=row.finalized_at,
    )


def _to_webhook(row: WebhookEventTable) -> WebhookEvent:
    return WebhookEvent(
        id=row.id,
        type=row.type,
        payload=dict(row.payload or {}),
        status=WebhookStatus(row.status),
        retry_count=row.retry_count,
        next_retry_at=row.next_retry_at,
        last_error=row.last_error,
        received_at=row.received_at,
        processed_at=row.processed_at,
    )


def _time_filters(column: Any, start: datetime | None, end: datetime | None) -> list[Any]:
    filters = []
    if start is not None:
        filters.append(column >= start)
    if end is not None:
        filters.append(column < end)
    return filters


# ==================== ADAPTER ====================


class SQLStorage(StorageAdapter):
    """
    Storage adapter over an async SQLAlchemy engine.

    Subclasses provide ``_create_engine`` and may override ``_guard`` to
    serialize units of work.
    """

    name = "sql"

    def __init__(self, url: str, echo: bool = False, run_migrations: bool = True):
        self.url = url
        self.echo = echo
        self.run_migrations = run_migrations
        self._engine: AsyncEngine | None = None
        self._sessions: async_sessionmaker[AsyncSession] | None = None

    def _create_engine(self) -> AsyncEngine:
        return create_async_engine(self.url, echo=self.echo)

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise StorageError("storage is not initialized", "engine")
        return self._engine

    async def initialize(self) -> None:
        if self._engine is not None:
            return
        try:
            self._engine = self._create_engine()
            self._sessions = async_sessionmaker(self._engine, expire_on_commit=False)
            if self.run_migrations:
                async with self._guard():
                    async with self._engine.begin() as conn:
                        await conn.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as exc:
            raise StorageError(str(exc), "initialize") from exc
        logger.info("Storage initialized", backend=self.name, migrations=self.run_migrations)

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._sessions = None
            logger.info("Storage closed", backend=self.name)

    async def health_check(self) -> bool:
        if self._engine is None:
            return False
        try:
            async with self._guard():
                async with self._engine.connect() as conn:
                    await conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as exc:
            logger.warning("Storage health check failed", backend=self.name, error=str(exc))
            return False

    @asynccontextmanager
    async def _guard(self) -> AsyncIterator[None]:
        yield

    @asynccontextmanager
    async def _unit(self, operation: str, entity: str | None = None) -> AsyncIterator[AsyncSession]:
        """One transaction: commit on success, roll back and wrap driver errors."""
        if self._sessions is None:
            raise StorageError("storage is not initialized", operation, entity)
        async with self._guard():
            session = self._sessions()
            try:
                yield session
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.error(
                    "Storage operation failed",
                    backend=self.name,
                    operation=operation,
                    entity=entity,
                    error=str(exc),
                )
                raise StorageError(str(exc), operation, entity) from exc
            except BaseException:
                await session.rollback()
                raise
            finally:
                await session.close()

    async def _insert_or_get(
        self,
        insert: Callable[[], Awaitable[T]],
        fetch: Callable[[], Awaitable[T | None]],
    ) -> tuple[T, bool]:
        """Run ``insert``; on a uniqueness race return the row that won."""
        try:
            return await insert(), True
        except StorageError as exc:
            if not isinstance(exc.__cause__, IntegrityError):
                raise
            existing = await fetch()
            if existing is None:
                raise
            return existing, False

    # ==================== ACCOUNTS ====================

    async def create_account(self, account: Account) -> Account:
        async with self._unit("create_account", "account") as session:
            if await session.get(AccountTable, account.id) is not None:
                raise StorageError("account already exists", "create_account", "account")
            row = _account_row(account)
            session.add(row)
            await session.flush()
            return _to_account(row)

    async def get_account(self, account_id: str) -> Account | None:
        async with self._unit("get_account", "account") as session:
            row = await session.get(AccountTable, account_id)
            return _to_account(row) if row else None

    async def get_account_by_external_id(self, external_customer_id: str) -> Account | None:
        async with self._unit("get_account_by_external_id", "account") as session:
            result = await session.execute(
                select(AccountTable)
                .where(AccountTable.external_customer_id == external_customer_id)
                .order_by(AccountTable.created_at)
                .limit(1)
            )
            row = result.scalar_one_or_none()
            return _to_account(row) if row else None

    async def update_account(self, account_id: str, **fields: Any) -> Account:
        invalid = set(fields) - ACCOUNT_PROFILE_FIELDS
        if invalid:
            raise ValidationError(f"Cannot update account fields: {sorted(invalid)}")
        async with self._unit("update_account", "account") as session:
            row = await self._lock_account(session, account_id)
            for key, value in fields.items():
                if key == "status":
                    row.status = AccountStatus(value).value
                elif key == "metadata":
                    row.metadata_json = dict(value or {})
                else:
                    setattr(row, key, value)
            row.updated_at = utcnow()
            await session.flush()
            return _to_account(row)

    async def list_accounts(
        self,
        status: AccountStatus | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Account]:
        stmt = select(AccountTable).order_by(AccountTable.created_at, AccountTable.id)
        if status is not None:
            stmt = stmt.where(AccountTable.status == status.value)
        async with self._unit("list_accounts", "account") as session:
            result = await session.execute(stmt.limit(limit).offset(offset))
            return [_to_account(row) for row in result.scalars()]

    async def rollover_account_period(
        self,
        account_id: str,
        expected_period_end: datetime | None,
        new_start: datetime,
        new_end: datetime,
    ) -> bool:
        if expected_period_end is None:
            guard = AccountTable.period_end.is_(None)
        else:
            guard = AccountTable.period_end == expected_period_end
        async with self._unit("rollover_account_period", "account") as session:
            result = await session.execute(
                update(AccountTable)
                .where(AccountTable.id == account_id, guard)
                .values(
                    period_calls=0,
                    period_units=0,
                    period_start=new_start,
                    period_end=new_end,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                return True
            if await session.get(AccountTable, account_id) is None:
                raise NotFoundError("account", account_id)
            return False

    # ==================== USAGE RECORDS ====================

    async def insert_usage_record(self, record: UsageRecord) -> UsageRecord:
        async def fetch() -> UsageRecord | None:
            if record.reservation_id is None:
                return None
            async with self._unit("get_usage_record", "usage_record") as session:
                result = await session.execute(
                    select(UsageRecordTable).where(UsageRecordTable.reservation_id == record.reservation_id)
                )
                row = result.scalar_one_or_none()
                return _to_usage(row) if row else None

        async def insert() -> UsageRecord:
            async with self._unit("insert_usage_record", "usage_record") as session:
                session.add(
                    UsageRecordTable(
                        id=record.id,
                        account_id=record.account_id,
                        tool_name=record.tool_name,
                        cost=record.cost,
                        unit=record.unit,
                        success=record.success,
                        timestamp=record.timestamp,
                        error_code=record.error_code,
                        billing_model=record.billing_model,
                        reservation_id=record.reservation_id,
                        duration_ms=record.duration_ms,
                        metadata_json=dict(record.metadata),
                    )
                )
            return record

        existing = await fetch()
        if existing is not None:
            return existing
        stored, _ = await self._insert_or_get(insert, fetch)
        return stored

    async def query_usage_records(
        self,
        account_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
    ) -> list[UsageRecord]:
        stmt = (
            select(UsageRecordTable)
            .where(
                UsageRecordTable.account_id == account_id,
                *_time_filters(UsageRecordTable.timestamp, start, end),
            )
            .order_by(UsageRecordTable.timestamp, UsageRecordTable.id)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._unit("query_usage_records", "usage_record") as session:
            result = await session.execute(stmt)
            return [_to_usage(row) for row in result.scalars()]

    async def count_usage_records(
        self,
        account_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> int:
        async with self._unit("count_usage_records", "usage_record") as session:
            result = await session.execute(
                select(func.count())
                .select_from(UsageRecordTable)
                .where(
                    UsageRecordTable.account_id == account_id,
                    *_time_filters(UsageRecordTable.timestamp, start, end),
                )
            )
            return int(result.scalar_one())

    # ==================== PAYMENT INTENTS ====================

    async def create_payment_intent(self, intent: PaymentIntentInfo) -> PaymentIntentInfo:
        async def insert() -> PaymentIntentInfo:
            async with self._unit("create_payment_intent", "payment_intent") as session:
                existing = await session.get(PaymentIntentTable, intent.id)
                if existing is not None:
                    return _to_intent(existing)
                session.add(
                    PaymentIntentTable(
                        id=intent.id,
                        account_id=intent.account_id,
                        amount=intent.amount,
                        currency=intent.currency,
                        status=intent.status.value,
                        purpose=intent.purpose,
                        package_id=intent.package_id,
                        credits=intent.credits,
                        metadata_json=dict(intent.metadata),
                        created_at=intent.created_at,
                        updated_at=intent.updated_at,
                        completed_at=intent.completed_at,
                    )
                )
            return intent

        stored, _ = await self._insert_or_get(insert, lambda: self.get_payment_intent(intent.id))
        return stored

    async def get_payment_intent(self, intent_id: str) -> PaymentIntentInfo | None:
        async with self._unit("get_payment_intent", "payment_intent") as session:
            row = await session.get(PaymentIntentTable, intent_id)
            return _to_intent(row) if row else None

    async def update_payment_intent(
        self,
        intent_id: str,
        status: PaymentStatus,
        completed_at: datetime | None = None,
    ) -> PaymentIntentInfo:
        async with self._unit("update_payment_intent", "payment_intent") as session:
            row = await session.get(PaymentIntentTable, intent_id, with_for_update=True)
            if row is None:
                raise NotFoundError("payment_intent", intent_id)
            row.status = status.value
            row.updated_at = utcnow()
            if completed_at is not None:
                row.completed_at = completed_at
            await session.flush()
            return _to_intent(row)

    async def list_payment_intents(self, account_id: str) -> list[PaymentIntentInfo]:
        async with self._unit("list_payment_intents", "payment_intent") as session:
            result = await session.execute(
                select(PaymentIntentTable)
                .where(PaymentIntentTable.account_id == account_id)
                .order_by(PaymentIntentTable.created_at)
            )
            return [_to_intent(row) for row in result.scalars()]

    # ==================== SUBSCRIPTIONS ====================

    async def create_subscription(self, subscription: SubscriptionState) -> SubscriptionState:
        async with self._unit("create_subscription", "subscription") as session:
            account = await self._lock_account(session, subscription.account_id)
            if await session.get(SubscriptionTable, subscription.id) is not None:
                raise StorageError("subscription already exists", "create_subscription", "subscription")
            row = SubscriptionTable(
                id=subscription.id,
                account_id=subscription.account_id,
                plan_id=subscription.plan_id,
                status=subscription.status.value,
                interval=subscription.interval,
                current_period_start=subscription.current_period_start,
                current_period_end=subscription.current_period_end,
                calls_included=subscription.calls_included,
                calls_used=subscription.calls_used,
                overage_rate=subscription.overage_rate,
                max_calls=subscription.max_calls,
                external_id=subscription.external_id,
                cancel_at_period_end=subscription.cancel_at_period_end,
                canceled_at=subscription.canceled_at,
                trial_end=subscription.trial_end,
                created_at=subscription.created_at,
                updated_at=subscription.updated_at,
            )
            session.add(row)
            account.subscription_id = subscription.id
            account.updated_at = utcnow()
            await session.flush()
            return _to_subscription(row)

    async def get_subscription(self, subscription_id: str) -> SubscriptionState | None:
        async with self._unit("get_subscription", "subscription") as session:
            row = await session.get(SubscriptionTable, subscription_id)
            return _to_subscription(row) if row else None

    async def get_subscription_by_external_id(self, external_id: str) -> SubscriptionState | None:
        async with self._unit("get_subscription_by_external_id", "subscription") as session:
            result = await session.execute(
                select(SubscriptionTable).where(SubscriptionTable.external_id == external_id).limit(1)
            )
            row = result.scalar_one_or_none()
            return _to_subscription(row) if row else None

    async def update_subscription(self, subscription_id: str, **fields: Any) -> SubscriptionState:
        invalid = set(fields) - SUBSCRIPTION_MUTABLE_FIELDS
        if invalid:
            raise ValidationError(f"Cannot update subscription fields: {sorted(invalid)}")
        async with self._unit("update_subscription", "subscription") as session:
            row = await session.get(SubscriptionTable, subscription_id, with_for_update=True)
            if row is None:
                raise NotFoundError("subscription", subscription_id)
            for key, value in fields.items():
                if key == "status":
                    value = SubscriptionStatus(value).value
                setattr(row, key, value)
            row.updated_at = utcnow()
            await session.flush()
            return _to_subscription(row)

    async def rollover_subscription(
        self,
        subscription_id: str,
        expected_period_end: datetime,
        new_start: datetime,
        new_end: datetime,
    ) -> bool:
        async with self._unit("rollover_subscription", "subscription") as session:
            result = await session.execute(
                update(SubscriptionTable)
                .where(
                    SubscriptionTable.id == subscription_id,
                    SubscriptionTable.current_period_end == expected_period_end,
                )
                .values(
                    calls_used=0,
                    current_period_start=new_start,
                    current_period_end=new_end,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                return True
            if await session.get(SubscriptionTable, subscription_id) is None:
                raise NotFoundError("subscription", subscription_id)
            return False

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
        async def insert() -> CreditTransaction:
            async with self._unit("apply_credit_change", "credit_transaction") as session:
                account = await self._lock_account(session, account_id)
                if idempotency_key:
                    existing = await self._transaction_by_key(session, idempotency_key)
                    if existing is not None:
                        return existing
                return self._append_transaction(
                    session,
                    account,
                    max(amount, -account.credit_balance),
                    type,
                    description=description,
                    reference_id=reference_id,
                    idempotency_key=idempotency_key,
                    expires_at=expires_at,
                    metadata=metadata or {},
                )

        async def fetch() -> CreditTransaction | None:
            if not idempotency_key:
                return None
            return await self.get_transaction_by_idempotency_key(idempotency_key)

        txn, _ = await self._insert_or_get(insert, fetch)
        return txn

    async def list_credit_transactions(
        self,
        account_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
        type: TransactionType | None = None,
        limit: int | None = None,
    ) -> list[CreditTransaction]:
        stmt = (
            select(CreditTransactionTable)
            .where(
                CreditTransactionTable.account_id == account_id,
                *_time_filters(CreditTransactionTable.timestamp, start, end),
            )
            .order_by(CreditTransactionTable.sequence)
        )
        if type is not None:
            stmt = stmt.where(CreditTransactionTable.type == type.value)
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._unit("list_credit_transactions", "credit_transaction") as session:
            result = await session.execute(stmt)
            return [_to_transaction(row) for row in result.scalars()]

    async def get_transaction_by_idempotency_key(self, key: str) -> CreditTransaction | None:
        async with self._unit("get_transaction_by_idempotency_key", "credit_transaction") as session:
            return await self._transaction_by_key(session, key)

    async def list_expiring_purchases(self, now: datetime) -> list[CreditTransaction]:
        async with self._unit("list_expiring_purchases", "credit_transaction") as session:
            result = await session.execute(
                select(CreditTransactionTable)
                .where(
                    CreditTransactionTable.type == TransactionType.PURCHASE.value,
                    CreditTransactionTable.expires_at.is_not(None),
                    CreditTransactionTable.expires_at <= now,
                )
                .order_by(CreditTransactionTable.account_id, CreditTransactionTable.sequence)
            )
            return [_to_transaction(row) for row in result.scalars()]

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
        async with self._unit("reserve", "account") as session:
            account = await self._lock_account(session, account_id)
            subscription = None
            if account.subscription_id:
                subscription = await session.get(
                    SubscriptionTable, account.subscription_id, with_for_update=True
                )

            hold = decide(
                AccountSnapshot(
                    account=_to_account(account),
                    subscription=_to_subscription(subscription) if subscription else None,
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
                    session,
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
                reservation.counter_period_start = hold.period_start
            elif hold.counter == CounterScope.SUBSCRIPTION:
                subscription.calls_used += 1
                subscription.updated_at = now
                reservation.subscription_id = subscription.id
                reservation.counter_period_start = subscription.current_period_start

            account.updated_at = now
            session.add(
                ReservationTable(
                    id=reservation.id,
                    account_id=reservation.account_id,
                    tool_name=reservation.tool_name,
                    billing_model=reservation.billing_model,
                    amount=reservation.amount,
                    unit=reservation.unit,
                    debit=reservation.debit,
                    counter=reservation.counter.value,
                    units=reservation.units,
                    counter_period_start=reservation.counter_period_start,
                    subscription_id=reservation.subscription_id,
                    status=reservation.status.value,
                    transaction_id=reservation.transaction_id,
                    basis=reservation.basis,
                    created_at=reservation.created_at,
                    expires_at=reservation.expires_at,
                )
            )
            return reservation

    async def commit_reservation(self, reservation_id: str, now: datetime | None = None) -> Reservation:
        now = now or utcnow()
        async with self._unit("commit_reservation", "reservation") as session:
            row = await self._lock_reservation(session, reservation_id)
            if row.status == ReservationStatus.COMMITTED.value:
                return _to_reservation(row)
            if row.status == ReservationStatus.RELEASED.value:
                raise ReservationError(reservation_id, f"Reservation {reservation_id} was already released")

            account = await self._lock_account(session, row.account_id)
            account.total_calls += 1
            account.total_spent += row.amount
            account.updated_at = now
            row.status = ReservationStatus.COMMITTED.value
            row.finalized_at = now
            await session.flush()
            return _to_reservation(row)

    async def release_reservation(
        self,
        reservation_id: str,
        now: datetime | None = None,
        reason: str | None = None,
    ) -> Reservation:
        now = now or utcnow()
        async with self._unit("release_reservation", "reservation") as session:
            row = await self._lock_reservation(session, reservation_id)
            if row.status == ReservationStatus.RELEASED.value:
                return _to_reservation(row)
            if row.status == ReservationStatus.COMMITTED.value:
                raise ReservationError(reservation_id, f"Reservation {reservation_id} was already committed")

            account = await self._lock_account(session, row.account_id)
            if row.debit:
                self._append_transaction(
                    session,
                    account,
                    row.debit,
                    TransactionType.REFUND,
                    description=reason or f"Released reservation for {row.tool_name}",
                    reference_id=row.id,
                    idempotency_key=f"release:{row.id}",
                    reservation_id=row.id,
                    timestamp=now,
                )

            if row.counter == CounterScope.ACCOUNT.value:
                if account.period_start == row.counter_period_start:
                    account.period_calls = max(0, account.period_calls - 1)
                    account.period_units = max(0, account.period_units - row.units)
            elif row.counter == CounterScope.SUBSCRIPTION.value and row.subscription_id:
                subscription = await session.get(SubscriptionTable, row.subscription_id, with_for_update=True)
                if subscription is not None and subscription.current_period_start == row.counter_period_start:
                    subscription.calls_used = max(0, subscription.calls_used - 1)
                    subscription.updated_at = now

            account.updated_at = now
            row.status = ReservationStatus.RELEASED.value
            row.finalized_at = now
            await session.flush()
            return _to_reservation(row)

    async def get_reservation(self, reservation_id: str) -> Reservation | None:
        async with self._unit("get_reservation", "reservation") as session:
            row = await session.get(ReservationTable, reservation_id)
            return _to_reservation(row) if row else None

    async def list_expired_reservations(self, now: datetime, limit: int = 100) -> list[Reservation]:
        async with self._unit("list_expired_reservations", "reservation") as session:
            result = await session.execute(
                select(ReservationTable)
                .where(
                    ReservationTable.status == ReservationStatus.HELD.value,
                    ReservationTable.expires_at.is_not(None),
                    ReservationTable.expires_at <= now,
                )
                .order_by(ReservationTable.expires_at)
                .limit(limit)
            )
            return [_to_reservation(row) for row in result.scalars()]

    # ==================== WEBHOOK EVENTS ====================

    async def record_webhook_event(self, event: WebhookEvent) -> tuple[WebhookEvent, bool]:
        async def insert() -> WebhookEvent:
            async with self._unit("record_webhook_event", "webhook_event") as session:
                session.add(
                    WebhookEventTable(
                        id=event.id,
                        type=event.type,
                        payload=event.payload,
                        status=event.status.value,
                        retry_count=event.retry_count,
                        next_retry_at=event.next_retry_at,
                        last_error=event.last_error,
                        received_at=event.received_at,
                        processed_at=event.processed_at,
                    )
                )
            return event

        existing = await self.get_webhook_event(event.id)
        if existing is not None:
            return existing, False
        return await self._insert_or_get(insert, lambda: self.get_webhook_event(event.id))

    async def get_webhook_event(self, event_id: str) -> WebhookEvent | None:
        async with self._unit("get_webhook_event", "webhook_event") as session:
            row = await session.get(WebhookEventTable, event_id)
            return _to_webhook(row) if row else None

    async def update_webhook_event(
        self,
        event_id: str,
        status: WebhookStatus,
        retry_count: int | None = None,
        next_retry_at: datetime | None = None,
        last_error: str | None = None,
        processed_at: datetime | None = None,
    ) -> WebhookEvent:
        async with self._unit("update_webhook_event", "webhook_event") as session:
            row = await session.get(WebhookEventTable, event_id, with_for_update=True)
            if row is None:
                raise NotFoundError("webhook_event", event_id)
            row.status = status.value
            row.next_retry_at = next_retry_at
            if retry_count is not None:
                row.retry_count = retry_count
            if last_error is not None:
                row.last_error = last_error
            if processed_at is not None:
                row.processed_at = processed_at
            await session.flush()
            return _to_webhook(row)

    async def list_webhook_events(
        self,
        status: WebhookStatus | None = None,
        limit: int = 100,
    ) -> list[WebhookEvent]:
        stmt = select(WebhookEventTable).order_by(WebhookEventTable.received_at).limit(limit)
        if status is not None:
            stmt = stmt.where(WebhookEventTable.status == status.value)
        async with self._unit("list_webhook_events", "webhook_event") as session:
            result = await session.execute(stmt)
            return [_to_webhook(row) for row in result.scalars()]

    async def list_webhook_events_due(self, now: datetime, limit: int = 100) -> list[WebhookEvent]:
        async with self._unit("list_webhook_events_due", "webhook_event") as session:
            result = await session.execute(
                select(WebhookEventTable)
                .where(
                    WebhookEventTable.status.in_([WebhookStatus.PENDING.value, WebhookStatus.FAILED.value]),
                    WebhookEventTable.next_retry_at.is_not(None),
                    WebhookEventTable.next_retry_at <= now,
                )
                .order_by(WebhookEventTable.next_retry_at)
                .limit(limit)
            )
            return [_to_webhook(row) for row in result.scalars()]

    # ==================== ANALYTICS ====================

    async def get_revenue_stats(self, start: datetime, end: datetime) -> RevenueStats:
        filters = [UsageRecordTable.cost > 0, *_time_filters(UsageRecordTable.timestamp, start, end)]
        async with self._unit("get_revenue_stats", "usage_record") as session:
            totals = (
                await session.execute(
                    select(func.coalesce(func.sum(UsageRecordTable.cost), 0), func.count()).where(*filters)
                )
            ).one()
            by_tool = await session.execute(
                select(UsageRecordTable.tool_name, func.sum(UsageRecordTable.cost))
                .where(*filters)
                .group_by(UsageRecordTable.tool_name)
            )
            return RevenueStats(
                period_start=start,
                period_end=end,
                total_revenue=int(totals[0]),
                charged_calls=int(totals[1]),
                revenue_by_tool={tool: int(total) for tool, total in by_tool},
            )

    async def get_usage_stats(self, start: datetime, end: datetime) -> UsageStats:
        filters = _time_filters(UsageRecordTable.timestamp, start, end)
        async with self._unit("get_usage_stats", "usage_record") as session:
            totals = (
                await session.execute(
                    select(
                        func.count(),
                        func.coalesce(func.sum(case((UsageRecordTable.success.is_(True), 1), else_=0)), 0),
                        func.count(func.distinct(UsageRecordTable.account_id)),
                    ).where(*filters)
                )
            ).one()
            by_tool = await session.execute(
                select(UsageRecordTable.tool_name, func.count())
                .where(*filters)
                .group_by(UsageRecordTable.tool_name)
            )
            total, successful = int(totals[0]), int(totals[1])
            return UsageStats(
                period_start=start,
                period_end=end,
                total_calls=total,
                successful_calls=successful,
                failed_calls=total - successful,
                unique_accounts=int(totals[2]),
                calls_by_tool={tool: int(count) for tool, count in by_tool},
            )

    async def get_customer_stats(self, start: datetime, end: datetime) -> CustomerStats:
        stats = CustomerStats()
        async with self._unit("get_customer_stats", "account") as session:
            by_status = await session.execute(
                select(AccountTable.status, func.count()).group_by(AccountTable.status)
            )
            for status, count in by_status:
                count = int(count)
                stats.total += count
                if status == AccountStatus.ACTIVE.value:
                    stats.active = count
                elif status == AccountStatus.SUSPENDED.value:
                    stats.suspended = count
                elif status == AccountStatus.DELETED.value:
                    stats.deleted = count

            stats.new_in_period = int(
                (
                    await session.execute(
                        select(func.count())
                        .select_from(AccountTable)
                        .where(*_time_filters(AccountTable.created_at, start, end))
                    )
                ).scalar_one()
            )
            stats.with_active_subscription = int(
                (
                    await session.execute(
                        select(func.count())
                        .select_from(AccountTable)
                        .join(SubscriptionTable, AccountTable.subscription_id == SubscriptionTable.id)
                        .where(
                            SubscriptionTable.status.in_(
                                [SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value]
                            )
                        )
                    )
                ).scalar_one()
            )
        return stats

    # ==================== INTERNAL ====================

    async def _lock_account(self, session: AsyncSession, account_id: str) -> AccountTable:
        row = await session.get(AccountTable, account_id, with_for_update=True)
        if row is None:
            raise NotFoundError("account", account_id)
        return row

    async def _lock_reservation(self, session: AsyncSession, reservation_id: str) -> ReservationTable:
        row = await session.get(ReservationTable, reservation_id, with_for_update=True)
        if row is None:
            raise ReservationError(reservation_id, f"Unknown reservation {reservation_id}")
        return row

    async def _transaction_by_key(self, session: AsyncSession, key: str) -> CreditTransaction | None:
        result = await session.execute(
            select(CreditTransactionTable).where(CreditTransactionTable.idempotency_key == key)
        )
        row = result.scalar_one_or_none()
        return _to_transaction(row) if row else None

    def _append_transaction(
        self,
        session: AsyncSession,
        account: AccountTable,
        amount: int,
        type: TransactionType,
        timestamp: datetime | None = None,
        metadata: dict[str, Any] | None = None,
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
            metadata=metadata or {},
            **fields,
        )
        session.add(
            CreditTransactionTable(
                id=txn.id,
                account_id=txn.account_id,
                sequence=txn.sequence,
                type=txn.type.value,
                amount=txn.amount,
                balance_after=txn.balance_after,
                timestamp=txn.timestamp,
                description=txn.description,
                reference_id=txn.reference_id,
                idempotency_key=txn.idempotency_key,
                reservation_id=txn.reservation_id,
                expires_at=txn.expires_at,
                metadata_json=dict(txn.metadata),
            )
        )
        return txn
