"""
Meter: the composition root.

Builds storage, pricing, ledger, subscription tracker, gate, recorder,
webhook processor and maintenance worker from one ``Settings`` object and
exposes the operations a hosting tool server calls.
"""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Any

import structlog

from toolmeter.billing.gate import BillingGate
from toolmeter.billing.hooks import InvocationHooks, PreInvocationResult, ToolFunc
from toolmeter.billing.ledger import CreditLedger
from toolmeter.billing.maintenance import MaintenanceWorker
from toolmeter.billing.payments import AutoRecharger, PaymentGateway, StripePaymentGateway
from toolmeter.billing.pricing import PricingResolver
from toolmeter.billing.recorder import UsageRecorder
from toolmeter.billing.subscriptions import SubscriptionTracker
from toolmeter.billing.webhooks import WebhookProcessor
from toolmeter.core.config import Settings, get_settings
from toolmeter.core.errors import NotFoundError, ValidationError
from toolmeter.core.models import (
    Account,
    BillingSummary,
    CustomerStats,
    RevenueStats,
    TransactionType,
    UsageStats,
    utcnow,
)
from toolmeter.core.plans import CreditSystemConfig, SubscriptionConfig
from toolmeter.storage import create_storage
from toolmeter.storage.base import StorageAdapter

logger = structlog.get_logger()


class Meter:
    """
    Usage metering and billing for tool invocations.

    Example:
        meter = Meter(settings)
        await meter.start()
        result = await meter.invoke("acct_1", "search", search_tool, {"q": "x"})
        await meter.close()
    """

    def __init__(
        self,
        settings: Settings | None = None,
        storage: StorageAdapter | None = None,
        gateway: PaymentGateway | None = None,
    ):
        """
        Wire the billing components.

        Args:
            settings: Configuration (uses global settings if not provided)
            storage: Backend override (built from ``settings.storage`` otherwise)
            gateway: Payment gateway override for auto-recharge
        """
        self.settings = settings or get_settings()
        self.storage = storage or create_storage(self.settings.storage)

        billing = self.settings.billing
        metering = self.settings.metering
        subscription_config = billing if isinstance(billing, SubscriptionConfig) else None
        credit_config = billing if isinstance(billing, CreditSystemConfig) else None

        self.pricing = PricingResolver(billing, metering.currency)
        self.ledger = CreditLedger(self.storage, self.pricing.unit, metering.reservation_ttl_seconds)
        self.tracker = SubscriptionTracker(self.storage, self.pricing, subscription_config)

        self.recharger: AutoRecharger | None = None
        if credit_config is not None and credit_config.auto_recharge is not None:
            if gateway is None and self.settings.stripe.is_configured:
                gateway = StripePaymentGateway(self.settings.stripe)
            if gateway is None:
                logger.warning("Auto-recharge configured without a payment gateway; disabled")
            else:
                self.recharger = AutoRecharger(self.storage, self.ledger, gateway, credit_config, metering.currency)

        self.gate = BillingGate(
            self.storage,
            self.pricing,
            self.ledger,
            self.tracker,
            metering,
            environment=self.settings.environment,
            recharger=self.recharger,
        )
        self.recorder = UsageRecorder(self.storage, self.ledger, metering, self.pricing.unit)
        self.hooks = InvocationHooks(self.gate, self.recorder)
        self.webhooks = WebhookProcessor(
            self.storage,
            self.ledger,
            self.tracker,
            self.settings.stripe,
            metering,
            credit_config=credit_config,
        )
        self.maintenance = MaintenanceWorker(
            self.storage,
            self.ledger,
            self.webhooks,
            interval_seconds=metering.maintenance_interval_seconds,
        )
        self._initialized = False

    # ==================== LIFECYCLE ====================

    async def initialize(self) -> None:
        """Prepare storage (creates the schema when migrations are enabled)."""
        if self._initialized:
            return
        await self.storage.initialize()
        self._initialized = True
        logger.info(
            "Meter initialized",
            billing_model=self.pricing.model,
            unit=self.pricing.unit,
            storage=type(self.storage).__name__,
        )

    async def start(self) -> None:
        """Initialize and start background maintenance."""
        await self.initialize()
        if self.settings.metering.maintenance_enabled:
            await self.maintenance.start()

    async def close(self) -> None:
        await self.maintenance.stop()
        await self.storage.close()
        self._initialized = False

    async def __aenter__(self) -> "Meter":
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def health_check(self) -> dict[str, Any]:
        storage_ok = await self.storage.health_check()
        return {
            "status": "healthy" if storage_ok else "unhealthy",
            "storage": storage_ok,
            "billing_model": self.pricing.model,
            "unit": self.pricing.unit,
            "maintenance_running": self.maintenance.running,
        }

    # ==================== ACCOUNTS ====================

    async def create_account(
        self,
        account_id: str | None = None,
        email: str | None = None,
        name: str | None = None,
        external_customer_id: str | None = None,
        initial_balance: int = 0,
        metadata: dict[str, Any] | None = None,
    ) -> Account:
        """Create an account, optionally seeded with a starting balance."""
        if initial_balance < 0:
            raise ValidationError("initial_balance must be non-negative")
        account = Account(
            email=email,
            name=name,
            external_customer_id=external_customer_id,
            metadata=metadata or {},
        )
        if account_id:
            account.id = account_id
        account = await self.storage.create_account(account)
        if initial_balance:
            await self.ledger.adjust(
                account.id,
                initial_balance,
                "Initial balance",
                idempotency_key=f"initial:{account.id}",
            )
            account = await self.storage.get_account(account.id)
        logger.info("Account created", account_id=account.id, balance=account.credit_balance)
        return account

    async def get_account(self, account_id: str) -> Account:
        account = await self.storage.get_account(account_id)
        if account is None:
            raise NotFoundError("account", account_id)
        return account

    # ==================== INVOCATION ====================

    async def before_call(
        self,
        account_id: str,
        tool_name: str,
        args: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> PreInvocationResult:
        return await self.hooks.before(account_id, tool_name, args, metadata)

    async def after_call(
        self,
        reservation_token: str | None,
        success: bool,
        tool_name: str,
        result: Any = None,
        account_id: str | None = None,
        error_code: str | None = None,
        duration_ms: float | None = None,
    ) -> dict[str, Any]:
        return await self.hooks.after(
            reservation_token,
            success,
            tool_name,
            result,
            account_id=account_id,
            error_code=error_code,
            duration_ms=duration_ms,
        )

    async def invoke(
        self,
        account_id: str,
        tool_name: str,
        tool: ToolFunc,
        args: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        return await self.hooks.invoke(account_id, tool_name, tool, args, metadata)

    async def handle_webhook(self, payload: bytes | str, signature: str | None = None) -> dict[str, Any]:
        return await self.webhooks.ingest(payload, signature)

    # ==================== ANALYTICS ====================

    async def billing_summary(
        self,
        account_id: str,
        start: datetime,
        end: datetime | None = None,
    ) -> BillingSummary:
        """Per-account totals for ``start <= t < end``."""
        end = end or utcnow()
        if end <= start:
            raise ValidationError("end must be after start")
        await self.get_account(account_id)

        records = await self.storage.query_usage_records(account_id, start, end)
        transactions = await self.storage.list_credit_transactions(account_id)

        start_balance = 0
        end_balance = 0
        purchased = 0
        used = 0
        for txn in transactions:
            if txn.timestamp < start:
                start_balance = txn.balance_after
                end_balance = txn.balance_after
                continue
            if txn.timestamp >= end:
                continue
            end_balance = txn.balance_after
            if txn.type == TransactionType.PURCHASE:
                purchased += txn.amount
            elif txn.type == TransactionType.CONSUMPTION:
                used -= txn.amount
            elif txn.type == TransactionType.REFUND and txn.reservation_id:
                # Released holds were never used
                used -= txn.amount

        subscription = await self.storage.get_subscription_for_account(account_id)
        return BillingSummary(
            account_id=account_id,
            period_start=start,
            period_end=end,
            unit=self.pricing.unit,
            total_calls=len(records),
            total_charged=sum(r.cost for r in records),
            credits_purchased=purchased,
            credits_used=max(0, used),
            start_balance=start_balance,
            end_balance=end_balance,
            subscription=subscription.to_dict() if subscription else None,
        )

    async def revenue_stats(self, start: datetime, end: datetime) -> RevenueStats:
        return await self.storage.get_revenue_stats(start, end)

    async def usage_stats(self, start: datetime, end: datetime) -> UsageStats:
        return await self.storage.get_usage_stats(start, end)

    async def customer_stats(self, start: datetime, end: datetime) -> CustomerStats:
        return await self.storage.get_customer_stats(start, end)


# Global meter instance
_meter: Meter | None = None
_meter_lock = threading.Lock()


def get_meter() -> Meter:
    """Get the global meter."""
    global _meter
    if _meter is None:
        with _meter_lock:
            if _meter is None:
                _meter = Meter()
    return _meter


def configure_meter(
    settings: Settings | None = None,
    storage: StorageAdapter | None = None,
    gateway: PaymentGateway | None = None,
) -> Meter:
    """Replace the global meter."""
    global _meter
    with _meter_lock:
        _meter = Meter(settings=settings, storage=storage, gateway=gateway)
        return _meter
