"""Shared fixtures for toolmeter tests."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import pytest
import pytest_asyncio

from toolmeter.billing.gate import BillingGate
from toolmeter.billing.hooks import InvocationHooks
from toolmeter.billing.ledger import CreditLedger
from toolmeter.billing.pricing import PricingResolver
from toolmeter.billing.recorder import UsageRecorder
from toolmeter.billing.subscriptions import SubscriptionTracker
from toolmeter.core.config import MeteringSettings
from toolmeter.core.models import Account
from toolmeter.core.plans import SubscriptionConfig
from toolmeter.storage.memory import MemoryStorage

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest_asyncio.fixture
async def storage():
    backend = MemoryStorage()
    await backend.initialize()
    yield backend
    await backend.close()


@pytest.fixture
def metering_settings() -> MeteringSettings:
    return MeteringSettings(_env_file=None, auto_provision_accounts=False)


class BillingStack:
    """The billing components wired the way ``Meter`` wires them."""

    def __init__(
        self,
        storage: MemoryStorage,
        config: Any,
        settings: MeteringSettings,
        environment: str = "production",
        recharger: Any = None,
    ):
        self.storage = storage
        self.pricing = PricingResolver(config, settings.currency)
        self.ledger = CreditLedger(storage, self.pricing.unit, settings.reservation_ttl_seconds)
        self.tracker = SubscriptionTracker(
            storage,
            self.pricing,
            config if isinstance(config, SubscriptionConfig) else None,
        )
        self.gate = BillingGate(
            storage,
            self.pricing,
            self.ledger,
            self.tracker,
            settings,
            environment=environment,
            recharger=recharger,
        )
        self.recorder = UsageRecorder(storage, self.ledger, settings, self.pricing.unit)
        self.hooks = InvocationHooks(self.gate, self.recorder)

    async def account(self, account_id: str = "acct_1", balance: int = 0, **fields: Any) -> Account:
        await self.storage.create_account(Account(id=account_id, created_at=NOW, updated_at=NOW, **fields))
        if balance:
            await self.ledger.adjust(account_id, balance, "Initial balance")
        return await self.storage.get_account(account_id)

    async def call(self, account_id: str, tool_name: str, success: bool = True, now: datetime = NOW):
        """Authorize and record one call; returns (decision, summary)."""
        decision = await self.gate.authorize(account_id, tool_name, now=now)
        if decision.blocked:
            return decision, None
        summary = await self.recorder.record(decision.reservation_id, success, tool_name, now=now)
        return decision, summary


@pytest.fixture
def make_stack(storage, metering_settings):
    def factory(config: Any, settings: MeteringSettings | None = None, **kwargs: Any) -> BillingStack:
        return BillingStack(storage, config, settings or metering_settings, **kwargs)

    return factory
