"""
Billing gate: the pre-invocation decision.

Resolves the price, checks the account, and atomically reserves the charge
before a tool may run. Business refusals come back as ``Refusal`` values,
never as exceptions, so a blocked call can never reach tool execution.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog

from toolmeter.billing.ledger import CreditLedger
from toolmeter.billing.payments import AutoRecharger
from toolmeter.billing.pricing import PricingResolver
from toolmeter.billing.subscriptions import SubscriptionTracker
from toolmeter.core.config import MeteringSettings
from toolmeter.core.errors import InsufficientBalanceError, NotFoundError, StorageError, ValidationError
from toolmeter.core.models import (
    Account,
    AccountSnapshot,
    BillingModel,
    CounterScope,
    Hold,
    UsageRecord,
    utcnow,
)
from toolmeter.storage.base import StorageAdapter

logger = structlog.get_logger()


@dataclass(frozen=True)
class Refusal:
    """Structured 'payment required' answer for a blocked call."""

    account_id: str
    tool_name: str
    reason: str
    required: int
    available: int
    unit: str

    @property
    def blocked(self) -> bool:
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "blocked": True,
            "reason": self.reason,
            "required": self.required,
            "available": self.available,
            "unit": self.unit,
        }


@dataclass(frozen=True)
class Authorization:
    """Permission to run a tool, carrying the reservation token."""

    account_id: str
    tool_name: str
    billing_model: str
    amount: int
    unit: str
    reservation_id: str | None
    basis: str = "list"
    fail_open: bool = False
    authorized_at: datetime = field(default_factory=utcnow)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def blocked(self) -> bool:
        return False


GateDecision = Authorization | Refusal


class BillingGate:
    """Authorizes calls and reserves their charge."""

    def __init__(
        self,
        storage: StorageAdapter,
        pricing: PricingResolver,
        ledger: CreditLedger,
        tracker: SubscriptionTracker,
        settings: MeteringSettings,
        environment: str = "production",
        recharger: AutoRecharger | None = None,
    ):
        self.storage = storage
        self.pricing = pricing
        self.ledger = ledger
        self.tracker = tracker
        self.settings = settings
        self.environment = environment
        self.recharger = recharger

    @property
    def fail_open(self) -> bool:
        return self.settings.fail_open_in_development and self.environment.lower() == "development"

    async def authorize(
        self,
        account_id: str,
        tool_name: str,
        metadata: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> GateDecision:
        """
        Decide whether ``account_id`` may run ``tool_name`` and reserve the charge.

        Returns:
            Authorization with a reservation id, or a Refusal
        """
        now = now or utcnow()
        metadata = metadata or {}
        try:
            self._validate(account_id, tool_name)
        except ValidationError as e:
            logger.info("Invalid invocation", account_id=account_id, tool_name=tool_name, error=e.message)
            return Refusal(
                account_id=str(account_id),
                tool_name=str(tool_name),
                reason="invalid_request",
                required=0,
                available=0,
                unit=self.pricing.unit,
            )

        try:
            return await self._authorize(account_id, tool_name, metadata, now)
        except StorageError as e:
            if self.fail_open:
                logger.warning(
                    "Storage unavailable, failing open",
                    account_id=account_id,
                    tool_name=tool_name,
                    error=e.message,
                )
                return Authorization(
                    account_id=account_id,
                    tool_name=tool_name,
                    billing_model=self.pricing.model,
                    amount=0,
                    unit=self.pricing.unit,
                    reservation_id=None,
                    basis="fail_open",
                    fail_open=True,
                    authorized_at=now,
                    metadata=metadata,
                )
            logger.error("Storage unavailable, blocking call", account_id=account_id, tool_name=tool_name, error=e.message)
            return Refusal(
                account_id=account_id,
                tool_name=tool_name,
                reason="storage_unavailable",
                required=0,
                available=0,
                unit=self.pricing.unit,
            )

    async def _authorize(
        self,
        account_id: str,
        tool_name: str,
        metadata: dict[str, Any],
        now: datetime,
        allow_recharge: bool = True,
    ) -> GateDecision:
        account = await self._load_account(account_id, now)
        if account is None:
            return await self._refuse(account_id, tool_name, "account_not_found", 0, 0, metadata, now, record=False)
        if not account.is_active:
            return await self._refuse(account_id, tool_name, "account_inactive", 0, account.credit_balance, metadata, now)

        if self.pricing.model == BillingModel.SUBSCRIPTION.value:
            await self.tracker.rollover_if_expired(account_id, now)
        elif self.pricing.window and account.period_end is not None and now >= account.period_end:
            await self.tracker.rollover_account_window(account_id, self.pricing.window, now)

        try:
            reservation = await self.ledger.reserve_with(
                account_id,
                lambda snapshot: self._decide(snapshot, tool_name, now),
                tool_name=tool_name,
                billing_model=self.pricing.model,
                now=now,
            )
        except InsufficientBalanceError as e:
            if allow_recharge and await self._recharge_after_refusal(account_id, e):
                return await self._authorize(account_id, tool_name, metadata, now, allow_recharge=False)
            return await self._refuse(account_id, tool_name, e.reason, e.required, e.available, metadata, now)

        logger.debug(
            "Call authorized",
            account_id=account_id,
            tool_name=tool_name,
            reservation_id=reservation.id,
            amount=reservation.amount,
            basis=reservation.basis,
        )

        if self.recharger is not None and reservation.debit:
            try:
                refreshed = await self.storage.get_account(account_id)
                await self.recharger.maybe_recharge(refreshed, refreshed.credit_balance)
            except StorageError as e:
                # The reservation stands; the next call retries the top-up
                logger.warning("Auto-recharge check failed", account_id=account_id, error=e.message)

        return Authorization(
            account_id=account_id,
            tool_name=tool_name,
            billing_model=self.pricing.model,
            amount=reservation.amount,
            unit=reservation.unit,
            reservation_id=reservation.id,
            basis=reservation.basis,
            authorized_at=now,
            metadata=metadata,
        )

    def _decide(self, snapshot: AccountSnapshot, tool_name: str, now: datetime) -> Hold:
        """Turn a quote into a hold for the locked account, or refuse."""
        account = snapshot.account
        quote = self.pricing.quote(tool_name, snapshot, now)
        if quote.blocked:
            raise InsufficientBalanceError(account.id, quote.amount, account.credit_balance, quote.blocked_reason)

        model = self.pricing.model
        if model == BillingModel.SUBSCRIPTION.value:
            subscription = snapshot.subscription
            if subscription.max_calls is not None and subscription.calls_used >= subscription.max_calls:
                raise InsufficientBalanceError(account.id, 1, 0, "plan_limit_reached")
            if subscription.is_active:
                # Overage is billed by the provider, not taken from the balance
                return Hold(amount=quote.amount, unit=quote.unit, counter=CounterScope.SUBSCRIPTION, basis=quote.basis)
            if not account.has_payment_method:
                raise InsufficientBalanceError(account.id, quote.amount, 0, "subscription_inactive")
            return Hold(amount=quote.amount, unit=quote.unit, basis=quote.basis)

        if quote.amount > account.credit_balance:
            reason = "insufficient_credits" if quote.unit == "credits" else "insufficient_balance"
            raise InsufficientBalanceError(account.id, quote.amount, account.credit_balance, reason)

        counter = CounterScope.NONE
        period_start = period_end = None
        bounds = self.pricing.window_bounds(now)
        if bounds is not None and (model != BillingModel.FREEMIUM.value or quote.amount == 0):
            counter = CounterScope.ACCOUNT
            period_start, period_end = bounds

        return Hold(
            amount=quote.amount,
            unit=quote.unit,
            debit=quote.amount,
            counter=counter,
            units=quote.units,
            basis=quote.basis,
            period_start=period_start,
            period_end=period_end,
        )

    async def _load_account(self, account_id: str, now: datetime) -> Account | None:
        account = await self.storage.get_account(account_id)
        if account is not None or not self.settings.auto_provision_accounts:
            return account
        try:
            account = await self.storage.create_account(Account(id=account_id, created_at=now, updated_at=now))
            logger.info("Provisioned account", account_id=account_id)
            return account
        except StorageError:
            # Lost a provisioning race; the other call's account is as good
            existing = await self.storage.get_account(account_id)
            if existing is None:
                raise
            return existing

    async def _recharge_after_refusal(self, account_id: str, error: InsufficientBalanceError) -> bool:
        if self.recharger is None or error.reason != "insufficient_credits":
            return False
        account = await self.storage.get_account(account_id)
        if account is None:
            return False
        return await self.recharger.maybe_recharge(account, error.available)

    async def _refuse(
        self,
        account_id: str,
        tool_name: str,
        reason: str,
        required: int,
        available: int,
        metadata: dict[str, Any],
        now: datetime,
        record: bool = True,
    ) -> Refusal:
        logger.info(
            "Call blocked",
            account_id=account_id,
            tool_name=tool_name,
            reason=reason,
            required=required,
            available=available,
        )
        if record:
            try:
                await self.storage.insert_usage_record(
                    UsageRecord(
                        account_id=account_id,
                        tool_name=tool_name,
                        cost=0,
                        unit=self.pricing.unit,
                        success=False,
                        timestamp=now,
                        error_code="payment_required",
                        billing_model=self.pricing.model,
                        metadata={**metadata, "reason": reason},
                    )
                )
            except (StorageError, NotFoundError) as e:
                logger.error("Failed to record blocked call", account_id=account_id, error=e.message)
        return Refusal(
            account_id=account_id,
            tool_name=tool_name,
            reason=reason,
            required=required,
            available=available,
            unit=self.pricing.unit,
        )

    @staticmethod
    def _validate(account_id: Any, tool_name: Any) -> None:
        if not isinstance(account_id, str) or not account_id.strip():
            raise ValidationError("account_id must be a non-empty string")
        if not isinstance(tool_name, str) or not tool_name.strip():
            raise ValidationError("tool_name must be a non-empty string")
