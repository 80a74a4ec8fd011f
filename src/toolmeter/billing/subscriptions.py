"""
Subscription tracking and period arithmetic.

Subscriptions count covered calls against their plan's allowance and roll
over lazily: before any billing decision the current period is checked and
advanced with a compare-and-swap, so repeated or concurrent rollovers in
the same period are no-ops.
"""

from __future__ import annotations

import calendar
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

import structlog

from toolmeter.core.errors import NotFoundError, ValidationError
from toolmeter.core.models import (
    AccountSnapshot,
    CounterScope,
    Hold,
    SubscriptionState,
    SubscriptionStatus,
    utcnow,
)
from toolmeter.core.plans import SubscriptionConfig, SubscriptionPlan
from toolmeter.storage.base import StorageAdapter

if TYPE_CHECKING:
    from toolmeter.billing.pricing import PricingResolver

logger = structlog.get_logger()


# ==================== PERIOD ARITHMETIC ====================


def add_months(dt: datetime, months: int) -> datetime:
    """Shift by calendar months, clamping the day to the target month's length."""
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def advance_period(start: datetime, interval: str) -> datetime:
    """End of a billing period that begins at ``start``."""
    if interval == "year":
        return add_months(start, 12)
    if interval == "month":
        return add_months(start, 1)
    raise ValidationError(f"Unknown billing interval: {interval}")


def window_bounds(window: str, now: datetime) -> tuple[datetime, datetime]:
    """Calendar window (UTC) containing ``now``."""
    if window == "hour":
        start = now.replace(minute=0, second=0, microsecond=0)
        return start, start + timedelta(hours=1)
    if window == "day":
        start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        return start, start + timedelta(days=1)
    if window == "month":
        start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        return start, add_months(start, 1)
    if window == "year":
        start = now.replace(month=1, day=1, hour=0, minute=0, second=0, microsecond=0)
        return start, add_months(start, 12)
    raise ValidationError(f"Unknown usage window: {window}")


def next_period(subscription: SubscriptionState, now: datetime) -> tuple[datetime, datetime]:
    """The period containing ``now``, stepping forward from the current one."""
    start = subscription.current_period_start
    end = subscription.current_period_end
    while now >= end:
        start, end = end, advance_period(end, subscription.interval)
    return start, end


# ==================== TRACKER ====================


class SubscriptionTracker:
    """
    Tracks plan periods, included-call counters and overage.

    Counters only move inside storage units of work: ``reserve`` increments
    ``calls_used`` for covered calls and ``release`` gives the increment back.
    """

    def __init__(
        self,
        storage: StorageAdapter,
        pricing: "PricingResolver",
        config: SubscriptionConfig | None = None,
    ):
        self.storage = storage
        self.pricing = pricing
        self.config = config

    def get_plan(self, plan_id: str) -> SubscriptionPlan:
        if self.config is None:
            raise ValidationError("Subscription plans are not configured")
        plan = self.config.get_plan(plan_id)
        if plan is None:
            raise ValidationError(f"Unknown plan: {plan_id}", {"plan_id": plan_id})
        return plan

    async def record_covered_call(
        self,
        account_id: str,
        tool_name: str = "subscription",
        now: datetime | None = None,
    ) -> SubscriptionState:
        """Count one call against the current period outside the gate flow."""
        now = now or utcnow()
        await self.rollover_if_expired(account_id, now)

        def decide(snapshot: AccountSnapshot) -> Hold:
            if snapshot.subscription is None:
                raise ValidationError(f"Account {account_id} has no subscription")
            return Hold(amount=0, unit=self.pricing.unit, counter=CounterScope.SUBSCRIPTION, basis="included")

        reservation = await self.storage.reserve(
            account_id,
            decide,
            tool_name=tool_name,
            billing_model="subscription",
            expires_at=now,
            now=now,
        )
        await self.storage.commit_reservation(reservation.id, now)
        subscription = await self.storage.get_subscription(reservation.subscription_id)
        return subscription

    async def rollover_if_expired(
        self,
        account_id: str,
        now: datetime | None = None,
    ) -> SubscriptionState | None:
        """
        Advance the account's subscription to the period containing ``now``.

        Subscriptions marked ``cancel_at_period_end`` are canceled instead of
        advanced, and trials past ``trial_end`` become active. Returns the
        current subscription state, or None when the account has none.
        """
        now = now or utcnow()
        subscription = await self.storage.get_subscription_for_account(account_id)
        if subscription is None:
            return None

        if subscription.status == SubscriptionStatus.TRIALING and subscription.trial_end and now >= subscription.trial_end:
            subscription = await self.storage.update_subscription(
                subscription.id, status=SubscriptionStatus.ACTIVE
            )
            logger.info("Trial ended", account_id=account_id, subscription_id=subscription.id)

        if now < subscription.current_period_end:
            return subscription

        if subscription.cancel_at_period_end and subscription.status != SubscriptionStatus.CANCELED:
            logger.info("Subscription canceled at period end", account_id=account_id, subscription_id=subscription.id)
            return await self.storage.update_subscription(
                subscription.id,
                status=SubscriptionStatus.CANCELED,
                canceled_at=subscription.current_period_end,
            )

        if subscription.status == SubscriptionStatus.CANCELED:
            return subscription

        new_start, new_end = next_period(subscription, now)
        rolled = await self.storage.rollover_subscription(
            subscription.id, subscription.current_period_end, new_start, new_end
        )
        if rolled:
            logger.info(
                "Subscription period rolled over",
                account_id=account_id,
                subscription_id=subscription.id,
                period_start=new_start.isoformat(),
                period_end=new_end.isoformat(),
            )
        return await self.storage.get_subscription(subscription.id)

    async def rollover_account_window(
        self,
        account_id: str,
        window: str,
        now: datetime | None = None,
    ) -> bool:
        """Reset the account's per-window counters when ``now`` is in a new window."""
        now = now or utcnow()
        account = await self.storage.get_account(account_id)
        if account is None:
            raise NotFoundError("account", account_id)
        start, end = window_bounds(window, now)
        if account.period_start == start:
            return False
        return await self.storage.rollover_account_period(account_id, account.period_end, start, end)

    async def compute_overage(self, account_id: str) -> int:
        """Overage accrued in the current period."""
        subscription = await self.storage.get_subscription_for_account(account_id)
        if subscription is None:
            return 0
        return self.pricing.subscription_overage(subscription)

    async def start_subscription(
        self,
        account_id: str,
        plan_id: str,
        now: datetime | None = None,
        external_id: str | None = None,
        with_trial: bool = True,
    ) -> SubscriptionState:
        """
        Start a plan for an account, or switch plans if one is already active.

        Raises:
            NotFoundError: account does not exist
            ValidationError: unknown plan, or plan changes are disabled
        """
        now = now or utcnow()
        plan = self.get_plan(plan_id)
        account = await self.storage.get_account(account_id)
        if account is None:
            raise NotFoundError("account", account_id)

        current = await self.storage.get_subscription_for_account(account_id)
        if current is not None and current.is_active:
            return await self.change_plan(account_id, plan_id)

        trial_days = self.config.trial_period_days if (with_trial and self.config) else None
        subscription = SubscriptionState(
            account_id=account_id,
            plan_id=plan.id,
            interval=plan.interval,
            current_period_start=now,
            current_period_end=advance_period(now, plan.interval),
            calls_included=plan.included_calls,
            overage_rate=plan.overage_price,
            max_calls=plan.max_calls,
            external_id=external_id,
            status=SubscriptionStatus.TRIALING if trial_days else SubscriptionStatus.ACTIVE,
            trial_end=now + timedelta(days=trial_days) if trial_days else None,
            created_at=now,
            updated_at=now,
        )
        subscription = await self.storage.create_subscription(subscription)
        logger.info(
            "Started subscription",
            account_id=account_id,
            plan_id=plan_id,
            status=subscription.status.value,
        )
        return subscription

    async def change_plan(self, account_id: str, plan_id: str) -> SubscriptionState:
        """Switch the current subscription to another plan; counters carry over."""
        if self.config is not None and not self.config.allow_plan_changes:
            raise ValidationError("Plan changes are not allowed")
        plan = self.get_plan(plan_id)
        current = await self.storage.get_subscription_for_account(account_id)
        if current is None:
            raise NotFoundError("subscription", account_id)
        updated = await self.storage.update_subscription(
            current.id,
            plan_id=plan.id,
            interval=plan.interval,
            calls_included=plan.included_calls,
            overage_rate=plan.overage_price,
            max_calls=plan.max_calls,
        )
        logger.info("Changed plan", account_id=account_id, from_plan=current.plan_id, to_plan=plan_id)
        return updated

    async def cancel_subscription(
        self,
        account_id: str,
        at_period_end: bool = True,
        now: datetime | None = None,
    ) -> SubscriptionState:
        """Cancel immediately or at the end of the current period."""
        now = now or utcnow()
        current = await self.storage.get_subscription_for_account(account_id)
        if current is None:
            raise NotFoundError("subscription", account_id)
        if at_period_end:
            updated = await self.storage.update_subscription(current.id, cancel_at_period_end=True)
        else:
            updated = await self.storage.update_subscription(
                current.id,
                status=SubscriptionStatus.CANCELED,
                canceled_at=now,
            )
        logger.info("Canceled subscription", account_id=account_id, at_period_end=at_period_end)
        return updated
