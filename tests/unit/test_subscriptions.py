"""Tests for subscription tracking and period arithmetic."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from toolmeter.billing.subscriptions import add_months, advance_period, next_period, window_bounds
from toolmeter.core.errors import NotFoundError, ValidationError
from toolmeter.core.models import SubscriptionState, SubscriptionStatus
from toolmeter.core.plans import SubscriptionConfig, SubscriptionPlan

UTC = timezone.utc

PLANS = [
    SubscriptionPlan(id="basic", name="Basic", price=900, included_calls=100, overage_price=5),
    SubscriptionPlan(id="pro", name="Pro", price=2900, included_calls=1000, overage_price=2),
]


class TestPeriodArithmetic:
    """Tests for calendar periods."""

    def test_add_months_clamps_day(self):
        assert add_months(datetime(2026, 1, 31, tzinfo=UTC), 1) == datetime(2026, 2, 28, tzinfo=UTC)
        assert add_months(datetime(2026, 11, 15, tzinfo=UTC), 3) == datetime(2027, 2, 15, tzinfo=UTC)

    def test_advance_period(self):
        start = datetime(2026, 3, 15, tzinfo=UTC)
        assert advance_period(start, "month") == datetime(2026, 4, 15, tzinfo=UTC)
        assert advance_period(start, "year") == datetime(2027, 3, 15, tzinfo=UTC)
        with pytest.raises(ValidationError):
            advance_period(start, "week")

    def test_window_bounds(self):
        now = datetime(2026, 3, 15, 12, 30, tzinfo=UTC)
        assert window_bounds("hour", now) == (
            datetime(2026, 3, 15, 12, tzinfo=UTC),
            datetime(2026, 3, 15, 13, tzinfo=UTC),
        )
        assert window_bounds("day", now)[1] == datetime(2026, 3, 16, tzinfo=UTC)
        assert window_bounds("month", now) == (
            datetime(2026, 3, 1, tzinfo=UTC),
            datetime(2026, 4, 1, tzinfo=UTC),
        )

    def test_next_period_skips_missed_periods(self):
        subscription = SubscriptionState(
            account_id="acct_1",
            plan_id="basic",
            current_period_start=datetime(2026, 1, 1, tzinfo=UTC),
            current_period_end=datetime(2026, 2, 1, tzinfo=UTC),
            calls_included=100,
            overage_rate=5,
        )
        start, end = next_period(subscription, datetime(2026, 3, 10, tzinfo=UTC))
        assert start == datetime(2026, 3, 1, tzinfo=UTC)
        assert end == datetime(2026, 4, 1, tzinfo=UTC)


class TestSubscriptionTracker:
    """Tests for the tracker against memory storage."""

    @pytest.fixture
    def stack(self, make_stack):
        return make_stack(SubscriptionConfig(plans=PLANS))

    @pytest.mark.asyncio
    async def test_start_subscription(self, stack, now):
        await stack.account()
        subscription = await stack.tracker.start_subscription("acct_1", "basic", now=now)
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.calls_included == 100
        assert subscription.current_period_end == datetime(2026, 4, 15, 12, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_start_unknown_plan(self, stack):
        await stack.account()
        with pytest.raises(ValidationError):
            await stack.tracker.start_subscription("acct_1", "enterprise")

    @pytest.mark.asyncio
    async def test_start_unknown_account(self, stack):
        with pytest.raises(NotFoundError):
            await stack.tracker.start_subscription("acct_missing", "basic")

    @pytest.mark.asyncio
    async def test_trial_becomes_active(self, make_stack, storage, now):
        stack = make_stack(SubscriptionConfig(plans=PLANS, trial_period_days=14))
        await stack.account()
        subscription = await stack.tracker.start_subscription("acct_1", "basic", now=now)
        assert subscription.status == SubscriptionStatus.TRIALING

        current = await stack.tracker.rollover_if_expired("acct_1", now + timedelta(days=15))
        assert current.status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_record_covered_call(self, stack, now):
        await stack.account()
        await stack.tracker.start_subscription("acct_1", "basic", now=now)
        subscription = await stack.tracker.record_covered_call("acct_1", now=now)
        assert subscription.calls_used == 1

    @pytest.mark.asyncio
    async def test_overage(self, stack, now):
        await stack.account()
        await stack.tracker.start_subscription("acct_1", "basic", now=now)
        for _ in range(150):
            await stack.tracker.record_covered_call("acct_1", now=now)
        assert await stack.tracker.compute_overage("acct_1") == 50 * 5

    @pytest.mark.asyncio
    async def test_rollover_resets_counter(self, stack, storage, now):
        await stack.account()
        await stack.tracker.start_subscription("acct_1", "basic", now=now)
        for _ in range(3):
            await stack.tracker.record_covered_call("acct_1", now=now)

        later = now + timedelta(days=40)
        rolled = await stack.tracker.rollover_if_expired("acct_1", later)
        assert rolled.calls_used == 0
        assert rolled.current_period_start == datetime(2026, 4, 15, 12, tzinfo=UTC)
        assert rolled.current_period_end == datetime(2026, 5, 15, 12, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_rollover_is_idempotent(self, stack, now):
        await stack.account()
        await stack.tracker.start_subscription("acct_1", "basic", now=now)
        later = now + timedelta(days=40)

        await stack.tracker.rollover_if_expired("acct_1", later)
        await stack.tracker.record_covered_call("acct_1", now=later)
        again = await stack.tracker.rollover_if_expired("acct_1", later)
        assert again.calls_used == 1

    @pytest.mark.asyncio
    async def test_concurrent_rollovers_apply_once(self, stack, now):
        await stack.account()
        await stack.tracker.start_subscription("acct_1", "basic", now=now)
        later = now + timedelta(days=40)

        results = await asyncio.gather(*(stack.tracker.rollover_if_expired("acct_1", later) for _ in range(5)))
        assert {r.current_period_start for r in results} == {datetime(2026, 4, 15, 12, tzinfo=UTC)}

    @pytest.mark.asyncio
    async def test_change_plan_keeps_counter(self, stack, now):
        await stack.account()
        await stack.tracker.start_subscription("acct_1", "basic", now=now)
        await stack.tracker.record_covered_call("acct_1", now=now)

        changed = await stack.tracker.change_plan("acct_1", "pro")
        assert changed.plan_id == "pro"
        assert changed.calls_included == 1000
        assert changed.calls_used == 1

    @pytest.mark.asyncio
    async def test_plan_changes_disabled(self, make_stack, now):
        stack = make_stack(SubscriptionConfig(plans=PLANS, allow_plan_changes=False))
        await stack.account()
        await stack.tracker.start_subscription("acct_1", "basic", now=now)
        with pytest.raises(ValidationError):
            await stack.tracker.change_plan("acct_1", "pro")

    @pytest.mark.asyncio
    async def test_cancel_at_period_end(self, stack, now):
        await stack.account()
        await stack.tracker.start_subscription("acct_1", "basic", now=now)
        pending = await stack.tracker.cancel_subscription("acct_1", at_period_end=True, now=now)
        assert pending.cancel_at_period_end
        assert pending.status == SubscriptionStatus.ACTIVE

        ended = await stack.tracker.rollover_if_expired("acct_1", now + timedelta(days=40))
        assert ended.status == SubscriptionStatus.CANCELED

    @pytest.mark.asyncio
    async def test_cancel_immediately(self, stack, now):
        await stack.account()
        await stack.tracker.start_subscription("acct_1", "basic", now=now)
        canceled = await stack.tracker.cancel_subscription("acct_1", at_period_end=False, now=now)
        assert canceled.status == SubscriptionStatus.CANCELED
        assert canceled.canceled_at == now
