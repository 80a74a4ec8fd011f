"""Tests for the pricing resolver."""

from datetime import datetime, timezone

import pytest

from toolmeter.billing.pricing import (
    PricingResolver,
    apply_discount,
    graduated_total,
    per_call_price,
    subscription_price,
    usage_based_price,
)
from toolmeter.core.models import Account, AccountSnapshot, SubscriptionState, SubscriptionStatus
from toolmeter.core.plans import (
    CreditSystemConfig,
    FreemiumConfig,
    PerCallConfig,
    PricingTier,
    SubscriptionConfig,
    SubscriptionPlan,
    UsageBasedConfig,
    VolumeDiscount,
)

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)
MONTH_START = datetime(2026, 3, 1, tzinfo=timezone.utc)


def snapshot(period_calls=0, period_units=0, period_start=MONTH_START, subscription=None):
    account = Account(
        id="acct_1",
        period_calls=period_calls,
        period_units=period_units,
        period_start=period_start,
    )
    return AccountSnapshot(account=account, subscription=subscription)


class TestApplyDiscount:
    """Tests for discount rounding."""

    def test_ten_percent(self):
        assert apply_discount(100, 10) == 90

    def test_rounds_half_up(self):
        assert apply_discount(5, 10) == 5  # 4.5 -> 5
        assert apply_discount(15, 10) == 14  # 13.5 -> 14

    def test_full_discount(self):
        assert apply_discount(100, 100) == 0


class TestPerCallPricing:
    """Tests for per-call pricing and volume discounts."""

    def test_tool_price_overrides_default(self):
        config = PerCallConfig(default_price=10, tool_prices={"search": 25})
        assert per_call_price(config, "search", 0) == (25, "list")
        assert per_call_price(config, "other", 0) == (10, "list")

    def test_discount_starts_at_101st_call(self):
        config = PerCallConfig(
            default_price=100,
            volume_discounts=[VolumeDiscount(threshold=100, discount_percent=10)],
        )
        # 99 calls made: the 100th call is still list price
        assert per_call_price(config, "t", 99) == (100, "list")
        # 100 calls made: the 101st call is discounted
        assert per_call_price(config, "t", 100) == (90, "discounted")

    def test_highest_reached_tier_applies(self):
        config = PerCallConfig(
            default_price=100,
            volume_discounts=[
                VolumeDiscount(threshold=1000, discount_percent=30),
                VolumeDiscount(threshold=100, discount_percent=10),
            ],
        )
        assert per_call_price(config, "t", 500)[0] == 90
        assert per_call_price(config, "t", 1000)[0] == 70

    def test_minimum_charge(self):
        config = PerCallConfig(
            default_price=10,
            minimum_charge=8,
            volume_discounts=[VolumeDiscount(threshold=0, discount_percent=50)],
        )
        assert per_call_price(config, "t", 0)[0] == 8

    def test_minimum_charge_does_not_apply_to_free_tools(self):
        config = PerCallConfig(default_price=10, tool_prices={"ping": 0}, minimum_charge=8)
        assert per_call_price(config, "ping", 0)[0] == 0

    def test_resolver_counts_calls_in_current_month(self):
        config = PerCallConfig(
            default_price=100,
            volume_discounts=[VolumeDiscount(threshold=100, discount_percent=10)],
        )
        resolver = PricingResolver(config)
        assert resolver.quote("t", snapshot(period_calls=100), NOW).amount == 90

        stale = snapshot(period_calls=100, period_start=datetime(2026, 2, 1, tzinfo=timezone.utc))
        assert resolver.quote("t", stale, NOW).amount == 100


class TestSubscriptionPricing:
    """Tests for included calls and overage."""

    def test_included_then_overage(self):
        assert subscription_price(99, 100, 5) == (0, "included")
        assert subscription_price(100, 100, 5) == (5, "overage")

    def test_subscription_required(self):
        config = SubscriptionConfig(
            plans=[SubscriptionPlan(id="pro", name="Pro", price=1000, included_calls=100, overage_price=5)]
        )
        quote = PricingResolver(config).quote("t", snapshot(), NOW)
        assert quote.blocked
        assert quote.blocked_reason == "subscription_required"

    def test_inactive_subscription_charged_overage(self):
        config = SubscriptionConfig(
            plans=[SubscriptionPlan(id="pro", name="Pro", price=1000, included_calls=100, overage_price=5)]
        )
        subscription = SubscriptionState(
            account_id="acct_1",
            plan_id="pro",
            current_period_start=MONTH_START,
            current_period_end=datetime(2026, 4, 1, tzinfo=timezone.utc),
            calls_included=100,
            overage_rate=5,
            status=SubscriptionStatus.PAST_DUE,
        )
        quote = PricingResolver(config).quote("t", snapshot(subscription=subscription), NOW)
        assert quote.amount == 5
        assert quote.basis == "overage"

    def test_subscription_overage_amount(self):
        subscription = SubscriptionState(
            account_id="acct_1",
            plan_id="pro",
            current_period_start=MONTH_START,
            current_period_end=datetime(2026, 4, 1, tzinfo=timezone.utc),
            calls_included=100,
            overage_rate=5,
            calls_used=150,
        )
        config = SubscriptionConfig(
            plans=[SubscriptionPlan(id="pro", name="Pro", price=1000, included_calls=100, overage_price=5)]
        )
        assert PricingResolver(config).subscription_overage(subscription) == 250


class TestUsageBasedPricing:
    """Tests for graduated tiers."""

    TIERS = [
        PricingTier(up_to=10, unit_amount=10),
        PricingTier(up_to=20, unit_amount=5),
        PricingTier(up_to=None, unit_amount=1),
    ]

    def test_graduated_total(self):
        assert graduated_total(self.TIERS, 0) == 0
        assert graduated_total(self.TIERS, 10) == 100
        assert graduated_total(self.TIERS, 15) == 125
        assert graduated_total(self.TIERS, 25) == 155

    def test_bounded_last_tier_extends(self):
        tiers = [PricingTier(up_to=10, unit_amount=10), PricingTier(up_to=20, unit_amount=5)]
        assert graduated_total(tiers, 30) == 100 + 20 * 5

    def test_incremental_price_crosses_tier(self):
        config = UsageBasedConfig(tiers=self.TIERS)
        # Units 10 and 11: one at 10, one at 5
        assert usage_based_price(config, 9, 2) == 15

    def test_minimum_and_maximum_bound_period_total(self):
        config = UsageBasedConfig(tiers=self.TIERS, minimum_charge=50, maximum_charge=120)
        assert usage_based_price(config, 0, 1) == 50
        assert usage_based_price(config, 1, 1) == 0  # 20 total still under the minimum
        assert usage_based_price(config, 10, 1) == 5
        assert usage_based_price(config, 14, 1) == 0  # 125 capped at 120

    def test_resolver_uses_tool_units(self):
        config = UsageBasedConfig(tiers=self.TIERS, tool_units={"bulk": 3})
        quote = PricingResolver(config).quote("bulk", snapshot(period_units=9), NOW)
        assert quote.units == 3
        assert quote.amount == 10 + 5 + 5


class TestFreemiumPricing:
    """Tests for allowance, grace calls and over-limit behavior."""

    def test_free_then_blocked(self):
        resolver = PricingResolver(FreemiumConfig(allowance=3))
        assert resolver.quote("t", snapshot(period_calls=2), NOW).basis == "free"
        quote = resolver.quote("t", snapshot(period_calls=3), NOW)
        assert quote.blocked_reason == "free_tier_exhausted"

    def test_grace_calls(self):
        resolver = PricingResolver(FreemiumConfig(allowance=3, grace_calls=2))
        assert resolver.quote("t", snapshot(period_calls=4), NOW).basis == "grace"
        assert resolver.quote("t", snapshot(period_calls=5), NOW).blocked

    def test_charge_behavior(self):
        resolver = PricingResolver(FreemiumConfig(allowance=1, over_limit_behavior="charge", overage_rate=7))
        quote = resolver.quote("t", snapshot(period_calls=1), NOW)
        assert not quote.blocked
        assert quote.amount == 7

    def test_tool_outside_free_tier(self):
        resolver = PricingResolver(FreemiumConfig(allowance=10, free_tools=["search"]))
        quote = resolver.quote("export", snapshot(), NOW)
        assert quote.blocked_reason == "tool_not_in_free_tier"

    def test_daily_window_resets(self):
        resolver = PricingResolver(FreemiumConfig(allowance=1, window="day"))
        yesterday = datetime(2026, 3, 14, tzinfo=timezone.utc)
        assert resolver.quote("t", snapshot(period_calls=1, period_start=yesterday), NOW).basis == "free"


class TestCreditPricing:
    """Tests for credit costs."""

    def test_tool_credits(self):
        resolver = PricingResolver(CreditSystemConfig(tool_credits={"render": 5}, default_credit_cost=2))
        assert resolver.unit == "credits"
        assert resolver.quote("render", snapshot(), NOW).amount == 5
        assert resolver.quote("other", snapshot(), NOW).amount == 2

    def test_deterministic(self):
        resolver = PricingResolver(PerCallConfig(default_price=10))
        snap = snapshot(period_calls=4)
        assert resolver.quote("t", snap, NOW) == resolver.quote("t", snap, NOW)
