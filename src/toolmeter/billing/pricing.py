"""
Pricing resolver.

Pure and deterministic: (billing config, tool, account state, time) -> quote.
Nothing here touches storage, so the gate can run a quote inside a storage
lock and the recorder can re-derive the same price later.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from toolmeter.billing.subscriptions import window_bounds
from toolmeter.core.models import Account, AccountSnapshot, SubscriptionState
from toolmeter.core.plans import (
    BillingConfig,
    CreditSystemConfig,
    FreemiumConfig,
    PerCallConfig,
    PricingTier,
    SubscriptionConfig,
    UsageBasedConfig,
)


@dataclass(frozen=True)
class PriceQuote:
    """Resolved price for one call."""

    amount: int
    unit: str
    basis: str = "list"
    units: int = 1
    blocked_reason: str | None = None

    @property
    def blocked(self) -> bool:
        return self.blocked_reason is not None


# ==================== PURE PRICE FUNCTIONS ====================


def apply_discount(price: int, discount_percent: float) -> int:
    """Discounted price, rounded half up to a whole minor unit."""
    factor = (Decimal(100) - Decimal(str(discount_percent))) / Decimal(100)
    return int((Decimal(price) * factor).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def per_call_price(config: PerCallConfig, tool_name: str, calls_so_far: int) -> tuple[int, str]:
    """
    Price of the next call given the calls already made this cycle.

    The highest discount tier whose threshold has been reached applies, and
    the minimum charge applies to any non-free tool.
    """
    base = config.tool_prices.get(tool_name, config.default_price)
    price, basis = base, "list"

    reached = [d for d in config.volume_discounts if calls_so_far >= d.threshold]
    if reached:
        tier = max(reached, key=lambda d: d.threshold)
        price, basis = apply_discount(base, tier.discount_percent), "discounted"

    if base > 0 and price < config.minimum_charge:
        price = config.minimum_charge
    return price, basis


def subscription_price(calls_used: int, calls_included: int, overage_rate: int) -> tuple[int, str]:
    """Zero while within the allowance, otherwise the overage rate."""
    if calls_used < calls_included:
        return 0, "included"
    return overage_rate, "overage"


def graduated_total(tiers: list[PricingTier], units: int) -> int:
    """
    Cost of ``units`` under a graduated table: each tier's rate applies only
    to usage inside its band. Usage past a bounded last tier is charged at
    that tier's rate.
    """
    total = 0
    lower = 0
    for tier in tiers:
        upper = tier.up_to
        if upper is None or tier is tiers[-1]:
            total += max(0, units - lower) * tier.unit_amount
            break
        in_band = max(0, min(units, upper) - lower)
        total += in_band * tier.unit_amount
        lower = upper
        if units <= lower:
            break
    return total


def usage_based_price(config: UsageBasedConfig, units_so_far: int, units: int) -> int:
    """
    Incremental charge for ``units`` more usage in the billing period.

    Minimum and maximum charges bound the period total: the first charged
    call is lifted to the minimum and calls stop costing anything once the
    maximum is reached.
    """

    def bounded(total_units: int) -> int:
        if total_units <= 0:
            return 0
        amount = max(graduated_total(config.tiers, total_units), config.minimum_charge)
        if config.maximum_charge is not None:
            amount = min(amount, config.maximum_charge)
        return amount

    return bounded(units_so_far + units) - bounded(units_so_far)


def credit_cost(config: CreditSystemConfig, tool_name: str) -> int:
    return config.tool_credits.get(tool_name, config.default_credit_cost)


def window_counters(account: Account, window_start: datetime) -> tuple[int, int]:
    """(calls, units) already counted in the window starting at ``window_start``."""
    if account.period_start != window_start:
        return 0, 0
    return account.period_calls, account.period_units


# ==================== RESOLVER ====================


class PricingResolver:
    """Resolves the price of a call under the configured billing model."""

    def __init__(self, config: BillingConfig, currency: str = "usd"):
        self.config = config
        self.currency = currency

    @property
    def model(self) -> str:
        return self.config.model

    @property
    def unit(self) -> str:
        """``credits`` for the credit system, otherwise the currency code."""
        if isinstance(self.config, CreditSystemConfig):
            return "credits"
        return self.currency

    @property
    def window(self) -> str | None:
        """Counter window used by the model, if it counts per account."""
        config = self.config
        if isinstance(config, PerCallConfig):
            return "month"
        if isinstance(config, UsageBasedConfig):
            return config.billing_period
        if isinstance(config, FreemiumConfig):
            return config.window
        return None

    def window_bounds(self, now: datetime) -> tuple[datetime, datetime] | None:
        if self.window is None:
            return None
        return window_bounds(self.window, now)

    def quote(self, tool_name: str, snapshot: AccountSnapshot, now: datetime) -> PriceQuote:
        """Price the next call of ``tool_name`` for the account in ``snapshot``."""
        config = self.config
        account = snapshot.account

        if isinstance(config, PerCallConfig):
            start, _ = window_bounds("month", now)
            calls, _ = window_counters(account, start)
            amount, basis = per_call_price(config, tool_name, calls)
            return PriceQuote(amount=amount, unit=self.unit, basis=basis)

        if isinstance(config, SubscriptionConfig):
            subscription = snapshot.subscription
            if subscription is None:
                return PriceQuote(amount=0, unit=self.unit, basis="none", blocked_reason="subscription_required")
            if not subscription.is_active:
                return PriceQuote(amount=subscription.overage_rate, unit=self.unit, basis="overage")
            amount, basis = subscription_price(
                subscription.calls_used, subscription.calls_included, subscription.overage_rate
            )
            return PriceQuote(amount=amount, unit=self.unit, basis=basis)

        if isinstance(config, UsageBasedConfig):
            start, _ = window_bounds(config.billing_period, now)
            _, units_so_far = window_counters(account, start)
            units = config.tool_units.get(tool_name, config.default_units)
            amount = usage_based_price(config, units_so_far, units)
            return PriceQuote(amount=amount, unit=self.unit, basis="tiered", units=units)

        if isinstance(config, FreemiumConfig):
            return self._quote_freemium(config, tool_name, account, now)

        if isinstance(config, CreditSystemConfig):
            return PriceQuote(amount=credit_cost(config, tool_name), unit=self.unit, basis="credits")

        raise TypeError(f"Unsupported billing config: {type(config).__name__}")

    def _quote_freemium(
        self,
        config: FreemiumConfig,
        tool_name: str,
        account: Account,
        now: datetime,
    ) -> PriceQuote:
        start, _ = window_bounds(config.window, now)
        calls, _ = window_counters(account, start)

        if config.covers_tool(tool_name):
            if calls < config.allowance:
                return PriceQuote(amount=0, unit=self.unit, basis="free")
            if calls < config.allowance + config.grace_calls:
                return PriceQuote(amount=0, unit=self.unit, basis="grace")
            reason = "free_tier_exhausted"
        else:
            reason = "tool_not_in_free_tier"

        if config.over_limit_behavior == "charge":
            return PriceQuote(amount=config.overage_rate, unit=self.unit, basis="overage")
        return PriceQuote(amount=0, unit=self.unit, basis="blocked", blocked_reason=reason)

    def subscription_overage(self, subscription: SubscriptionState) -> int:
        """Overage accrued so far in the subscription's current period."""
        over = max(0, subscription.calls_used - subscription.calls_included)
        return over * subscription.overage_rate
