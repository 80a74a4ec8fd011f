"""
Billing model configuration.

One pydantic model per billing model; the ``model`` tag selects which
variant is present and every variant is validated when configuration is
loaded.
"""

from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator


class _PlanModel(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)


class VolumeDiscount(_PlanModel):
    """Discount applied once an account has made ``threshold`` calls in the cycle."""

    threshold: int = Field(ge=0)
    discount_percent: float = Field(gt=0, le=100)


class PerCallConfig(_PlanModel):
    """Flat price per tool call."""

    model: Literal["per-call"] = "per-call"
    default_price: int = Field(ge=0)
    tool_prices: dict[str, int] = Field(default_factory=dict)
    volume_discounts: list[VolumeDiscount] = Field(default_factory=list)
    minimum_charge: int = Field(default=0, ge=0)

    @field_validator("tool_prices")
    @classmethod
    def validate_tool_prices(cls, v: dict[str, int]) -> dict[str, int]:
        for tool, price in v.items():
            if price < 0:
                raise ValueError(f"Price for tool '{tool}' must be >= 0")
        return v


class SubscriptionPlan(_PlanModel):
    """A recurring plan with an included-call allowance."""

    id: str = Field(min_length=1)
    name: str
    price: int = Field(ge=0)
    interval: Literal["month", "year"] = "month"
    included_calls: int = Field(ge=0)
    overage_price: int = Field(ge=0)
    features: list[str] = Field(default_factory=list)
    max_calls: int | None = Field(default=None, ge=0)


class SubscriptionConfig(_PlanModel):
    """Plan-based billing with overage."""

    model: Literal["subscription"] = "subscription"
    plans: list[SubscriptionPlan] = Field(min_length=1)
    allow_plan_changes: bool = True
    proration_behavior: Literal["always_invoice", "none", "create_prorations"] = "create_prorations"
    trial_period_days: int | None = Field(default=None, ge=0)

    @field_validator("plans")
    @classmethod
    def validate_unique_ids(cls, v: list[SubscriptionPlan]) -> list[SubscriptionPlan]:
        ids = [plan.id for plan in v]
        if len(ids) != len(set(ids)):
            raise ValueError("Subscription plan ids must be unique")
        return v

    def get_plan(self, plan_id: str) -> SubscriptionPlan | None:
        """Look up a plan by id."""
        for plan in self.plans:
            if plan.id == plan_id:
                return plan
        return None


class PricingTier(_PlanModel):
    """One band of a graduated price table. ``up_to=None`` is open-ended."""

    up_to: int | None = Field(default=None, gt=0)
    unit_amount: int = Field(ge=0)


class UsageBasedConfig(_PlanModel):
    """Graduated per-unit pricing."""

    model: Literal["usage-based"] = "usage-based"
    tiers: list[PricingTier] = Field(min_length=1)
    tool_units: dict[str, int] = Field(default_factory=dict)
    default_units: int = Field(default=1, ge=1)
    minimum_charge: int = Field(default=0, ge=0)
    maximum_charge: int | None = Field(default=None, ge=0)
    billing_period: Literal["month", "year"] = "month"

    @field_validator("tool_units")
    @classmethod
    def validate_tool_units(cls, v: dict[str, int]) -> dict[str, int]:
        for tool, units in v.items():
            if units < 1:
                raise ValueError(f"Units for tool '{tool}' must be >= 1")
        return v

    @field_validator("tiers")
    @classmethod
    def validate_tiers(cls, v: list[PricingTier]) -> list[PricingTier]:
        previous = 0
        for index, tier in enumerate(v):
            if tier.up_to is None:
                if index != len(v) - 1:
                    raise ValueError("Only the last pricing tier may be open-ended")
                continue
            if tier.up_to <= previous:
                raise ValueError("Pricing tiers must be in ascending up_to order")
            previous = tier.up_to
        return v

    @model_validator(mode="after")
    def validate_charge_bounds(self) -> "UsageBasedConfig":
        if self.maximum_charge is not None and self.maximum_charge < self.minimum_charge:
            raise ValueError("maximum_charge must be >= minimum_charge")
        return self


class FreemiumConfig(_PlanModel):
    """Free allowance per window, then block or charge."""

    model: Literal["freemium"] = "freemium"
    allowance: int = Field(ge=0)
    window: Literal["month", "day", "hour"] = "month"
    free_tools: list[str] | None = None
    over_limit_behavior: Literal["block", "charge"] = "block"
    overage_rate: int = Field(default=0, ge=0)
    grace_calls: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def validate_charge_rate(self) -> "FreemiumConfig":
        if self.over_limit_behavior == "charge" and self.overage_rate <= 0:
            raise ValueError("over_limit_behavior 'charge' requires overage_rate > 0")
        return self

    def covers_tool(self, tool_name: str) -> bool:
        """Whether the free tier applies to a tool at all."""
        return self.free_tools is None or tool_name in self.free_tools


class CreditPackage(_PlanModel):
    """A purchasable bundle of credits."""

    id: str = Field(min_length=1)
    name: str
    credits: int = Field(gt=0)
    price: int = Field(ge=0)
    bonus_credits: int = Field(default=0, ge=0)
    expiration_days: int | None = Field(default=None, gt=0)

    @property
    def total_credits(self) -> int:
        return self.credits + self.bonus_credits


class AutoRecharge(_PlanModel):
    """Top up with ``package_id`` when the balance drops below ``threshold``."""

    threshold: int = Field(ge=0)
    package_id: str


class CreditSystemConfig(_PlanModel):
    """Prepaid credits consumed per call."""

    model: Literal["credit-system"] = "credit-system"
    packages: list[CreditPackage] = Field(default_factory=list)
    tool_credits: dict[str, int] = Field(default_factory=dict)
    default_credit_cost: int = Field(default=1, ge=0)
    auto_recharge: AutoRecharge | None = None

    @field_validator("tool_credits")
    @classmethod
    def validate_tool_credits(cls, v: dict[str, int]) -> dict[str, int]:
        for tool, credits in v.items():
            if credits < 0:
                raise ValueError(f"Credit cost for tool '{tool}' must be >= 0")
        return v

    @model_validator(mode="after")
    def validate_auto_recharge(self) -> "CreditSystemConfig":
        if self.auto_recharge and self.get_package(self.auto_recharge.package_id) is None:
            raise ValueError(f"auto_recharge package '{self.auto_recharge.package_id}' is not defined")
        return self

    def get_package(self, package_id: str) -> CreditPackage | None:
        """Look up a credit package by id."""
        for package in self.packages:
            if package.id == package_id:
                return package
        return None


BillingConfig = Annotated[
    Union[PerCallConfig, SubscriptionConfig, UsageBasedConfig, FreemiumConfig, CreditSystemConfig],
    Field(discriminator="model"),
]

_billing_adapter: TypeAdapter[BillingConfig] = TypeAdapter(BillingConfig)


def parse_billing_config(data: dict) -> BillingConfig:
    """Validate a raw mapping into the matching billing config variant."""
    return _billing_adapter.validate_python(data)
