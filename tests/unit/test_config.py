"""Tests for configuration and billing plan validation."""

import pytest
from pydantic import ValidationError as PydanticValidationError

from toolmeter.core.config import (
    LoggingSettings,
    MeteringSettings,
    Settings,
    StorageSettings,
    get_settings,
    reload_settings,
)
from toolmeter.core.plans import (
    CreditSystemConfig,
    FreemiumConfig,
    PerCallConfig,
    SubscriptionConfig,
    UsageBasedConfig,
    parse_billing_config,
)


class TestBillingConfig:
    """Tests for the billing model union."""

    def test_discriminated_by_model(self):
        config = parse_billing_config(
            {
                "model": "usage-based",
                "tiers": [{"up_to": 1000, "unit_amount": 2}, {"unit_amount": 1}],
            }
        )
        assert isinstance(config, UsageBasedConfig)
        assert config.tiers[1].up_to is None

    def test_unknown_model(self):
        with pytest.raises(PydanticValidationError):
            parse_billing_config({"model": "pay-what-you-want"})

    def test_negative_tool_price(self):
        with pytest.raises(PydanticValidationError):
            PerCallConfig(default_price=10, tool_prices={"search": -1})

    def test_negative_tool_credits(self):
        with pytest.raises(PydanticValidationError):
            CreditSystemConfig(tool_credits={"search": -5})
        assert CreditSystemConfig(tool_credits={"search": 0}).tool_credits == {"search": 0}

    def test_tool_units_must_be_positive(self):
        tiers = [{"unit_amount": 2}]
        for units in (0, -2):
            with pytest.raises(PydanticValidationError):
                parse_billing_config({"model": "usage-based", "tiers": tiers, "tool_units": {"search": units}})
        config = parse_billing_config({"model": "usage-based", "tiers": tiers, "tool_units": {"search": 3}})
        assert config.tool_units == {"search": 3}

    def test_discount_percent_bounds(self):
        with pytest.raises(PydanticValidationError):
            parse_billing_config(
                {
                    "model": "per-call",
                    "default_price": 10,
                    "volume_discounts": [{"threshold": 10, "discount_percent": 120}],
                }
            )

    def test_tiers_must_ascend(self):
        with pytest.raises(PydanticValidationError):
            parse_billing_config(
                {
                    "model": "usage-based",
                    "tiers": [{"up_to": 100, "unit_amount": 2}, {"up_to": 50, "unit_amount": 1}],
                }
            )

    def test_only_last_tier_open_ended(self):
        with pytest.raises(PydanticValidationError):
            parse_billing_config(
                {
                    "model": "usage-based",
                    "tiers": [{"unit_amount": 2}, {"up_to": 50, "unit_amount": 1}],
                }
            )

    def test_charge_behavior_requires_rate(self):
        with pytest.raises(PydanticValidationError):
            FreemiumConfig(allowance=10, over_limit_behavior="charge")

    def test_auto_recharge_package_must_exist(self):
        with pytest.raises(PydanticValidationError):
            parse_billing_config(
                {
                    "model": "credit-system",
                    "packages": [{"id": "small", "name": "Small", "credits": 100, "price": 500}],
                    "auto_recharge": {"threshold": 10, "package_id": "large"},
                }
            )

    def test_plan_ids_unique(self):
        plan = {"id": "pro", "name": "Pro", "price": 100, "included_calls": 10, "overage_price": 1}
        with pytest.raises(PydanticValidationError):
            parse_billing_config({"model": "subscription", "plans": [plan, plan]})

    def test_extra_fields_rejected(self):
        with pytest.raises(PydanticValidationError):
            parse_billing_config({"model": "per-call", "default_price": 1, "price_per_token": 3})


class TestSettings:
    """Tests for the settings tree."""

    def test_defaults(self):
        settings = Settings(_env_file=None)
        assert isinstance(settings.billing, PerCallConfig)
        assert settings.billing_unit == "usd"
        assert settings.is_development

    def test_credit_unit(self):
        settings = Settings(_env_file=None, billing=CreditSystemConfig())
        assert settings.billing_unit == "credits"

    def test_currency_validation(self):
        assert MeteringSettings(_env_file=None, currency="EUR").currency == "eur"
        with pytest.raises(PydanticValidationError):
            MeteringSettings(_env_file=None, currency="euros")

    def test_log_level_validation(self):
        assert LoggingSettings(_env_file=None, level="debug").level == "DEBUG"
        with pytest.raises(PydanticValidationError):
            LoggingSettings(_env_file=None, level="verbose")

    def test_storage_url_defaults(self):
        assert StorageSettings(_env_file=None, backend="memory").resolved_url is None
        assert StorageSettings(_env_file=None, backend="postgresql").resolved_url.startswith("postgresql+asyncpg://")
        custom = StorageSettings(_env_file=None, backend="sqlite", url="sqlite+aiosqlite:///:memory:")
        assert custom.resolved_url == "sqlite+aiosqlite:///:memory:"

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("TOOLMETER_STORAGE_BACKEND", "mysql")
        monkeypatch.setenv("TOOLMETER_RESERVATION_TTL_SECONDS", "120")
        assert StorageSettings(_env_file=None).backend == "mysql"
        assert MeteringSettings(_env_file=None).reservation_ttl_seconds == 120

    def test_from_yaml(self, tmp_path):
        path = tmp_path / "toolmeter.yaml"
        path.write_text(
            """
environment: production
storage:
  backend: memory
metering:
  currency: gbp
  charge_failed_calls: true
billing:
  model: subscription
  trial_period_days: 7
  plans:
    - id: team
      name: Team
      price: 4900
      included_calls: 5000
      overage_price: 1
      max_calls: 10000
"""
        )
        settings = Settings.from_yaml(path)
        assert settings.is_production
        assert settings.storage.backend == "memory"
        assert settings.metering.charge_failed_calls is True
        assert isinstance(settings.billing, SubscriptionConfig)
        assert settings.billing.get_plan("team").max_calls == 10000
        assert settings.billing_unit == "gbp"

    def test_from_yaml_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            Settings.from_yaml(tmp_path / "absent.yaml")

    def test_cached_settings(self):
        first = get_settings()
        assert get_settings() is first
        assert reload_settings() is not first
