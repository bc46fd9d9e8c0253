"""
Tests for environment settings and the pricing tier loader.
"""

from decimal import Decimal

import pytest

from billing_engine.config.pricing import get_pricing_loader, seed_pricing_tiers
from billing_engine.config.settings import BillingSettings, get_settings
from billing_engine.models.pricing_tier import PricingTier


class TestBillingSettings:

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("BILLING_GRACE_PERIOD_DAYS", raising=False)
        monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)

        settings = get_settings()

        assert settings.grace_period_days == 3
        assert settings.stripe_secret_key is None
        assert settings.processor_max_retries == 3
        assert get_settings() is settings

    def test_from_environment(self, monkeypatch):
        monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_env")
        monkeypatch.setenv("PAYMENT_PROCESSOR_MAX_RETRIES", "5")
        monkeypatch.setenv("APP_BASE_URL", "https://app.example.com/")
        monkeypatch.setenv("AUTO_CREATE_TABLES", "yes")

        settings = get_settings()

        assert settings.stripe_secret_key == "sk_test_env"
        assert settings.processor_max_retries == 5
        assert settings.auto_create_tables is True
        assert settings.checkout_cancel_url == "https://app.example.com/billing/cancel"
        assert settings.checkout_success_url.endswith("session_id={CHECKOUT_SESSION_ID}")

    @pytest.mark.parametrize("value,expected", [("7", 7), ("0", 0), ("none", None), ("", None), ("Unlimited", None)])
    def test_grace_period_values(self, monkeypatch, value, expected):
        monkeypatch.setenv("BILLING_GRACE_PERIOD_DAYS", value)

        assert BillingSettings.from_env().grace_period_days == expected


class TestPricingLoader:

    def test_loads_yaml(self, make_yaml_config):
        path = make_yaml_config("pricing_tiers.yml", {
            "currency": "eur",
            "tiers": {
                "free": {"monthly_price": "0.00", "features": ["basic_transcription"]},
                "pro": {"monthly_price": "4.99", "base_trial_days": 14, "price_id": "price_pro"},
            },
        })

        loader = get_pricing_loader(str(path))

        assert loader.currency == "eur"
        assert loader.tier_names() == ["free", "pro"]
        assert loader.get_tier("pro")["base_trial_days"] == 14
        assert loader.get_tier("business") is None

    def test_missing_file_uses_fallback(self, temp_config_dir):
        loader = get_pricing_loader(str(temp_config_dir / "absent.yml"))

        assert set(loader.tier_names()) == {"free", "pro", "business"}
        assert loader.get_tier("pro")["monthly_price"] == "3.49"

    def test_reload_picks_up_changes(self, make_yaml_config):
        path = make_yaml_config("pricing_tiers.yml", {"tiers": {"pro": {"monthly_price": "3.49"}}})
        loader = get_pricing_loader(str(path))

        make_yaml_config("pricing_tiers.yml", {"tiers": {"pro": {"monthly_price": "5.00"}}})
        loader.reload()

        assert loader.get_tier("pro")["monthly_price"] == "5.00"


class TestSeedPricingTiers:

    def test_seed_inserts_missing_tiers_only(self, db_session, make_yaml_config):
        path = make_yaml_config("pricing_tiers.yml", {
            "tiers": {
                "free": {"monthly_price": "0.00"},
                "pro": {"display_name": "Pro", "monthly_price": "3.49", "base_trial_days": 7,
                        "price_id": "price_pro", "features": ["translation"]},
            },
        })
        loader = get_pricing_loader(str(path))

        assert seed_pricing_tiers(db_session, loader) == 2

        pro = db_session.get(PricingTier, "pro")
        pro.monthly_price = Decimal("2.99")
        db_session.commit()

        assert seed_pricing_tiers(db_session, loader) == 0
        db_session.expire_all()
        pro = db_session.get(PricingTier, "pro")
        assert pro.monthly_price == Decimal("2.99")
        assert pro.base_trial_days == 7
        assert pro.features == ["translation"]
        assert pro.is_paid is True
        assert db_session.get(PricingTier, "free").is_paid is False
