"""
Root test configuration and fixtures.

Provides:
- db_engine / db_session: fresh SQLite in-memory database per test
- seeded_tiers: pricing tiers from config/pricing_tiers.yml
- make_account / make_coupon / make_whitelist_entry: row factories
- fake_client: in-memory stand-in for the Stripe client (see helpers.py)
- make_yaml_config: factory for YAML config files in a temp dir
"""

import os
import tempfile
import uuid
from decimal import Decimal
from pathlib import Path
from typing import Generator, Optional

import pytest
import yaml
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from billing_engine.tests.helpers import FakeProcessorClient

# Set test environment
os.environ.setdefault("ENV", "test")

PRICING_CONFIG = Path(__file__).resolve().parents[3] / "config" / "pricing_tiers.yml"


# =============================================================================
# Database
# =============================================================================

@pytest.fixture
def db_engine():
    """
    SQLite in-memory engine with every table created.

    Function scoped: services commit, so each test gets its own database.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    from billing_engine.db_base import Base
    import billing_engine.models  # noqa: F401 - registers tables

    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.close()


@pytest.fixture(autouse=True)
def _reset_singletons():
    """Settings, pricing loader and client singletons are rebuilt per test."""
    from billing_engine.config.pricing import reset_pricing_loader
    from billing_engine.config.settings import reset_settings
    from billing_engine.integrations.stripe.billing_client import reset_billing_client

    reset_settings()
    reset_pricing_loader()
    reset_billing_client()
    yield
    reset_settings()
    reset_pricing_loader()
    reset_billing_client()


@pytest.fixture
def seeded_tiers(db_session):
    """Seed free/pro/business from config/pricing_tiers.yml."""
    from billing_engine.config.pricing import get_pricing_loader, seed_pricing_tiers
    from billing_engine.models.pricing_tier import PricingTier

    seed_pricing_tiers(db_session, get_pricing_loader(str(PRICING_CONFIG)))
    return {tier.tier: tier for tier in db_session.query(PricingTier).all()}


# =============================================================================
# Row factories
# =============================================================================

@pytest.fixture
def make_account(db_session):
    from billing_engine.models.account import Account

    def _make(
        account_id: Optional[str] = None,
        email: Optional[str] = None,
        **fields,
    ) -> Account:
        account_id = account_id or f"acct-{uuid.uuid4().hex[:8]}"
        values = {
            "subscription_tier": "free",
            "subscription_state": "none",
            "subscription_active": False,
            "is_whitelisted": False,
            "cancel_at_period_end": False,
        }
        values.update(fields)
        account = Account(
            id=account_id,
            email=(email or f"{account_id}@example.com").lower(),
            **values,
        )
        db_session.add(account)
        db_session.commit()
        return account

    return _make


@pytest.fixture
def make_coupon(db_session):
    from billing_engine.models.coupon import Coupon

    def _make(code: str = "WELCOME30", **fields) -> Coupon:
        values = {
            "is_active": True,
            "discount_type": "percentage",
            "discount_value": Decimal("30"),
            "bonus_trial_days": 0,
            "current_uses": 0,
            "first_time_only": False,
            "allowed_emails": [],
            "allowed_domains": [],
        }
        values.update(fields)
        coupon = Coupon(code=code.upper(), **values)
        db_session.add(coupon)
        db_session.commit()
        return coupon

    return _make


@pytest.fixture
def make_whitelist_entry(db_session):
    from billing_engine.models.whitelist_entry import WhitelistEntry

    def _make(email: str = "dev@example.com", **fields) -> WhitelistEntry:
        values = {"role": "developer", "access_level": "full", "is_active": True}
        values.update(fields)
        entry = WhitelistEntry(email=email.lower(), **values)
        db_session.add(entry)
        db_session.commit()
        return entry

    return _make


# =============================================================================
# Payment processor
# =============================================================================

@pytest.fixture
def fake_client() -> FakeProcessorClient:
    return FakeProcessorClient()


# =============================================================================
# Markers
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "integration: mark test as API-level integration test")
    config.addinivalue_line("markers", "security: mark test as security-focused")
    config.addinivalue_line("markers", "slow: mark test as slow-running")


# =============================================================================
# Shared Config Fixtures
# =============================================================================

@pytest.fixture
def temp_config_dir():
    """Create a temporary directory for YAML config files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def make_yaml_config(temp_config_dir):
    """
    Factory fixture that writes a YAML config file and returns its path.

    Usage:
        config_path = make_yaml_config("pricing_tiers.yml", {"tiers": {...}})
    """
    def _make(filename: str, config: dict) -> Path:
        config_path = temp_config_dir / filename
        with open(config_path, "w") as f:
            yaml.dump(config, f)
        return config_path
    return _make
