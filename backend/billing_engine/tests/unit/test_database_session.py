"""
Tests for engine configuration and session helpers.
"""

import pytest
from fastapi import HTTPException

from billing_engine.config.pricing import get_pricing_loader, seed_pricing_tiers
from billing_engine.database import session as db
from billing_engine.models.pricing_tier import PricingTier


@pytest.fixture(autouse=True)
def _fresh_engine():
    db.reset_engine()
    yield
    db.reset_engine()


@pytest.fixture
def sqlite_url(tmp_path, monkeypatch):
    url = f"sqlite:///{tmp_path / 'billing.db'}"
    monkeypatch.setenv("DATABASE_URL", url)
    return url


class TestDatabaseUrl:

    def test_legacy_postgres_scheme(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgres://user:pw@db:5432/billing")

        assert db.database_url() == "postgresql://user:pw@db:5432/billing"

    def test_missing_url(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)

        with pytest.raises(db.DatabaseNotConfiguredError):
            db.database_url()

    def test_request_dependency_without_database(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)

        with pytest.raises(HTTPException) as exc_info:
            next(db.get_db_session())
        assert exc_info.value.status_code == 503


class TestSessionScope:

    def test_create_tables_and_seed(self, sqlite_url):
        db.create_tables()

        with db.session_scope() as session:
            seed_pricing_tiers(session, get_pricing_loader())

        with db.session_scope() as session:
            assert session.query(PricingTier).count() == 3

    def test_uncommitted_work_rolled_back(self, sqlite_url):
        db.create_tables()

        with pytest.raises(RuntimeError):
            with db.session_scope() as session:
                session.add(PricingTier(tier="pro", display_name="Pro"))
                session.flush()
                raise RuntimeError("job failed")

        with db.session_scope() as session:
            assert session.query(PricingTier).count() == 0

    def test_engine_is_shared(self, sqlite_url):
        assert db.get_engine() is db.get_engine()
        assert db.get_engine().dialect.name == "sqlite"
