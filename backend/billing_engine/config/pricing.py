"""
Pricing tier configuration loader.

Loads tier prices, base trial lengths, processor price references and
feature lists from config/pricing_tiers.yml and seeds them into the
pricing_tiers table. After seeding the database is the source of truth.

Usage:
    from billing_engine.config.pricing import get_pricing_loader, seed_pricing_tiers

    loader = get_pricing_loader()
    seed_pricing_tiers(db_session, loader)
"""

import logging
import os
from decimal import Decimal
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional

import yaml
from sqlalchemy.orm import Session

from billing_engine.models.pricing_tier import PricingTier

logger = logging.getLogger(__name__)

# Used when pricing_tiers.yml is missing
_FALLBACK_TIERS: Dict[str, Dict[str, Any]] = {
    "free": {
        "display_name": "Free",
        "monthly_price": "0.00",
        "base_trial_days": 0,
        "price_id": None,
        "monthly_voicemail_limit": 5,
        "features": ["basic_transcription", "basic_spam_detection"],
    },
    "pro": {
        "display_name": "Pro",
        "monthly_price": "3.49",
        "base_trial_days": 7,
        "price_id": None,
        "monthly_voicemail_limit": None,
        "features": [
            "basic_transcription",
            "unlimited_transcription",
            "translation",
            "advanced_spam_detection",
            "basic_spam_detection",
        ],
    },
    "business": {
        "display_name": "Business",
        "monthly_price": "9.99",
        "base_trial_days": 0,
        "price_id": None,
        "monthly_voicemail_limit": None,
        "features": [
            "basic_transcription",
            "unlimited_transcription",
            "translation",
            "advanced_spam_detection",
            "basic_spam_detection",
            "analytics",
        ],
    },
}


class PricingConfigLoader:
    """Thread-safe singleton loader for config/pricing_tiers.yml."""

    _instance: Optional["PricingConfigLoader"] = None
    _lock = Lock()

    def __new__(cls, config_path: Optional[str] = None):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self, config_path: Optional[str] = None):
        if self._initialized:
            return

        self._config_path = config_path
        self._raw: Dict[str, Any] = {}
        self._load_lock = Lock()

        self._load()
        self._initialized = True

    def _resolve_path(self) -> Path:
        if self._config_path:
            return Path(self._config_path)

        candidates = [
            Path(__file__).parent.parent.parent.parent / "config" / "pricing_tiers.yml",
            Path(os.getcwd()) / "config" / "pricing_tiers.yml",
            Path(os.getcwd()) / ".." / "config" / "pricing_tiers.yml",
        ]

        for p in candidates:
            resolved = p.resolve()
            if resolved.exists():
                return resolved

        raise FileNotFoundError(
            f"pricing_tiers.yml not found in: {[str(p) for p in candidates]}"
        )

    def _load(self) -> None:
        with self._load_lock:
            try:
                path = self._resolve_path()
                logger.info("Loading pricing tiers from %s", path)

                with open(path, "r") as f:
                    self._raw = yaml.safe_load(f) or {}

                logger.info("Loaded pricing tiers: %s", list(self.get_tiers().keys()))
            except FileNotFoundError:
                logger.warning("pricing_tiers.yml not found, using fallback tiers")
                self._raw = {"tiers": _FALLBACK_TIERS}

    def reload(self) -> None:
        """Re-read the YAML from disk."""
        self._load()

    @property
    def currency(self) -> str:
        return self._raw.get("currency", "usd")

    def get_tiers(self) -> Dict[str, Dict[str, Any]]:
        return self._raw.get("tiers") or _FALLBACK_TIERS

    def get_tier(self, tier: str) -> Optional[Dict[str, Any]]:
        return self.get_tiers().get(tier)

    def tier_names(self) -> List[str]:
        return list(self.get_tiers().keys())


def get_pricing_loader(config_path: Optional[str] = None) -> PricingConfigLoader:
    """Return the singleton PricingConfigLoader."""
    return PricingConfigLoader(config_path)


def reset_pricing_loader() -> None:
    """Reset singleton (for tests only)."""
    PricingConfigLoader._instance = None


def seed_pricing_tiers(db_session: Session, loader: Optional[PricingConfigLoader] = None) -> int:
    """
    Insert tiers from config that are missing in the database.

    Existing rows are left untouched so that prices edited in the store are
    not overwritten on restart.

    Returns:
        Number of tiers inserted
    """
    loader = loader or get_pricing_loader()
    existing = {row.tier for row in db_session.query(PricingTier.tier).all()}
    inserted = 0

    for name, cfg in loader.get_tiers().items():
        if name in existing:
            continue
        db_session.add(PricingTier(
            tier=name,
            display_name=cfg.get("display_name", name.title()),
            monthly_price=Decimal(str(cfg.get("monthly_price", "0"))),
            currency=cfg.get("currency", loader.currency),
            base_trial_days=int(cfg.get("base_trial_days", 0)),
            external_price_id=cfg.get("price_id"),
            features=list(cfg.get("features", [])),
            monthly_voicemail_limit=cfg.get("monthly_voicemail_limit"),
            is_active=True,
        ))
        inserted += 1

    if inserted:
        db_session.commit()
        logger.info("Seeded pricing tiers", extra={"inserted": inserted})
    return inserted
