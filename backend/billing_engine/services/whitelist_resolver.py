"""
Whitelist resolver.

Checks an email against the developer/tester allow-list. Pure read: no
side effects. Store failures surface as StoreUnavailableError so callers
can retry.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from billing_engine.errors import StoreUnavailableError
from billing_engine.models.base import ensure_utc
from billing_engine.repositories.account_repository import normalize_email
from billing_engine.repositories.whitelist_repository import WhitelistRepository

logger = logging.getLogger(__name__)


@dataclass
class WhitelistGrant:
    """Access grant descriptor for an allow-listed email."""
    is_whitelisted: bool
    access_level: Optional[str] = None
    role: Optional[str] = None
    expires_at: Optional[datetime] = None
    permissions: Dict[str, bool] = field(default_factory=dict)


NOT_WHITELISTED = WhitelistGrant(is_whitelisted=False)


class WhitelistResolver:
    """Resolves allow-list grants by email."""

    def __init__(self, db_session: Session):
        self.db = db_session
        self.repo = WhitelistRepository(db_session)

    def resolve(self, email: str) -> WhitelistGrant:
        """
        Look up the allow-list entry for an email.

        An inactive or expired entry is treated exactly like a missing one.

        Args:
            email: Email to check (case-insensitive)

        Returns:
            WhitelistGrant; is_whitelisted=False when not allow-listed

        Raises:
            StoreUnavailableError: If the allow-list cannot be read
        """
        email = normalize_email(email)
        if not email:
            return NOT_WHITELISTED

        try:
            entry = self.repo.get_by_email(email)
        except SQLAlchemyError as e:
            logger.error("Whitelist lookup failed", extra={"error": str(e)})
            raise StoreUnavailableError("Allow-list is temporarily unavailable") from e

        if entry is None or not entry.is_effective():
            return NOT_WHITELISTED

        logger.info("Whitelist match", extra={
            "role": entry.role,
            "access_level": entry.access_level,
        })
        return WhitelistGrant(
            is_whitelisted=True,
            access_level=entry.access_level,
            role=entry.role,
            expires_at=ensure_utc(entry.expires_at),
            permissions=entry.permissions,
        )
