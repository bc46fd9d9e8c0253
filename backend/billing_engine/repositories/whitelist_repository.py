"""
Repository for allow-list entries.
"""

import logging
from typing import List, Optional

from billing_engine.models.whitelist_entry import WhitelistEntry
from billing_engine.repositories.account_repository import normalize_email
from billing_engine.repositories.base_repo import BaseRepository

logger = logging.getLogger(__name__)


class WhitelistRepository(BaseRepository[WhitelistEntry]):
    """Data access for whitelist entries keyed by normalized email."""

    def _get_model_class(self) -> type:
        return WhitelistEntry

    def get_by_email(self, email: str) -> Optional[WhitelistEntry]:
        return self.db_session.query(WhitelistEntry).filter(
            WhitelistEntry.email == normalize_email(email)
        ).first()

    def list_entries(self, active_only: bool = False) -> List[WhitelistEntry]:
        query = self.db_session.query(WhitelistEntry)
        if active_only:
            query = query.filter(WhitelistEntry.is_active.is_(True))
        return query.order_by(WhitelistEntry.email).all()

    def upsert(self, email: str, fields: dict) -> WhitelistEntry:
        """Create the entry for email or update the existing one, then commit."""
        email = normalize_email(email)
        entry = self.get_by_email(email)
        if entry is None:
            return self.create({"email": email, **fields})
        return self.update(entry, fields)
