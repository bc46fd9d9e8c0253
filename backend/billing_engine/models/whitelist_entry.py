"""
WhitelistEntry model for developer/tester allow-list access.

An inactive or expired entry behaves exactly like a missing one.
"""

from datetime import datetime
from enum import Enum as PyEnum
from typing import Optional

from sqlalchemy import Boolean, Column, DateTime, Enum, String, Text

from billing_engine.db_base import Base
from billing_engine.models.base import TimestampMixin, ensure_utc, generate_uuid, utcnow


class WhitelistRole(str, PyEnum):
    DEVELOPER = "developer"
    TESTER = "tester"
    REVIEWER = "reviewer"
    VIP = "vip"


class AccessLevel(str, PyEnum):
    FULL = "full"
    LIMITED = "limited"
    READONLY = "readonly"


class WhitelistEntry(Base, TimestampMixin):
    """Allow-list entry keyed by normalized email."""

    __tablename__ = "whitelist_entries"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    email = Column(String(255), nullable=False, unique=True, index=True)
    name = Column(String(255), nullable=True)
    role = Column(
        Enum("developer", "tester", "reviewer", "vip", name="whitelist_role"),
        nullable=False,
        default=WhitelistRole.TESTER.value
    )
    access_level = Column(
        Enum("full", "limited", "readonly", name="whitelist_access_level"),
        nullable=False,
        default=AccessLevel.FULL.value
    )
    is_active = Column(Boolean, nullable=False, default=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)

    # Permission flags
    can_access_admin_panel = Column(Boolean, nullable=False, default=False)
    can_create_coupons = Column(Boolean, nullable=False, default=False)
    can_manage_whitelist = Column(Boolean, nullable=False, default=False)
    can_bypass_limits = Column(Boolean, nullable=False, default=True)

    added_by = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<WhitelistEntry(email={self.email}, role={self.role}, active={self.is_active})>"

    def is_effective(self, now: Optional[datetime] = None) -> bool:
        """Active and not past expiry."""
        if not self.is_active:
            return False
        expires_at = ensure_utc(self.expires_at)
        return expires_at is None or (now or utcnow()) <= expires_at

    @property
    def permissions(self) -> dict:
        return {
            "admin_panel": bool(self.can_access_admin_panel),
            "create_coupons": bool(self.can_create_coupons),
            "manage_whitelist": bool(self.can_manage_whitelist),
            "bypass_limits": bool(self.can_bypass_limits),
        }
