"""
User database model.

Minimal user identity referenced by the admin core, with the suspension and
ban tracking that moderation actions mutate.
"""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text
from backend.app.db.session import Base
from backend.app.core.clock import utcnow


class User(Base):
    """
    User model.

    Marketplace profile fields live elsewhere; only what moderation needs is here.
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    display_name = Column(String(100), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    # Suspension tracking
    is_suspended = Column(Boolean, default=False, nullable=False)
    suspended_at = Column(DateTime, nullable=True)
    suspended_by = Column(Integer, nullable=True)
    suspend_reason = Column(Text, nullable=True)
    suspend_expires_at = Column(DateTime, nullable=True)

    # Ban tracking
    is_banned = Column(Boolean, default=False, nullable=False)
    banned_at = Column(DateTime, nullable=True)
    banned_by = Column(Integer, nullable=True)
    ban_reason = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def snapshot(self) -> dict:
        """Moderation-relevant state, for audit before/after snapshots."""
        return {
            "id": self.id,
            "email": self.email,
            "is_active": self.is_active,
            "is_suspended": self.is_suspended,
            "suspend_reason": self.suspend_reason,
            "suspend_expires_at": self.suspend_expires_at.isoformat() if self.suspend_expires_at else None,
            "is_banned": self.is_banned,
            "ban_reason": self.ban_reason,
        }

    def __repr__(self):
        return f"<User(id={self.id}, email='{self.email}', suspended={self.is_suspended}, banned={self.is_banned})>"
