"""
Admin Session database model.

Bookkeeping for admin login sessions so they can be revoked.
"""

from sqlalchemy import Column, Integer, String, Text, DateTime, Boolean, Index
from backend.app.db.session import Base
from backend.app.core.clock import utcnow


class AdminSession(Base):
    """
    Admin session.

    Valid iff not revoked and now < expires_at. Both conditions are evaluated
    in SQL on every lookup; nothing about validity is cached.
    """
    __tablename__ = "admin_sessions"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    user_id = Column(Integer, nullable=False)
    token = Column(String(255), unique=True, nullable=False)

    origin_ip = Column(String(50), nullable=False)
    user_agent = Column(Text, nullable=True)

    issued_at = Column(DateTime, default=utcnow, nullable=False)
    last_activity_at = Column(DateTime, default=utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False)

    # Revocation
    revoked = Column(Boolean, default=False, nullable=False)
    revoked_at = Column(DateTime, nullable=True)
    revoked_by = Column(Integer, nullable=True)
    revoke_reason = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_admin_sessions_user_active", "user_id", "revoked", "expires_at"),
    )

    def __repr__(self):
        return f"<AdminSession(id={self.id}, user={self.user_id}, revoked={self.revoked})>"
