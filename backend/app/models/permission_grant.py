"""
Permission Grant database model.

Time-bounded, resource-scoped capability grants.
"""

import json
from typing import Optional

from sqlalchemy import Column, Integer, String, DateTime, UniqueConstraint, Index
from backend.app.db.session import Base
from backend.app.core.clock import utcnow


def scope_key(resource_type: Optional[str], resource_id: Optional[str]) -> str:
    """Canonical scope of a grant. None encodes as JSON null, so no resource value can collide with it."""
    return json.dumps([resource_type, resource_id], separators=(",", ":"))


class PermissionGrant(Base):
    """
    Permission grant.

    NULL resource_type means all resource types, NULL resource_id means all
    resources of that type. Uniqueness is enforced on scope_key because SQL
    unique constraints treat NULLs as distinct.
    """
    __tablename__ = "user_permissions"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    user_id = Column(Integer, nullable=False, index=True)
    permission = Column(String(100), nullable=False)
    resource_type = Column(String(50), nullable=True)
    resource_id = Column(String(64), nullable=True)
    scope_key = Column(String(256), nullable=False)

    granted_by = Column(Integer, nullable=True)
    granted_at = Column(DateTime, default=utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "permission", "scope_key", name="uq_user_permissions_scope"),
        Index("ix_user_permissions_lookup", "user_id", "permission"),
    )

    def __repr__(self):
        return f"<PermissionGrant(user={self.user_id}, permission='{self.permission}', scope='{self.scope_key}')>"
