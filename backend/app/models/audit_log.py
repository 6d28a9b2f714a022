"""
Admin Audit Log Database Model.

Immutable record of every mutating administrative action.
"""

from sqlalchemy import Column, Integer, String, Text, DateTime, JSON, Index
from backend.app.db.session import Base
from backend.app.core.clock import utcnow


class AuditEntry(Base):
    """
    Audit entry for an admin action.

    Rows are never updated; a correction is a new entry on the same target.
    before_state / after_state are sanitized snapshots of the target.
    """
    __tablename__ = "admin_audit_logs"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Who performed the action
    actor_id = Column(Integer, nullable=False)

    # What was done, in noun.verb form (e.g. "user.suspend")
    action = Column(String(100), nullable=False)

    # What was affected
    target_type = Column(String(50), nullable=False)
    target_id = Column(String(64), nullable=True)

    before_state = Column(JSON, nullable=True)
    after_state = Column(JSON, nullable=True)
    reason = Column(Text, nullable=True)

    # Where it came from
    origin_ip = Column(String(50), nullable=False)
    user_agent = Column(Text, nullable=True)

    meta_data = Column("metadata", JSON, nullable=False, default=dict)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_admin_audit_actor", "actor_id", "created_at"),
        Index("ix_admin_audit_target", "target_type", "target_id", "created_at"),
        Index("ix_admin_audit_action", "action", "created_at"),
        Index("ix_admin_audit_created", "created_at"),
    )

    def __repr__(self):
        return f"<AuditEntry(id={self.id}, action='{self.action}', actor={self.actor_id}, target={self.target_type}:{self.target_id})>"
