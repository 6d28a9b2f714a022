"""
Security Event database model.

Flagged security events with a one-way resolution workflow.
"""

from sqlalchemy import Column, Integer, String, Text, DateTime, Boolean, JSON, Index, CheckConstraint
from backend.app.db.session import Base
from backend.app.core.clock import utcnow


class SecurityEvent(Base):
    """
    Security event.

    Created unresolved; transitions exactly once to resolved.
    """
    __tablename__ = "security_events"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    subject_id = Column(Integer, nullable=True)
    type = Column(String(50), nullable=False)
    severity = Column(String(20), nullable=False)
    description = Column(Text, nullable=True)

    origin_ip = Column(String(50), nullable=True)
    user_agent = Column(Text, nullable=True)
    meta_data = Column("metadata", JSON, nullable=False, default=dict)

    # Resolution
    resolved = Column(Boolean, default=False, nullable=False)
    resolved_by = Column(Integer, nullable=True)
    resolved_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("severity IN ('low', 'medium', 'high', 'critical')", name="ck_security_events_severity"),
        Index("ix_security_events_subject", "subject_id", "created_at"),
        Index("ix_security_events_open", "resolved", "severity", "created_at"),
        Index("ix_security_events_type_ip", "type", "origin_ip", "created_at"),
    )

    def __repr__(self):
        return f"<SecurityEvent(id={self.id}, type='{self.type}', severity='{self.severity}', resolved={self.resolved})>"
