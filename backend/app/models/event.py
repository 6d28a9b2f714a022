"""
User Event database model.

Append-only record of fine-grained user and system activity.
"""

from sqlalchemy import Column, Integer, String, Text, DateTime, JSON, Index
from backend.app.db.session import Base
from backend.app.core.clock import utcnow


class Event(Base):
    """
    Activity event (view, search, login, inquiry, ...).

    Written only by ingestion and never updated. actor_id is a weak reference:
    the actor may be anonymous or deleted since.
    """
    __tablename__ = "user_events"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    actor_id = Column(Integer, nullable=True)
    type = Column(String(50), nullable=False)
    category = Column(String(50), nullable=False)
    payload = Column(JSON, nullable=False, default=dict)

    origin_ip = Column(String(50), nullable=True)
    user_agent = Column(Text, nullable=True)
    session_ref = Column(String(100), nullable=True)

    occurred_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_user_events_actor", "actor_id", "occurred_at"),
        Index("ix_user_events_type", "type", "occurred_at"),
        Index("ix_user_events_category", "category", "occurred_at"),
        Index("ix_user_events_occurred", "occurred_at"),
    )

    def __repr__(self):
        return f"<Event(id={self.id}, type='{self.type}', actor={self.actor_id})>"
