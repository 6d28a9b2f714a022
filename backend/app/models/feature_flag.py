"""
Feature Flag database model.
"""

from sqlalchemy import Column, Integer, String, Text, DateTime, Boolean, JSON, CheckConstraint
from backend.app.db.session import Base
from backend.app.core.clock import utcnow


class FeatureFlag(Base):
    """
    Feature flag with kill switch, percentage rollout and explicit allow-list.
    """
    __tablename__ = "feature_flags"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    name = Column(String(100), unique=True, nullable=False, index=True)
    enabled = Column(Boolean, default=False, nullable=False)
    description = Column(Text, nullable=True)
    rollout_percentage = Column(Integer, default=100, nullable=False)
    target_users = Column(JSON, nullable=False, default=list)  # [user_id, ...]

    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("rollout_percentage >= 0 AND rollout_percentage <= 100", name="ck_feature_flags_rollout"),
    )

    def __repr__(self):
        return f"<FeatureFlag(name='{self.name}', enabled={self.enabled}, rollout={self.rollout_percentage})>"
