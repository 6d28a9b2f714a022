"""
Enumerations shared by the admin core.

Severity levels, audit target kinds and security event resolution outcomes.
"""

import enum


class Severity(str, enum.Enum):
    """
    Security event severity.

    Total order: LOW < MEDIUM < HIGH < CRITICAL.
    """
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return SEVERITY_RANK[self]

    def at_least(self) -> list["Severity"]:
        """All severities greater than or equal to this one."""
        return [s for s in Severity if s.rank >= self.rank]


SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class TargetType(str, enum.Enum):
    """
    Kinds of entity an admin action can target.

    Marketplace verticals (listing, property, job) are distinct members rather
    than nullable foreign keys.
    """
    USER = "user"
    PROFILE = "profile"
    LISTING = "listing"
    PROPERTY = "property"
    JOB = "job"
    CATEGORY = "category"
    MESSAGE = "message"
    SETTING = "setting"
    FEATURE_FLAG = "feature_flag"
    PERMISSION = "permission"
    SECURITY_EVENT = "security_event"
    ADMIN_SESSION = "admin_session"
    METRIC = "metric"


class ResolveOutcome(str, enum.Enum):
    """Result of resolving a security event. Neither value is an error."""
    RESOLVED = "resolved"
    ALREADY_RESOLVED = "already_resolved"
