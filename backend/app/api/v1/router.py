"""
API v1 Router.

Aggregates all v1 API endpoints.
"""

from fastapi import APIRouter
from backend.app.api.v1.endpoints import (
    events, admin, audit, security, permissions, sessions, feature_flags, analytics
)

router = APIRouter()

# Event ingestion (best-effort, any caller)
router.include_router(events.router)

# User moderation
router.include_router(admin.router)

# Audit trail
router.include_router(audit.router)

# Security feed
router.include_router(security.router)

# Permission grants and admin sessions
router.include_router(permissions.router)
router.include_router(sessions.router)

# Feature flags
router.include_router(feature_flags.router)

# Analytics and dashboard
router.include_router(analytics.admin_router)
router.include_router(analytics.dashboard_router)
