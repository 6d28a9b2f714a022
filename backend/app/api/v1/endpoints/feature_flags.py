"""
Feature flag API Endpoints.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from backend.app.core.dependencies import AdminContext
from backend.app.core.guards import require_permission
from backend.app.core.redis_client import get_redis
from backend.app.db.session import get_db
from backend.app.models.enums import TargetType
from backend.app.schemas.feature_flags import (
    FeatureFlagUpdate, FeatureFlagResponse, FeatureFlagListResponse, FlagEvaluationResponse,
)
from backend.app.services.audit import AdminAction, AuditTarget, audited_action
from backend.app.services.feature_flags import FeatureFlagService, FlagState
from backend.app.services.permissions import Permission

router = APIRouter(prefix="/admin/feature-flags", tags=["Admin - Feature Flags"])


@router.get("", response_model=FeatureFlagListResponse)
async def list_feature_flags(
    admin: AdminContext = Depends(require_permission(Permission.MANAGE_FEATURE_FLAGS)),
    db: AsyncSession = Depends(get_db),
    cache=Depends(get_redis)
):
    flags = await FeatureFlagService(db, cache).list_flags()
    return FeatureFlagListResponse(flags=[FeatureFlagResponse.model_validate(f) for f in flags])


@router.put("/{name}", response_model=FeatureFlagResponse)
async def upsert_feature_flag(
    name: str,
    request: FeatureFlagUpdate,
    admin: AdminContext = Depends(require_permission(Permission.MANAGE_FEATURE_FLAGS)),
    db: AsyncSession = Depends(get_db),
    cache=Depends(get_redis)
):
    """
    Create or update a flag.

    A change that only flips `enabled` is audited as a toggle; anything else
    as an update. The cached copy is invalidated after the commit.
    """
    service = FeatureFlagService(db, cache)
    row = await service.load(name)
    before = FlagState.from_model(row) if row else None

    only_toggle = request.enabled is not None and not any(
        v is not None for v in (request.description, request.rollout_percentage, request.target_users)
    )
    action = AdminAction.FEATURE_FLAG_TOGGLE if only_toggle and before else AdminAction.FEATURE_FLAG_UPDATE

    async with audited_action(
        db,
        actor_id=admin.user_id,
        action=action,
        target=AuditTarget.of(TargetType.FEATURE_FLAG, name),
        origin_ip=admin.origin_ip,
        user_agent=admin.user_agent,
        reason=request.reason,
    ) as audit:
        audit.set_before(before.as_dict() if before else None)
        flag = await service.upsert_flag(
            name,
            enabled=request.enabled,
            description=request.description,
            rollout_percentage=request.rollout_percentage,
            target_users=request.target_users,
            actor_id=admin.user_id,
            commit=False,
        )
        audit.set_after(FlagState.from_model(flag).as_dict())

    await service.invalidate(name)
    return FeatureFlagResponse.model_validate(flag)


@router.get("/{name}/evaluate/{user_id}", response_model=FlagEvaluationResponse)
async def evaluate_feature_flag(
    name: str,
    user_id: int,
    admin: AdminContext = Depends(require_permission(Permission.MANAGE_FEATURE_FLAGS)),
    db: AsyncSession = Depends(get_db),
    cache=Depends(get_redis)
):
    """Evaluate a flag for a user. Unknown flags evaluate to disabled."""
    enabled = await FeatureFlagService(db, cache).evaluate(name, user_id)
    return FlagEvaluationResponse(name=name, user_id=user_id, enabled=enabled)
