"""
Feature gate.

Flag evaluation is a pure function of the flag state and the user id:
kill switch first, then the explicit allow-list, then a sticky percentage
rollout. A user's bucket never changes, so raising the rollout percentage
only ever adds users.

Flag reads go through a Redis read-through cache keyed by flag name. Every
write invalidates the key; Redis is never the source of truth and a Redis
failure falls back to the database.
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Optional, List, Any, Iterable, Union

from redis.exceptions import RedisError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.config import settings
from backend.app.core.exceptions import ValidationError, ResourceNotFoundError
from backend.app.core.redis_client import redis_client
from backend.app.db.session import storage_errors
from backend.app.models.feature_flag import FeatureFlag

logger = logging.getLogger("marketplace_admin.feature_flags")

FLAG_CACHE_PREFIX = "feature_flag:"


@dataclass(frozen=True)
class FlagState:
    """The parts of a flag that evaluation depends on."""
    name: str
    enabled: bool
    rollout_percentage: int
    target_users: List[Any] = field(default_factory=list)

    @classmethod
    def from_model(cls, flag: FeatureFlag) -> "FlagState":
        return cls(
            name=flag.name,
            enabled=bool(flag.enabled),
            rollout_percentage=int(flag.rollout_percentage),
            target_users=list(flag.target_users or []),
        )

    def as_dict(self) -> dict:
        return {
            "name": self.name,
            "enabled": self.enabled,
            "rollout_percentage": self.rollout_percentage,
            "target_users": list(self.target_users),
        }

    def to_json(self) -> str:
        return json.dumps(self.as_dict())

    @classmethod
    def from_json(cls, raw: Union[str, bytes]) -> "FlagState":
        data = json.loads(raw)
        return cls(
            name=data["name"],
            enabled=data["enabled"],
            rollout_percentage=data["rollout_percentage"],
            target_users=data.get("target_users") or [],
        )


def bucket(flag_name: str, user_id: Any) -> int:
    """Stable bucket in [0, 100) for a (flag, user) pair."""
    digest = hashlib.sha256(f"{flag_name}:{user_id}".encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") % 100


def is_enabled(flag: Union[FlagState, FeatureFlag], user_id: Any) -> bool:
    """
    Evaluate a flag for a user.

    1. Disabled flags are off for everyone, allow-list included.
    2. Users on the allow-list are on.
    3. Otherwise on iff bucket(name, user) < rollout_percentage.
    """
    if not flag.enabled:
        return False
    if str(user_id) in {str(u) for u in (flag.target_users or [])}:
        return True
    return bucket(flag.name, user_id) < flag.rollout_percentage


def _validate_rollout(rollout_percentage: int) -> None:
    if not 0 <= rollout_percentage <= 100:
        raise ValidationError(
            "rollout_percentage must be between 0 and 100",
            {"rollout_percentage": rollout_percentage},
        )


class FeatureFlagService:
    """Flag storage, caching and evaluation for one database session."""

    def __init__(self, db: AsyncSession, cache=None, ttl_seconds: Optional[int] = None):
        self.db = db
        self.cache = cache if cache is not None else redis_client
        self.ttl_seconds = ttl_seconds or settings.flag_cache_ttl_seconds

    @staticmethod
    def cache_key(name: str) -> str:
        return f"{FLAG_CACHE_PREFIX}{name}"

    async def _cache_get(self, name: str) -> Optional[FlagState]:
        try:
            raw = await self.cache.get(self.cache_key(name))
        except (RedisError, OSError) as exc:
            logger.warning("Flag cache read failed, using database", extra={"flag": name, "error": str(exc)})
            return None
        if raw is None:
            return None
        try:
            return FlagState.from_json(raw)
        except (ValueError, KeyError, TypeError):
            logger.warning("Discarding malformed cached flag", extra={"flag": name})
            return None

    async def _cache_set(self, state: FlagState) -> None:
        try:
            await self.cache.set(self.cache_key(state.name), state.to_json(), ex=self.ttl_seconds)
        except (RedisError, OSError) as exc:
            logger.warning("Flag cache write failed", extra={"flag": state.name, "error": str(exc)})

    async def invalidate(self, name: str) -> None:
        try:
            await self.cache.delete(self.cache_key(name))
        except (RedisError, OSError) as exc:
            logger.warning("Flag cache invalidation failed", extra={"flag": name, "error": str(exc)})

    async def load(self, name: str) -> Optional[FeatureFlag]:
        query = select(FeatureFlag).where(FeatureFlag.name == name).execution_options(populate_existing=True)
        with storage_errors("feature_flag.load"):
            return (await self.db.execute(query)).scalar_one_or_none()

    async def _require(self, name: str) -> FeatureFlag:
        flag = await self.load(name)
        if flag is None:
            raise ResourceNotFoundError("Feature flag", name)
        return flag

    async def get_flag(self, name: str) -> Optional[FlagState]:
        """Read-through: cache first, then the database (populating the cache)."""
        cached = await self._cache_get(name)
        if cached is not None:
            return cached

        flag = await self.load(name)
        if flag is None:
            return None
        state = FlagState.from_model(flag)
        await self._cache_set(state)
        return state

    async def evaluate(self, name: str, user_id: Any) -> bool:
        """Unknown flags are off."""
        state = await self.get_flag(name)
        if state is None:
            return False
        return is_enabled(state, user_id)

    async def list_flags(self) -> List[FeatureFlag]:
        with storage_errors("feature_flag.list"):
            result = await self.db.execute(select(FeatureFlag).order_by(FeatureFlag.name))
        return list(result.scalars().all())

    async def _save(self, flag: FeatureFlag, commit: bool) -> FeatureFlag:
        with storage_errors("feature_flag.save"):
            if commit:
                await self.db.commit()
            else:
                await self.db.flush()
        # When not committing, the caller invalidates again after its commit.
        await self.invalidate(flag.name)
        return flag

    async def upsert_flag(
        self,
        name: str,
        enabled: Optional[bool] = None,
        description: Optional[str] = None,
        rollout_percentage: Optional[int] = None,
        target_users: Optional[Iterable[Any]] = None,
        actor_id: Optional[int] = None,
        commit: bool = True,
    ) -> FeatureFlag:
        """
        Create a flag, or update the given fields of an existing one.

        New flags default to disabled with 100% rollout once enabled.
        """
        if not (name or "").strip():
            raise ValidationError("Feature flag name is required", {"missing": ["name"]})
        if rollout_percentage is not None:
            _validate_rollout(rollout_percentage)

        flag = await self.load(name)
        if flag is None:
            flag = FeatureFlag(
                name=name,
                enabled=False,
                rollout_percentage=100,
                target_users=[],
                created_by=actor_id,
            )
            self.db.add(flag)

        if enabled is not None:
            flag.enabled = enabled
        if description is not None:
            flag.description = description
        if rollout_percentage is not None:
            flag.rollout_percentage = rollout_percentage
        if target_users is not None:
            flag.target_users = list(dict.fromkeys(target_users))

        flag = await self._save(flag, commit)
        logger.info(
            "Feature flag saved",
            extra={"flag": name, "enabled": flag.enabled, "rollout": flag.rollout_percentage, "actor_id": actor_id},
        )
        return flag

    async def set_enabled(self, name: str, enabled: bool, commit: bool = True) -> FeatureFlag:
        flag = await self._require(name)
        flag.enabled = enabled
        return await self._save(flag, commit)

    async def set_rollout(self, name: str, rollout_percentage: int, commit: bool = True) -> FeatureFlag:
        _validate_rollout(rollout_percentage)
        flag = await self._require(name)
        flag.rollout_percentage = rollout_percentage
        return await self._save(flag, commit)

    async def add_target_user(self, name: str, user_id: Any, commit: bool = True) -> FeatureFlag:
        flag = await self._require(name)
        current = list(flag.target_users or [])
        if str(user_id) not in {str(u) for u in current}:
            flag.target_users = current + [user_id]
        return await self._save(flag, commit)

    async def remove_target_user(self, name: str, user_id: Any, commit: bool = True) -> FeatureFlag:
        flag = await self._require(name)
        flag.target_users = [u for u in (flag.target_users or []) if str(u) != str(user_id)]
        return await self._save(flag, commit)
