"""
Audit log tests.

Audit-before-commit, required reasons, sanitization and target history.
"""

import pytest
from datetime import timedelta
from sqlalchemy import select, func

from backend.app.core.exceptions import ValidationError
from backend.app.models.audit_log import AuditEntry
from backend.app.models.enums import TargetType
from backend.app.models.user import User
from backend.app.schemas.audit import AuditSearchFilters
from backend.app.services import audit
from backend.app.services.audit import (
    AdminAction, AuditTarget, AuditEntryCreate, audited_action, sanitize_state, is_destructive, REDACTED,
)


async def _count(db_session) -> int:
    return (await db_session.execute(select(func.count(AuditEntry.id)))).scalar()


def test_sanitize_state_redacts_nested_secrets():
    state = {
        "email": "a@b.com",
        "password": "hunter2",
        "profile": {"api_key": "k", "name": "x"},
        "sessions": [{"token": "t", "id": 1}],
    }

    clean = sanitize_state(state)

    assert clean["email"] == "a@b.com"
    assert clean["password"] == REDACTED
    assert clean["profile"] == {"api_key": REDACTED, "name": "x"}
    assert clean["sessions"] == [{"token": REDACTED, "id": 1}]


def test_destructive_actions():
    assert is_destructive(AdminAction.USER_BAN)
    assert is_destructive(AdminAction.ROLE_CHANGE)
    assert is_destructive("listing.bulk_delete")
    assert not is_destructive(AdminAction.FEATURE_FLAG_TOGGLE)


def test_unknown_target_kind_is_rejected():
    with pytest.raises(ValidationError):
        AuditTarget.of("spaceship", 1)
    assert AuditTarget.of("user", 5) == AuditTarget(TargetType.USER, "5")


@pytest.mark.asyncio
async def test_destructive_action_without_reason_persists_nothing(db_session, now):
    user = User(email="victim@test.com")
    db_session.add(user)
    await db_session.commit()

    with pytest.raises(ValidationError):
        async with audited_action(
            db_session,
            actor_id=1,
            action=AdminAction.USER_BAN,
            target=AuditTarget.of(TargetType.USER, user.id),
            origin_ip="10.0.0.1",
            now=now,
        ):
            user.is_banned = True

    await db_session.refresh(user)
    assert user.is_banned is False
    assert await _count(db_session) == 0


@pytest.mark.asyncio
async def test_failed_mutation_rolls_back_entry_and_change(db_session, now):
    user = User(email="victim@test.com")
    db_session.add(user)
    await db_session.commit()

    with pytest.raises(RuntimeError):
        async with audited_action(
            db_session,
            actor_id=1,
            action=AdminAction.USER_SUSPEND,
            target=AuditTarget.of(TargetType.USER, user.id),
            origin_ip="10.0.0.1",
            reason="spam",
            now=now,
        ):
            user.is_suspended = True
            await db_session.flush()
            raise RuntimeError("downstream failure")

    await db_session.refresh(user)
    assert user.is_suspended is False
    assert await _count(db_session) == 0


@pytest.mark.asyncio
async def test_audited_action_commits_mutation_with_entry(db_session, now):
    user = User(email="victim@test.com")
    db_session.add(user)
    await db_session.commit()

    async with audited_action(
        db_session,
        actor_id=1,
        action=AdminAction.USER_SUSPEND,
        target=AuditTarget.of(TargetType.USER, user.id),
        origin_ip="10.0.0.1",
        user_agent="pytest",
        reason="spam",
        metadata={"session_token": "abc"},
        now=now,
    ) as pending:
        pending.set_before(user.snapshot())
        user.is_suspended = True
        pending.set_after(user.snapshot())

    entry = pending.entry
    assert entry.id is not None
    assert entry.before_state["is_suspended"] is False
    assert entry.after_state["is_suspended"] is True
    assert entry.meta_data["session_token"] == REDACTED
    assert entry.created_at == now


@pytest.mark.asyncio
async def test_append_requires_fields(db_session):
    with pytest.raises(ValidationError) as exc_info:
        await audit.append(db_session, AuditEntryCreate(actor_id=None, action="user.verify", target=None, origin_ip=""))
    assert set(exc_info.value.details["missing"]) == {"actor_id", "target", "origin_ip"}

    with pytest.raises(ValidationError):
        await audit.append(db_session, AuditEntryCreate(
            actor_id=1, action="Not An Action", target=AuditTarget.of(TargetType.USER, 1), origin_ip="10.0.0.1"
        ))


@pytest.mark.asyncio
async def test_target_history_is_newest_first(db_session, now):
    target = AuditTarget.of(TargetType.USER, 9)
    for minutes, action in [(0, AdminAction.USER_VERIFY), (5, AdminAction.USER_SUSPEND), (10, AdminAction.USER_UNSUSPEND)]:
        await audit.append(
            db_session,
            AuditEntryCreate(actor_id=1, action=action, target=target, origin_ip="10.0.0.1", reason="r"),
            now=now + timedelta(minutes=minutes),
        )
    await audit.append(
        db_session,
        AuditEntryCreate(actor_id=1, action=AdminAction.USER_VERIFY, target=AuditTarget.of(TargetType.USER, 10), origin_ip="10.0.0.1"),
        now=now,
    )
    await db_session.commit()

    history = await audit.by_target(db_session, target)

    assert [e.action for e in history] == [AdminAction.USER_UNSUSPEND, AdminAction.USER_SUSPEND, AdminAction.USER_VERIFY]


@pytest.mark.asyncio
async def test_search_and_stats(db_session, now):
    for actor, action in [(1, AdminAction.USER_BAN), (1, AdminAction.USER_BAN), (2, AdminAction.FEATURE_FLAG_TOGGLE)]:
        await audit.append(
            db_session,
            AuditEntryCreate(
                actor_id=actor, action=action, target=AuditTarget.of(TargetType.USER, 3),
                origin_ip="10.0.0.1", reason="fraud ring",
            ),
            now=now,
        )
    await db_session.commit()

    entries, total = await audit.search(db_session, AuditSearchFilters(actor_id=1), page=1, page_size=1)
    assert total == 2
    assert len(entries) == 1

    _, total = await audit.search(db_session, AuditSearchFilters(text="fraud"))
    assert total == 3

    stats = await audit.audit_stats(db_session, since=now - timedelta(days=1))
    assert stats.total == 3
    assert stats.by_action[0].action == AdminAction.USER_BAN
    assert stats.by_action[0].count == 2
    assert [a.actor_id for a in stats.by_actor] == [1, 2]


@pytest.mark.asyncio
async def test_admin_activity_timeline_window(db_session, now):
    for minutes, actor in [(0, 1), (10, 1), (20, 2), (30, 1), (40, 1)]:
        await audit.append(
            db_session,
            AuditEntryCreate(
                actor_id=actor, action=AdminAction.USER_VERIFY, target=AuditTarget.of(TargetType.USER, minutes),
                origin_ip="10.0.0.1",
            ),
            now=now + timedelta(minutes=minutes),
        )
    await db_session.commit()

    timeline = await audit.by_actor(
        db_session, 1, start=now + timedelta(minutes=10), end=now + timedelta(minutes=40)
    )

    # start is inclusive, end exclusive
    assert [e.target_id for e in timeline] == ["30", "10"]
    assert [e.target_id for e in await audit.by_actor(db_session, 1, limit=1)] == ["40"]
    assert await audit.by_actor(db_session, 3) == []
