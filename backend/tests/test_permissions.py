"""
Permission registry tests.

Wildcard scoping, expiry and re-grant behaviour.
"""

import pytest
from datetime import timedelta
from sqlalchemy import select, func

from backend.app.core.exceptions import ValidationError
from backend.app.models.permission_grant import PermissionGrant
from backend.app.services import permissions
from backend.app.services.permissions import Permission


@pytest.mark.asyncio
async def test_type_wide_grant_covers_every_resource_of_that_type(db_session, now):
    await permissions.grant(db_session, user_id=1, permission=Permission.DELETE_PRODUCT, resource_type="product", now=now)

    assert await permissions.check(db_session, 1, Permission.DELETE_PRODUCT, "product", "42", now=now)
    assert await permissions.check(db_session, 1, Permission.DELETE_PRODUCT, "product", "43", now=now)
    assert not await permissions.check(db_session, 1, Permission.DELETE_PRODUCT, "category", "42", now=now)
    # an unscoped request needs an unscoped grant
    assert not await permissions.check(db_session, 1, Permission.DELETE_PRODUCT, now=now)


@pytest.mark.asyncio
async def test_resource_scoped_grant_covers_only_that_resource(db_session, now):
    await permissions.grant(
        db_session, user_id=1, permission=Permission.BAN_USER, resource_type="user", resource_id="7", now=now
    )

    assert await permissions.check(db_session, 1, Permission.BAN_USER, "user", "7", now=now)
    assert await permissions.check(db_session, 1, Permission.BAN_USER, "user", 7, now=now)
    assert not await permissions.check(db_session, 1, Permission.BAN_USER, "user", "8", now=now)
    assert not await permissions.check(db_session, 1, Permission.BAN_USER, "user", now=now)


@pytest.mark.asyncio
async def test_unscoped_grant_covers_everything(db_session, now):
    await permissions.grant(db_session, user_id=1, permission=Permission.VIEW_ANALYTICS, now=now)

    assert await permissions.check(db_session, 1, Permission.VIEW_ANALYTICS, now=now)
    assert await permissions.check(db_session, 1, Permission.VIEW_ANALYTICS, "product", "1", now=now)
    assert not await permissions.check(db_session, 2, Permission.VIEW_ANALYTICS, now=now)
    assert not await permissions.check(db_session, 1, Permission.RUN_AGGREGATION, now=now)


@pytest.mark.asyncio
async def test_expired_grant_never_matches(db_session, now):
    await permissions.grant(
        db_session, user_id=1, permission=Permission.BAN_USER, expires_at=now + timedelta(hours=1), now=now
    )

    assert await permissions.check(db_session, 1, Permission.BAN_USER, now=now + timedelta(minutes=59))
    assert not await permissions.check(db_session, 1, Permission.BAN_USER, now=now + timedelta(hours=1))
    assert await permissions.list_active(db_session, 1, now=now + timedelta(hours=2)) == []


@pytest.mark.asyncio
async def test_regrant_refreshes_instead_of_duplicating(db_session, now):
    first = await permissions.grant(
        db_session, user_id=1, permission=Permission.BAN_USER, resource_type="user",
        granted_by=10, expires_at=now + timedelta(hours=1), now=now,
    )
    second = await permissions.grant(
        db_session, user_id=1, permission=Permission.BAN_USER, resource_type="user",
        granted_by=11, expires_at=None, now=now + timedelta(minutes=5),
    )

    count = (await db_session.execute(select(func.count(PermissionGrant.id)))).scalar()
    assert count == 1
    assert second.id == first.id
    assert second.granted_by == 11
    assert second.expires_at is None
    assert await permissions.check(db_session, 1, Permission.BAN_USER, "user", "3", now=now + timedelta(days=30))


@pytest.mark.asyncio
async def test_revoke_removes_exact_scope_only(db_session, now):
    await permissions.grant(db_session, user_id=1, permission=Permission.BAN_USER, now=now)
    await permissions.grant(db_session, user_id=1, permission=Permission.BAN_USER, resource_type="user", now=now)

    assert await permissions.revoke(db_session, 1, Permission.BAN_USER, resource_type="user")
    assert not await permissions.revoke(db_session, 1, Permission.BAN_USER, resource_type="user")

    # the unscoped grant survives
    assert await permissions.check(db_session, 1, Permission.BAN_USER, "user", "5", now=now)


@pytest.mark.asyncio
async def test_resource_id_without_type_is_rejected(db_session, now):
    with pytest.raises(ValidationError):
        await permissions.grant(db_session, user_id=1, permission=Permission.BAN_USER, resource_id="5", now=now)


@pytest.mark.asyncio
async def test_prune_expired(db_session, now):
    await permissions.grant(
        db_session, user_id=1, permission=Permission.BAN_USER, expires_at=now - timedelta(minutes=1), now=now
    )
    await permissions.grant(db_session, user_id=1, permission=Permission.VIEW_AUDIT_LOG, now=now)

    assert await permissions.prune_expired(db_session, now=now) == 1
    active = await permissions.list_active(db_session, 1, now=now)
    assert [g.permission for g in active] == [Permission.VIEW_AUDIT_LOG]


@pytest.mark.asyncio
async def test_wildcard_literal_is_rejected_and_unscoped_grant_still_checks(db_session, now):
    with pytest.raises(ValidationError):
        await permissions.grant(db_session, user_id=1, permission=Permission.BAN_USER, resource_type="*", now=now)

    await permissions.grant(db_session, user_id=1, permission=Permission.BAN_USER, now=now)

    assert await permissions.check(db_session, 1, Permission.BAN_USER, now=now)
    row = (await db_session.execute(select(PermissionGrant))).scalar_one()
    assert row.resource_type is None
    assert row.resource_id is None


@pytest.mark.asyncio
async def test_blank_resource_id_means_type_wide(db_session, now):
    await permissions.grant(db_session, user_id=1, permission=Permission.BAN_USER, resource_type="user", now=now)
    await permissions.grant(
        db_session, user_id=1, permission=Permission.BAN_USER, resource_type="user", resource_id="7",
        expires_at=now + timedelta(minutes=1), now=now,
    )

    # a single-resource grant never touches the type-wide one
    assert await permissions.check(db_session, 1, Permission.BAN_USER, "user", "5", now=now + timedelta(hours=1))

    await permissions.grant(
        db_session, user_id=1, permission=Permission.BAN_USER, resource_type="user", resource_id="  ",
        expires_at=now + timedelta(minutes=1), now=now,
    )

    rows = (await db_session.execute(
        select(PermissionGrant).order_by(PermissionGrant.id).execution_options(populate_existing=True)
    )).scalars().all()
    assert [(r.resource_type, r.resource_id) for r in rows] == [("user", None), ("user", "7")]
    assert rows[0].expires_at == now + timedelta(minutes=1)
    assert await permissions.revoke(db_session, 1, Permission.BAN_USER, resource_type="user", resource_id="")


@pytest.mark.asyncio
async def test_scope_values_containing_separators_do_not_collide(db_session, now):
    await permissions.grant(db_session, user_id=1, permission=Permission.BAN_USER, resource_type="a:b", now=now)
    await permissions.grant(
        db_session, user_id=1, permission=Permission.BAN_USER, resource_type="a", resource_id="b:*", now=now
    )

    count = (await db_session.execute(select(func.count(PermissionGrant.id)))).scalar()
    assert count == 2
    assert await permissions.check(db_session, 1, Permission.BAN_USER, "a:b", "anything", now=now)
    assert not await permissions.check(db_session, 1, Permission.BAN_USER, "a", "other", now=now)
