"""
Integration tests for the admin API.

Session authentication, permission guards, audited moderation actions and
the read endpoints built on the services.
"""

import pytest
from sqlalchemy import select

from backend.app.core.config import settings
from backend.app.models.event import Event
from backend.app.models.enums import Severity
from backend.app.models.security_event import SecurityEvent
from backend.app.models.user import User
from backend.app.schemas.security import SecurityEventCreate
from backend.app.services import permissions, security_feed, sessions
from backend.app.services.permissions import Permission
from backend.app.services.security_feed import SecurityEventType

# Note: Client and DB setup are in conftest.py


@pytest.fixture
async def unprivileged_headers(db_session):
    """An admin session for a user holding no permissions."""
    user = User(email="intern@test.com", is_active=True)
    db_session.add(user)
    await db_session.commit()
    session = await sessions.issue(db_session, user_id=user.id, origin_ip="10.0.0.2")
    return {"Authorization": f"Bearer {session.token}"}


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["redis"] == "ok"


@pytest.mark.asyncio
async def test_missing_token_is_401(client):
    response = await client.get("/v1/admin/security-events")
    assert response.status_code == 401
    assert response.json()["error_code"] == "ERR_AUTH_001"


@pytest.mark.asyncio
async def test_unknown_token_is_401(client):
    response = await client.get("/v1/admin/security-events", headers={"Authorization": "Bearer nope"})
    assert response.status_code == 401
    assert response.json()["error_code"] == "ERR_AUTH_003"


@pytest.mark.asyncio
async def test_permission_denied_is_403_and_recorded(client, db_session, unprivileged_headers, regular_user):
    response = await client.post(
        f"/v1/admin/users/{regular_user.id}/ban",
        json={"reason": "spam"},
        headers=unprivileged_headers,
    )

    assert response.status_code == 403
    events = (await db_session.execute(
        select(SecurityEvent).where(SecurityEvent.type == SecurityEventType.PERMISSION_DENIED)
    )).scalars().all()
    assert len(events) == 1
    assert events[0].severity == Severity.MEDIUM.value
    assert events[0].meta_data["resource"] == f"user:{regular_user.id}"


@pytest.mark.asyncio
async def test_resource_scoped_grant_allows_only_that_user(client, db_session, regular_user):
    moderator = User(email="mod@test.com", is_active=True)
    other = User(email="other@test.com", is_active=True)
    db_session.add_all([moderator, other])
    await db_session.commit()
    await permissions.grant(
        db_session, user_id=moderator.id, permission=Permission.SUSPEND_USER,
        resource_type="user", resource_id=str(regular_user.id),
    )
    session = await sessions.issue(db_session, user_id=moderator.id, origin_ip="10.0.0.3")
    headers = {"Authorization": f"Bearer {session.token}"}

    allowed = await client.post(f"/v1/admin/users/{regular_user.id}/suspend", json={"reason": "spam"}, headers=headers)
    denied = await client.post(f"/v1/admin/users/{other.id}/suspend", json={"reason": "spam"}, headers=headers)

    assert allowed.status_code == 200
    assert denied.status_code == 403


@pytest.mark.asyncio
async def test_suspend_revokes_sessions_and_audits(client, db_session, admin_headers, admin_user, regular_user):
    victim_session = await sessions.issue(db_session, user_id=regular_user.id, origin_ip="192.0.2.10")

    response = await client.post(
        f"/v1/admin/users/{regular_user.id}/suspend",
        json={"reason": "Fraudulent listings", "duration_hours": 24},
        headers=admin_headers,
    )

    assert response.status_code == 200
    body = response.json()
    assert body["sessions_revoked"] == 1
    assert not await sessions.is_valid(db_session, victim_session.token)

    history = await client.get(f"/v1/admin/audit-logs/targets/user/{regular_user.id}", headers=admin_headers)
    assert history.status_code == 200
    logs = history.json()["logs"]
    assert len(logs) == 1
    assert logs[0]["id"] == body["audit_log_id"]
    assert logs[0]["action"] == "user.suspend"
    assert logs[0]["actor_id"] == admin_user.id
    assert logs[0]["reason"] == "Fraudulent listings"
    assert logs[0]["before_state"]["is_suspended"] is False
    assert logs[0]["after_state"]["is_suspended"] is True
    assert logs[0]["meta_data"]["sessions_revoked"] == 1


@pytest.mark.asyncio
async def test_admin_activity_timeline(client, admin_headers, admin_user, regular_user):
    await client.post(f"/v1/admin/users/{regular_user.id}/ban", json={"reason": "scam"}, headers=admin_headers)
    await client.post(f"/v1/admin/users/{regular_user.id}/unban", json={}, headers=admin_headers)

    response = await client.get(f"/v1/admin/audit-logs/actors/{admin_user.id}", headers=admin_headers)
    future = await client.get(
        f"/v1/admin/audit-logs/actors/{admin_user.id}",
        params={"start": "2999-01-01T00:00:00"},
        headers=admin_headers,
    )

    assert response.status_code == 200
    assert [log["action"] for log in response.json()["logs"]] == ["user.unban", "user.ban"]
    assert future.json()["logs"] == []


@pytest.mark.asyncio
async def test_suspend_without_reason_changes_nothing(client, db_session, admin_headers, regular_user):
    response = await client.post(f"/v1/admin/users/{regular_user.id}/suspend", json={}, headers=admin_headers)

    assert response.status_code == 422
    await db_session.refresh(regular_user)
    assert regular_user.is_suspended is False

    history = await client.get(f"/v1/admin/audit-logs/targets/user/{regular_user.id}", headers=admin_headers)
    assert history.json()["logs"] == []


@pytest.mark.asyncio
async def test_cannot_ban_yourself(client, admin_headers, admin_user):
    response = await client.post(f"/v1/admin/users/{admin_user.id}/ban", json={"reason": "x"}, headers=admin_headers)
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_ban_then_unban(client, db_session, admin_headers, regular_user):
    banned = await client.post(f"/v1/admin/users/{regular_user.id}/ban", json={"reason": "scam"}, headers=admin_headers)
    again = await client.post(f"/v1/admin/users/{regular_user.id}/ban", json={"reason": "scam"}, headers=admin_headers)
    unbanned = await client.post(f"/v1/admin/users/{regular_user.id}/unban", json={}, headers=admin_headers)

    assert banned.status_code == 200
    assert again.status_code == 400
    assert unbanned.status_code == 200
    await db_session.refresh(regular_user)
    assert regular_user.is_banned is False


@pytest.mark.asyncio
async def test_revoked_own_session_is_rejected_immediately(client, admin_headers, admin_token):
    response = await client.post(
        "/v1/admin/sessions/revoke",
        json={"token": admin_token, "reason": "logout"},
        headers=admin_headers,
    )
    assert response.status_code == 200
    assert response.json()["revoked"] is True

    after = await client.get("/v1/admin/security-events", headers=admin_headers)
    assert after.status_code == 401


@pytest.mark.asyncio
async def test_revoked_session_is_named_in_audit_trail(client, db_session, admin_headers, regular_user):
    victim = await sessions.issue(db_session, user_id=regular_user.id, origin_ip="192.0.2.7")

    response = await client.post(
        "/v1/admin/sessions/revoke", json={"token": victim.token, "reason": "stolen laptop"}, headers=admin_headers
    )
    assert response.json()["revoked"] is True

    history = await client.get(f"/v1/admin/audit-logs/targets/admin_session/{victim.id}", headers=admin_headers)
    logs = history.json()["logs"]
    assert [log["action"] for log in logs] == ["admin_session.revoke"]
    assert logs[0]["meta_data"]["session_user_id"] == regular_user.id
    assert logs[0]["meta_data"]["revoked"] is True


@pytest.mark.asyncio
async def test_revoke_all_sessions(client, db_session, admin_headers, regular_user):
    for ip in ("192.0.2.1", "192.0.2.2"):
        await sessions.issue(db_session, user_id=regular_user.id, origin_ip=ip)

    response = await client.post(
        f"/v1/admin/users/{regular_user.id}/sessions/revoke-all",
        json={"reason": "credential leak"},
        headers=admin_headers,
    )

    assert response.status_code == 200
    assert response.json()["revoked_count"] == 2
    listing = await client.get(f"/v1/admin/sessions/{regular_user.id}", headers=admin_headers)
    assert listing.json()["sessions"] == []


@pytest.mark.asyncio
async def test_grant_and_list_permissions(client, admin_headers, regular_user):
    response = await client.post(
        "/v1/admin/permissions/grant",
        json={"user_id": regular_user.id, "permission": "delete_product", "resource_type": "product"},
        headers=admin_headers,
    )
    assert response.status_code == 200

    listing = await client.get(f"/v1/admin/permissions/{regular_user.id}", headers=admin_headers)
    grants = listing.json()["grants"]
    assert [(g["permission"], g["resource_type"], g["resource_id"]) for g in grants] == [
        ("delete_product", "product", None)
    ]

    revoked = await client.post(
        "/v1/admin/permissions/revoke",
        json={"user_id": regular_user.id, "permission": "delete_product", "resource_type": "product"},
        headers=admin_headers,
    )
    assert revoked.json()["revoked"] is True


@pytest.mark.asyncio
async def test_wildcard_literal_grant_is_422(client, admin_headers, regular_user):
    response = await client.post(
        "/v1/admin/permissions/grant",
        json={"user_id": regular_user.id, "permission": "ban_user", "resource_type": "*"},
        headers=admin_headers,
    )

    assert response.status_code == 422
    listing = await client.get(f"/v1/admin/permissions/{regular_user.id}", headers=admin_headers)
    assert listing.json()["grants"] == []


@pytest.mark.asyncio
async def test_resolve_security_event_twice(client, db_session, admin_headers):
    event = await security_feed.raise_event(
        db_session, SecurityEventCreate(type=SecurityEventType.BRUTE_FORCE_ATTEMPT, severity=Severity.HIGH)
    )

    banner = await client.get("/v1/admin/security-events/banner", headers=admin_headers)
    assert banner.json()["total"] == 1

    first = await client.post(
        f"/v1/admin/security-events/{event.id}/resolve", json={"notes": "blocked at WAF"}, headers=admin_headers
    )
    second = await client.post(f"/v1/admin/security-events/{event.id}/resolve", json={}, headers=admin_headers)
    missing = await client.post("/v1/admin/security-events/9999/resolve", json={}, headers=admin_headers)

    assert first.json()["outcome"] == "resolved"
    assert second.json()["outcome"] == "already_resolved"
    assert missing.status_code == 404

    banner = await client.get("/v1/admin/security-events/banner", headers=admin_headers)
    assert banner.json()["total"] == 0


@pytest.mark.asyncio
async def test_feature_flag_update_and_evaluate(client, admin_headers, redis_client_session):
    created = await client.put(
        "/v1/admin/feature-flags/new_checkout",
        json={"enabled": True, "rollout_percentage": 0, "target_users": [42], "reason": "beta"},
        headers=admin_headers,
    )
    assert created.status_code == 200

    on = await client.get("/v1/admin/feature-flags/new_checkout/evaluate/42", headers=admin_headers)
    off = await client.get("/v1/admin/feature-flags/new_checkout/evaluate/43", headers=admin_headers)
    assert on.json()["enabled"] is True
    assert off.json()["enabled"] is False
    assert "feature_flag:new_checkout" in redis_client_session.store

    toggled = await client.put("/v1/admin/feature-flags/new_checkout", json={"enabled": False}, headers=admin_headers)
    assert toggled.status_code == 200
    assert "feature_flag:new_checkout" not in redis_client_session.store

    on = await client.get("/v1/admin/feature-flags/new_checkout/evaluate/42", headers=admin_headers)
    assert on.json()["enabled"] is False

    trail = await client.get("/v1/admin/audit-logs", params={"target_type": "feature_flag"}, headers=admin_headers)
    assert [log["action"] for log in trail.json()["logs"]] == ["feature_flag.toggle", "feature_flag.update"]


@pytest.mark.asyncio
async def test_rollout_out_of_range_is_422(client, admin_headers):
    response = await client.put(
        "/v1/admin/feature-flags/new_checkout", json={"rollout_percentage": 150}, headers=admin_headers
    )
    assert response.status_code == 422


@pytest.fixture
def ingest_headers(monkeypatch):
    monkeypatch.setattr(settings, "event_ingest_keys", ["listing-service-key"])
    return {"X-Ingest-Key": "listing-service-key"}


@pytest.mark.asyncio
async def test_event_ingestion_accepts_and_stores(client, admin_headers, ingest_headers):
    response = await client.post(
        "/v1/events",
        json={"type": "product.view", "category": "product", "actor_id": 5, "payload": {"product_id": 9}},
        headers=ingest_headers,
    )
    assert response.status_code == 202

    stats = await client.get("/v1/admin/analytics/events", headers=admin_headers)
    assert stats.status_code == 200
    assert stats.json()["stats"][0]["type"] == "product.view"


@pytest.mark.asyncio
async def test_event_ingestion_requires_a_service_key(client, db_session, admin_headers, ingest_headers):
    event = {"type": "user.login", "category": "auth", "actor_id": 5, "occurred_at": "2024-01-01T00:00:00"}

    missing = await client.post("/v1/events", json=event)
    wrong = await client.post("/v1/events", json=event, headers={"X-Ingest-Key": "guessed"})
    # an admin session is not an ingest credential
    admin = await client.post("/v1/events", json=event, headers=admin_headers)

    assert [r.status_code for r in (missing, wrong, admin)] == [401, 401, 401]
    assert (await db_session.execute(select(Event))).scalars().all() == []


@pytest.mark.asyncio
async def test_recompute_and_read_series(client, admin_headers):
    response = await client.post(
        "/v1/admin/analytics/recompute",
        json={"date": "2024-03-14", "metric_name": "logins"},
        headers=admin_headers,
    )
    assert response.status_code == 200
    assert response.json()["failed"] == 0
    assert response.json()["results"][0]["value"] == 0.0

    series = await client.get(
        "/v1/admin/analytics/metrics/logins",
        params={"start": "2024-03-10", "end": "2024-03-20"},
        headers=admin_headers,
    )
    assert series.json()["points"] == [{"date": "2024-03-14", "value": 0.0}]

    unknown = await client.post(
        "/v1/admin/analytics/recompute", json={"date": "2024-03-14", "metric_name": "bounce_rate"}, headers=admin_headers
    )
    assert unknown.status_code == 422

    trail = await client.get("/v1/admin/audit-logs", params={"action": "metric.recompute"}, headers=admin_headers)
    assert trail.json()["total"] == 1


@pytest.mark.asyncio
async def test_dashboard_overview(client, admin_headers):
    response = await client.get("/v1/admin/dashboard/overview", params={"days": 7}, headers=admin_headers)

    assert response.status_code == 200
    body = response.json()
    assert body["window_days"] == 7
    for section in ("unresolved_alerts", "banner_alerts", "recent_audit_tail", "metric_series", "kpis"):
        assert body[section]["ok"] is True
