"""
Queue endpoints, admin overrides and error mapping over HTTP.
"""

from datetime import timedelta

import pytest
from httpx import AsyncClient
from sqlalchemy import update

from ticketqueue.db.base import utcnow
from ticketqueue.models.purchase_session import PurchaseSession
from ticketqueue.models.queue_entry import QueueEntry
from ticketqueue.services import queue_service, session_service
from ticketqueue.services.state import transition_entry

from conftest import create_user, headers_for


def join_url(event_id: int) -> str:
    return f"/api/v1/queue/events/{event_id}/join"


def status_url(event_id: int) -> str:
    return f"/api/v1/queue/events/{event_id}/status"


@pytest.mark.asyncio
async def test_join_and_status(client: AsyncClient, auth_headers, test_event, ticket_type):
    response = await client.post(join_url(test_event.id), json={"client_info": {"ua": "pytest"}}, headers=auth_headers)
    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "waiting"
    assert data["position"] == 1
    assert data["positions_ahead"] == 0
    assert data["already_queued"] is False
    assert data["estimated_wait_string"] == "1m 0s"

    response = await client.get(status_url(test_event.id), headers=auth_headers)
    assert response.status_code == 200
    assert response.json()["id"] == data["id"]


@pytest.mark.asyncio
async def test_second_join_returns_existing(client: AsyncClient, auth_headers, test_event, ticket_type):
    first = await client.post(join_url(test_event.id), headers=auth_headers)
    second = await client.post(join_url(test_event.id), headers=auth_headers)

    assert second.status_code == 200
    assert second.json()["already_queued"] is True
    assert second.json()["id"] == first.json()["id"]


@pytest.mark.asyncio
async def test_anonymous_caller_uses_session_header(client: AsyncClient, test_event, ticket_type):
    headers = {"X-Session-ID": "browser-42"}
    response = await client.post(join_url(test_event.id), headers=headers)
    assert response.status_code == 201
    assert response.json()["user_id"] is None

    response = await client.get(status_url(test_event.id), headers=headers)
    assert response.status_code == 200
    assert response.json()["session_id"] == "browser-42"

    response = await client.get(status_url(test_event.id), headers={"X-Session-ID": "someone-else"})
    assert response.status_code == 404
    assert response.json()["code"] == "QUEUE_ENTRY_NOT_FOUND"


@pytest.mark.asyncio
async def test_join_without_identity(client: AsyncClient, test_event, ticket_type):
    response = await client.post(join_url(test_event.id))
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_join_error_codes(client: AsyncClient, db_session, auth_headers, test_event, ticket_type):
    response = await client.post(join_url(999), headers=auth_headers)
    assert response.status_code == 404
    assert response.json()["code"] == "EVENT_NOT_FOUND"

    test_event.sale_starts_at = utcnow() + timedelta(hours=2)
    test_event.status = "active"
    await db_session.commit()
    response = await client.post(join_url(test_event.id), headers=auth_headers)
    assert response.status_code == 403
    assert response.json()["code"] == "SALE_NOT_STARTED"


@pytest.mark.asyncio
async def test_grace_window_sets_retry_after(client: AsyncClient, db_session, auth_headers, test_user, test_event, ticket_type):
    entry, _ = await queue_service.join_queue(db_session, test_event.id, user_id=test_user.id)
    now = utcnow()
    await transition_entry(db_session, entry, "expired", now, processing_expires_at=now + timedelta(minutes=2))
    await db_session.commit()

    response = await client.post(join_url(test_event.id), headers=auth_headers)
    assert response.status_code == 409
    assert response.json()["code"] == "REJOIN_GRACE_PERIOD"
    assert 0 < int(response.headers["retry-after"]) <= 121


@pytest.mark.asyncio
async def test_leave_queue(client: AsyncClient, auth_headers, test_event, ticket_type, second_user):
    await client.post(join_url(test_event.id), headers=auth_headers)
    other = await client.post(join_url(test_event.id), headers=headers_for(second_user))
    assert other.json()["position"] == 2

    response = await client.post(f"/api/v1/queue/events/{test_event.id}/leave", headers=auth_headers)
    assert response.status_code == 200
    assert response.json()["status"] == "abandoned"

    other = await client.get(status_url(test_event.id), headers=headers_for(second_user))
    assert other.json()["position"] == 1
    assert other.json()["positions_ahead"] == 0

    again = await client.post(f"/api/v1/queue/events/{test_event.id}/leave", headers=auth_headers)
    assert again.status_code == 404


@pytest.mark.asyncio
async def test_status_applies_lazy_expiry(client: AsyncClient, db_session, auth_headers, test_user, test_event, ticket_type):
    entry, _ = await queue_service.join_queue(db_session, test_event.id, user_id=test_user.id)
    session = await session_service.admit_entry(db_session, entry, test_event)
    await db_session.commit()
    await db_session.execute(
        update(PurchaseSession)
        .where(PurchaseSession.id == session.id)
        .values(expires_at=utcnow() - timedelta(seconds=1))
    )
    await db_session.commit()

    response = await client.get(status_url(test_event.id), headers=auth_headers)
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "expired"
    assert data["in_grace_period"] is True
    assert data["remaining_processing_time"] == 0


@pytest.mark.asyncio
async def test_my_queues(client: AsyncClient, auth_headers, test_event, ticket_type):
    await client.post(join_url(test_event.id), headers=auth_headers)

    response = await client.get("/api/v1/queue/mine", headers=auth_headers)
    assert response.status_code == 200
    assert [item["event_id"] for item in response.json()] == [test_event.id]


# --- Admin ------------------------------------------------------------------

@pytest.mark.asyncio
async def test_priority_moves_entry_to_front(client: AsyncClient, db_session, admin_headers, test_event, ticket_type):
    """Priority puts an entry at position 1 regardless of join order."""
    ids = []
    for i in range(3):
        user = await create_user(db_session, f"fan{i}")
        response = await client.post(join_url(test_event.id), headers=headers_for(user))
        ids.append(response.json()["id"])

    response = await client.post(
        f"/api/v1/admin/queue/entries/{ids[2]}/priority",
        json={"reason": "Accessibility request"},
        headers=admin_headers,
    )
    assert response.status_code == 200
    data = response.json()
    assert data["is_priority"] is True
    assert data["position"] == 1
    assert data["positions_ahead"] == 0

    listing = await client.get(f"/api/v1/admin/events/{test_event.id}/queue/entries", headers=admin_headers)
    assert [item["id"] for item in listing.json()["items"]] == [ids[2], ids[0], ids[1]]
    assert [item["position"] for item in listing.json()["items"]] == [1, 2, 3]


@pytest.mark.asyncio
async def test_admin_endpoints_require_manager(client: AsyncClient, auth_headers, test_event, ticket_type):
    response = await client.get(f"/api/v1/admin/events/{test_event.id}/queue/stats", headers=auth_headers)
    assert response.status_code == 403

    response = await client.get("/api/v1/admin/sessions/expiry-stats", headers=auth_headers)
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_organizer_can_manage_own_event(client: AsyncClient, db_session, test_event, ticket_type):
    organizer = await create_user(db_session, "organizer")
    test_event.organizer_id = organizer.id
    await db_session.commit()

    response = await client.get(
        f"/api/v1/admin/events/{test_event.id}/queue/stats", headers=headers_for(organizer)
    )
    assert response.status_code == 200
    assert response.json()["auto_processing"] is False


@pytest.mark.asyncio
async def test_process_next_bypasses_cap(
    client: AsyncClient, db_session, admin_headers, test_event, ticket_type, test_user, second_user
):
    entry, _ = await queue_service.join_queue(db_session, test_event.id, user_id=test_user.id)
    await session_service.admit_entry(db_session, entry, test_event)
    await queue_service.join_queue(db_session, test_event.id, user_id=second_user.id)
    await db_session.commit()

    response = await client.post(f"/api/v1/admin/events/{test_event.id}/queue/process-next", headers=admin_headers)
    assert response.status_code == 200
    data = response.json()
    assert data["entry"]["user_id"] == second_user.id
    assert data["entry"]["status"] == "processing"
    assert data["entry"]["source"] == "admin"
    assert data["session"]["status"] == "active"

    empty = await client.post(f"/api/v1/admin/events/{test_event.id}/queue/process-next", headers=admin_headers)
    assert empty.status_code == 404


@pytest.mark.asyncio
async def test_admin_cancel_entry(client: AsyncClient, db_session, admin_headers, test_event, ticket_type, test_user):
    entry, _ = await queue_service.join_queue(db_session, test_event.id, user_id=test_user.id)
    session = await session_service.admit_entry(db_session, entry, test_event)
    await db_session.commit()

    response = await client.patch(
        f"/api/v1/admin/queue/entries/{entry.id}/status",
        json={"status": "cancelled", "notes": "Duplicate account"},
        headers=admin_headers,
    )
    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"
    assert response.json()["admin_notes"] == "Duplicate account"
    assert (await db_session.get(PurchaseSession, session.id, populate_existing=True)).status == "cancelled"


@pytest.mark.asyncio
async def test_admin_cannot_revive_terminal_entry(client: AsyncClient, db_session, admin_headers, test_event, ticket_type, test_user):
    entry, _ = await queue_service.join_queue(db_session, test_event.id, user_id=test_user.id)
    await transition_entry(db_session, entry, "abandoned")
    await db_session.commit()
    entry_id = entry.id

    response = await client.patch(
        f"/api/v1/admin/queue/entries/{entry_id}/status",
        json={"status": "processing"},
        headers=admin_headers,
    )
    assert response.status_code == 409
    assert response.json()["code"] == "INVALID_TRANSITION"
    assert (await db_session.get(QueueEntry, entry_id, populate_existing=True)).status == "abandoned"


@pytest.mark.asyncio
async def test_queue_statistics(client: AsyncClient, admin_headers, auth_headers, test_event, ticket_type):
    await client.post(join_url(test_event.id), headers=auth_headers)

    response = await client.get(f"/api/v1/admin/events/{test_event.id}/queue/stats", headers=admin_headers)
    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 1
    assert data["by_status"]["waiting"] == 1


@pytest.mark.asyncio
async def test_admin_expire_session(client: AsyncClient, db_session, admin_headers, test_event, ticket_type, test_user):
    entry, _ = await queue_service.join_queue(db_session, test_event.id, user_id=test_user.id)
    session = await session_service.admit_entry(db_session, entry, test_event)
    await db_session.commit()

    response = await client.post(f"/api/v1/admin/sessions/{session.id}/expire", headers=admin_headers)
    assert response.status_code == 200
    assert response.json()["status"] == "expired"

    stats = await client.get("/api/v1/admin/sessions/expiry-stats", headers=admin_headers)
    assert stats.json()["last_10_minutes"] == 1


@pytest.mark.asyncio
async def test_health_and_metrics(client: AsyncClient):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["scheduler_enabled"] is False
    assert "x-request-id" in response.headers

    response = await client.get("/metrics")
    assert response.status_code == 200
    assert "queue_joins_total" in response.text
