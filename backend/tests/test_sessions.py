"""
Purchase session endpoints: cart, extensions, completion, abandon, lazy expiry.
"""

from datetime import timedelta
from decimal import Decimal

import pytest
import pytest_asyncio
from httpx import AsyncClient
from sqlalchemy import update

from ticketqueue.core.exceptions import SessionExpired
from ticketqueue.db.base import utcnow
from ticketqueue.models.event import Event
from ticketqueue.models.purchase_session import PurchaseSession
from ticketqueue.models.queue_entry import QueueEntry
from ticketqueue.models.ticket_type import TicketType
from ticketqueue.services import queue_service, session_service
from ticketqueue.services.state import extend_session

from conftest import create_order, headers_for


@pytest_asyncio.fixture
async def purchase_session(db_session, test_event, ticket_type, test_user) -> PurchaseSession:
    """test_user joined and was admitted."""
    entry, _ = await queue_service.join_queue(db_session, test_event.id, user_id=test_user.id)
    session = await session_service.admit_entry(db_session, entry, test_event)
    await db_session.commit()
    return session


async def expire_window(db, session: PurchaseSession) -> None:
    await db.execute(
        update(PurchaseSession)
        .where(PurchaseSession.id == session.id)
        .values(expires_at=utcnow() - timedelta(seconds=5))
    )
    await db.commit()


@pytest.mark.asyncio
async def test_get_active_session(client: AsyncClient, auth_headers, test_event, purchase_session):
    response = await client.get(f"/api/v1/sessions/events/{test_event.id}/active", headers=auth_headers)
    assert response.status_code == 200
    data = response.json()
    assert data["id"] == purchase_session.id
    assert data["status"] == "active"
    assert 0 < data["remaining_time"] <= 480
    assert data["can_extend"] is True


@pytest.mark.asyncio
async def test_no_active_session(client: AsyncClient, auth_headers, test_event):
    response = await client.get(f"/api/v1/sessions/events/{test_event.id}/active", headers=auth_headers)
    assert response.status_code == 404
    assert response.json()["code"] == "SESSION_NOT_FOUND"


@pytest.mark.asyncio
async def test_other_users_session_forbidden(client: AsyncClient, second_user, purchase_session):
    response = await client.get(f"/api/v1/sessions/{purchase_session.id}", headers=headers_for(second_user))
    assert response.status_code == 403
    assert response.json()["code"] == "NOT_AUTHORIZED"


@pytest.mark.asyncio
async def test_extend_twice_then_capped(client: AsyncClient, db_session, auth_headers, test_event, purchase_session):
    """Two 2-minute extensions succeed; the third is refused and changes nothing."""
    url = f"/api/v1/sessions/{purchase_session.id}/extend"
    original = purchase_session.expires_at

    first = await client.post(url, json={}, headers=auth_headers)
    second = await client.post(url, json={}, headers=auth_headers)
    assert first.status_code == 200 and second.status_code == 200
    assert second.json()["extension_count"] == 2
    assert second.json()["can_extend"] is False

    third = await client.post(url, json={}, headers=auth_headers)
    assert third.status_code == 400
    body = third.json()
    assert body["code"] == "MAX_EXTENSIONS_REACHED"
    assert body["max_extensions"] == 2

    snapshot = await client.get(f"/api/v1/sessions/{purchase_session.id}", headers=auth_headers)
    assert snapshot.json()["expires_at"] == second.json()["expires_at"]
    assert purchase_session.expires_at == original + timedelta(minutes=4)

    entry = await db_session.get(QueueEntry, purchase_session.queue_entry_id, populate_existing=True)
    assert entry.processing_expires_at == original + timedelta(minutes=4)
    status = await client.get(f"/api/v1/queue/events/{test_event.id}/status", headers=auth_headers)
    assert status.json()["remaining_processing_time"] > 8 * 60


@pytest.mark.asyncio
async def test_extend_ended_session_is_not_active(client: AsyncClient, auth_headers, purchase_session):
    await client.post(f"/api/v1/sessions/{purchase_session.id}/abandon", headers=auth_headers)

    response = await client.post(f"/api/v1/sessions/{purchase_session.id}/extend", json={}, headers=auth_headers)
    assert response.status_code == 409
    assert response.json()["code"] == "SESSION_NOT_ACTIVE"


@pytest.mark.asyncio
async def test_extend_racing_expiry_is_gone(db_session, monkeypatch, test_event, test_user, purchase_session):
    """An expiry that lands between the read and the update still answers 410 with its detail."""

    async def expired_meanwhile(db, session, minutes, now=None):
        await db.execute(
            update(PurchaseSession).where(PurchaseSession.id == session.id).values(status="expired")
            .execution_options(synchronize_session=False)
        )
        return await extend_session(db, session, minutes, now)

    monkeypatch.setattr(session_service, "extend_session", expired_meanwhile)

    with pytest.raises(SessionExpired) as exc_info:
        await session_service.extend(db_session, purchase_session.id, test_user.id)
    assert exc_info.value.detail["event_name"] == test_event.name
    assert purchase_session.extension_count == 0


@pytest.mark.asyncio
async def test_lazy_expiry_on_read(client: AsyncClient, db_session, auth_headers, test_event, purchase_session):
    """A stale active row is expired by the read itself, before any sweep."""
    await expire_window(db_session, purchase_session)
    session_id = purchase_session.id
    event_name = test_event.name

    response = await client.get(f"/api/v1/sessions/{session_id}", headers=auth_headers)
    assert response.status_code == 410
    body = response.json()
    assert body["code"] == "SESSION_EXPIRED"
    assert body["event_name"] == event_name
    assert body["reason"] == "timeout"

    session = await db_session.get(PurchaseSession, session_id, populate_existing=True)
    entry = await db_session.get(QueueEntry, session.queue_entry_id, populate_existing=True)
    assert session.status == "expired"
    assert entry.status == "expired"
    assert entry.processing_expires_at > utcnow()


@pytest.mark.asyncio
async def test_lazy_expiry_blocks_cart_changes(client: AsyncClient, db_session, auth_headers, ticket_type, purchase_session):
    await expire_window(db_session, purchase_session)
    event_id = purchase_session.event_id

    response = await client.post(
        f"/api/v1/sessions/{purchase_session.id}/items",
        json={"items": [{"ticket_type_id": ticket_type.id, "quantity": 1}]},
        headers=auth_headers,
    )
    assert response.status_code == 410

    again = await client.get(f"/api/v1/sessions/events/{event_id}/active", headers=auth_headers)
    assert again.status_code == 410


@pytest.mark.asyncio
async def test_add_and_remove_items(client: AsyncClient, auth_headers, ticket_type, purchase_session):
    url = f"/api/v1/sessions/{purchase_session.id}/items"

    response = await client.post(
        url, json={"items": [{"ticket_type_id": ticket_type.id, "quantity": 3}]}, headers=auth_headers
    )
    assert response.status_code == 200
    data = response.json()
    assert data["selected_tickets"][0]["quantity"] == 3
    assert Decimal(data["total_amount"]) == Decimal("150.00")

    response = await client.request(
        "DELETE", url, json={"ticket_type_id": ticket_type.id, "quantity": 1}, headers=auth_headers
    )
    assert response.json()["selected_tickets"][0]["quantity"] == 2
    assert Decimal(response.json()["total_amount"]) == Decimal("100.00")

    response = await client.delete(f"{url}/all", headers=auth_headers)
    assert response.json()["selected_tickets"] == []


@pytest.mark.asyncio
async def test_add_items_checks_combined_allowance(client: AsyncClient, auth_headers, ticket_type, purchase_session):
    url = f"/api/v1/sessions/{purchase_session.id}/items"
    await client.post(url, json={"items": [{"ticket_type_id": ticket_type.id, "quantity": 3}]}, headers=auth_headers)

    response = await client.post(
        url, json={"items": [{"ticket_type_id": ticket_type.id, "quantity": 2}]}, headers=auth_headers
    )
    assert response.status_code == 400
    assert response.json()["code"] == "PURCHASE_LIMIT_REACHED"


@pytest.mark.asyncio
async def test_add_items_checks_current_inventory(
    client: AsyncClient, db_session, auth_headers, ticket_type, purchase_session
):
    """Stock sold elsewhere after admission is seen by the cart."""
    await db_session.execute(
        update(TicketType).where(TicketType.id == ticket_type.id).values(quantity_sold=ticket_type.quantity_total - 1)
    )
    await db_session.commit()

    response = await client.post(
        f"/api/v1/sessions/{purchase_session.id}/items",
        json={"items": [{"ticket_type_id": ticket_type.id, "quantity": 2}]},
        headers=auth_headers,
    )
    assert response.status_code == 400
    assert response.json()["code"] == "TICKETS_UNAVAILABLE"


@pytest.mark.asyncio
async def test_complete_purchase(client: AsyncClient, db_session, auth_headers, test_event, ticket_type, purchase_session):
    await client.post(
        f"/api/v1/sessions/{purchase_session.id}/items",
        json={"items": [{"ticket_type_id": ticket_type.id, "quantity": 2}]},
        headers=auth_headers,
    )
    await client.patch(
        f"/api/v1/sessions/{purchase_session.id}/customer",
        json={"name": "Test Buyer", "phone": "555-0100"},
        headers=auth_headers,
    )

    response = await client.post(
        f"/api/v1/sessions/{purchase_session.id}/complete",
        json={"payment_method": "card"},
        headers=auth_headers,
    )
    assert response.status_code == 201
    order = response.json()
    assert order["status"] == "confirmed"
    assert Decimal(order["total_amount"]) == Decimal("100.00")
    assert order["items"][0]["quantity"] == 2

    session = await db_session.get(PurchaseSession, purchase_session.id, populate_existing=True)
    entry = await db_session.get(QueueEntry, session.queue_entry_id, populate_existing=True)
    stock = await db_session.get(TicketType, ticket_type.id, populate_existing=True)
    event = await db_session.get(Event, test_event.id, populate_existing=True)
    assert session.status == "completed"
    assert entry.status == "completed"
    assert entry.processing_time is not None
    assert stock.quantity_sold == 2
    assert event.available_tickets == 98


@pytest.mark.asyncio
async def test_complete_with_empty_cart(client: AsyncClient, auth_headers, purchase_session):
    response = await client.post(f"/api/v1/sessions/{purchase_session.id}/complete", json={}, headers=auth_headers)
    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_CART"


@pytest.mark.asyncio
async def test_complete_rejects_allowance_used_elsewhere(
    client: AsyncClient, db_session, auth_headers, test_user, ticket_type, purchase_session
):
    await client.post(
        f"/api/v1/sessions/{purchase_session.id}/items",
        json={"items": [{"ticket_type_id": ticket_type.id, "quantity": 2}]},
        headers=auth_headers,
    )
    await create_order(db_session, test_user, ticket_type, quantity=3)

    response = await client.post(f"/api/v1/sessions/{purchase_session.id}/complete", json={}, headers=auth_headers)
    assert response.status_code == 400
    assert response.json()["code"] == "PURCHASE_LIMIT_REACHED"


@pytest.mark.asyncio
async def test_abandon_frees_slot(client: AsyncClient, db_session, auth_headers, purchase_session):
    response = await client.post(f"/api/v1/sessions/{purchase_session.id}/abandon", headers=auth_headers)
    assert response.status_code == 200
    assert response.json()["status"] == "abandoned"

    entry = await db_session.get(QueueEntry, purchase_session.queue_entry_id, populate_existing=True)
    assert entry.status == "abandoned"


@pytest.mark.asyncio
async def test_session_statistics(client: AsyncClient, admin_headers, test_event, purchase_session):
    response = await client.get(f"/api/v1/admin/events/{test_event.id}/sessions/stats", headers=admin_headers)
    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 1
    assert data["by_status"]["active"] == 1
    assert data["conversion_rate"] == 0.0


@pytest.mark.asyncio
async def test_customer_info_is_merged(client: AsyncClient, auth_headers, purchase_session):
    url = f"/api/v1/sessions/{purchase_session.id}/customer"

    response = await client.patch(url, json={"name": "Ada Lovelace"}, headers=auth_headers)
    assert response.status_code == 200

    response = await client.patch(url, json={"email": "ada@example.com"}, headers=auth_headers)
    assert response.status_code == 200
    assert response.json()["customer_info"] == {"name": "Ada Lovelace", "email": "ada@example.com"}

    response = await client.patch(url, json={"email": "not-an-email"}, headers=auth_headers)
    assert response.status_code == 422
