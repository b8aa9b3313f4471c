"""
Accounts and tokens: who may hold a purchase session and who may run the queue.
"""

import pytest
from httpx import AsyncClient
from sqlalchemy import update

from ticketqueue.models.user import User

from conftest import headers_for


async def login(client: AsyncClient, email: str, password: str = "testpassword123"):
    return await client.post("/api/v1/auth/login", json={"email": email, "password": password})


@pytest.mark.asyncio
async def test_registered_account_can_join_queue(client: AsyncClient, test_event, ticket_type):
    """A fresh account's token identifies it in the queue."""
    response = await client.post("/api/v1/auth/register", json={
        "email": "fan@example.com",
        "username": "fan",
        "password": "securepassword123",
    })
    assert response.status_code == 201
    account = response.json()
    assert account["is_admin"] is False
    assert "hashed_password" not in account

    token = (await login(client, "fan@example.com", "securepassword123")).json()["access_token"]
    response = await client.post(
        f"/api/v1/queue/events/{test_event.id}/join",
        headers={"Authorization": f"Bearer {token}"},
    )
    assert response.status_code == 201
    assert response.json()["user_id"] == account["id"]


@pytest.mark.asyncio
@pytest.mark.parametrize("email,username", [
    ("testuser@example.com", "different"),
    ("different@example.com", "testuser"),
])
async def test_register_taken_identity(client: AsyncClient, test_user, email, username):
    response = await client.post("/api/v1/auth/register", json={
        "email": email,
        "username": username,
        "password": "securepassword123",
    })
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_register_weak_password(client: AsyncClient):
    response = await client.post("/api/v1/auth/register", json={
        "email": "weak@example.com",
        "username": "weakuser",
        "password": "short",
    })
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_login_reports_admin_flag(client: AsyncClient, test_user, admin_user):
    user_token = (await login(client, "testuser@example.com")).json()
    admin_token = (await login(client, "admin@example.com")).json()

    assert user_token["token_type"] == "bearer"
    assert user_token["user_id"] == test_user.id
    assert user_token["is_admin"] is False
    assert admin_token["is_admin"] is True


@pytest.mark.asyncio
@pytest.mark.parametrize("email,password", [
    ("testuser@example.com", "wrongpassword"),
    ("nobody@example.com", "anypassword123"),
])
async def test_login_bad_credentials(client: AsyncClient, test_user, email, password):
    response = await login(client, email, password)
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_deactivated_admin_loses_queue_controls(client: AsyncClient, db_session, admin_user):
    headers = headers_for(admin_user)
    assert (await client.get("/api/v1/admin/processing", headers=headers)).status_code == 200

    await db_session.execute(update(User).where(User.id == admin_user.id).values(is_active=False))
    await db_session.commit()

    assert (await client.get("/api/v1/admin/processing", headers=headers)).status_code == 401
    assert (await login(client, "admin@example.com")).status_code == 403


@pytest.mark.asyncio
@pytest.mark.parametrize("headers", [{}, {"Authorization": "Bearer not-a-token"}])
async def test_session_routes_require_valid_token(client: AsyncClient, headers):
    """Anonymous queue callers cannot hold purchase sessions."""
    response = await client.get("/api/v1/sessions/1", headers={**headers, "X-Session-ID": "anon-1"})
    assert response.status_code == 401
