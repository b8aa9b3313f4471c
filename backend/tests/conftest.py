"""
Pytest fixtures for test database, client, and authentication.

Tables are created and dropped per test for isolation. Background loops,
Redis and email are switched off; loop logic is driven directly through
`run_once` / `process_next_batch` with the test session factory.
"""

import os

os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("REDIS_ENABLED", "false")
os.environ.setdefault("EMAIL_ENABLED", "false")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from datetime import timedelta
from decimal import Decimal
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool, StaticPool

import ticketqueue.models  # noqa: F401
from ticketqueue.core.security import create_access_token, hash_password
from ticketqueue.db.base import Base, utcnow
from ticketqueue.db.session import get_db
from ticketqueue.infrastructure.slot_signals import slot_signals
from ticketqueue.main import app
from ticketqueue.models.event import Event
from ticketqueue.models.order import Order, OrderItem
from ticketqueue.models.ticket_type import TicketType
from ticketqueue.models.user import User
from ticketqueue.services import notifications, queue_service
from ticketqueue.services.admission_processor import admission_processor

# In-memory SQLite by default; point at PostgreSQL with TEST_DATABASE_URL
TEST_DATABASE_URL = os.environ.get("TEST_DATABASE_URL", "sqlite+aiosqlite:///:memory:")

if TEST_DATABASE_URL.startswith("sqlite"):
    test_engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
else:
    test_engine = create_async_engine(TEST_DATABASE_URL, poolclass=NullPool)

TestSessionLocal = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture(autouse=True)
def reset_process_state():
    """Locks and wake-up events are bound to the loop of the test that created them."""
    queue_service._event_locks.clear()
    slot_signals._events.clear()
    yield
    queue_service._event_locks.clear()
    slot_signals._events.clear()


@pytest_asyncio.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Create tables, yield session, then drop tables for isolation."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with TestSessionLocal() as session:
        yield session

    await notifications.drain(timeout=1.0)
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture(scope="function")
async def client(db_session: AsyncSession, monkeypatch) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client that overrides the DB dependency with the test session."""

    monkeypatch.setattr(admission_processor, "session_factory", TestSessionLocal)

    async def override_get_db():
        try:
            yield db_session
            await db_session.commit()
        except Exception:
            await db_session.rollback()
            raise

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


async def create_user(db: AsyncSession, name: str, is_admin: bool = False) -> User:
    user = User(
        email=f"{name}@example.com",
        username=name,
        hashed_password=hash_password("testpassword123"),
        is_admin=is_admin,
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return user


def headers_for(user: User) -> dict:
    token = create_access_token(data={"sub": str(user.id), "admin": user.is_admin})
    return {"Authorization": f"Bearer {token}"}


async def create_order(db: AsyncSession, user: User, ticket_type: TicketType, quantity: int, status: str = "confirmed") -> Order:
    """An order placed outside the queue (back-office path)."""
    order = Order(
        user_id=user.id,
        event_id=ticket_type.event_id,
        status=status,
        total_amount=ticket_type.price * quantity,
        items=[
            OrderItem(
                ticket_type_id=ticket_type.id,
                quantity=quantity,
                unit_price=ticket_type.price,
                total_price=ticket_type.price * quantity,
            )
        ],
    )
    db.add(order)
    await db.commit()
    return order


@pytest_asyncio.fixture
async def test_user(db_session: AsyncSession) -> User:
    """Create a test user in the database."""
    return await create_user(db_session, "testuser")


@pytest_asyncio.fixture
async def second_user(db_session: AsyncSession) -> User:
    return await create_user(db_session, "seconduser")


@pytest_asyncio.fixture
async def admin_user(db_session: AsyncSession) -> User:
    return await create_user(db_session, "admin", is_admin=True)


@pytest_asyncio.fixture
async def auth_headers(test_user: User) -> dict:
    """Authorization headers with a valid JWT for test_user."""
    return headers_for(test_user)


@pytest_asyncio.fixture
async def admin_headers(admin_user: User) -> dict:
    return headers_for(admin_user)


@pytest_asyncio.fixture
async def test_event(db_session: AsyncSession) -> Event:
    """An event whose sale opened an hour ago, one purchaser at a time."""
    now = utcnow()
    event = Event(
        name="Test Concert",
        description="A test event",
        venue="Test Venue",
        status="sale_started",
        starts_at=now + timedelta(days=2),
        ends_at=now + timedelta(days=2, hours=3),
        sale_starts_at=now - timedelta(hours=1),
        sale_ends_at=now + timedelta(days=1),
        total_tickets=100,
        available_tickets=100,
        concurrent_users=1,
    )
    db_session.add(event)
    await db_session.commit()
    await db_session.refresh(event)
    return event


@pytest_asyncio.fixture
async def ticket_type(db_session: AsyncSession, test_event: Event) -> TicketType:
    ticket_type = TicketType(
        event_id=test_event.id,
        name="General Admission",
        price=Decimal("50.00"),
        quantity_total=100,
        quantity_sold=0,
        max_per_order=10,
        max_per_user=4,
    )
    db_session.add(ticket_type)
    await db_session.commit()
    await db_session.refresh(ticket_type)
    return ticket_type
