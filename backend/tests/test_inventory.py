"""
Inventory decrements, allowance bookkeeping and wait estimation.
"""

from datetime import timedelta

import pytest
from sqlalchemy import update

from ticketqueue.core.exceptions import InventoryConflict
from ticketqueue.db.base import utcnow
from ticketqueue.models.queue_entry import QueueEntry
from ticketqueue.models.ticket_type import TicketType
from ticketqueue.services import inventory
from ticketqueue.services.positions import available_slots, estimate_wait, positions_ahead, reorder_positions

from conftest import create_order


@pytest.mark.asyncio
async def test_reserve_never_oversells(db_session, test_event, ticket_type):
    await db_session.execute(
        update(TicketType).where(TicketType.id == ticket_type.id).values(quantity_sold=98)
    )

    await inventory.reserve_quantity(db_session, ticket_type, 2)
    assert ticket_type.quantity_sold == 100

    with pytest.raises(InventoryConflict):
        await inventory.reserve_quantity(db_session, ticket_type, 1)


@pytest.mark.asyncio
async def test_reserve_retries_on_stale_version(db_session, test_event, ticket_type):
    """A concurrent writer bumped the version; the decrement re-reads and succeeds."""
    await db_session.execute(
        update(TicketType)
        .where(TicketType.id == ticket_type.id)
        .values(quantity_sold=10, version=5)
        .execution_options(synchronize_session=False)
    )

    await inventory.reserve_quantity(db_session, ticket_type, 3)
    assert ticket_type.quantity_sold == 13
    assert ticket_type.version == 6


@pytest.mark.asyncio
async def test_remaining_allowance(db_session, test_event, ticket_type, test_user):
    await create_order(db_session, test_user, ticket_type, quantity=3)

    assert await inventory.purchased_quantity(db_session, ticket_type.id, test_user.id) == 3
    assert await inventory.user_remaining_allowance(db_session, test_event.id, test_user.id) == {ticket_type.id: 1}
    assert not await inventory.has_user_reached_all_event_limits(db_session, test_event.id, test_user.id)


@pytest.mark.asyncio
async def test_event_without_ticket_types_never_capped(db_session, test_event, test_user):
    assert not await inventory.has_user_reached_all_event_limits(db_session, test_event.id, test_user.id)
    assert await inventory.find_available_by_event(db_session, test_event.id) == []


@pytest.mark.asyncio
async def test_anonymous_caller_cannot_buy(db_session, ticket_type):
    check = await inventory.can_purchase_with_limit(db_session, ticket_type, 1, None)
    assert not check.allowed


# --- Positions ----------------------------------------------------------------

def waiting(event_id, position, entered_at, is_priority=False, user_id=None, session_id="s"):
    return QueueEntry(
        event_id=event_id,
        user_id=user_id,
        session_id=session_id,
        position=position,
        is_priority=is_priority,
        status="waiting",
        entered_at=entered_at,
    )


@pytest.mark.asyncio
async def test_reorder_fills_gaps(db_session, test_event):
    now = utcnow()
    entries = [
        waiting(test_event.id, 4, now, session_id="a"),
        waiting(test_event.id, 7, now + timedelta(seconds=1), session_id="b"),
        waiting(test_event.id, 9, now + timedelta(seconds=2), is_priority=True, session_id="c"),
    ]
    db_session.add_all(entries)
    await db_session.flush()

    assert await reorder_positions(db_session, test_event.id) == 3
    assert [e.position for e in entries] == [2, 3, 1]
    assert await positions_ahead(db_session, entries[1]) == 2
    assert await positions_ahead(db_session, entries[2]) == 0


@pytest.mark.asyncio
async def test_estimate_uses_processing_history(db_session, test_event):
    assert await estimate_wait(db_session, test_event, 1) == 60
    assert await estimate_wait(db_session, test_event, 4) == 180

    done = waiting(test_event.id, 1, utcnow(), session_id="done")
    done.status = "completed"
    done.processing_time = 240
    test_event.concurrent_users = 2
    db_session.add(done)
    await db_session.flush()

    # (rank - 1) * 240 s spread over 2 slots
    assert await estimate_wait(db_session, test_event, 4) == 360
    assert await estimate_wait(db_session, test_event, 1) == 60


@pytest.mark.asyncio
async def test_available_slots_counts_processing(db_session, test_event):
    holder = waiting(test_event.id, 1, utcnow(), session_id="holder")
    holder.status = "processing"
    db_session.add(holder)
    await db_session.flush()

    assert await available_slots(db_session, test_event) == 0
