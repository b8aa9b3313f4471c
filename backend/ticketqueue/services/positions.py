"""
Queue ordering and wait estimation.

Stored `position` is kept dense by `reorder_positions`, called after every
removal from the waiting set. Read paths do not trust it blindly: the rank
shown to a user is computed live from (is_priority desc, entered_at asc), so a
status response is correct even if a reorder has not run yet.
"""

from typing import Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ticketqueue.core.logging import get_logger
from ticketqueue.models.event import Event
from ticketqueue.models.queue_entry import LIVE_STATUSES, SLOT_HOLDING_STATUSES, QueueEntry

logger = get_logger(__name__)

DEFAULT_SECONDS_PER_POSITION = 60
MIN_ESTIMATED_WAIT_SECONDS = 60


def waiting_order():
    return (QueueEntry.is_priority.desc(), QueueEntry.position.asc(), QueueEntry.entered_at.asc())


async def count_live(db: AsyncSession, event_id: int) -> int:
    result = await db.execute(
        select(func.count(QueueEntry.id)).where(
            QueueEntry.event_id == event_id,
            QueueEntry.status.in_(LIVE_STATUSES),
        )
    )
    return result.scalar() or 0


async def count_slot_holders(db: AsyncSession, event_id: int) -> int:
    result = await db.execute(
        select(func.count(QueueEntry.id)).where(
            QueueEntry.event_id == event_id,
            QueueEntry.status.in_(SLOT_HOLDING_STATUSES),
        )
    )
    return result.scalar() or 0


async def available_slots(db: AsyncSession, event: Event) -> int:
    """Concurrency budget left for `event`. Derived on every call, never stored."""
    return event.concurrent_users - await count_slot_holders(db, event.id)


async def reorder_positions(db: AsyncSession, event_id: int) -> int:
    """Renumber waiting entries 1..N by (is_priority desc, entered_at asc)."""
    result = await db.execute(
        select(QueueEntry.id, QueueEntry.position)
        .where(QueueEntry.event_id == event_id, QueueEntry.status == "waiting")
        .order_by(QueueEntry.is_priority.desc(), QueueEntry.entered_at.asc(), QueueEntry.id.asc())
    )
    changed = 0
    for index, (entry_id, position) in enumerate(result.all(), start=1):
        if position == index:
            continue
        await db.execute(
            update(QueueEntry)
            .where(QueueEntry.id == entry_id)
            .values(position=index)
            .execution_options(synchronize_session="fetch")
        )
        changed += 1

    if changed:
        logger.info("queue_reordered", event_id=event_id, changed=changed)
    return changed


async def positions_ahead(db: AsyncSession, entry: QueueEntry) -> int:
    """Waiting entries that will be admitted before `entry`."""
    if entry.status != "waiting":
        return 0

    if entry.is_priority:
        ahead = and_(
            QueueEntry.is_priority.is_(True),
            QueueEntry.entered_at < entry.entered_at,
        )
    else:
        ahead = or_(
            QueueEntry.is_priority.is_(True),
            QueueEntry.entered_at < entry.entered_at,
        )

    result = await db.execute(
        select(func.count(QueueEntry.id)).where(
            QueueEntry.event_id == entry.event_id,
            QueueEntry.status == "waiting",
            QueueEntry.id != entry.id,
            ahead,
        )
    )
    return result.scalar() or 0


async def average_seconds(db: AsyncSession, event_id: int, column) -> Optional[float]:
    result = await db.execute(
        select(func.avg(column)).where(
            QueueEntry.event_id == event_id,
            column.is_not(None),
        )
    )
    value = result.scalar()
    return float(value) if value is not None else None


async def estimate_wait(db: AsyncSession, event: Event, rank: int) -> int:
    """
    Seconds until the entry at `rank` (1-based) is likely admitted.

    Uses the event's observed average processing time, spread over its
    concurrent slots; falls back to a minute per position with no history.
    """
    per_position = await average_seconds(db, event.id, QueueEntry.processing_time)
    if not per_position:
        per_position = DEFAULT_SECONDS_PER_POSITION
    concurrency = max(1, event.concurrent_users or 1)
    return max(MIN_ESTIMATED_WAIT_SECONDS, int((rank - 1) * per_position / concurrency))
