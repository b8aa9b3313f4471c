"""
Ticket-limit enforcer.

Allowance can be used up without the queue ever hearing about it (an order
placed through a back-office path, say). Every sweep re-derives, from the
orders table, whether each live entry's user still has anything left to buy
for the event; users capped on every ticket type are force-completed so they
stop holding a place or a slot.
"""

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ticketqueue.core.config import get_settings
from ticketqueue.core.logging import get_logger
from ticketqueue.core.metrics import limit_evictions, sweep_item_failures
from ticketqueue.db.base import utcnow
from ticketqueue.infrastructure.slot_signals import slot_signals
from ticketqueue.models.purchase_session import PurchaseSession
from ticketqueue.models.queue_entry import LIVE_STATUSES, QueueEntry
from ticketqueue.services.interfaces import PeriodicService
from ticketqueue.services.inventory import has_user_reached_all_event_limits
from ticketqueue.services.positions import reorder_positions
from ticketqueue.services.state import transition_entry, transition_session

logger = get_logger(__name__)
settings = get_settings()

EVICTION_NOTE = "Automatically removed - maximum tickets purchased"


async def evict_if_capped(db: AsyncSession, entry: QueueEntry, now=None, note: str = EVICTION_NOTE) -> bool:
    """Force-complete `entry` if its user has no allowance left. True if evicted."""
    if entry.user_id is None or not entry.is_live():
        return False
    if not await has_user_reached_all_event_limits(db, entry.event_id, entry.user_id):
        return False

    now = now or utcnow()
    held_slot = entry.holds_slot()
    was_waiting = entry.status == "waiting"
    if not await transition_entry(db, entry, "completed", now, admin_notes=note):
        return False

    result = await db.execute(
        select(PurchaseSession).where(
            PurchaseSession.queue_entry_id == entry.id,
            PurchaseSession.status == "active",
        )
    )
    for session in result.scalars().all():
        await transition_session(db, session, "cancelled", "enforcer", now, admin_notes=note)

    if was_waiting:
        await reorder_positions(db, entry.event_id)

    limit_evictions.inc()
    logger.info(
        "queue_entry_evicted_at_limit",
        entry_id=entry.id,
        event_id=entry.event_id,
        user_id=entry.user_id,
        held_slot=held_slot,
    )
    if held_slot:
        await slot_signals.publish(entry.event_id)
    return True


class LimitEnforcer(PeriodicService):
    name = "limit_enforcer"

    def __init__(self, interval: float = None, session_factory=None):
        super().__init__(interval or settings.LIMIT_SWEEP_SECONDS, session_factory)

    async def run_once(self, now=None) -> int:
        async with self.session_factory() as db:
            result = await db.execute(
                select(QueueEntry.id).where(
                    QueueEntry.status.in_(LIVE_STATUSES),
                    QueueEntry.user_id.is_not(None),
                )
            )
            entry_ids = list(result.scalars().all())

        evicted = 0
        for entry_id in entry_ids:
            try:
                async with self.session_factory() as db:
                    entry = await db.get(QueueEntry, entry_id)
                    if entry is not None and await evict_if_capped(db, entry, now):
                        evicted += 1
                    await db.commit()
            except Exception as e:
                sweep_item_failures.labels(loop=self.name).inc()
                logger.error("limit_check_failed", entry_id=entry_id, error=str(e))

        if evicted:
            logger.info("limit_sweep_done", evicted=evicted, checked=len(entry_ids))
        return evicted

    async def check_specific_user(self, db: AsyncSession, event_id: int, user_id: int, now=None) -> Optional[QueueEntry]:
        """Evict one user's live entry for an event if they are capped. Returns it if evicted."""
        result = await db.execute(
            select(QueueEntry).where(
                QueueEntry.event_id == event_id,
                QueueEntry.user_id == user_id,
                QueueEntry.status.in_(LIVE_STATUSES),
            )
        )
        entry = result.scalar_one_or_none()
        if entry is not None and await evict_if_capped(db, entry, now, note="Removed - maximum tickets purchased"):
            return entry
        return None
