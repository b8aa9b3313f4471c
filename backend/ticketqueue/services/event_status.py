"""
Event sale lifecycle: draft/active -> sale_started -> sale_ended -> completed.

Drives the admission processor: a sale opening starts the event's loop, a sale
closing or the event finishing stops it. Each sweep also re-offers every
`sale_started` event to the processor, which claims the lease only if it is
free or stale, so events orphaned by a crashed instance are picked up here.
"""

from sqlalchemy import select, update

from ticketqueue.core.config import get_settings
from ticketqueue.core.logging import get_logger
from ticketqueue.core.metrics import sweep_item_failures
from ticketqueue.db.base import utcnow
from ticketqueue.models.event import CLOSED_EVENT_STATUSES, Event
from ticketqueue.models.purchase_session import PurchaseSession
from ticketqueue.models.queue_entry import LIVE_STATUSES, QueueEntry
from ticketqueue.services.admission_processor import AdmissionProcessor, admission_processor
from ticketqueue.services.interfaces import PeriodicService
from ticketqueue.services.state import transition_entry, transition_session

logger = get_logger(__name__)
settings = get_settings()


class EventStatusUpdater(PeriodicService):
    name = "event_status_updater"

    def __init__(self, interval: float = None, session_factory=None, processor: AdmissionProcessor = None):
        super().__init__(interval or settings.EVENT_STATUS_SWEEP_SECONDS, session_factory)
        self.processor = processor or admission_processor

    async def run_once(self, now=None) -> int:
        now = now or utcnow()
        changed = 0
        changed += await self._open_sales(now)
        changed += await self._close_sales(now)
        changed += await self._complete_events(now)
        await self._adopt_orphans()
        return changed

    async def _set_status(self, event_id: int, expected: tuple, target: str) -> bool:
        async with self.session_factory() as db:
            result = await db.execute(
                update(Event)
                .where(Event.id == event_id, Event.status.in_(expected))
                .values(status=target)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        if result.rowcount:
            logger.info("event_status_changed", event_id=event_id, status=target)
        return result.rowcount == 1

    async def _event_ids(self, *criteria) -> list[int]:
        async with self.session_factory() as db:
            result = await db.execute(select(Event.id).where(*criteria))
            return list(result.scalars().all())

    async def _open_sales(self, now) -> int:
        opened = 0
        for event_id in await self._event_ids(
            Event.sale_starts_at <= now,
            Event.sale_ends_at > now,
            Event.status.in_(("draft", "active")),
        ):
            try:
                if await self._set_status(event_id, ("draft", "active"), "sale_started"):
                    opened += 1
                    await self.processor.start_for_event(event_id)
            except Exception as e:
                sweep_item_failures.labels(loop=self.name).inc()
                logger.error("sale_open_failed", event_id=event_id, error=str(e))
        return opened

    async def _close_sales(self, now) -> int:
        closed = 0
        for event_id in await self._event_ids(
            Event.sale_ends_at < now,
            Event.status.in_(("active", "sale_started")),
        ):
            try:
                if await self._set_status(event_id, ("active", "sale_started"), "sale_ended"):
                    closed += 1
                    await self.processor.stop_for_event(event_id)
            except Exception as e:
                sweep_item_failures.labels(loop=self.name).inc()
                logger.error("sale_close_failed", event_id=event_id, error=str(e))
        return closed

    async def _complete_events(self, now) -> int:
        completed = 0
        for event_id in await self._event_ids(
            Event.ends_at < now,
            Event.status.not_in(CLOSED_EVENT_STATUSES),
        ):
            try:
                await self.processor.stop_for_event(event_id)
                async with self.session_factory() as db:
                    result = await db.execute(
                        update(Event)
                        .where(Event.id == event_id, Event.status.not_in(CLOSED_EVENT_STATUSES))
                        .values(status="completed")
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount:
                        cancelled = await cancel_live_entries(db, event_id, now)
                        logger.info("event_completed", event_id=event_id, entries_cancelled=cancelled)
                        completed += 1
                    await db.commit()
            except Exception as e:
                sweep_item_failures.labels(loop=self.name).inc()
                logger.error("event_complete_failed", event_id=event_id, error=str(e))
        return completed

    async def _adopt_orphans(self) -> None:
        for event_id in await self._event_ids(Event.status == "sale_started"):
            if self.processor.is_processing(event_id):
                continue
            try:
                await self.processor.start_for_event(event_id)
            except Exception as e:
                sweep_item_failures.labels(loop=self.name).inc()
                logger.error("admission_adopt_failed", event_id=event_id, error=str(e))


async def cancel_live_entries(db, event_id: int, now=None) -> int:
    """Cancel every live entry and active session of a finished event. Rows are kept."""
    now = now or utcnow()
    result = await db.execute(
        select(PurchaseSession).where(
            PurchaseSession.event_id == event_id,
            PurchaseSession.status == "active",
        )
    )
    for session in result.scalars().all():
        await transition_session(db, session, "cancelled", "admin", now, admin_notes="Event completed")

    result = await db.execute(
        select(QueueEntry).where(
            QueueEntry.event_id == event_id,
            QueueEntry.status.in_(LIVE_STATUSES),
        )
    )
    cancelled = 0
    for entry in result.scalars().all():
        if await transition_entry(db, entry, "cancelled", now, admin_notes="Event completed"):
            cancelled += 1
    return cancelled
