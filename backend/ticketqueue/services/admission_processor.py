"""
Admission processor: per-event loop that turns free slots into purchase sessions.

CONCURRENCY STRATEGY: recompute the slot budget on every tick
=============================================================

Problem:
  At most `event.concurrent_users` entries may hold a purchase slot at once.
  Slots free up through paths this loop does not own (order completion,
  expiry, abandon), possibly on another instance.

Solution:
  Nothing is counted in memory. Each tick reloads the event and derives

    available = concurrent_users - count(entries in {active, processing})

  then promotes up to `available` waiting entries, ordered by
  (is_priority desc, position asc). A missed signal or a crash costs at most
  one tick of latency; there is no counter to drift.

  - Ticks for one event never overlap: the loop is a single task per event
    and shares a per-event lock with the admin "process next" override.
  - Across instances, a persisted lease row per event decides which instance
    runs the loop. The owner renews `heartbeat_at` every tick; a lease older
    than LEASE_TTL_SECONDS may be taken over, so a crashed instance's events
    are resumed by whoever boots or sweeps next.
  - A "slot freed" signal (local asyncio.Event, relayed over Redis pub/sub)
    wakes the loop early. Polling stays authoritative.
"""

import asyncio
import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from ticketqueue.core.config import get_settings
from ticketqueue.core.logging import get_logger, loop_context
from ticketqueue.core.metrics import active_processors, admission_tick_latency
from ticketqueue.db.base import utcnow
from ticketqueue.db.session import async_session_maker
from ticketqueue.infrastructure.slot_signals import slot_signals
from ticketqueue.models.event import Event
from ticketqueue.models.processing_lease import ProcessingLease
from ticketqueue.models.queue_entry import QueueEntry
from ticketqueue.services.inventory import find_available_by_event
from ticketqueue.services.positions import available_slots, reorder_positions, waiting_order
from ticketqueue.services.queue_service import event_lock
from ticketqueue.services.session_service import admit_entry

logger = get_logger(__name__)
settings = get_settings()


@dataclass
class BatchResult:
    admitted: int = 0
    # Set when the loop for this event should end for good
    stop: bool = False
    reason: str = "admitted"


class AdmissionProcessor:
    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        tick_seconds: Optional[float] = None,
        owner_id: Optional[str] = None,
    ):
        self.session_factory = session_factory or async_session_maker
        self.tick_seconds = tick_seconds or settings.ADMISSION_TICK_SECONDS
        self.owner_id = owner_id or f"{settings.INSTANCE_ID}:{os.getpid()}"
        self._loops: dict[int, asyncio.Task] = {}

    # --- One tick -----------------------------------------------------------

    async def process_next_batch(self, event_id: int, now=None) -> BatchResult:
        now = now or utcnow()
        async with event_lock(event_id):
            with admission_tick_latency.time():
                async with self.session_factory() as db:
                    result = await self._promote(db, event_id, now)
                    await db.commit()

        if result.admitted:
            logger.info("admission_tick", event_id=event_id, admitted=result.admitted)
        elif result.stop:
            logger.info("admission_stopping", event_id=event_id, reason=result.reason)
        else:
            logger.debug("admission_tick_skipped", event_id=event_id, reason=result.reason)
        return result

    async def _promote(self, db, event_id: int, now) -> BatchResult:
        event = await db.get(Event, event_id)
        if event is None:
            return BatchResult(stop=True, reason="event_not_found")

        if event.is_closed():
            return BatchResult(stop=True, reason=f"event_{event.status}")

        if not event.is_sale_open(now):
            # Ending the loop after the sale closes is the event status updater's call
            return BatchResult(reason="sale_not_open")

        if not await find_available_by_event(db, event_id):
            return BatchResult(stop=True, reason="sold_out")

        available = await available_slots(db, event)
        if available <= 0:
            return BatchResult(reason="no_free_slots")

        result = await db.execute(
            select(QueueEntry)
            .where(QueueEntry.event_id == event_id, QueueEntry.status == "waiting")
            .order_by(*waiting_order())
            .limit(available)
        )
        entries = list(result.scalars().all())
        if not entries:
            return BatchResult(reason="queue_empty")

        admitted = 0
        for entry in entries:
            if await admit_entry(db, entry, event, trigger="tick", now=now) is not None:
                admitted += 1

        await reorder_positions(db, event_id)
        return BatchResult(admitted=admitted)

    # --- Leases -------------------------------------------------------------

    async def claim_lease(self, event_id: int, now=None) -> bool:
        now = now or utcnow()
        stale_before = now - timedelta(seconds=settings.LEASE_TTL_SECONDS)
        async with self.session_factory() as db:
            lease = await db.get(ProcessingLease, event_id)
            if lease is None:
                db.add(ProcessingLease(event_id=event_id, owner_id=self.owner_id, acquired_at=now, heartbeat_at=now))
                try:
                    await db.commit()
                except IntegrityError:
                    await db.rollback()
                    return False
                return True

            result = await db.execute(
                update(ProcessingLease)
                .where(
                    ProcessingLease.event_id == event_id,
                    or_(
                        ProcessingLease.owner_id == self.owner_id,
                        ProcessingLease.heartbeat_at < stale_before,
                    ),
                )
                .values(owner_id=self.owner_id, acquired_at=now, heartbeat_at=now)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            if result.rowcount == 1 and lease.owner_id != self.owner_id:
                logger.warning("processing_lease_taken_over", event_id=event_id, previous_owner=lease.owner_id)
            return result.rowcount == 1

    async def renew_lease(self, event_id: int, now=None) -> bool:
        async with self.session_factory() as db:
            result = await db.execute(
                update(ProcessingLease)
                .where(ProcessingLease.event_id == event_id, ProcessingLease.owner_id == self.owner_id)
                .values(heartbeat_at=now or utcnow())
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return result.rowcount == 1

    async def release_lease(self, event_id: int) -> None:
        async with self.session_factory() as db:
            await db.execute(
                delete(ProcessingLease)
                .where(ProcessingLease.event_id == event_id, ProcessingLease.owner_id == self.owner_id)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

    # --- Loop lifecycle -----------------------------------------------------

    async def start_for_event(self, event_id: int) -> bool:
        """Start the loop for `event_id` unless another instance holds a fresh lease."""
        if self.is_processing(event_id):
            return True

        if not await self.claim_lease(event_id):
            logger.info("processing_lease_held_elsewhere", event_id=event_id)
            return False

        self._loops[event_id] = asyncio.create_task(self._run(event_id), name=f"admission-{event_id}")
        active_processors.set(len(self._loops))
        logger.info("admission_started", event_id=event_id, owner=self.owner_id, tick_seconds=self.tick_seconds)
        return True

    async def stop_for_event(self, event_id: int) -> None:
        task = self._loops.get(event_id)
        if task is None:
            # No local loop; drop a lease this instance may have left behind
            await self.release_lease(event_id)
            return

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self, event_id: int) -> None:
        with loop_context("admission", event_id=event_id):
            await self._admit_until_stopped(event_id)

    async def _admit_until_stopped(self, event_id: int) -> None:
        waiter = slot_signals.waiter(event_id)
        try:
            while True:
                waiter.clear()
                result = None
                try:
                    if not await self.renew_lease(event_id):
                        logger.warning("processing_lease_lost", event_id=event_id)
                        return
                    result = await self.process_next_batch(event_id)
                except Exception as e:
                    # Heartbeat or tick failure; retried on the next tick
                    logger.error("admission_tick_failed", event_id=event_id, error=str(e), exc_info=True)

                if result is not None and result.stop:
                    return

                try:
                    await asyncio.wait_for(waiter.wait(), timeout=self.tick_seconds)
                    logger.debug("admission_woken", event_id=event_id)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._loops.pop(event_id, None)
            slot_signals.discard(event_id)
            active_processors.set(len(self._loops))
            try:
                await self.release_lease(event_id)
            except Exception as e:
                logger.error("processing_lease_release_failed", event_id=event_id, error=str(e))
            logger.info("admission_stopped", event_id=event_id)

    def is_processing(self, event_id: int) -> bool:
        task = self._loops.get(event_id)
        return task is not None and not task.done()

    def processing_events(self) -> list[int]:
        return [event_id for event_id in self._loops if self.is_processing(event_id)]

    async def resume_on_boot(self) -> list[int]:
        """Start loops for every event in `sale_started` whose lease is free, ours or stale."""
        async with self.session_factory() as db:
            result = await db.execute(select(Event.id).where(Event.status == "sale_started"))
            event_ids = list(result.scalars().all())

        started = []
        for event_id in event_ids:
            try:
                if await self.start_for_event(event_id):
                    started.append(event_id)
            except Exception as e:
                logger.error("admission_resume_failed", event_id=event_id, error=str(e))

        logger.info("admission_resumed", events=started, candidates=len(event_ids))
        return started

    async def stop_all(self) -> None:
        for event_id in list(self._loops):
            await self.stop_for_event(event_id)

    async def status(self) -> dict:
        now = utcnow()
        async with self.session_factory() as db:
            result = await db.execute(select(ProcessingLease).order_by(ProcessingLease.event_id))
            leases = [
                {
                    "event_id": lease.event_id,
                    "owner_id": lease.owner_id,
                    "heartbeat_at": lease.heartbeat_at,
                    "stale": lease.is_stale(now, settings.LEASE_TTL_SECONDS),
                    "local": lease.owner_id == self.owner_id,
                }
                for lease in result.scalars().all()
            ]
        return {
            "owner_id": self.owner_id,
            "tick_seconds": self.tick_seconds,
            "processing_events": self.processing_events(),
            "leases": leases,
        }


admission_processor = AdmissionProcessor()
