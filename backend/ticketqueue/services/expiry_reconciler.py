"""
Session expiry reconciler.

Global sweep for purchase sessions that are still `active` past `expires_at`.
This is the authoritative path; lazy read-time expiry is only an early
arrival at the same guarded transition, so the two can never disagree.

Also frees slots held by `processing` entries whose window plus grace has
passed but which have no active session at all (a session row that was never
written or was cancelled out-of-band).
"""

from datetime import timedelta

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ticketqueue.core.config import get_settings
from ticketqueue.core.exceptions import SessionNotFound
from ticketqueue.core.logging import get_logger
from ticketqueue.core.metrics import sweep_item_failures
from ticketqueue.db.base import utcnow
from ticketqueue.infrastructure.slot_signals import slot_signals
from ticketqueue.models.purchase_session import PurchaseSession
from ticketqueue.models.queue_entry import QueueEntry
from ticketqueue.services.interfaces import PeriodicService
from ticketqueue.services.session_service import finalize_expired_session, has_completed_order
from ticketqueue.services.state import grace_deadline, transition_entry

logger = get_logger(__name__)
settings = get_settings()


class ExpiryReconciler(PeriodicService):
    name = "expiry_reconciler"

    def __init__(self, interval: float = None, session_factory=None):
        super().__init__(interval or settings.EXPIRY_SWEEP_SECONDS, session_factory)

    async def run_once(self, now=None) -> int:
        now = now or utcnow()
        expired = await self.sweep_sessions(now)
        released = await self.sweep_stuck_entries(now)
        if expired or released:
            logger.info("expiry_sweep_done", sessions_expired=expired, entries_released=released)
        return expired + released

    async def sweep_sessions(self, now=None) -> int:
        now = now or utcnow()
        async with self.session_factory() as db:
            result = await db.execute(
                select(PurchaseSession.id).where(
                    PurchaseSession.status == "active",
                    PurchaseSession.expires_at < now,
                )
            )
            session_ids = list(result.scalars().all())

        expired = 0
        for session_id in session_ids:
            # One transaction per session: a failure rolls back only that row
            try:
                async with self.session_factory() as db:
                    session = await db.get(PurchaseSession, session_id)
                    if session is not None and await finalize_expired_session(
                        db, session, source="reconciler", now=now
                    ):
                        expired += 1
                    await db.commit()
            except Exception as e:
                sweep_item_failures.labels(loop=self.name).inc()
                logger.error("session_expiry_failed", session_id=session_id, error=str(e))
        return expired

    async def sweep_stuck_entries(self, now=None) -> int:
        now = now or utcnow()
        cutoff = now - timedelta(minutes=settings.EXPIRY_GRACE_MINUTES)
        async with self.session_factory() as db:
            has_active_session = (
                select(PurchaseSession.id)
                .where(
                    PurchaseSession.queue_entry_id == QueueEntry.id,
                    PurchaseSession.status == "active",
                )
                .exists()
            )
            result = await db.execute(
                select(QueueEntry.id).where(
                    QueueEntry.status == "processing",
                    QueueEntry.processing_expires_at < cutoff,
                    ~has_active_session,
                )
            )
            entry_ids = list(result.scalars().all())

        released = 0
        for entry_id in entry_ids:
            try:
                async with self.session_factory() as db:
                    entry = await db.get(QueueEntry, entry_id)
                    if entry is None or entry.status != "processing":
                        continue
                    if await has_completed_order(db, entry.event_id, entry.user_id):
                        changed = await transition_entry(
                            db, entry, "completed", now,
                            admin_notes="Released by reconciler: order found",
                        )
                    else:
                        changed = await transition_entry(
                            db, entry, "expired", now,
                            processing_expires_at=grace_deadline(now),
                            admin_notes="Released by reconciler: no active purchase session",
                        )
                    await db.commit()
                if changed:
                    released += 1
                    logger.warning("stuck_entry_released", entry_id=entry_id, status=entry.status)
                    await slot_signals.publish(entry.event_id)
            except Exception as e:
                sweep_item_failures.labels(loop=self.name).inc()
                logger.error("stuck_entry_release_failed", entry_id=entry_id, error=str(e))
        return released

    async def expire_session(self, db: AsyncSession, session_id: int, reason: str = "admin", now=None) -> PurchaseSession:
        """Admin override: run the reconciler path for one session, due or not."""
        session = await db.get(PurchaseSession, session_id)
        if session is None:
            raise SessionNotFound("Purchase session not found", session_id=session_id)
        await finalize_expired_session(db, session, source="admin", reason=reason, now=now)
        return session

    async def expiry_stats(self, db: AsyncSession, now=None) -> dict:
        now = now or utcnow()
        windows = {
            "last_10_minutes": timedelta(minutes=10),
            "last_hour": timedelta(hours=1),
            "last_24_hours": timedelta(days=1),
        }
        stats = {}
        for label, window in windows.items():
            result = await db.execute(
                select(func.count(PurchaseSession.id)).where(
                    PurchaseSession.status == "expired",
                    PurchaseSession.updated_at >= now - window,
                )
            )
            stats[label] = result.scalar() or 0

        result = await db.execute(
            select(func.count(PurchaseSession.id)).where(
                PurchaseSession.status == "active",
                PurchaseSession.expires_at < now,
            )
        )
        stats["overdue_active"] = result.scalar() or 0
        return stats
