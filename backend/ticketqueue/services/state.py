"""
Guarded status transitions for queue entries and purchase sessions.

CONCURRENCY STRATEGY: compare-and-swap on the status column
============================================================

Problem:
  Several independent paths may decide the fate of the same row at the same
  time: the read path notices a session is past its deadline (lazy expiry),
  the expiry reconciler sweeps it, the user clicks "complete", the limit
  enforcer evicts the entry.

Solution:
  Every transition is a single UPDATE guarded by the status we read:

    UPDATE purchase_sessions SET status = 'expired', ...
    WHERE id = :id AND status = 'active'

  If rows_affected == 0 another path won the race. The loser refreshes the
  row and treats the call as a no-op, so side effects (notifications, slot
  signals) run exactly once, on the winning path. This mirrors the version
  guard used for inventory decrements.
"""

from datetime import datetime, timedelta

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from ticketqueue.core.config import get_settings
from ticketqueue.core.logging import get_logger
from ticketqueue.core.metrics import record_entry_transition, record_session_transition
from ticketqueue.db.base import utcnow
from ticketqueue.models.purchase_session import PurchaseSession
from ticketqueue.models.queue_entry import SLOT_HOLDING_STATUSES, QueueEntry

logger = get_logger(__name__)
settings = get_settings()


async def _compare_and_swap(db: AsyncSession, obj, model, expected_status: str, values: dict) -> bool:
    result = await db.execute(
        update(model)
        .where(model.id == obj.id, model.status == expected_status)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        await db.refresh(obj)
        return False

    for key, value in values.items():
        set_committed_value(obj, key, value)
    return True


async def transition_entry(
    db: AsyncSession,
    entry: QueueEntry,
    target: str,
    now=None,
    **extra,
) -> bool:
    """
    Move a queue entry to `target`.

    Returns True if this call performed the transition, False if it was a
    no-op (already terminal, or a concurrent writer got there first).
    Raises InvalidTransition for transitions that can never happen.
    """
    now = now or utcnow()
    values = entry.plan_transition(target, now, window_minutes=settings.PURCHASE_WINDOW_MINUTES)
    if values is None:
        return False

    values.update(extra)
    previous = entry.status
    if not await _compare_and_swap(db, entry, QueueEntry, previous, values):
        logger.info(
            "queue_entry_transition_lost",
            entry_id=entry.id,
            expected=previous,
            actual=entry.status,
            target=target,
        )
        return False

    record_entry_transition(target)
    logger.info(
        "queue_entry_transition",
        entry_id=entry.id,
        event_id=entry.event_id,
        from_status=previous,
        to_status=target,
    )
    return True


async def transition_session(
    db: AsyncSession,
    session: PurchaseSession,
    target: str,
    source: str,
    now=None,
    **extra,
) -> bool:
    """Terminal transition for a purchase session, guarded by status='active'."""
    now = now or utcnow()
    values = session.plan_transition(target, now)
    if values is None:
        return False

    values.update(extra)
    if not await _compare_and_swap(db, session, PurchaseSession, "active", values):
        logger.info(
            "purchase_session_transition_lost",
            session_id=session.id,
            actual=session.status,
            target=target,
            source=source,
        )
        return False

    record_session_transition(target, source)
    logger.info(
        "purchase_session_transition",
        session_id=session.id,
        queue_entry_id=session.queue_entry_id,
        to_status=target,
        source=source,
    )
    return True


async def extend_session(db: AsyncSession, session: PurchaseSession, minutes: int, now=None) -> PurchaseSession:
    """
    Push `expires_at` forward. Guarded by the extension count we read, so two
    concurrent extend calls cannot both succeed past the cap.

    The linked queue entry's processing deadline follows the session.
    """
    values = session.plan_extension(minutes, now)
    result = await db.execute(
        update(PurchaseSession)
        .where(
            PurchaseSession.id == session.id,
            PurchaseSession.status == "active",
            PurchaseSession.extension_count == session.extension_count,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        await db.refresh(session)
        # Re-plan against the fresh row to raise the precise error
        session.plan_extension(minutes, now)
        return await extend_session(db, session, minutes, now)

    for key, value in values.items():
        set_committed_value(session, key, value)

    if session.queue_entry_id is not None:
        await db.execute(
            update(QueueEntry)
            .where(
                QueueEntry.id == session.queue_entry_id,
                QueueEntry.status.in_(SLOT_HOLDING_STATUSES),
            )
            .values(processing_expires_at=values["expires_at"])
            .execution_options(synchronize_session="fetch")
        )
    return session


def grace_deadline(now=None) -> datetime:
    """End of the post-expiry window during which a late completion may land."""
    return (now or utcnow()) + timedelta(minutes=settings.EXPIRY_GRACE_MINUTES)
