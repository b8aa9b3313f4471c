"""
Queue membership: join, status, leave, and the admin operations on entries.

Join fails closed on every precondition. Everything after the entry exists
is best-effort on the side (notifications) and guarded on the state (see
services/state.py).
"""

import asyncio
import uuid
from typing import Optional

from sqlalchemy import and_, delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ticketqueue.core.config import get_settings
from ticketqueue.core.exceptions import (
    EntryNotFound,
    EventNotEligible,
    EventNotFound,
    IdentityRequired,
    InvalidTransition,
    NoAvailableTickets,
    PurchaseLimitReached,
    QueueError,
    RejoinGracePeriod,
    SaleNotStarted,
)
from ticketqueue.core.logging import get_logger
from ticketqueue.core.metrics import record_join
from ticketqueue.db.base import utcnow
from ticketqueue.infrastructure.slot_signals import slot_signals
from ticketqueue.models.event import Event
from ticketqueue.models.purchase_session import PurchaseSession
from ticketqueue.models.queue_entry import ENTRY_STATUSES, LIVE_STATUSES, QueueEntry
from ticketqueue.services import inventory, notifications, session_service
from ticketqueue.services.positions import (
    average_seconds,
    count_live,
    estimate_wait,
    positions_ahead,
    reorder_positions,
    waiting_order,
)
from ticketqueue.services.state import transition_entry, transition_session

logger = get_logger(__name__)
settings = get_settings()

ADMIN_TARGET_STATUSES = ("processing", "completed", "abandoned", "expired", "cancelled")

# One promotion pass per event at a time, shared by the loop and the admin override
_event_locks: dict[int, asyncio.Lock] = {}


def event_lock(event_id: int) -> asyncio.Lock:
    if event_id not in _event_locks:
        _event_locks[event_id] = asyncio.Lock()
    return _event_locks[event_id]


def _caller_filter(user_id: Optional[int], session_id: Optional[str]):
    if user_id is not None:
        return QueueEntry.user_id == user_id
    if session_id:
        return and_(QueueEntry.session_id == session_id, QueueEntry.user_id.is_(None))
    raise IdentityRequired("Sign in or send an X-Session-ID header to use the queue")


async def find_live_entry(
    db: AsyncSession, event_id: int, user_id: Optional[int], session_id: Optional[str]
) -> Optional[QueueEntry]:
    result = await db.execute(
        select(QueueEntry)
        .where(
            QueueEntry.event_id == event_id,
            _caller_filter(user_id, session_id),
            QueueEntry.status.in_(LIVE_STATUSES),
        )
        .order_by(QueueEntry.entered_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def find_latest_entry(
    db: AsyncSession, event_id: int, user_id: Optional[int], session_id: Optional[str]
) -> Optional[QueueEntry]:
    result = await db.execute(
        select(QueueEntry)
        .where(QueueEntry.event_id == event_id, _caller_filter(user_id, session_id))
        .order_by(QueueEntry.entered_at.desc(), QueueEntry.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def _require_event(db: AsyncSession, event_id: int) -> Event:
    event = await db.get(Event, event_id)
    if event is None:
        raise EventNotFound(f"Event {event_id} not found", event_id=event_id)
    return event


async def _check_join_preconditions(db: AsyncSession, event: Event, user_id: Optional[int], now) -> None:
    if event.is_closed():
        raise EventNotEligible(
            f"Event is {event.status} and no longer accepts queue entries",
            event_status=event.status,
        )

    if not await inventory.find_available_by_event(db, event.id):
        raise NoAvailableTickets("No tickets are available for this event")

    if await inventory.has_user_reached_all_event_limits(db, event.id, user_id):
        raise PurchaseLimitReached(
            "You have already purchased the maximum number of tickets allowed for this event"
        )

    if now < event.sale_starts_at:
        raise SaleNotStarted(
            "Ticket sales have not started yet",
            sale_starts_at=event.sale_starts_at.isoformat(),
        )

    if event.sale_ends_at and now > event.sale_ends_at:
        raise EventNotEligible("Ticket sales for this event have ended", event_status=event.status)


async def join_queue(
    db: AsyncSession,
    event_id: int,
    user_id: Optional[int] = None,
    session_id: Optional[str] = None,
    client_info: Optional[dict] = None,
    now=None,
) -> tuple[QueueEntry, bool]:
    """
    Join the admission queue for an event.

    Returns (entry, created). A caller who already has a live entry gets that
    entry back with created=False. Any earlier terminal rows of the caller
    for this event are purged before the new row is inserted.
    """
    now = now or utcnow()
    caller = _caller_filter(user_id, session_id)
    event = await _require_event(db, event_id)

    existing = await find_live_entry(db, event_id, user_id, session_id)
    if existing is not None:
        if await _settle_stale_session(db, existing, now):
            # The rejoin below may be refused; keep the expiry
            await db.commit()
        if existing.is_live():
            record_join("already_queued")
            return existing, False

    try:
        await _check_join_preconditions(db, event, user_id, now)

        result = await db.execute(select(QueueEntry).where(QueueEntry.event_id == event_id, caller))
        for prior in result.scalars().all():
            if prior.in_grace_period(now):
                raise RejoinGracePeriod(
                    "Your previous purchase window just expired. Please try again shortly.",
                    retry_after=int((prior.processing_expires_at - now).total_seconds()) + 1,
                )
    except QueueError:
        record_join("rejected")
        raise

    await db.execute(
        delete(QueueEntry)
        .where(QueueEntry.event_id == event_id, caller)
        .execution_options(synchronize_session="fetch")
    )

    entry = QueueEntry(
        event_id=event_id,
        user_id=user_id,
        session_id=session_id or uuid.uuid4().hex,
        position=await count_live(db, event_id) + 1,
        is_priority=False,
        status="waiting",
        source="standard",
        entered_at=now,
        queue_joined_at=now,
        client_info=client_info,
        notifications_sent=[],
    )
    db.add(entry)
    try:
        await db.flush()
    except IntegrityError:
        # Concurrent join for the same user won the insert
        await db.rollback()
        existing = await find_live_entry(db, event_id, user_id, session_id)
        if existing is None:
            raise
        record_join("already_queued")
        return existing, False

    rank = await positions_ahead(db, entry) + 1
    entry.estimated_wait_seconds = await estimate_wait(db, event, rank)
    session_service.log_notification(entry, "queue_joined", now, attr="notifications_sent")
    entry.last_notification_at = now
    await db.flush()

    record_join("joined")
    logger.info(
        "queue_joined",
        entry_id=entry.id,
        event_id=event_id,
        user_id=user_id,
        position=entry.position,
        estimated_wait_seconds=entry.estimated_wait_seconds,
    )

    email = await session_service.contact_email(db, user_id)
    notifications.dispatch(
        notifications.send_queue_joined(
            email, event.name, entry.position, max(1, entry.estimated_wait_seconds // 60)
        )
    )
    return entry, True


async def _settle_stale_session(db: AsyncSession, entry: QueueEntry, now) -> bool:
    """Lazy expiry on the queue read path: a processing entry whose session ran out."""
    if entry.status != "processing":
        return False
    settled = False
    result = await db.execute(
        select(PurchaseSession).where(
            PurchaseSession.queue_entry_id == entry.id,
            PurchaseSession.status == "active",
        )
    )
    for session in result.scalars().all():
        if session.is_expired(now):
            settled |= await session_service.finalize_expired_session(db, session, source="lazy", now=now)
    await db.refresh(entry)
    return settled


async def get_queue_status(
    db: AsyncSession,
    event_id: int,
    user_id: Optional[int] = None,
    session_id: Optional[str] = None,
    now=None,
) -> tuple[QueueEntry, int]:
    """Current entry for the caller plus the number of entries ahead of it."""
    now = now or utcnow()
    entry = await find_latest_entry(db, event_id, user_id, session_id)
    if entry is None:
        raise EntryNotFound("You are not in the queue for this event", event_id=event_id)

    await _settle_stale_session(db, entry, now)

    ahead = await positions_ahead(db, entry)
    if entry.status == "waiting":
        event = await _require_event(db, event_id)
        entry.estimated_wait_seconds = await estimate_wait(db, event, ahead + 1)
        await db.flush()
    return entry, ahead


async def leave_queue(
    db: AsyncSession,
    event_id: int,
    user_id: Optional[int] = None,
    session_id: Optional[str] = None,
    now=None,
) -> QueueEntry:
    now = now or utcnow()
    entry = await find_live_entry(db, event_id, user_id, session_id)
    if entry is None:
        raise EntryNotFound("You are not in the queue for this event", event_id=event_id)

    held_slot = entry.holds_slot()
    await _abandon_open_sessions(db, entry, now)
    if await transition_entry(db, entry, "abandoned", now):
        await reorder_positions(db, event_id)
        if held_slot:
            await slot_signals.publish(event_id)
        logger.info("queue_left", entry_id=entry.id, event_id=event_id, held_slot=held_slot)
    return entry


async def _abandon_open_sessions(db: AsyncSession, entry: QueueEntry, now) -> None:
    result = await db.execute(
        select(PurchaseSession).where(
            PurchaseSession.queue_entry_id == entry.id,
            PurchaseSession.status == "active",
        )
    )
    for session in result.scalars().all():
        await transition_session(db, session, "abandoned", "user", now)


async def user_queues(db: AsyncSession, user_id: Optional[int], session_id: Optional[str], now=None) -> list[QueueEntry]:
    """Caller's live entries plus expired ones still inside their grace window."""
    now = now or utcnow()
    result = await db.execute(
        select(QueueEntry)
        .where(
            _caller_filter(user_id, session_id),
            QueueEntry.status.in_(LIVE_STATUSES + ("expired",)),
        )
        .order_by(QueueEntry.entered_at.desc())
    )
    entries = list(result.scalars().all())
    for entry in entries:
        await _settle_stale_session(db, entry, now)
    return [entry for entry in entries if entry.is_live() or entry.in_grace_period(now)]


# --- Admin operations -------------------------------------------------------

async def _require_entry(db: AsyncSession, entry_id: int) -> QueueEntry:
    entry = await db.get(QueueEntry, entry_id)
    if entry is None:
        raise EntryNotFound("Queue entry not found", entry_id=entry_id)
    return entry


async def mark_as_priority(
    db: AsyncSession,
    entry_id: int,
    admin_id: int,
    reason: Optional[str] = None,
    is_priority: bool = True,
) -> QueueEntry:
    entry = await _require_entry(db, entry_id)
    entry.is_priority = is_priority
    entry.admin_user_id = admin_id
    if reason:
        entry.admin_notes = reason
    if is_priority:
        entry.source = "vip"
    await db.flush()

    await reorder_positions(db, entry.event_id)
    await db.refresh(entry)
    logger.info(
        "queue_entry_priority_changed",
        entry_id=entry.id,
        event_id=entry.event_id,
        is_priority=is_priority,
        admin_id=admin_id,
        position=entry.position,
    )
    return entry


async def process_next(db: AsyncSession, event_id: int, admin_id: int, now=None):
    """
    Promote the next waiting entry outside the normal tick.

    Operator override: the concurrency cap is not consulted, but the promotion
    still goes through the same guarded transition and per-event lock as the
    admission loop.
    """
    now = now or utcnow()
    event = await _require_event(db, event_id)

    async with event_lock(event_id):
        result = await db.execute(
            select(QueueEntry)
            .where(QueueEntry.event_id == event_id, QueueEntry.status == "waiting")
            .order_by(*waiting_order())
            .limit(1)
        )
        entry = result.scalar_one_or_none()
        if entry is None:
            raise EntryNotFound("No waiting entries for this event", event_id=event_id)

        session = await session_service.admit_entry(db, entry, event, trigger="manual", now=now)
        if session is None:
            raise InvalidTransition("Entry was admitted concurrently", entry_id=entry.id)

        entry.admin_user_id = admin_id
        entry.source = "admin"
        await db.flush()
        await reorder_positions(db, event_id)

    logger.info("queue_process_next", event_id=event_id, entry_id=entry.id, admin_id=admin_id)
    return entry, session


async def update_entry_status(
    db: AsyncSession,
    entry_id: int,
    target: str,
    admin_id: int,
    notes: Optional[str] = None,
    now=None,
) -> QueueEntry:
    if target not in ADMIN_TARGET_STATUSES:
        raise InvalidTransition(
            f"Admins cannot set status '{target}'",
            allowed=list(ADMIN_TARGET_STATUSES),
        )

    now = now or utcnow()
    entry = await _require_entry(db, entry_id)

    if target == "processing":
        event = await _require_event(db, entry.event_id)
        async with event_lock(entry.event_id):
            if entry.status != "waiting":
                raise InvalidTransition(
                    f"Cannot move queue entry from {entry.status} to processing",
                    current_status=entry.status,
                )
            await session_service.admit_entry(db, entry, event, trigger="manual", now=now)
            await reorder_positions(db, entry.event_id)
    else:
        held_slot = entry.holds_slot()
        was_waiting = entry.status == "waiting"
        extra = {"admin_user_id": admin_id}
        if notes:
            extra["admin_notes"] = notes
        if target == "expired":
            extra["processing_expires_at"] = now
        changed = await transition_entry(db, entry, target, now, **extra)
        if changed:
            result = await db.execute(
                select(PurchaseSession).where(
                    PurchaseSession.queue_entry_id == entry.id,
                    PurchaseSession.status == "active",
                )
            )
            for session in result.scalars().all():
                await transition_session(db, session, target, "admin", now)
            if was_waiting:
                await reorder_positions(db, entry.event_id)
            if held_slot:
                await slot_signals.publish(entry.event_id)

    logger.info("queue_entry_status_set", entry_id=entry.id, status=entry.status, admin_id=admin_id)
    return entry


async def list_entries(
    db: AsyncSession,
    event_id: int,
    status: Optional[str] = None,
    page: int = 1,
    page_size: int = 50,
) -> tuple[list[QueueEntry], int]:
    await _require_event(db, event_id)
    filters = [QueueEntry.event_id == event_id]
    if status:
        filters.append(QueueEntry.status == status)
    else:
        filters.append(QueueEntry.status.in_(LIVE_STATUSES))

    total = (await db.execute(select(func.count(QueueEntry.id)).where(*filters))).scalar() or 0
    result = await db.execute(
        select(QueueEntry)
        .where(*filters)
        .order_by(QueueEntry.is_priority.desc(), QueueEntry.position.asc(), QueueEntry.id.asc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return list(result.scalars().all()), total


async def queue_statistics(db: AsyncSession, event_id: int, auto_processing: bool = False) -> dict:
    await _require_event(db, event_id)
    result = await db.execute(
        select(QueueEntry.status, func.count(QueueEntry.id))
        .where(QueueEntry.event_id == event_id)
        .group_by(QueueEntry.status)
    )
    counts = {status: 0 for status in ENTRY_STATUSES}
    counts.update({status: count for status, count in result.all()})

    avg_wait = await average_seconds(db, event_id, QueueEntry.total_wait_time)
    avg_processing = await average_seconds(db, event_id, QueueEntry.processing_time)
    return {
        "event_id": event_id,
        "total": sum(counts.values()),
        "by_status": counts,
        "average_wait_seconds": int(avg_wait) if avg_wait is not None else None,
        "average_processing_seconds": int(avg_processing) if avg_processing is not None else None,
        "auto_processing": auto_processing,
    }
