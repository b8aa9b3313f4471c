"""
Operator endpoints: queue overrides, statistics, processor control.

Admins may act on every event; an event's organizer on their own event.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ticketqueue.api.deps import ensure_can_manage_event
from ticketqueue.core.exceptions import EntryNotFound, NotAuthorized, SessionNotFound
from ticketqueue.core.security import get_current_user, require_admin
from ticketqueue.db.session import get_db
from ticketqueue.models.purchase_session import PurchaseSession
from ticketqueue.models.queue_entry import ENTRY_STATUSES, QueueEntry
from ticketqueue.models.user import User
from ticketqueue.schemas.queue import (
    EntryStatusUpdate,
    PriorityRequest,
    ProcessNextResponse,
    QueueEntryListResponse,
    QueueEntryResponse,
    QueueStatsResponse,
)
from ticketqueue.schemas.session import ExpiryStatsResponse, PurchaseSessionResponse, SessionStatsResponse
from ticketqueue.services import queue_service, session_service
from ticketqueue.services.admission_processor import admission_processor
from ticketqueue.services.expiry_reconciler import ExpiryReconciler
from ticketqueue.services.positions import positions_ahead

router = APIRouter(prefix="/admin", tags=["Admin"])

expiry_reconciler = ExpiryReconciler()


async def _entry_for_staff(db: AsyncSession, entry_id: int, user: User) -> QueueEntry:
    entry = await db.get(QueueEntry, entry_id)
    if entry is None:
        raise EntryNotFound("Queue entry not found", entry_id=entry_id)
    await ensure_can_manage_event(db, entry.event_id, user)
    return entry


# --- Queue ------------------------------------------------------------------

@router.get("/events/{event_id}/queue/entries", response_model=QueueEntryListResponse)
async def list_queue_entries(
    event_id: int,
    status: Optional[str] = Query(default=None, pattern="^(" + "|".join(ENTRY_STATUSES) + ")$"),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=200),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Live entries by default; pass `status` to list one status only."""
    await ensure_can_manage_event(db, event_id, user)
    entries, total = await queue_service.list_entries(db, event_id, status, page, page_size)
    return QueueEntryListResponse(
        items=[QueueEntryResponse.from_entry(entry) for entry in entries],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/events/{event_id}/queue/stats", response_model=QueueStatsResponse)
async def queue_stats(
    event_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await ensure_can_manage_event(db, event_id, user)
    return await queue_service.queue_statistics(
        db, event_id, auto_processing=admission_processor.is_processing(event_id)
    )


@router.post("/events/{event_id}/queue/process-next", response_model=ProcessNextResponse)
async def process_next(
    event_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Admit the next waiting entry now, outside the normal tick."""
    await ensure_can_manage_event(db, event_id, user)
    entry, session = await queue_service.process_next(db, event_id, admin_id=user.id)
    return ProcessNextResponse(
        entry=QueueEntryResponse.from_entry(entry),
        session=PurchaseSessionResponse.from_session(session),
    )


@router.post("/queue/entries/{entry_id}/priority", response_model=QueueEntryResponse)
async def set_priority(
    entry_id: int,
    body: PriorityRequest = PriorityRequest(),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await _entry_for_staff(db, entry_id, user)
    entry = await queue_service.mark_as_priority(db, entry_id, user.id, body.reason, body.is_priority)
    return QueueEntryResponse.from_entry(entry, positions_ahead=await positions_ahead(db, entry))


@router.patch("/queue/entries/{entry_id}/status", response_model=QueueEntryResponse)
async def set_entry_status(
    entry_id: int,
    body: EntryStatusUpdate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await _entry_for_staff(db, entry_id, user)
    entry = await queue_service.update_entry_status(db, entry_id, body.status, user.id, body.notes)
    return QueueEntryResponse.from_entry(entry)


# --- Sessions ---------------------------------------------------------------

@router.get("/events/{event_id}/sessions/stats", response_model=SessionStatsResponse)
async def session_stats(
    event_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await ensure_can_manage_event(db, event_id, user)
    return await session_service.session_statistics(db, event_id)


@router.post("/sessions/{session_id}/expire", response_model=PurchaseSessionResponse)
async def expire_session(
    session_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Run the expiry path for one session now, whatever its deadline."""
    session = await db.get(PurchaseSession, session_id)
    if session is None:
        raise SessionNotFound("Purchase session not found", session_id=session_id)
    if session.event_id is not None:
        await ensure_can_manage_event(db, session.event_id, user)
    elif not user.is_admin:
        raise NotAuthorized("Admin access required")
    session = await expiry_reconciler.expire_session(db, session_id, reason="Session ended by an administrator")
    return PurchaseSessionResponse.from_session(session)


@router.get("/sessions/expiry-stats", response_model=ExpiryStatsResponse)
async def expiry_stats(
    user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await expiry_reconciler.expiry_stats(db)


# --- Admission processor ----------------------------------------------------

@router.get("/processing")
async def processing_status(user: User = Depends(require_admin)):
    """Events with a running admission loop here, and every persisted lease."""
    return await admission_processor.status()


@router.post("/events/{event_id}/processing/start")
async def start_processing(
    event_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await ensure_can_manage_event(db, event_id, user)
    started = await admission_processor.start_for_event(event_id)
    return {"event_id": event_id, "processing": admission_processor.is_processing(event_id), "started": started}


@router.post("/events/{event_id}/processing/stop")
async def stop_processing(
    event_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await ensure_can_manage_event(db, event_id, user)
    await admission_processor.stop_for_event(event_id)
    return {"event_id": event_id, "processing": admission_processor.is_processing(event_id)}
