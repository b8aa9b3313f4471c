"""
Queue endpoints for signed-in and anonymous (X-Session-ID) callers.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from ticketqueue.api.deps import QueueCaller, get_queue_caller
from ticketqueue.db.session import get_db
from ticketqueue.schemas.queue import JoinQueueRequest, JoinQueueResponse, QueueEntryResponse
from ticketqueue.services import queue_service
from ticketqueue.services.positions import positions_ahead

router = APIRouter(prefix="/queue", tags=["Queue"])


@router.post("/events/{event_id}/join", response_model=JoinQueueResponse, status_code=status.HTTP_201_CREATED)
async def join_queue(
    event_id: int,
    response: Response,
    body: Optional[JoinQueueRequest] = None,
    caller: QueueCaller = Depends(get_queue_caller),
    db: AsyncSession = Depends(get_db),
):
    """
    Join the admission queue for an event.

    Idempotent: if the caller is already waiting or being served, the existing
    entry is returned with 200 and `already_queued: true`.
    """
    entry, created = await queue_service.join_queue(
        db,
        event_id,
        user_id=caller.user_id,
        session_id=caller.session_id,
        client_info=body.client_info if body else None,
    )
    if not created:
        response.status_code = status.HTTP_200_OK
    ahead = await positions_ahead(db, entry)
    return JoinQueueResponse.from_entry(entry, positions_ahead=ahead, already_queued=not created)


@router.get("/events/{event_id}/status", response_model=QueueEntryResponse)
async def queue_status(
    event_id: int,
    caller: QueueCaller = Depends(get_queue_caller),
    db: AsyncSession = Depends(get_db),
):
    """Current entry with live rank, estimated wait and remaining purchase time."""
    entry, ahead = await queue_service.get_queue_status(db, event_id, caller.user_id, caller.session_id)
    return QueueEntryResponse.from_entry(entry, positions_ahead=ahead)


@router.post("/events/{event_id}/leave", response_model=QueueEntryResponse)
async def leave_queue(
    event_id: int,
    caller: QueueCaller = Depends(get_queue_caller),
    db: AsyncSession = Depends(get_db),
):
    """Leave the queue. A held purchase slot is released immediately."""
    entry = await queue_service.leave_queue(db, event_id, caller.user_id, caller.session_id)
    return QueueEntryResponse.from_entry(entry)


@router.get("/mine", response_model=list[QueueEntryResponse])
async def my_queues(
    caller: QueueCaller = Depends(get_queue_caller),
    db: AsyncSession = Depends(get_db),
):
    """Live entries across events, plus expired ones still inside their grace window."""
    entries = await queue_service.user_queues(db, caller.user_id, caller.session_id)
    return [QueueEntryResponse.from_entry(entry) for entry in entries]
