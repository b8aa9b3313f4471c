"""
Shared route dependencies.
"""

from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from ticketqueue.core.security import get_optional_user_id
from ticketqueue.models.event import Event
from ticketqueue.models.user import User


class QueueCaller:
    """Who is asking: a signed-in user, or an anonymous browser session."""

    def __init__(self, user_id: Optional[int], session_id: Optional[str]):
        self.user_id = user_id
        self.session_id = session_id


async def get_queue_caller(
    user_id: Optional[int] = Depends(get_optional_user_id),
    x_session_id: Optional[str] = Header(default=None, max_length=255),
) -> QueueCaller:
    if user_id is None and not x_session_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Sign in or send an X-Session-ID header",
        )
    return QueueCaller(user_id, x_session_id)


async def ensure_can_manage_event(db: AsyncSession, event_id: int, user: User) -> Event:
    """Admins manage every event, organizers their own."""
    event = await db.get(Event, event_id)
    if event is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Event {event_id} not found")
    if not user.is_admin and event.organizer_id != user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed to manage this event")
    return event

