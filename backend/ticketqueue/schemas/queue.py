"""
Pydantic schemas for queue entries and the admin queue endpoints.
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field

from ticketqueue.db.base import utcnow
from ticketqueue.schemas.session import PurchaseSessionResponse

ENTRY_COMPUTED_FIELDS = {"estimated_wait_string", "remaining_processing_time", "positions_ahead", "in_grace_period"}


class QueueEntryResponse(BaseModel):
    id: int
    event_id: int
    user_id: Optional[int] = None
    session_id: str
    position: int
    is_priority: bool
    status: str
    source: str
    entered_at: datetime
    processing_started_at: Optional[datetime] = None
    processing_expires_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    total_wait_time: Optional[int] = None
    processing_time: Optional[int] = None
    estimated_wait_seconds: Optional[int] = None
    admin_notes: Optional[str] = None

    # Computed at read time
    estimated_wait_string: Optional[str] = None
    remaining_processing_time: int = 0
    positions_ahead: Optional[int] = None
    in_grace_period: bool = False

    @classmethod
    def from_entry(cls, entry, positions_ahead: Optional[int] = None, now=None, **extra):
        now = now or utcnow()
        # Computed fields share names with QueueEntry methods, so columns are copied explicitly
        columns = {
            name: getattr(entry, name)
            for name in cls.model_fields
            if name not in ENTRY_COMPUTED_FIELDS and hasattr(entry, name)
        }
        return cls(
            **columns,
            estimated_wait_string=entry.estimated_wait_string() if entry.status == "waiting" else None,
            remaining_processing_time=entry.remaining_processing_time(now),
            positions_ahead=positions_ahead,
            in_grace_period=entry.in_grace_period(now),
            **extra,
        )


class JoinQueueRequest(BaseModel):
    client_info: Optional[dict] = None


class JoinQueueResponse(QueueEntryResponse):
    already_queued: bool = False


class PriorityRequest(BaseModel):
    is_priority: bool = True
    reason: Optional[str] = Field(default=None, max_length=500)


class EntryStatusUpdate(BaseModel):
    status: Literal["processing", "completed", "abandoned", "expired", "cancelled"]
    notes: Optional[str] = Field(default=None, max_length=500)


class QueueEntryListResponse(BaseModel):
    items: list[QueueEntryResponse]
    total: int
    page: int
    page_size: int


class ProcessNextResponse(BaseModel):
    entry: QueueEntryResponse
    session: PurchaseSessionResponse


class QueueStatsResponse(BaseModel):
    event_id: int
    total: int
    by_status: dict[str, int]
    average_wait_seconds: Optional[int] = None
    average_processing_seconds: Optional[int] = None
    auto_processing: bool = False
