"""
Queue entry: one admission-queue membership for an (event, user-or-session) pair.

Key design decisions:
- Status transitions are planned here and persisted by a compare-and-swap
  UPDATE in the service layer (see services/state.py), so the reconciler and
  request handlers cannot race into conflicting terminal states.
- Terminal entries never transition again; re-invoking a terminal operation
  is a silent no-op.
- Rows are never deleted by the lifecycle. Rejoin purges the caller's previous
  rows before inserting, which keeps (event_id, user_id) unique.
"""

from datetime import timedelta
from typing import Optional

from sqlalchemy import Boolean, Column, ForeignKey, Index, Integer, JSON, String, Text, UniqueConstraint

from ticketqueue.core.exceptions import InvalidTransition
from ticketqueue.db.base import Base, TimestampMixin, UTCDateTime, utcnow

ENTRY_STATUSES = (
    "waiting_room",  # legacy pre-sale holding state, never produced
    "waiting",
    "active",
    "processing",
    "completed",
    "abandoned",
    "expired",
    "cancelled",
    "left",
)
LIVE_STATUSES = ("waiting", "active", "processing")
SLOT_HOLDING_STATUSES = ("active", "processing")
TERMINAL_STATUSES = ("completed", "abandoned", "expired", "cancelled", "left")

ALLOWED_SOURCES = {
    "processing": ("waiting",),
    "completed": LIVE_STATUSES,
    "abandoned": LIVE_STATUSES,
    "left": LIVE_STATUSES,
    "expired": LIVE_STATUSES,
    "cancelled": LIVE_STATUSES,
}

ENTRY_SOURCES = ("standard", "emergency", "admin", "vip")


class QueueEntry(Base, TimestampMixin):
    __tablename__ = "queue_entries"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(Integer, ForeignKey("events.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    session_id = Column(String(255), nullable=False, index=True)

    position = Column(Integer, nullable=False)
    is_priority = Column(Boolean, nullable=False, default=False)
    status = Column(String(20), nullable=False, default="waiting")
    source = Column(String(20), nullable=False, default="standard")

    entered_at = Column(UTCDateTime, nullable=False, default=utcnow)
    waiting_room_entered_at = Column(UTCDateTime, nullable=True)
    queue_joined_at = Column(UTCDateTime, nullable=True)
    processing_started_at = Column(UTCDateTime, nullable=True)
    # Purchase deadline while processing; grace deadline once expired
    processing_expires_at = Column(UTCDateTime, nullable=True)
    completed_at = Column(UTCDateTime, nullable=True)

    # Seconds, computed on transition and kept for reporting
    total_wait_time = Column(Integer, nullable=True)
    processing_time = Column(Integer, nullable=True)
    estimated_wait_seconds = Column(Integer, nullable=True)

    admin_notes = Column(Text, nullable=True)
    admin_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    notifications_sent = Column(JSON, nullable=True, default=list)
    last_notification_at = Column(UTCDateTime, nullable=True)
    client_info = Column(JSON, nullable=True)

    __table_args__ = (
        UniqueConstraint("event_id", "user_id", name="uq_queue_entry_event_user"),
        Index("ix_queue_entries_event_status", "event_id", "status"),
        Index("ix_queue_entries_event_position", "event_id", "position"),
        Index("ix_queue_entries_status_expires", "status", "processing_expires_at"),
    )

    # --- State queries -----------------------------------------------------

    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def holds_slot(self) -> bool:
        return self.status in SLOT_HOLDING_STATUSES

    def in_grace_period(self, now=None) -> bool:
        """Expired entries keep a short grace window before rejoin is allowed."""
        now = now or utcnow()
        return (
            self.status == "expired"
            and self.processing_expires_at is not None
            and now <= self.processing_expires_at
        )

    def wait_time(self, now=None) -> int:
        if self.total_wait_time is not None:
            return self.total_wait_time
        end = self.processing_started_at or now or utcnow()
        return max(0, int((end - self.entered_at).total_seconds()))

    def current_processing_time(self, now=None) -> int:
        if self.processing_time is not None:
            return self.processing_time
        if not self.processing_started_at:
            return 0
        end = self.completed_at or now or utcnow()
        return max(0, int((end - self.processing_started_at).total_seconds()))

    def remaining_processing_time(self, now=None) -> int:
        if self.status not in SLOT_HOLDING_STATUSES or not self.processing_expires_at:
            return 0
        now = now or utcnow()
        return max(0, int((self.processing_expires_at - now).total_seconds()))

    def estimated_wait_string(self) -> Optional[str]:
        return format_wait(self.estimated_wait_seconds)

    # --- Transitions -------------------------------------------------------

    def plan_transition(self, target: str, now=None, window_minutes: int = 8) -> Optional[dict]:
        """
        Column values for moving to `target`, or None for an idempotent no-op.

        Raises InvalidTransition when `target` can never follow the current
        status (for example promoting an entry that is not waiting).
        """
        if target not in ALLOWED_SOURCES:
            raise InvalidTransition(f"Unknown queue entry status '{target}'", status=target)

        now = now or utcnow()
        if self.status not in ALLOWED_SOURCES[target]:
            if target != "processing" and (self.status == target or self.is_terminal()):
                return None
            raise InvalidTransition(
                f"Cannot move queue entry from {self.status} to {target}",
                current_status=self.status,
                requested_status=target,
            )

        values = {"status": target}
        if target == "processing":
            values.update(
                processing_started_at=now,
                processing_expires_at=now + timedelta(minutes=window_minutes),
                total_wait_time=max(0, int((now - self.entered_at).total_seconds())),
            )
        elif target == "completed":
            values["completed_at"] = now
            if self.processing_started_at:
                values["processing_time"] = max(
                    0, int((now - self.processing_started_at).total_seconds())
                )
        return values

    def __repr__(self) -> str:
        return (
            f"<QueueEntry(id={self.id}, event={self.event_id}, user={self.user_id}, "
            f"position={self.position}, status={self.status})>"
        )


def format_wait(seconds: Optional[int]) -> Optional[str]:
    if not seconds:
        return None
    minutes, secs = divmod(int(seconds), 60)
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"
