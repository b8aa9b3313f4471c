"""
Event model: sale window and admission-control settings.

Key design decisions:
- `concurrent_users` is the concurrency cap: the maximum number of queue
  entries that may hold a purchase slot at the same time.
- `available_tickets` is denormalized for the sold-out check (avoids summing
  ticket types on every admission tick).
- `version` column enables optimistic locking on inventory decrements.
"""

from sqlalchemy import CheckConstraint, Column, ForeignKey, Index, Integer, String, Text

from ticketqueue.db.base import Base, TimestampMixin, UTCDateTime

EVENT_STATUSES = ("draft", "active", "sale_started", "sale_ended", "completed", "cancelled")
CLOSED_EVENT_STATUSES = ("cancelled", "completed")


class Event(Base, TimestampMixin):
    __tablename__ = "events"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    venue = Column(String(200), nullable=True)
    status = Column(String(20), nullable=False, default="draft")

    starts_at = Column(UTCDateTime, nullable=False)
    ends_at = Column(UTCDateTime, nullable=False)
    sale_starts_at = Column(UTCDateTime, nullable=False)
    sale_ends_at = Column(UTCDateTime, nullable=False)

    total_tickets = Column(Integer, nullable=False)
    available_tickets = Column(Integer, nullable=False)
    concurrent_users = Column(Integer, nullable=False, default=1)
    organizer_id = Column(Integer, ForeignKey("users.id"), nullable=True)

    # Optimistic locking version counter
    version = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        CheckConstraint("available_tickets >= 0", name="check_event_available_non_negative"),
        CheckConstraint("concurrent_users BETWEEN 1 AND 50", name="check_event_concurrent_users"),
        Index("ix_events_status_sale", "status", "sale_starts_at", "sale_ends_at"),
    )

    def is_closed(self) -> bool:
        return self.status in CLOSED_EVENT_STATUSES

    def is_sale_open(self, now) -> bool:
        return self.sale_starts_at <= now <= self.sale_ends_at

    def __repr__(self) -> str:
        return f"<Event(id={self.id}, name={self.name}, status={self.status})>"
