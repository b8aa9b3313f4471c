"""
Purchase session: the time-boxed window in which an admitted user may check out.

`expires_at` only ever moves forward (extensions). `is_expired()` is a pure
query; the actual transition to `expired` happens through the guarded update
in services/state.py, whichever of the read path or the reconciler gets
there first.
"""

from datetime import timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import Column, ForeignKey, Index, Integer, JSON, Numeric, String, Text

from ticketqueue.core.exceptions import InvalidTransition, MaxExtensionsReached, SessionExpired, SessionNotActive
from ticketqueue.db.base import Base, TimestampMixin, UTCDateTime, utcnow

SESSION_STATUSES = ("active", "completed", "abandoned", "expired", "cancelled")
SESSION_TERMINAL_STATUSES = ("completed", "abandoned", "expired", "cancelled")
SLOT_TYPES = ("standard", "emergency", "vip", "admin")


class PurchaseSession(Base, TimestampMixin):
    __tablename__ = "purchase_sessions"

    id = Column(Integer, primary_key=True, index=True)
    queue_entry_id = Column(Integer, ForeignKey("queue_entries.id", ondelete="SET NULL"), nullable=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    event_id = Column(Integer, ForeignKey("events.id", ondelete="CASCADE"), nullable=True, index=True)
    session_id = Column(String(255), nullable=False)

    status = Column(String(20), nullable=False, default="active")
    slot_type = Column(String(20), nullable=False, default="standard")

    started_at = Column(UTCDateTime, nullable=False, default=utcnow)
    expires_at = Column(UTCDateTime, nullable=False)
    completed_at = Column(UTCDateTime, nullable=True)
    last_activity = Column(UTCDateTime, nullable=True)

    extension_count = Column(Integer, nullable=False, default=0)
    max_extensions = Column(Integer, nullable=False, default=2)

    # Cart: [{"ticket_type_id", "name", "quantity", "unit_price"}]
    selected_tickets = Column(JSON, nullable=False, default=list)
    total_amount = Column(Numeric(10, 2), nullable=True)
    currency = Column(String(3), nullable=False, default="USD")
    customer_info = Column(JSON, nullable=True)

    notifications = Column(JSON, nullable=True, default=list)
    admin_notes = Column(Text, nullable=True)
    created_by_admin = Column(Integer, ForeignKey("users.id"), nullable=True)

    __table_args__ = (
        Index("ix_purchase_sessions_status_expires", "status", "expires_at"),
    )

    def is_active(self) -> bool:
        return self.status == "active"

    def is_expired(self, now=None) -> bool:
        return (now or utcnow()) > self.expires_at

    def remaining_time(self, now=None) -> int:
        if self.status != "active":
            return 0
        return max(0, int((self.expires_at - (now or utcnow())).total_seconds()))

    def remaining_time_string(self, now=None) -> str:
        minutes, seconds = divmod(self.remaining_time(now), 60)
        return f"{minutes}:{seconds:02d}"

    def total_quantity(self) -> int:
        return sum(item["quantity"] for item in self.selected_tickets or [])

    def duration(self, now=None) -> int:
        end = self.completed_at or now or utcnow()
        return max(0, int((end - self.started_at).total_seconds()))

    def plan_transition(self, target: str, now=None) -> Optional[dict]:
        """Values for a terminal transition, or None if already terminal."""
        if target not in SESSION_TERMINAL_STATUSES:
            raise InvalidTransition(f"Unknown purchase session status '{target}'", status=target)
        if self.status != "active":
            return None

        now = now or utcnow()
        values = {"status": target, "last_activity": now}
        if target == "completed":
            values["completed_at"] = now
        return values

    def plan_extension(self, minutes: int, now=None) -> dict:
        if self.status == "expired" or (self.status == "active" and self.is_expired(now)):
            raise SessionExpired()
        if self.status != "active":
            raise SessionNotActive(
                "Can only extend active sessions",
                status=self.status,
            )
        if self.extension_count >= self.max_extensions:
            raise MaxExtensionsReached(
                "Maximum number of extensions reached",
                max_extensions=self.max_extensions,
                current_extensions=self.extension_count,
            )
        return {
            "expires_at": self.expires_at + timedelta(minutes=minutes),
            "extension_count": self.extension_count + 1,
            "last_activity": now or utcnow(),
        }

    def __repr__(self) -> str:
        return f"<PurchaseSession(id={self.id}, entry={self.queue_entry_id}, status={self.status})>"


def cart_total(items: list[dict]) -> Decimal:
    return sum(
        (Decimal(str(item["unit_price"])) * item["quantity"] for item in items),
        Decimal("0.00"),
    )
