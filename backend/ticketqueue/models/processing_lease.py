"""
Processing lease: which instance runs the admission loop for an event.

Persisting the lease (instead of keeping only an in-memory set) lets a
restarted or second instance resume exactly the events that need processing:
a lease whose heartbeat is older than LEASE_TTL_SECONDS is up for grabs.
"""

from sqlalchemy import Column, ForeignKey, Integer, String

from ticketqueue.db.base import Base, UTCDateTime, utcnow


class ProcessingLease(Base):
    __tablename__ = "processing_leases"

    event_id = Column(Integer, ForeignKey("events.id", ondelete="CASCADE"), primary_key=True)
    owner_id = Column(String(255), nullable=False)
    acquired_at = Column(UTCDateTime, nullable=False, default=utcnow)
    heartbeat_at = Column(UTCDateTime, nullable=False, default=utcnow)

    def is_stale(self, now, ttl_seconds: int) -> bool:
        return (now - self.heartbeat_at).total_seconds() > ttl_seconds

    def __repr__(self) -> str:
        return f"<ProcessingLease(event={self.event_id}, owner={self.owner_id})>"
