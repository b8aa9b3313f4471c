"""
Ticket type inventory with per-order and per-user purchase caps.
"""

from sqlalchemy import Boolean, CheckConstraint, Column, ForeignKey, Integer, Numeric, String

from ticketqueue.db.base import Base, TimestampMixin, UTCDateTime


class TicketType(Base, TimestampMixin):
    __tablename__ = "ticket_types"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(Integer, ForeignKey("events.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    price = Column(Numeric(10, 2), nullable=False, default=0)
    quantity_total = Column(Integer, nullable=False)
    quantity_sold = Column(Integer, nullable=False, default=0)
    max_per_order = Column(Integer, nullable=False, default=10)
    max_per_user = Column(Integer, nullable=False, default=10)
    status = Column(String(20), nullable=False, default="active")  # active, inactive, sold_out, cancelled
    is_visible = Column(Boolean, nullable=False, default=True)
    sale_starts_at = Column(UTCDateTime, nullable=True)
    sale_ends_at = Column(UTCDateTime, nullable=True)
    sort_order = Column(Integer, nullable=False, default=0)

    version = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        CheckConstraint("quantity_sold >= 0", name="check_ticket_type_sold_non_negative"),
        CheckConstraint("quantity_sold <= quantity_total", name="check_ticket_type_sold_lte_total"),
        CheckConstraint("max_per_user >= 1", name="check_ticket_type_max_per_user"),
    )

    @property
    def available_quantity(self) -> int:
        return max(0, self.quantity_total - self.quantity_sold)

    def is_sold_out(self) -> bool:
        return self.quantity_sold >= self.quantity_total

    def is_available(self) -> bool:
        return self.status == "active" and not self.is_sold_out()

    def is_on_sale(self, now) -> bool:
        if not self.is_available():
            return False
        if self.sale_starts_at and now < self.sale_starts_at:
            return False
        if self.sale_ends_at and now > self.sale_ends_at:
            return False
        return True

    def __repr__(self) -> str:
        return f"<TicketType(id={self.id}, name={self.name}, sold={self.quantity_sold}/{self.quantity_total})>"
