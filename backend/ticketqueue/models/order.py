"""
Orders created when a purchase session completes.

Orders are the authoritative record of what a user bought: the reconcilers
re-derive queue outcomes and per-user allowances from this table rather than
from session state.
"""

from sqlalchemy import CheckConstraint, Column, ForeignKey, Index, Integer, Numeric, String
from sqlalchemy.orm import relationship

from ticketqueue.db.base import Base, TimestampMixin

ORDER_STATUSES = ("pending", "confirmed", "paid", "completed", "cancelled", "refunded", "failed")
# Orders that count as a real purchase
PURCHASED_ORDER_STATUSES = ("confirmed", "paid", "completed")


class Order(Base, TimestampMixin):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    event_id = Column(Integer, ForeignKey("events.id", ondelete="CASCADE"), nullable=False, index=True)
    purchase_session_id = Column(Integer, ForeignKey("purchase_sessions.id"), nullable=True)
    status = Column(String(20), nullable=False, default="pending")
    total_amount = Column(Numeric(10, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="USD")
    payment_method = Column(String(50), nullable=True)
    customer_name = Column(String(200), nullable=True)
    customer_email = Column(String(255), nullable=True)
    customer_phone = Column(String(50), nullable=True)

    items = relationship("OrderItem", back_populates="order", lazy="selectin", cascade="all, delete-orphan")

    __table_args__ = (
        Index("ix_orders_user_event_status", "user_id", "event_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<Order(id={self.id}, user={self.user_id}, event={self.event_id}, status={self.status})>"


class OrderItem(Base, TimestampMixin):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    ticket_type_id = Column(Integer, ForeignKey("ticket_types.id"), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)
    total_price = Column(Numeric(10, 2), nullable=False)

    order = relationship("Order", back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="check_order_item_quantity_positive"),
    )
