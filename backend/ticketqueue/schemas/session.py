"""
Pydantic schemas for purchase sessions, cart changes and orders.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, EmailStr, Field

from ticketqueue.db.base import utcnow

SESSION_COMPUTED_FIELDS = {"remaining_time", "remaining_time_string", "can_extend"}


class CartLine(BaseModel):
    ticket_type_id: int
    name: str
    quantity: int
    unit_price: Decimal


class PurchaseSessionResponse(BaseModel):
    id: int
    queue_entry_id: Optional[int] = None
    user_id: Optional[int] = None
    event_id: Optional[int] = None
    status: str
    slot_type: str
    started_at: datetime
    expires_at: datetime
    completed_at: Optional[datetime] = None
    extension_count: int
    max_extensions: int
    selected_tickets: list[CartLine] = []
    total_amount: Optional[Decimal] = None
    currency: str
    customer_info: Optional[dict] = None

    remaining_time: int = 0
    remaining_time_string: str = "0:00"
    can_extend: bool = False

    @classmethod
    def from_session(cls, session, now=None):
        now = now or utcnow()
        columns = {
            name: getattr(session, name)
            for name in cls.model_fields
            if name not in SESSION_COMPUTED_FIELDS
        }
        columns["selected_tickets"] = columns["selected_tickets"] or []
        return cls(
            **columns,
            remaining_time=session.remaining_time(now),
            remaining_time_string=session.remaining_time_string(now),
            can_extend=session.is_active() and session.extension_count < session.max_extensions,
        )


class CartItemRequest(BaseModel):
    ticket_type_id: int
    quantity: int = Field(..., gt=0, le=50)


class AddItemsRequest(BaseModel):
    items: list[CartItemRequest] = Field(..., min_length=1)


class RemoveItemsRequest(BaseModel):
    ticket_type_id: int
    quantity: Optional[int] = Field(default=None, gt=0)


class CustomerInfoRequest(BaseModel):
    name: Optional[str] = Field(default=None, max_length=200)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(default=None, max_length=50)


class ExtendRequest(BaseModel):
    minutes: Optional[int] = Field(default=None, ge=1, le=10)


class CompletePurchaseRequest(BaseModel):
    payment_method: Optional[str] = Field(default=None, max_length=50)


class OrderItemResponse(BaseModel):
    ticket_type_id: int
    quantity: int
    unit_price: Decimal
    total_price: Decimal

    model_config = {"from_attributes": True}


class OrderResponse(BaseModel):
    id: int
    event_id: int
    purchase_session_id: Optional[int] = None
    status: str
    total_amount: Decimal
    currency: str
    items: list[OrderItemResponse]
    created_at: datetime

    model_config = {"from_attributes": True}


class SessionStatsResponse(BaseModel):
    event_id: int
    total: int
    by_status: dict[str, int]
    conversion_rate: float
    average_duration_seconds: Optional[int] = None
    average_extensions: float = 0.0


class ExpiryStatsResponse(BaseModel):
    last_10_minutes: int
    last_hour: int
    last_24_hours: int
    overdue_active: int
