"""
Ticket inventory and per-user purchase allowance checks.

Allowances are always recomputed from the orders table at call time; nothing
is cached on the queue entry or purchase session, because an order can be
created out-of-band (admin or back-office) at any moment.
"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ticketqueue.core.exceptions import InventoryConflict
from ticketqueue.core.logging import get_logger
from ticketqueue.db.base import utcnow
from ticketqueue.models.event import Event
from ticketqueue.models.order import Order, OrderItem, PURCHASED_ORDER_STATUSES
from ticketqueue.models.ticket_type import TicketType

logger = get_logger(__name__)

MAX_RETRY_ATTEMPTS = 3


@dataclass
class PurchaseCheck:
    allowed: bool
    reason: str
    # Set when the caller hit the per-user cap (as opposed to stock or window)
    limit_reached: bool = False


async def find_available_by_event(db: AsyncSession, event_id: int) -> list[TicketType]:
    """Visible, active ticket types with stock left; empty if the event itself is out."""
    event = await db.get(Event, event_id)
    if event is None or event.available_tickets <= 0:
        return []

    result = await db.execute(
        select(TicketType)
        .where(
            TicketType.event_id == event_id,
            TicketType.status == "active",
            TicketType.is_visible.is_(True),
            TicketType.quantity_sold < TicketType.quantity_total,
        )
        .order_by(TicketType.sort_order.asc(), TicketType.id.asc())
    )
    return list(result.scalars().all())


async def purchased_quantity(db: AsyncSession, ticket_type_id: int, user_id: Optional[int]) -> int:
    """Tickets of this type the user already bought (confirmed/paid/completed orders)."""
    if user_id is None:
        return 0
    result = await db.execute(
        select(func.coalesce(func.sum(OrderItem.quantity), 0))
        .join(Order, Order.id == OrderItem.order_id)
        .where(
            OrderItem.ticket_type_id == ticket_type_id,
            Order.user_id == user_id,
            Order.status.in_(PURCHASED_ORDER_STATUSES),
        )
    )
    return int(result.scalar() or 0)


async def can_purchase_with_limit(
    db: AsyncSession,
    ticket_type: TicketType,
    quantity: int,
    user_id: Optional[int],
    now=None,
) -> PurchaseCheck:
    now = now or utcnow()

    if user_id is None:
        return PurchaseCheck(False, "User authentication required")

    if not ticket_type.is_on_sale(now):
        return PurchaseCheck(False, "Ticket type is not available for purchase")

    if quantity > ticket_type.available_quantity:
        return PurchaseCheck(False, f"Only {ticket_type.available_quantity} tickets available")

    if quantity > ticket_type.max_per_order:
        return PurchaseCheck(False, f"Maximum {ticket_type.max_per_order} tickets per order allowed")

    already = await purchased_quantity(db, ticket_type.id, user_id)
    remaining = max(0, ticket_type.max_per_user - already)
    if quantity > remaining:
        return PurchaseCheck(
            False,
            f"You can only purchase {remaining} more tickets of type {ticket_type.name} "
            f"(limit {ticket_type.max_per_user} per user)",
            limit_reached=True,
        )

    return PurchaseCheck(True, "Purchase allowed")


async def has_user_reached_limit(db: AsyncSession, ticket_type: TicketType, user_id: Optional[int]) -> bool:
    if user_id is None:
        return False
    return await purchased_quantity(db, ticket_type.id, user_id) >= ticket_type.max_per_user


async def has_user_reached_all_event_limits(db: AsyncSession, event_id: int, user_id: Optional[int]) -> bool:
    """True only if the user is capped on every ticket type of the event."""
    if user_id is None:
        return False

    result = await db.execute(select(TicketType).where(TicketType.event_id == event_id))
    ticket_types = list(result.scalars().all())
    if not ticket_types:
        return False

    for ticket_type in ticket_types:
        if not await has_user_reached_limit(db, ticket_type, user_id):
            return False
    return True


async def user_remaining_allowance(db: AsyncSession, event_id: int, user_id: Optional[int]) -> dict[int, int]:
    result = await db.execute(select(TicketType).where(TicketType.event_id == event_id))
    allowance = {}
    for ticket_type in result.scalars().all():
        already = await purchased_quantity(db, ticket_type.id, user_id)
        allowance[ticket_type.id] = max(0, ticket_type.max_per_user - already)
    return allowance


async def reserve_quantity(db: AsyncSession, ticket_type: TicketType, quantity: int) -> None:
    """
    Decrement stock with optimistic locking.

    UPDATE ... WHERE version = :read_version
    AND quantity_sold + :q <= quantity_total. A version conflict re-reads the
    row and retries; running out of stock raises InventoryConflict.
    """
    for attempt in range(1, MAX_RETRY_ATTEMPTS + 1):
        current_version = ticket_type.version
        result = await db.execute(
            update(TicketType)
            .where(
                TicketType.id == ticket_type.id,
                TicketType.version == current_version,
                TicketType.quantity_sold + quantity <= TicketType.quantity_total,
            )
            .values(
                quantity_sold=TicketType.quantity_sold + quantity,
                version=TicketType.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            break

        await db.refresh(ticket_type)
        if ticket_type.available_quantity < quantity or attempt == MAX_RETRY_ATTEMPTS:
            logger.warning(
                "inventory_conflict",
                ticket_type_id=ticket_type.id,
                requested=quantity,
                available=ticket_type.available_quantity,
                attempt=attempt,
            )
            raise InventoryConflict(
                f"Only {ticket_type.available_quantity} tickets of type {ticket_type.name} left",
                ticket_type_id=ticket_type.id,
                available=ticket_type.available_quantity,
            )
        logger.info("inventory_retry", ticket_type_id=ticket_type.id, attempt=attempt)

    await db.execute(
        update(Event)
        .where(Event.id == ticket_type.event_id, Event.available_tickets >= quantity)
        .values(
            available_tickets=Event.available_tickets - quantity,
            version=Event.version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    await db.refresh(ticket_type)
