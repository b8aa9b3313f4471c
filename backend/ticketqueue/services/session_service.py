"""
Purchase sessions: admission, cart, extension, completion and expiry.

Every read of a session goes through `_ensure_current`, which applies
read-time (lazy) expiry: a row that is still `active` but past `expires_at` is
expired right there, through the same guarded transition the reconciler
uses, and the caller gets a 410 instead of a stale "active".
"""

from decimal import Decimal
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ticketqueue.core.config import get_settings
from ticketqueue.core.exceptions import (
    InvalidCart,
    ItemUnavailable,
    MaxExtensionsReached,
    NotAuthorized,
    PurchaseLimitReached,
    SessionExpired,
    SessionNotActive,
    SessionNotFound,
)
from ticketqueue.core.logging import get_logger
from ticketqueue.core.metrics import record_admission, session_extensions
from ticketqueue.db.base import utcnow
from ticketqueue.infrastructure.slot_signals import slot_signals
from ticketqueue.models.event import Event
from ticketqueue.models.order import Order, OrderItem, PURCHASED_ORDER_STATUSES
from ticketqueue.models.purchase_session import SESSION_STATUSES, PurchaseSession, cart_total
from ticketqueue.models.queue_entry import LIVE_STATUSES, QueueEntry
from ticketqueue.models.ticket_type import TicketType
from ticketqueue.models.user import User
from ticketqueue.services import inventory, notifications
from ticketqueue.services.positions import reorder_positions
from ticketqueue.services.state import extend_session, grace_deadline, transition_entry, transition_session

logger = get_logger(__name__)
settings = get_settings()


async def contact_email(db: AsyncSession, user_id: Optional[int]) -> Optional[str]:
    if user_id is None:
        return None
    result = await db.execute(select(User.email).where(User.id == user_id))
    return result.scalar_one_or_none()


async def _event_name(db: AsyncSession, event_id: Optional[int]) -> Optional[str]:
    if event_id is None:
        return None
    result = await db.execute(select(Event.name).where(Event.id == event_id))
    return result.scalar_one_or_none()


def log_notification(obj, kind: str, now, attr: str = "notifications", **fields) -> None:
    note = {"type": kind, "sent_at": now.isoformat(), **fields}
    # Reassign so the JSON column is flagged dirty
    setattr(obj, attr, [*(getattr(obj, attr) or []), note])


async def has_completed_order(db: AsyncSession, event_id: int, user_id: Optional[int]) -> bool:
    """Authoritative purchase check: any confirmed/paid/completed order for the event."""
    if user_id is None:
        return False
    result = await db.execute(
        select(func.count(Order.id)).where(
            Order.event_id == event_id,
            Order.user_id == user_id,
            Order.status.in_(PURCHASED_ORDER_STATUSES),
        )
    )
    return (result.scalar() or 0) > 0


async def _linked_entry(db: AsyncSession, session: PurchaseSession) -> Optional[QueueEntry]:
    if session.queue_entry_id is None:
        return None
    return await db.get(QueueEntry, session.queue_entry_id)


# --- Admission --------------------------------------------------------------

async def admit_entry(
    db: AsyncSession,
    entry: QueueEntry,
    event: Event,
    trigger: str = "tick",
    now=None,
) -> Optional[PurchaseSession]:
    """
    Promote a waiting entry to `processing` and open its purchase session.

    Returns None if the entry was no longer waiting (another admitter won).
    """
    now = now or utcnow()
    if not await transition_entry(db, entry, "processing", now):
        return None

    session = PurchaseSession(
        queue_entry_id=entry.id,
        user_id=entry.user_id,
        event_id=entry.event_id,
        session_id=entry.session_id,
        status="active",
        slot_type="vip" if entry.is_priority else "standard",
        started_at=now,
        expires_at=entry.processing_expires_at,
        last_activity=now,
        max_extensions=settings.MAX_SESSION_EXTENSIONS,
        selected_tickets=[],
        notifications=[],
    )
    db.add(session)

    log_notification(entry, "queue_turn", now, attr="notifications_sent")
    entry.last_notification_at = now
    await db.flush()

    record_admission(trigger)
    logger.info(
        "queue_entry_admitted",
        entry_id=entry.id,
        event_id=entry.event_id,
        purchase_session_id=session.id,
        slot_type=session.slot_type,
        trigger=trigger,
    )

    email = await contact_email(db, entry.user_id)
    notifications.dispatch(
        notifications.send_queue_turn(email, event.name, entry.position, settings.PURCHASE_WINDOW_MINUTES)
    )
    return session


# --- Expiry funnel ----------------------------------------------------------

async def finalize_expired_session(
    db: AsyncSession,
    session: PurchaseSession,
    source: str,
    reason: str = "timeout",
    now=None,
) -> bool:
    """
    Expire `session` and settle its queue entry.

    Shared by lazy expiry, the reconciler and the admin override. Whoever wins
    the guarded update runs the side effects; everyone else gets False.
    """
    now = now or utcnow()
    if not await transition_session(db, session, "expired", source, now):
        return False

    entry = await _linked_entry(db, session)
    event_id = session.event_id or (entry.event_id if entry else None)
    freed = False

    if entry is not None and entry.is_live():
        freed = entry.holds_slot()
        if await has_completed_order(db, entry.event_id, session.user_id):
            await transition_entry(
                db, entry, "completed", now,
                admin_notes="Purchase session ended after the user completed an order",
            )
        else:
            was_waiting = entry.status == "waiting"
            await transition_entry(db, entry, "expired", now, processing_expires_at=grace_deadline(now))
            if was_waiting:
                await reorder_positions(db, entry.event_id)

    logger.info(
        "session_expired",
        session_id=session.id,
        queue_entry_id=session.queue_entry_id,
        entry_status=entry.status if entry else None,
        source=source,
        reason=reason,
    )

    if freed and event_id is not None:
        await slot_signals.publish(event_id)

    email = await contact_email(db, session.user_id)
    event_name = await _event_name(db, event_id)
    if event_name:
        notifications.dispatch(notifications.send_session_expired(email, event_name, reason))
    return True


async def _ensure_current(db: AsyncSession, session: PurchaseSession, now=None) -> PurchaseSession:
    """Raise unless `session` is active and inside its window (lazy expiry)."""
    now = now or utcnow()
    if session.status == "active" and session.is_expired(now):
        await finalize_expired_session(db, session, source="lazy", now=now)
        # The request is about to fail with 410; keep the expiry
        await db.commit()

    if session.status == "expired":
        entry = await _linked_entry(db, session)
        raise SessionExpired(
            queue_position=entry.position if entry else None,
            event_name=await _event_name(db, session.event_id),
        )
    if session.status != "active":
        raise SessionNotActive(f"Purchase session is {session.status}", status=session.status)
    return session


async def get_owned_session(db: AsyncSession, session_pk: int, user_id: int) -> PurchaseSession:
    session = await db.get(PurchaseSession, session_pk)
    if session is None:
        raise SessionNotFound("Purchase session not found", session_id=session_pk)
    if session.user_id != user_id:
        raise NotAuthorized("This purchase session belongs to another user")
    return session


async def get_session(db: AsyncSession, session_pk: int, user_id: int, now=None) -> PurchaseSession:
    """Snapshot read: terminal sessions are returned as-is, stale active ones expired first."""
    session = await get_owned_session(db, session_pk, user_id)
    now = now or utcnow()
    if session.status == "active" and session.is_expired(now):
        await _ensure_current(db, session, now)
    return session


async def get_active_session(db: AsyncSession, event_id: int, user_id: int, now=None) -> PurchaseSession:
    result = await db.execute(
        select(PurchaseSession)
        .where(
            PurchaseSession.event_id == event_id,
            PurchaseSession.user_id == user_id,
            PurchaseSession.status == "active",
        )
        .order_by(PurchaseSession.started_at.desc())
        .limit(1)
    )
    session = result.scalar_one_or_none()
    if session is not None:
        return await _ensure_current(db, session, now)

    result = await db.execute(
        select(PurchaseSession)
        .where(PurchaseSession.event_id == event_id, PurchaseSession.user_id == user_id)
        .order_by(PurchaseSession.started_at.desc())
        .limit(1)
    )
    latest = result.scalar_one_or_none()
    if latest is not None and latest.status == "expired":
        await _ensure_current(db, latest, now)
    raise SessionNotFound("No active purchase session for this event", event_id=event_id)


# --- Cart -------------------------------------------------------------------

async def _check_line(db: AsyncSession, session: PurchaseSession, ticket_type_id: int, quantity: int, now):
    ticket_type = await db.get(TicketType, ticket_type_id)
    if ticket_type is None or ticket_type.event_id != session.event_id:
        raise InvalidCart("Ticket type does not belong to this event", ticket_type_id=ticket_type_id)

    check = await inventory.can_purchase_with_limit(db, ticket_type, quantity, session.user_id, now)
    if not check.allowed:
        if check.limit_reached:
            raise PurchaseLimitReached(check.reason, ticket_type_id=ticket_type_id)
        raise ItemUnavailable(check.reason, ticket_type_id=ticket_type_id)
    return ticket_type


async def add_items(db: AsyncSession, session_pk: int, user_id: int, items: list[dict], now=None) -> PurchaseSession:
    """
    Add tickets to the cart. Stock and per-user allowance are checked against
    the inventory as it is now, for the combined quantity per ticket type.
    """
    now = now or utcnow()
    session = await _ensure_current(db, await get_owned_session(db, session_pk, user_id), now)

    cart = [dict(line) for line in session.selected_tickets or []]
    for item in items:
        if item["quantity"] <= 0:
            raise InvalidCart("Quantity must be positive", ticket_type_id=item["ticket_type_id"])

        line = next((l for l in cart if l["ticket_type_id"] == item["ticket_type_id"]), None)
        combined = item["quantity"] + (line["quantity"] if line else 0)
        ticket_type = await _check_line(db, session, item["ticket_type_id"], combined, now)

        if line is None:
            cart.append({
                "ticket_type_id": ticket_type.id,
                "name": ticket_type.name,
                "quantity": combined,
                "unit_price": str(ticket_type.price),
            })
        else:
            line.update(quantity=combined, unit_price=str(ticket_type.price))

    session.selected_tickets = cart
    session.total_amount = cart_total(cart)
    session.last_activity = now
    await db.flush()

    logger.info("session_items_added", session_id=session.id, lines=len(cart), total=str(session.total_amount))
    return session


async def remove_items(
    db: AsyncSession,
    session_pk: int,
    user_id: int,
    ticket_type_id: int,
    quantity: Optional[int] = None,
    now=None,
) -> PurchaseSession:
    now = now or utcnow()
    session = await _ensure_current(db, await get_owned_session(db, session_pk, user_id), now)

    cart = []
    for line in session.selected_tickets or []:
        line = dict(line)
        if line["ticket_type_id"] == ticket_type_id:
            if quantity is None or quantity >= line["quantity"]:
                continue
            line["quantity"] -= quantity
        cart.append(line)

    session.selected_tickets = cart
    session.total_amount = cart_total(cart)
    session.last_activity = now
    await db.flush()
    return session


async def clear_items(db: AsyncSession, session_pk: int, user_id: int, now=None) -> PurchaseSession:
    now = now or utcnow()
    session = await _ensure_current(db, await get_owned_session(db, session_pk, user_id), now)
    session.selected_tickets = []
    session.total_amount = cart_total([])
    session.last_activity = now
    await db.flush()
    return session


async def update_customer_info(db: AsyncSession, session_pk: int, user_id: int, info: dict, now=None) -> PurchaseSession:
    now = now or utcnow()
    session = await _ensure_current(db, await get_owned_session(db, session_pk, user_id), now)
    session.customer_info = {**(session.customer_info or {}), **info}
    session.last_activity = now
    await db.flush()
    return session


async def extend(db: AsyncSession, session_pk: int, user_id: int, minutes: Optional[int] = None, now=None) -> PurchaseSession:
    now = now or utcnow()
    minutes = minutes or settings.SESSION_EXTENSION_MINUTES
    try:
        session = await _ensure_current(db, await get_owned_session(db, session_pk, user_id), now)
        try:
            await extend_session(db, session, minutes, now)
        except SessionExpired:
            # Lost the race to an expiry path after the read
            await _ensure_current(db, session, now)
            raise
    except MaxExtensionsReached:
        session_extensions.labels(result="limit_reached").inc()
        raise
    except (SessionNotActive, SessionExpired):
        session_extensions.labels(result="not_active").inc()
        raise

    session_extensions.labels(result="extended").inc()
    logger.info(
        "session_extended",
        session_id=session.id,
        minutes=minutes,
        extension_count=session.extension_count,
        expires_at=session.expires_at.isoformat(),
    )
    return session


# --- Terminal transitions ---------------------------------------------------

async def record_order_completion(db: AsyncSession, event_id: int, user_id: Optional[int], now=None) -> Optional[QueueEntry]:
    """Complete the user's live queue entry for `event_id` after a successful order."""
    if user_id is None:
        return None
    result = await db.execute(
        select(QueueEntry).where(
            QueueEntry.event_id == event_id,
            QueueEntry.user_id == user_id,
            QueueEntry.status.in_(LIVE_STATUSES),
        )
    )
    entry = result.scalar_one_or_none()
    if entry is None:
        return None

    held_slot = entry.holds_slot()
    was_waiting = entry.status == "waiting"
    if not await transition_entry(db, entry, "completed", now):
        return entry

    if was_waiting:
        await reorder_positions(db, event_id)
    if held_slot:
        await slot_signals.publish(event_id)
    return entry


async def complete_purchase(
    db: AsyncSession,
    session_pk: int,
    user_id: int,
    payment_method: Optional[str] = None,
    now=None,
) -> Order:
    """
    Turn the cart into a confirmed order.

    Inventory decrement, order insert and both status transitions share the
    request transaction: any failure rolls all of them back.
    """
    now = now or utcnow()
    session = await _ensure_current(db, await get_owned_session(db, session_pk, user_id), now)

    cart = session.selected_tickets or []
    if not cart:
        raise InvalidCart("No tickets selected")

    order_items = []
    for line in cart:
        ticket_type = await _check_line(db, session, line["ticket_type_id"], line["quantity"], now)
        await inventory.reserve_quantity(db, ticket_type, line["quantity"])
        total = ticket_type.price * line["quantity"]
        order_items.append(
            OrderItem(
                ticket_type_id=ticket_type.id,
                quantity=line["quantity"],
                unit_price=ticket_type.price,
                total_price=total,
            )
        )

    customer = session.customer_info or {}
    order = Order(
        user_id=user_id,
        event_id=session.event_id,
        purchase_session_id=session.id,
        status="confirmed",
        total_amount=sum((item.total_price for item in order_items), Decimal("0.00")),
        currency=session.currency,
        payment_method=payment_method,
        customer_name=customer.get("name"),
        customer_email=customer.get("email") or await contact_email(db, user_id),
        customer_phone=customer.get("phone"),
        items=order_items,
    )
    db.add(order)
    await db.flush()

    if not await transition_session(db, session, "completed", "user", now):
        # Expired or abandoned under us; abort the whole order
        await _ensure_current(db, session, now)

    await record_order_completion(db, session.event_id, user_id, now)

    logger.info(
        "purchase_completed",
        order_id=order.id,
        session_id=session.id,
        event_id=session.event_id,
        user_id=user_id,
        total=str(order.total_amount),
    )
    return order


async def abandon_session(db: AsyncSession, session_pk: int, user_id: int, now=None) -> PurchaseSession:
    now = now or utcnow()
    session = await _ensure_current(db, await get_owned_session(db, session_pk, user_id), now)

    if not await transition_session(db, session, "abandoned", "user", now):
        return session

    entry = await _linked_entry(db, session)
    if entry is not None and entry.is_live():
        held_slot = entry.holds_slot()
        await transition_entry(db, entry, "abandoned", now)
        if held_slot:
            await slot_signals.publish(entry.event_id)
    return session


async def session_statistics(db: AsyncSession, event_id: int) -> dict:
    result = await db.execute(
        select(PurchaseSession.status, func.count(PurchaseSession.id))
        .where(PurchaseSession.event_id == event_id)
        .group_by(PurchaseSession.status)
    )
    counts = {status: 0 for status in SESSION_STATUSES}
    counts.update({status: count for status, count in result.all()})
    total = sum(counts.values())

    result = await db.execute(
        select(PurchaseSession.started_at, PurchaseSession.completed_at).where(
            PurchaseSession.event_id == event_id,
            PurchaseSession.status == "completed",
            PurchaseSession.completed_at.is_not(None),
        )
    )
    durations = [(completed - started).total_seconds() for started, completed in result.all()]

    result = await db.execute(
        select(func.avg(PurchaseSession.extension_count)).where(PurchaseSession.event_id == event_id)
    )
    avg_extensions = result.scalar()

    return {
        "event_id": event_id,
        "total": total,
        "by_status": counts,
        "conversion_rate": round(counts["completed"] / total * 100, 2) if total else 0.0,
        "average_duration_seconds": int(sum(durations) / len(durations)) if durations else None,
        "average_extensions": round(float(avg_extensions), 2) if avg_extensions is not None else 0.0,
    }
