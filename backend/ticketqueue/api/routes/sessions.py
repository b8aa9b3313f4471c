"""
Purchase session endpoints: cart, extension, completion, abandon.

An expired session answers 410 with code SESSION_EXPIRED, even when the
background reconciler has not swept it yet.
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from ticketqueue.core.security import get_current_user_id
from ticketqueue.db.session import get_db
from ticketqueue.schemas.session import (
    AddItemsRequest,
    CompletePurchaseRequest,
    CustomerInfoRequest,
    ExtendRequest,
    OrderResponse,
    PurchaseSessionResponse,
    RemoveItemsRequest,
)
from ticketqueue.services import session_service

router = APIRouter(prefix="/sessions", tags=["Purchase Sessions"])


@router.get("/events/{event_id}/active", response_model=PurchaseSessionResponse)
async def active_session(
    event_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    session = await session_service.get_active_session(db, event_id, user_id)
    return PurchaseSessionResponse.from_session(session)


@router.get("/{session_id}", response_model=PurchaseSessionResponse)
async def get_session(
    session_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    session = await session_service.get_session(db, session_id, user_id)
    return PurchaseSessionResponse.from_session(session)


@router.post("/{session_id}/items", response_model=PurchaseSessionResponse)
async def add_items(
    session_id: int,
    body: AddItemsRequest,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """Add tickets; availability and the per-user limit are checked against current inventory."""
    session = await session_service.add_items(
        db, session_id, user_id, [item.model_dump() for item in body.items]
    )
    return PurchaseSessionResponse.from_session(session)


@router.delete("/{session_id}/items/all", response_model=PurchaseSessionResponse)
async def clear_items(
    session_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    session = await session_service.clear_items(db, session_id, user_id)
    return PurchaseSessionResponse.from_session(session)


@router.delete("/{session_id}/items", response_model=PurchaseSessionResponse)
async def remove_items(
    session_id: int,
    body: RemoveItemsRequest,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """Remove a ticket type from the cart, or only `quantity` of it."""
    session = await session_service.remove_items(db, session_id, user_id, body.ticket_type_id, body.quantity)
    return PurchaseSessionResponse.from_session(session)


@router.patch("/{session_id}/customer", response_model=PurchaseSessionResponse)
async def update_customer(
    session_id: int,
    body: CustomerInfoRequest,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    session = await session_service.update_customer_info(
        db, session_id, user_id, body.model_dump(exclude_none=True)
    )
    return PurchaseSessionResponse.from_session(session)


@router.post("/{session_id}/extend", response_model=PurchaseSessionResponse)
async def extend_session(
    session_id: int,
    body: ExtendRequest = ExtendRequest(),
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """
    Add time to the purchase window.

    400 MAX_EXTENSIONS_REACHED once the cap is used up; 409 SESSION_NOT_ACTIVE
    for a session that already ended; 410 SESSION_EXPIRED if the window ran out.
    """
    session = await session_service.extend(db, session_id, user_id, body.minutes)
    return PurchaseSessionResponse.from_session(session)


@router.post("/{session_id}/complete", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
async def complete_purchase(
    session_id: int,
    body: CompletePurchaseRequest = CompletePurchaseRequest(),
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """Create the order and close the session and queue entry in one transaction."""
    return await session_service.complete_purchase(db, session_id, user_id, body.payment_method)


@router.post("/{session_id}/abandon", response_model=PurchaseSessionResponse)
async def abandon_session(
    session_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    session = await session_service.abandon_session(db, session_id, user_id)
    return PurchaseSessionResponse.from_session(session)
