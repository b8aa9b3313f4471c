"""
Typed errors raised by the queue and purchase-session services.

Each error carries the HTTP status and a stable machine-readable code; the
API layer maps them 1:1 to JSON responses. Clients switch on `code` to pick a
flow ("rejoin queue" vs "limit reached" vs "wait for sale").
"""

from typing import Any, Optional

from fastapi import status


class QueueError(Exception):
    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = "QUEUE_ERROR"

    def __init__(self, message: str, **detail: Any):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, **self.detail}


# Join rejections
class EventNotFound(QueueError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "EVENT_NOT_FOUND"


class EventNotEligible(QueueError):
    code = "EVENT_NOT_ELIGIBLE"


class NoAvailableTickets(QueueError):
    code = "NO_AVAILABLE_TICKETS"


class PurchaseLimitReached(QueueError):
    code = "PURCHASE_LIMIT_REACHED"


class SaleNotStarted(QueueError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "SALE_NOT_STARTED"


class RejoinGracePeriod(QueueError):
    status_code = status.HTTP_409_CONFLICT
    code = "REJOIN_GRACE_PERIOD"


class IdentityRequired(QueueError):
    code = "IDENTITY_REQUIRED"


# Lookups
class EntryNotFound(QueueError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "QUEUE_ENTRY_NOT_FOUND"


class SessionNotFound(QueueError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "SESSION_NOT_FOUND"


class NotAuthorized(QueueError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "NOT_AUTHORIZED"


# State machine
class InvalidTransition(QueueError):
    status_code = status.HTTP_409_CONFLICT
    code = "INVALID_TRANSITION"


class SessionNotActive(QueueError):
    status_code = status.HTTP_409_CONFLICT
    code = "SESSION_NOT_ACTIVE"


class MaxExtensionsReached(QueueError):
    code = "MAX_EXTENSIONS_REACHED"


class SessionExpired(QueueError):
    """Expected terminal state: the purchase window ran out."""

    status_code = status.HTTP_410_GONE
    code = "SESSION_EXPIRED"

    def __init__(
        self,
        message: str = "Your purchase session has expired",
        queue_position: Optional[int] = None,
        event_name: Optional[str] = None,
        reason: str = "timeout",
    ):
        super().__init__(
            message,
            queue_position=queue_position,
            event_name=event_name,
            reason=reason,
        )


# Cart validation
class InvalidCart(QueueError):
    code = "INVALID_CART"


class ItemUnavailable(QueueError):
    code = "TICKETS_UNAVAILABLE"


class InventoryConflict(QueueError):
    status_code = status.HTTP_409_CONFLICT
    code = "INVENTORY_CONFLICT"
