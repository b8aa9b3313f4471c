from ticketqueue.schemas.user import UserCreate, UserResponse, UserLogin, Token
from ticketqueue.schemas.session import (
    AddItemsRequest, CompletePurchaseRequest, CustomerInfoRequest, ExtendRequest,
    OrderResponse, PurchaseSessionResponse, RemoveItemsRequest, SessionStatsResponse,
)
from ticketqueue.schemas.queue import (
    EntryStatusUpdate, JoinQueueResponse, PriorityRequest, ProcessNextResponse,
    QueueEntryListResponse, QueueEntryResponse, QueueStatsResponse,
)

__all__ = [
    "UserCreate", "UserResponse", "UserLogin", "Token",
    "AddItemsRequest", "CompletePurchaseRequest", "CustomerInfoRequest", "ExtendRequest",
    "OrderResponse", "PurchaseSessionResponse", "RemoveItemsRequest", "SessionStatsResponse",
    "EntryStatusUpdate", "JoinQueueResponse", "PriorityRequest", "ProcessNextResponse",
    "QueueEntryListResponse", "QueueEntryResponse", "QueueStatsResponse",
]
