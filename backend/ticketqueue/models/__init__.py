from ticketqueue.models.user import User
from ticketqueue.models.event import Event
from ticketqueue.models.ticket_type import TicketType
from ticketqueue.models.queue_entry import QueueEntry
from ticketqueue.models.purchase_session import PurchaseSession
from ticketqueue.models.order import Order, OrderItem
from ticketqueue.models.processing_lease import ProcessingLease

__all__ = [
    "User", "Event", "TicketType", "QueueEntry", "PurchaseSession",
    "Order", "OrderItem", "ProcessingLease",
]
