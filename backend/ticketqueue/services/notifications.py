"""
Queue and purchase-session notifications.

Every send is fire-and-forget: `dispatch()` schedules the coroutine as a
background task and returns immediately, so a slow or broken mail server can
never stall a queue join or an admission tick. Failures are logged and
counted, never raised to the caller.
"""

import asyncio
from email.message import EmailMessage
from typing import Optional

import aiosmtplib

from ticketqueue.core.config import get_settings
from ticketqueue.core.logging import get_logger
from ticketqueue.core.metrics import record_notification

logger = get_logger(__name__)
settings = get_settings()

# Strong references so pending sends are not garbage collected mid-flight
_pending: set[asyncio.Task] = set()


async def _deliver(to: str, subject: str, body: str) -> None:
    message = EmailMessage()
    message["From"] = settings.SMTP_FROM
    message["To"] = to
    message["Subject"] = subject
    message.set_content(body)

    await aiosmtplib.send(
        message,
        hostname=settings.SMTP_HOST,
        port=settings.SMTP_PORT,
        username=settings.SMTP_USER or None,
        password=settings.SMTP_PASSWORD or None,
        start_tls=settings.SMTP_USE_TLS,
        timeout=10,
    )


async def send_email(kind: str, to: Optional[str], subject: str, body: str) -> bool:
    if not to:
        record_notification(kind, "skipped")
        return False

    if not settings.EMAIL_ENABLED:
        logger.info("notification_suppressed", kind=kind, to=to, subject=subject)
        record_notification(kind, "skipped")
        return False

    try:
        await _deliver(to, subject, body)
    except Exception as e:
        logger.error("notification_failed", kind=kind, to=to, error=str(e))
        record_notification(kind, "failed")
        return False

    logger.info("notification_sent", kind=kind, to=to)
    record_notification(kind, "sent")
    return True


def dispatch(coro) -> Optional[asyncio.Task]:
    """Schedule a send without awaiting it."""
    try:
        task = asyncio.get_running_loop().create_task(coro)
    except RuntimeError:
        coro.close()
        logger.warning("notification_dropped", reason="no_running_loop")
        return None

    _pending.add(task)
    task.add_done_callback(_on_done)
    return task


def _on_done(task: asyncio.Task) -> None:
    _pending.discard(task)
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error("notification_task_failed", error=str(error))


async def drain(timeout: float = 5.0) -> None:
    """Wait for in-flight sends (used on shutdown and in tests)."""
    if _pending:
        await asyncio.wait(list(_pending), timeout=timeout)


# --- Message builders -----------------------------------------------------

async def send_queue_joined(to: Optional[str], event_name: str, position: int, estimated_wait_minutes: int) -> bool:
    subject = f"You've joined the queue for {event_name}"
    body = (
        f"You have joined the queue for {event_name}.\n\n"
        f"Your position: {position}\n"
        f"Estimated wait: {estimated_wait_minutes} minutes\n\n"
        f"We'll email you when it's your turn. You will then have "
        f"{settings.PURCHASE_WINDOW_MINUTES} minutes to complete your purchase.\n\n"
        f"{settings.FRONTEND_URL}\n"
    )
    return await send_email("queue_joined", to, subject, body)


async def send_queue_turn(to: Optional[str], event_name: str, position: int, window_minutes: int) -> bool:
    subject = f"Your turn to buy tickets for {event_name}!"
    body = (
        f"It's your turn! You were at position {position} in the queue for {event_name}.\n\n"
        f"You have {window_minutes} minutes to complete your purchase. "
        f"If you don't finish in time your session expires and you'll need to rejoin the queue.\n\n"
        f"{settings.FRONTEND_URL}\n"
    )
    return await send_email("queue_turn", to, subject, body)


async def send_session_expired(to: Optional[str], event_name: str, reason: str = "timeout") -> bool:
    subject = f"Purchase session expired for {event_name}"
    if reason == "timeout":
        explanation = (
            f"Your {settings.PURCHASE_WINDOW_MINUTES}-minute purchase window has expired. "
            "You can rejoin the queue to try again."
        )
    else:
        explanation = reason
    body = (
        f"Your purchase session for {event_name} has ended.\n\n"
        f"{explanation}\n\n"
        f"{settings.FRONTEND_URL}\n"
    )
    return await send_email("session_expired", to, subject, body)


async def send_purchase_reminder(to: Optional[str], event_name: str, minutes_left: int) -> bool:
    subject = f"{minutes_left} minutes left to buy tickets for {event_name}"
    body = (
        f"Your purchase session for {event_name} expires in about {minutes_left} minutes.\n"
        f"Complete your purchase before it runs out.\n\n"
        f"{settings.FRONTEND_URL}\n"
    )
    return await send_email("purchase_reminder", to, subject, body)
