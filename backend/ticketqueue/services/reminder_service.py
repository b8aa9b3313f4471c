"""
Purchase reminders: one "N minutes left" email per active session.
"""

from datetime import timedelta

from sqlalchemy import select

from ticketqueue.core.config import get_settings
from ticketqueue.core.logging import get_logger
from ticketqueue.core.metrics import sweep_item_failures
from ticketqueue.db.base import utcnow
from ticketqueue.models.event import Event
from ticketqueue.models.purchase_session import PurchaseSession
from ticketqueue.services import notifications
from ticketqueue.services.interfaces import PeriodicService
from ticketqueue.services.session_service import contact_email, has_completed_order, log_notification

logger = get_logger(__name__)
settings = get_settings()

REMINDER_KIND = "purchase_reminder"


def reminder_sent(session: PurchaseSession, minutes_left: int) -> bool:
    return any(
        note.get("type") == REMINDER_KIND and note.get("minutes_left") == minutes_left
        for note in session.notifications or []
        if isinstance(note, dict)
    )


class ReminderService(PeriodicService):
    name = "purchase_reminders"

    def __init__(self, interval: float = None, session_factory=None, minutes_left: int = None):
        super().__init__(interval or settings.REMINDER_SWEEP_SECONDS, session_factory)
        self.minutes_left = minutes_left or settings.REMINDER_MINUTES_LEFT

    async def run_once(self, now=None) -> int:
        now = now or utcnow()
        async with self.session_factory() as db:
            result = await db.execute(
                select(PurchaseSession.id).where(
                    PurchaseSession.status == "active",
                    PurchaseSession.expires_at > now,
                    PurchaseSession.expires_at <= now + timedelta(minutes=self.minutes_left),
                )
            )
            session_ids = list(result.scalars().all())

        sent = 0
        for session_id in session_ids:
            try:
                async with self.session_factory() as db:
                    if await self._remind(db, session_id, now):
                        sent += 1
                    await db.commit()
            except Exception as e:
                sweep_item_failures.labels(loop=self.name).inc()
                logger.error("purchase_reminder_failed", session_id=session_id, error=str(e))
        return sent

    async def _remind(self, db, session_id: int, now) -> bool:
        session = await db.get(PurchaseSession, session_id)
        if session is None or session.status != "active" or reminder_sent(session, self.minutes_left):
            return False
        if await has_completed_order(db, session.event_id, session.user_id):
            return False

        event = await db.get(Event, session.event_id)
        email = await contact_email(db, session.user_id)
        if event is None or email is None:
            return False

        # Recorded before the send so a slow mail server cannot cause a duplicate
        log_notification(session, REMINDER_KIND, now, minutes_left=self.minutes_left)
        notifications.dispatch(notifications.send_purchase_reminder(email, event.name, self.minutes_left))
        logger.info("purchase_reminder_scheduled", session_id=session.id, minutes_left=self.minutes_left)
        return True
