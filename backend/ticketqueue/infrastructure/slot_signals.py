"""
"Slot freed" signalling layered on top of admission polling.

When a slot-holding entry completes, expires or is abandoned, the event's
admission loop is woken early instead of waiting for the next tick. Locally
this is an asyncio.Event per event; across instances the event id is also
published on a Redis channel and a subscriber task relays it to the local
waiters. Missing a signal only costs latency: the next tick recomputes the
available slots from the database either way.
"""

import asyncio
from typing import Optional

from ticketqueue.core.config import get_settings
from ticketqueue.core.logging import get_logger
from ticketqueue.core.metrics import slot_signal_errors
from ticketqueue.infrastructure.redis_client import get_redis

logger = get_logger(__name__)
settings = get_settings()


class SlotSignals:
    def __init__(self):
        self._events: dict[int, asyncio.Event] = {}
        self._listener: Optional[asyncio.Task] = None

    def waiter(self, event_id: int) -> asyncio.Event:
        if event_id not in self._events:
            self._events[event_id] = asyncio.Event()
        return self._events[event_id]

    def discard(self, event_id: int) -> None:
        self._events.pop(event_id, None)

    def wake(self, event_id: int) -> None:
        waiter = self._events.get(event_id)
        if waiter is not None:
            waiter.set()

    async def publish(self, event_id: int) -> None:
        """Signal that a slot for `event_id` was freed."""
        self.wake(event_id)

        client = await get_redis()
        if client is None:
            return
        try:
            await client.publish(settings.SLOT_SIGNAL_CHANNEL, str(event_id))
        except Exception as e:
            slot_signal_errors.inc()
            logger.warning("slot_signal_publish_failed", event_id=event_id, error=str(e))

    async def start_listener(self) -> None:
        if self._listener is not None:
            return
        client = await get_redis()
        if client is None:
            return
        self._listener = asyncio.create_task(self._listen(client), name="slot-signal-listener")

    async def stop_listener(self) -> None:
        if self._listener is None:
            return
        self._listener.cancel()
        try:
            await self._listener
        except asyncio.CancelledError:
            pass
        self._listener = None

    async def _listen(self, client) -> None:
        pubsub = client.pubsub()
        try:
            await pubsub.subscribe(settings.SLOT_SIGNAL_CHANNEL)
            logger.info("slot_signal_listener_started", channel=settings.SLOT_SIGNAL_CHANNEL)
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    self.wake(int(message["data"]))
                except (TypeError, ValueError):
                    logger.warning("slot_signal_bad_payload", data=message.get("data"))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            slot_signal_errors.inc()
            logger.error("slot_signal_listener_failed", error=str(e))
        finally:
            await pubsub.aclose()


slot_signals = SlotSignals()
