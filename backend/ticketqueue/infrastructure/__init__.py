"""
Infrastructure layer - external system integrations.
Keeps business logic clean from implementation details.
"""

from .redis_client import RedisClient, close_redis, get_redis
from .slot_signals import SlotSignals, slot_signals

__all__ = ['RedisClient', 'close_redis', 'get_redis', 'SlotSignals', 'slot_signals']
