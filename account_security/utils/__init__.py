from account_security.utils.cache import Cache, MemoryCache, NullCache, RedisCache, get_cache
from account_security.utils.event_bus import EventBus, RedisEventForwarder, get_event_bus

__all__ = [
    "Cache",
    "MemoryCache",
    "NullCache",
    "RedisCache",
    "get_cache",
    "EventBus",
    "RedisEventForwarder",
    "get_event_bus",
]
