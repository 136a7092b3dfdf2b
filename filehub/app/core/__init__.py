"""Core utilities for the filehub application."""

from filehub.app.core.cache import cache, invalidate_cache
from filehub.app.core.config import settings
from filehub.app.core.logging import get_logger, setup_logging
from filehub.app.core.store import (
    CounterStore,
    InMemoryStore,
    RedisStore,
    get_store,
    reset_store,
)

__all__ = [
    "CounterStore",
    "InMemoryStore",
    "RedisStore",
    "get_store",
    "reset_store",
    "cache",
    "invalidate_cache",
    "settings",
    "get_logger",
    "setup_logging",
]
