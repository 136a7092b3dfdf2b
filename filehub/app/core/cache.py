"""Read-through cache and key-value helpers over the counter store.

Cache entries are opportunistic: a missing, expired or unreadable entry is
a miss, and a store outage degrades to calling the fetcher directly. Keys are
built by callers from semantic parameters (``files:user:42``) so that a
mutation can evict everything it affects with one glob pattern.
"""

import json
from typing import Any, Awaitable, Callable, TypeVar

from pydantic import TypeAdapter

from filehub.app.core.config import settings
from filehub.app.core.logging import get_logger
from filehub.app.core.store import CounterStore, get_store
from filehub.app.exceptions import CacheSerializationError, StoreUnavailableError

logger = get_logger(__name__)

T = TypeVar("T")


def _encode(key: str, value: Any, adapter: TypeAdapter | None) -> str:
    try:
        if adapter is not None:
            return adapter.dump_json(value).decode("utf-8")
        return json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError) as e:
        raise CacheSerializationError(key, str(e)) from e


def _decode(raw: str, adapter: TypeAdapter | None) -> Any:
    if adapter is not None:
        return adapter.validate_json(raw)
    return json.loads(raw)


async def cache(
    key: str,
    fetcher: Callable[[], Awaitable[T]],
    ttl_seconds: int | None = None,
    *,
    value_type: type[T] | None = None,
    store: CounterStore | None = None,
) -> T:
    """Return the cached value for ``key`` or compute, store and return it.

    Args:
        key: Cache key.
        fetcher: Coroutine function producing the fresh value on a miss.
        ttl_seconds: Entry lifetime, settings.cache_default_ttl when omitted.
        value_type: Optional type validated through a pydantic TypeAdapter,
            so models and dataclasses survive the JSON round trip.
        store: Counter store, the global one when omitted.

    Returns:
        The cached or freshly fetched value. Fetcher exceptions propagate;
        store and serialization failures never do.

    Example:
        >>> stats = await cache("files:user:42", load_stats, 300)
    """
    store = store or get_store()
    ttl = settings.cache_default_ttl if ttl_seconds is None else ttl_seconds
    adapter = TypeAdapter(value_type) if value_type is not None else None

    try:
        raw = await store.get(key)
    except Exception as e:
        logger.error(f"Cache operation error for key {key}: {e}")
        return await fetcher()

    if raw is not None:
        try:
            cached = _decode(raw, adapter)
        except ValueError as e:
            # Corrupt or schema-incompatible payload, overwritten below
            logger.warning(f"Discarding unreadable cache entry for key {key}: {e}")
            cached = None
        if cached is not None:
            logger.debug(f"Cache hit for key: {key}")
            return cached

    logger.debug(f"Cache miss for key: {key}, fetching fresh data")
    fresh = await fetcher()

    try:
        await store.setex(key, ttl, _encode(key, fresh, adapter))
    except CacheSerializationError as e:
        logger.warning(str(e))
    except Exception as e:
        logger.error(f"Cache write error for key {key}: {e}")

    return fresh


async def invalidate_cache(pattern: str, *, store: CounterStore | None = None) -> int:
    """Delete every key matching a glob-style ``pattern``.

    The sweep is not atomic: an entry written concurrently with the sweep
    may survive until its TTL runs out.

    Returns:
        Number of keys deleted.

    Raises:
        StoreUnavailableError: If the store cannot be scanned or written.
    """
    store = store or get_store()
    try:
        keys = await store.keys(pattern)
        if not keys:
            return 0
        deleted = await store.delete(*keys)
    except Exception as e:
        logger.error(f"Cache invalidation error for pattern {pattern}: {e}")
        raise StoreUnavailableError("cache invalidation", str(e)) from e

    logger.info(f"Invalidated {deleted} cache entries for pattern: {pattern}")
    return deleted


async def set_with_expiry(
    key: str,
    value: str | int | float,
    ttl_seconds: int,
    *,
    store: CounterStore | None = None,
) -> bool:
    """Set a value with expiration."""
    store = store or get_store()
    try:
        return await store.setex(key, ttl_seconds, str(value))
    except Exception as e:
        logger.error(f"Store set_with_expiry error for key {key}: {e}")
        raise


async def get_value(key: str, *, store: CounterStore | None = None) -> str | None:
    store = store or get_store()
    try:
        return await store.get(key)
    except Exception as e:
        logger.error(f"Store get_value error for key {key}: {e}")
        raise


async def delete_key(key: str, *, store: CounterStore | None = None) -> int:
    store = store or get_store()
    try:
        return await store.delete(key)
    except Exception as e:
        logger.error(f"Store delete_key error for key {key}: {e}")
        raise


async def increment_counter(key: str, *, store: CounterStore | None = None) -> int:
    store = store or get_store()
    try:
        return await store.incr(key)
    except Exception as e:
        logger.error(f"Store increment_counter error for key {key}: {e}")
        raise


async def set_json(
    key: str,
    value: Any,
    ttl_seconds: int | None = None,
    *,
    store: CounterStore | None = None,
) -> bool:
    """Store a JSON-encoded value, with an expiry when ``ttl_seconds`` is given."""
    store = store or get_store()
    payload = _encode(key, value, None)
    try:
        if ttl_seconds:
            return await store.setex(key, ttl_seconds, payload)
        return await store.set(key, payload)
    except Exception as e:
        logger.error(f"Store set_json error for key {key}: {e}")
        raise


async def get_json(key: str, *, store: CounterStore | None = None) -> Any:
    """Load a JSON-encoded value, None when the key is absent."""
    store = store or get_store()
    try:
        raw = await store.get(key)
        if not raw:
            return None
        return json.loads(raw)
    except Exception as e:
        logger.error(f"Store get_json error for key {key}: {e}")
        raise
