"""In-process TTL cache for hot repository reads.

Backed by cachetools.TTLCache, one instance per repository module. Nothing is
shared across processes, so every write path must call ``invalidate`` for the
keys it touched.

A bounded last-known-good store sits behind the TTL tier and is consulted only
when the database keeps failing, so a short Postgres blip does not turn every
credential lookup into an error.
"""

import asyncio
import functools
import logging
from collections import OrderedDict
from collections.abc import Callable
from typing import Any, TypeVar

from cachetools import TTLCache  # type: ignore[import-untyped]

logger = logging.getLogger(__name__)

# Distinguishes "absent" from a cached None (a missing credential is cacheable)
_MISSING = object()

F = TypeVar("F", bound=Callable[..., Any])


class AsyncTTLCache:
    """TTL cache plus an LRU fallback store of the last value seen per key."""

    def __init__(self, maxsize: int = 128, ttl: float = 60.0):
        self._maxsize = maxsize
        self._fresh: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl)
        self._fallback: OrderedDict[str, Any] = OrderedDict()
        self._locks: dict[str, asyncio.Lock] = {}

    def lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
            if len(self._locks) > self._maxsize * 2:
                live = set(self._fallback) | set(self._fresh)
                for k in [k for k in self._locks if k not in live and k != key]:
                    del self._locks[k]
        return lock

    def get(self, key: str) -> Any:
        return self._fresh.get(key, _MISSING)

    def set(self, key: str, value: Any) -> None:
        self._fresh[key] = value
        self._fallback[key] = value
        self._fallback.move_to_end(key)
        while len(self._fallback) > self._maxsize:
            self._fallback.popitem(last=False)

    def invalidate(self, key: str) -> None:
        """Drop *key* from both tiers.

        The fallback copy goes too: after a write the old value is known to be
        wrong, and serving it during an outage would resurrect a revoked token.
        """
        self._fresh.pop(key, None)
        self._fallback.pop(key, None)

    def clear(self) -> None:
        self._fresh.clear()
        self._fallback.clear()

    def get_fallback(self, key: str) -> Any:
        return self._fallback.get(key, _MISSING)

    @property
    def size(self) -> int:
        return len(self._fresh)


def cached(
    cache: AsyncTTLCache,
    key_func: Callable[..., str],
    *,
    attempts: int = 2,
    retry_delay: float = 0.5,
):
    """Cache an async repository read.

    ``key_func`` gets the decorated function's arguments and returns the key.
    Database errors are retried ``attempts`` times; if all fail, the fallback
    value is returned when there is one, otherwise the last error is raised.
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            key = key_func(*args, **kwargs)

            result = cache.get(key)
            if result is not _MISSING:
                return result

            async with cache.lock_for(key):
                result = cache.get(key)
                if result is not _MISSING:
                    return result

                last_exc: Exception | None = None
                for attempt in range(1, attempts + 1):
                    try:
                        result = await func(*args, **kwargs)
                    except asyncio.CancelledError:
                        raise
                    except Exception as exc:
                        last_exc = exc
                        if attempt < attempts:
                            logger.warning(
                                f"Read {key} failed ({type(exc).__name__}), "
                                f"attempt {attempt}/{attempts}"
                            )
                            await asyncio.sleep(retry_delay * attempt)
                        continue
                    cache.set(key, result)
                    return result

                fallback = cache.get_fallback(key)
                if fallback is not _MISSING:
                    logger.warning(
                        f"Serving last known value for {key} ({type(last_exc).__name__})"
                    )
                    return fallback
                assert last_exc is not None
                raise last_exc

        wrapper.cache = cache  # type: ignore[attr-defined]
        return wrapper  # type: ignore[return-value]

    return decorator
