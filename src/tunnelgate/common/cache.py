"""Read-through cache with a fixed time-to-live."""

from __future__ import annotations

import time
from typing import Any, Awaitable, Callable, Hashable, Optional

import structlog

LOGGER = structlog.get_logger("tunnelgate.cache")

_MISSING = object()


class TTLCache:
    """Key to value map whose entries expire a fixed number of seconds after insertion.

    The clock is injectable so expiry can be driven deterministically in tests.
    Expired entries are dropped lazily on access and in bulk by ``purge_expired``.
    Writes never invalidate other keys.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[Hashable, tuple[Any, float]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: Hashable, default: Any = None) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return default
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return default
        return value

    def set(self, key: Hashable, value: Any) -> None:
        self._entries[key] = (value, self._clock() + self.ttl_seconds)

    def purge_expired(self) -> int:
        now = self._clock()
        stale = [key for key, (_, expires_at) in self._entries.items() if now >= expires_at]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()

    async def get_or_load(self, key: Hashable, loader: Callable[[], Awaitable[Any]]) -> Any:
        """Return the cached value for ``key`` or await ``loader`` and cache its result.

        Loader exceptions propagate and nothing is cached for the key.
        """
        value = self.get(key, _MISSING)
        if value is not _MISSING:
            LOGGER.debug("cache hit", key=str(key))
            return value
        self.purge_expired()
        value = await loader()
        self.set(key, value)
        return value

