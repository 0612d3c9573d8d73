"""Read cache for backend views, invalidated after each successful sync."""

import logging
from typing import Any, Awaitable, Callable, Dict

logger = logging.getLogger(__name__)

_MISSING = object()


class QueryCache:
    """
    Keyed cache of backend reads (e.g. "/api/patients").

    Keys are URL-like paths. Invalidating a key also drops every key below it,
    so invalidate("/api/patients") clears "/api/patients/10A02" too.

    Each key carries a generation that invalidate() bumps. A fetch that was
    already in flight when its key was invalidated returns its value to the
    caller but does not store it.
    """

    def __init__(self):
        self._entries: Dict[str, Any] = {}
        self._generations: Dict[str, int] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def peek(self, key: str, default=None):
        return self._entries.get(key, default)

    def generation(self, key: str) -> int:
        return self._generations.get(key, 0)

    def set(self, key: str, value: Any) -> None:
        self._generations.setdefault(key, 0)
        self._entries[key] = value

    async def get_or_fetch(self, key: str, fetcher: Callable[[], Awaitable[Any]]) -> Any:
        value = self._entries.get(key, _MISSING)
        if value is not _MISSING:
            return value
        generation = self._generations.setdefault(key, 0)
        value = await fetcher()
        if self._generations.get(key, 0) == generation:
            self._entries[key] = value
        else:
            logger.debug(f"Discarding stale read of {key}, invalidated while in flight")
        return value

    def invalidate(self, prefix: str) -> int:
        """Drop `prefix` and every key under it. Returns how many entries were dropped."""
        prefix = prefix.rstrip("/")
        matches = [k for k in self._generations if k == prefix or k.startswith(prefix + "/")]
        dropped = 0
        for key in matches:
            self._generations[key] += 1
            if self._entries.pop(key, _MISSING) is not _MISSING:
                dropped += 1
        if dropped:
            logger.debug(f"Invalidated {dropped} cached view(s) under {prefix}")
        return dropped

    def clear(self) -> None:
        for key in self._generations:
            self._generations[key] += 1
        self._entries.clear()
