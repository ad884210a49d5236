"""In-process cache backend for tests and single-instance deployments."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from typing import Callable, Sequence

logger = logging.getLogger(__name__)


class MemoryCacheBackend:
    """Dictionary-backed cache with per-entry TTL and optional tag groups.

    Expired entries are dropped lazily on read.
    """

    def __init__(
        self,
        *,
        supports_tags: bool = True,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self._supports_tags = supports_tags
        self._timer = timer
        self._entries: dict[str, tuple[str, float | None]] = {}
        self._tags: dict[str, set[str]] = defaultdict(set)
        self._lock = asyncio.Lock()

    @property
    def supports_tags(self) -> bool:
        return self._supports_tags

    def _expired(self, deadline: float | None) -> bool:
        return deadline is not None and deadline <= self._timer()

    async def get(self, key: str) -> str | None:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, deadline = entry
            if self._expired(deadline):
                del self._entries[key]
                return None
            return value

    async def set(
        self,
        key: str,
        value: str,
        ttl_seconds: int | None = None,
        tags: Sequence[str] = (),
    ) -> None:
        deadline = self._timer() + ttl_seconds if ttl_seconds else None
        async with self._lock:
            self._entries[key] = (value, deadline)
            if self._supports_tags:
                for tag in tags:
                    self._tags[tag].add(key)

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._entries.pop(key, None) is not None

    async def flush_tags(self, tags: Sequence[str]) -> None:
        if not self._supports_tags:
            raise NotImplementedError("This backend was created without tag support")
        async with self._lock:
            for tag in tags:
                for key in self._tags.pop(tag, set()):
                    self._entries.pop(key, None)

    async def delete_prefix(self, prefix: str) -> int:
        async with self._lock:
            doomed = [key for key in self._entries if key.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
            return len(doomed)

    async def clear(self) -> None:
        async with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._tags.clear()
        logger.debug("Memory cache cleared entries=%d", count)

    def __len__(self) -> int:
        return len(self._entries)
