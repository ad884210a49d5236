from __future__ import annotations

from typing import Protocol, Sequence


class CacheBackend(Protocol):
    """Raw string key/value store underneath PermissionCache.

    Implementations raise ``CacheBackendError`` for infrastructure failures.
    """

    @property
    def supports_tags(self) -> bool:
        ...

    async def get(self, key: str) -> str | None:
        ...

    async def set(
        self,
        key: str,
        value: str,
        ttl_seconds: int | None = None,
        tags: Sequence[str] = (),
    ) -> None:
        ...

    async def delete(self, key: str) -> bool:
        ...

    async def flush_tags(self, tags: Sequence[str]) -> None:
        ...

    async def delete_prefix(self, prefix: str) -> int:
        ...

    async def clear(self) -> None:
        ...
