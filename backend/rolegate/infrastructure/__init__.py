from ..config import Settings
from ..domain.ports.cache import CacheBackend
from .memory import MemoryCacheBackend
from .redis import RedisCacheBackend


def build_cache_backend(settings: Settings) -> CacheBackend:
    """Pick the cache backend named by ``settings.cache.store``."""
    if settings.cache.store == "redis":
        return RedisCacheBackend(settings.redis_url)
    return MemoryCacheBackend()


__all__ = ["MemoryCacheBackend", "RedisCacheBackend", "build_cache_backend"]
