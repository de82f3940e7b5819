from .layer import NOT_FOUND, CacheLayer, SharedCacheTier
from .local import LocalCache
from .redis_tier import RedisCacheTier

__all__ = ["NOT_FOUND", "CacheLayer", "LocalCache", "RedisCacheTier", "SharedCacheTier"]
