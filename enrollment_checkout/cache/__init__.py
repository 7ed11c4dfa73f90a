"""View cache and invalidation router."""
from .invalidation import (
    INVALIDATION_TABLE,
    CheckoutOperation,
    InvalidationTarget,
    invalidate_for,
    resolve_keys,
)
from .view_cache import CacheBackend, MemoryCacheBackend, RedisCacheBackend, ViewCache

__all__ = [
    "INVALIDATION_TABLE",
    "CheckoutOperation",
    "InvalidationTarget",
    "invalidate_for",
    "resolve_keys",
    "CacheBackend",
    "MemoryCacheBackend",
    "RedisCacheBackend",
    "ViewCache",
]
