"""
Vizinho Virtual Gateway - Security Store Package

Blacklist entries, rate counters and audit lists behind one interface,
with Redis (production) and in-memory (development/tests) backends.
"""

from vizinho_gateway.config import Settings
from vizinho_gateway.store.base import (
    BlacklistScope,
    RateLimitResult,
    SecurityStore,
    StoreError,
)
from vizinho_gateway.store.memory import InMemorySecurityStore
from vizinho_gateway.store.redis_store import RedisSecurityStore


def build_store(settings: Settings) -> SecurityStore:
    """Create the configured backend. Connecting is left to the caller."""
    if settings.STORE_BACKEND == "memory":
        return InMemorySecurityStore()
    return RedisSecurityStore(settings.REDIS_URL, timeout=settings.STORE_TIMEOUT_SECONDS)


__all__ = [
    "BlacklistScope",
    "InMemorySecurityStore",
    "RateLimitResult",
    "RedisSecurityStore",
    "SecurityStore",
    "StoreError",
    "build_store",
]
