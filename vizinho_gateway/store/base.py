"""
Vizinho Virtual Gateway - Security Store Interface

Shared key-value store for blacklist entries, rate counters, user markers,
refresh tokens and audit lists. Backends implement a handful of primitives;
the domain operations (and all key naming) live here so every backend
behaves identically.

Failure policy: backends raise StoreError. Callers decide what to do about
it, and in this gateway they log the failure and fail open.
"""

import hashlib
from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, Field


class StoreError(Exception):
    """Raised when the backing store is unreachable or misbehaves."""
    pass


class BlacklistScope(str, Enum):
    """What a blacklist entry applies to."""
    IP = "ip"
    TOKEN = "token"
    USER = "user"


class RateLimitResult(BaseModel):
    """Outcome of a rate-limit check."""
    allowed: bool
    count: int = Field(..., description="Requests seen in the current window")
    remaining: int
    reset_at: datetime = Field(..., description="When the current window ends")

    @property
    def retry_after(self) -> int:
        return max(int((self.reset_at - datetime.now(timezone.utc)).total_seconds()), 1)


def blacklist_key(scope: BlacklistScope, value: str) -> str:
    """
    Key for a blacklist entry.

    Tokens are stored by SHA-256 digest so raw credentials never sit in the
    store.
    """
    scope = BlacklistScope(scope)
    if scope is BlacklistScope.TOKEN:
        value = hashlib.sha256(value.encode("utf-8")).hexdigest()
    return f"blacklist:{scope.value}:{value}"


def user_active_key(user_id: str) -> str:
    return f"user:{user_id}:active"


def refresh_token_key(user_id: str) -> str:
    return f"refresh_token:{user_id}"


def metric_key(name: str, day: date) -> str:
    return f"metrics:{day.isoformat()}:{name}"


# Daily metric counters outlive their day by a week
METRIC_TTL = 8 * 24 * 60 * 60


class SecurityStore(ABC):
    """Abstract security store."""

    backend_name = "abstract"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open connections. Owned by the application lifespan."""

    async def close(self) -> None:
        """Release connections."""

    @abstractmethod
    async def ping(self) -> bool:
        """True if the store answers."""

    # ------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        ...

    @abstractmethod
    async def incr_window(self, key: str, window_seconds: int) -> Tuple[int, int]:
        """
        Atomically increment a windowed counter.

        The first increment of a window sets the TTL to window_seconds;
        later increments inside the window leave the TTL alone.

        Returns:
            (count after increment, seconds until the window resets)
        """

    @abstractmethod
    async def peek_counter(self, key: str) -> Tuple[int, int]:
        """(current count, seconds until reset) without incrementing."""

    @abstractmethod
    async def append(self, key: str, value: str, ttl: int) -> None:
        """Push onto the head of a list and refresh its TTL."""

    @abstractmethod
    async def read_list(self, key: str, limit: int) -> List[str]:
        """Newest-first slice of a list."""

    @abstractmethod
    async def count_keys(self, prefix: str) -> int:
        """Number of live keys starting with prefix."""

    # ------------------------------------------------------------------
    # Blacklist
    # ------------------------------------------------------------------

    async def add_to_blacklist(
        self,
        scope: BlacklistScope,
        value: str,
        reason: str,
        ttl: int,
    ) -> None:
        """
        Blacklist an IP, token or user for a limited time.

        Args:
            scope: What the value identifies
            value: IP address, raw access token or user ID
            reason: Stored with the entry and returned by lookups
            ttl: Seconds until the entry expires (at least 1)

        Example:
            >>> await store.add_to_blacklist(BlacklistScope.IP, "10.0.0.7", "xss", 86400)
            >>> await store.is_blacklisted(BlacklistScope.IP, "10.0.0.7")
            True
        """
        await self.set(blacklist_key(scope, value), reason, ttl=max(int(ttl), 1))

    async def is_blacklisted(self, scope: BlacklistScope, value: str) -> bool:
        return await self.get(blacklist_key(scope, value)) is not None

    async def get_blacklist_reason(self, scope: BlacklistScope, value: str) -> Optional[str]:
        """Reason stored with a live entry, or None if not blacklisted."""
        return await self.get(blacklist_key(scope, value))

    async def remove_from_blacklist(self, scope: BlacklistScope, value: str) -> bool:
        """
        Lift a blacklist entry.

        Returns:
            True if an entry existed and was removed
        """
        return await self.delete(blacklist_key(scope, value))

    async def blacklist_counts(self) -> Dict[str, int]:
        """
        Live blacklist entries per scope.

        Example:
            >>> await store.blacklist_counts()
            {"ip": 3, "token": 12, "user": 0}
        """
        return {
            scope.value: await self.count_keys(f"blacklist:{scope.value}:")
            for scope in BlacklistScope
        }

    # ------------------------------------------------------------------
    # Rate counters
    # ------------------------------------------------------------------

    async def increment_rate_counter(self, key: str, window_seconds: int) -> int:
        """
        Count one event in a fixed window.

        Args:
            key: Counter key, e.g. "suspicious:10.0.0.7"
            window_seconds: Window length, started by the first event

        Returns:
            Events counted in the current window, this one included
        """
        count, _ = await self.incr_window(key, window_seconds)
        return count

    async def get_counter(self, key: str) -> int:
        count, _ = await self.peek_counter(key)
        return count

    async def count_suspicious_ips(self) -> int:
        """IPs with an open suspicious-activity window."""
        return await self.count_keys("suspicious:")

    async def check_rate_limit(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        """
        Count this request and report whether it is within the limit.

        Args:
            key: Counter key, e.g. "rate_limit:10.0.0.7"
            limit: Requests allowed per window
            window_seconds: Window length

        Returns:
            RateLimitResult; `allowed` is False from request limit + 1 on

        Example:
            >>> result = await store.check_rate_limit("rate_limit:10.0.0.7", 1000, 900)
            >>> result.allowed, result.remaining
            (True, 999)
        """
        count, ttl = await self.incr_window(key, window_seconds)
        return RateLimitResult(
            allowed=count <= limit,
            count=count,
            remaining=max(limit - count, 0),
            reset_at=datetime.now(timezone.utc) + timedelta(seconds=ttl),
        )

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    async def increment_metric(self, name: str, day: Optional[date] = None) -> int:
        """
        Count one occurrence of a named event for a UTC day.

        Args:
            name: Metric name, e.g. "failed_logins"
            day: Day to count against (default: today)

        Returns:
            The day's total so far
        """
        day = day or datetime.now(timezone.utc).date()
        return await self.increment_rate_counter(metric_key(name, day), METRIC_TTL)

    async def get_metrics(self, names: Iterable[str], day: Optional[date] = None) -> Dict[str, int]:
        """Totals for several metrics on one day; missing metrics are 0."""
        day = day or datetime.now(timezone.utc).date()
        return {name: await self.get_counter(metric_key(name, day)) for name in names}

    # ------------------------------------------------------------------
    # User markers and refresh tokens
    # ------------------------------------------------------------------

    async def mark_user_active(self, user_id: str, ttl: int) -> None:
        """
        Flag a user as allowed to use their tokens.

        Access tokens of users without the marker are refused with
        USER_INACTIVE, so clearing it ends every session at once.
        """
        await self.set(user_active_key(user_id), "1", ttl=ttl)

    async def is_user_active(self, user_id: str) -> bool:
        return await self.get(user_active_key(user_id)) is not None

    async def clear_user_active(self, user_id: str) -> bool:
        return await self.delete(user_active_key(user_id))

    async def store_refresh_token(self, user_id: str, token: str, ttl: int) -> None:
        """
        Remember the user's current refresh token.

        Only one is kept per user; storing a new one invalidates the old.
        """
        await self.set(refresh_token_key(user_id), token, ttl=ttl)

    async def get_refresh_token(self, user_id: str) -> Optional[str]:
        return await self.get(refresh_token_key(user_id))

    async def delete_refresh_token(self, user_id: str) -> bool:
        return await self.delete(refresh_token_key(user_id))

    # ------------------------------------------------------------------
    # Append-only logs
    # ------------------------------------------------------------------

    async def append_log(self, key: str, entry: str, ttl: int) -> None:
        """
        Append an entry to a log list.

        Args:
            key: List key, e.g. "audit:2024-05-01"
            entry: Serialized entry; stored as given
            ttl: Retention of the whole list, refreshed on every append
        """
        await self.append(key, entry, ttl)

    async def read_log(self, key: str, limit: int = 100) -> List[str]:
        """Up to `limit` entries, newest first."""
        return await self.read_list(key, limit)
