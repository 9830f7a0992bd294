"""
Vizinho Virtual Gateway - In-Memory Security Store

Single-process backend for development and tests. Expiry is checked lazily
on access against an injectable clock, so tests can move time forward
without sleeping.
"""

import threading
import time
from typing import Callable, Dict, List, Optional, Tuple, Union

from vizinho_gateway.store.base import SecurityStore

_Value = Union[str, int, List[str]]


class InMemorySecurityStore(SecurityStore):
    """Dict-backed security store with per-key expiry."""

    backend_name = "memory"

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._data: Dict[str, Tuple[_Value, Optional[float]]] = {}
        # Shared with the TestClient portal thread; nothing awaits while held.
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[Tuple[_Value, Optional[float]]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return entry

    def _remaining(self, expires_at: Optional[float]) -> int:
        if expires_at is None:
            return -1
        return max(int(round(expires_at - self._clock())), 0)

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return None
            return str(entry[0])

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        with self._lock:
            expires_at = self._clock() + ttl if ttl else None
            self._data[key] = (value, expires_at)

    async def delete(self, key: str) -> bool:
        with self._lock:
            if self._live(key) is None:
                return False
            del self._data[key]
            return True

    async def incr_window(self, key: str, window_seconds: int) -> Tuple[int, int]:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                count, expires_at = 0, self._clock() + window_seconds
            else:
                count, expires_at = int(entry[0]), entry[1]
            count += 1
            self._data[key] = (count, expires_at)
            return count, self._remaining(expires_at)

    async def peek_counter(self, key: str) -> Tuple[int, int]:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return 0, 0
            return int(entry[0]), max(self._remaining(entry[1]), 0)

    async def append(self, key: str, value: str, ttl: int) -> None:
        with self._lock:
            entry = self._live(key)
            items = list(entry[0]) if entry is not None else []
            items.insert(0, value)
            self._data[key] = (items, self._clock() + ttl)

    async def read_list(self, key: str, limit: int) -> List[str]:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return []
            return list(entry[0])[:limit]

    async def count_keys(self, prefix: str) -> int:
        with self._lock:
            return sum(1 for key in list(self._data) if key.startswith(prefix) and self._live(key))
