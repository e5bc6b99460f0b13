from __future__ import annotations

import math
import threading
import time
from typing import Callable, Dict, Iterable, Optional, Protocol, Tuple


class KeyValueStore(Protocol):
    """Expiring key/value primitives shared by sessions and lockout.

    Every method is atomic on its own; ``write_batch`` applies all of its
    writes in a single round trip.
    """

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def exists(self, key: str) -> bool: ...

    async def delete(self, *keys: str) -> int: ...

    async def pop(self, key: str) -> Optional[str]: ...

    async def incr_with_ttl(self, key: str, ttl_seconds: int) -> int: ...

    async def ttl(self, key: str) -> Optional[int]: ...

    async def write_batch(
        self,
        *,
        sets: Iterable[Tuple[str, str, int]] = (),
        deletes: Iterable[str] = (),
    ) -> None: ...

    async def close(self) -> None: ...


class MemoryKeyValueStore:
    """Process-local expiring store used when Redis is not configured.

    Entries expire against ``clock`` so tests can move time forward without
    sleeping. A single re-entrant lock serialises every primitive.
    """

    def __init__(
        self, *, key_prefix: str = "", clock: Callable[[], float] = time.time
    ) -> None:
        self.key_prefix = key_prefix
        self.clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.RLock()

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def _live(self, full_key: str) -> Optional[Tuple[str, float]]:
        entry = self._entries.get(full_key)
        if entry is None:
            return None
        if entry[1] <= self.clock():
            self._entries.pop(full_key, None)
            return None
        return entry

    def _set(self, key: str, value: str, ttl_seconds: int) -> None:
        if ttl_seconds < 1:
            raise ValueError("ttl_seconds must be at least 1")
        self._entries[self._key(key)] = (value, self.clock() + ttl_seconds)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._set(key, value, ttl_seconds)

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(self._key(key))
            return entry[0] if entry else None

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(self._key(key)) is not None

    async def delete(self, *keys: str) -> int:
        with self._lock:
            removed = 0
            for key in keys:
                if self._live(self._key(key)) is not None:
                    removed += 1
                self._entries.pop(self._key(key), None)
            return removed

    async def pop(self, key: str) -> Optional[str]:
        """Remove a key and return its value, or None when absent."""
        with self._lock:
            entry = self._live(self._key(key))
            if entry is None:
                return None
            self._entries.pop(self._key(key), None)
            return entry[0]

    async def incr_with_ttl(self, key: str, ttl_seconds: int) -> int:
        """Increment a counter, arming its TTL only when it is created."""
        with self._lock:
            full_key = self._key(key)
            entry = self._live(full_key)
            if entry is None:
                count = 1
                expires_at = self.clock() + ttl_seconds
            else:
                count = int(entry[0]) + 1
                expires_at = entry[1]
            self._entries[full_key] = (str(count), expires_at)
            return count

    async def ttl(self, key: str) -> Optional[int]:
        with self._lock:
            entry = self._live(self._key(key))
            if entry is None:
                return None
            return max(0, math.ceil(entry[1] - self.clock()))

    async def write_batch(
        self,
        *,
        sets: Iterable[Tuple[str, str, int]] = (),
        deletes: Iterable[str] = (),
    ) -> None:
        sets = list(sets)
        if any(ttl_seconds < 1 for _, _, ttl_seconds in sets):
            raise ValueError("ttl_seconds must be at least 1")
        with self._lock:
            for key, value, ttl_seconds in sets:
                self._set(key, value, ttl_seconds)
            for key in deletes:
                self._entries.pop(self._key(key), None)

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
