"""
Key-value storage backends for per-identifier defense state.

Window counters, login-attempt histories and blocked-IP markers all live
behind the KeyValueStore interface. The in-memory backend is the default for
single-node deployments; a shared cache can be plugged in by implementing
the same interface.
"""

import asyncio
import weakref
from typing import Any, Callable, Dict, List, Optional, Tuple

from .clock import Clock, get_clock
from .logging_config import get_logger


class KeyValueStore:
    """
    Async key-value store with per-key locking.

    ``lock(key)`` returns an async context manager that serialises
    read-modify-write sequences on one key without blocking other keys.
    """

    async def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        raise NotImplementedError

    async def delete(self, key: str) -> bool:
        raise NotImplementedError

    async def keys(self, prefix: str = "") -> List[str]:
        raise NotImplementedError

    def lock(self, key: str) -> asyncio.Lock:
        raise NotImplementedError

    async def sweep(self, predicate: Callable[[str, Any], bool]) -> int:
        """Remove every entry for which ``predicate(key, value)`` is true."""
        raise NotImplementedError


class InMemoryStore(KeyValueStore):
    """Process-local store. State does not survive a restart."""

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or get_clock()
        self.logger = get_logger(__name__, 'store')
        self._data: Dict[str, Tuple[Any, Optional[float]]] = {}
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _expired(self, expires_at: Optional[float]) -> bool:
        return expires_at is not None and self.clock.timestamp() >= expires_at

    async def get(self, key: str) -> Optional[Any]:
        item = self._data.get(key)
        if item is None:
            return None
        value, expires_at = item
        if self._expired(expires_at):
            self._data.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        expires_at = self.clock.timestamp() + ttl if ttl else None
        self._data[key] = (value, expires_at)

    async def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    async def keys(self, prefix: str = "") -> List[str]:
        return [
            key for key, (_, expires_at) in list(self._data.items())
            if key.startswith(prefix) and not self._expired(expires_at)
        ]

    def lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    async def sweep(self, predicate: Callable[[str, Any], bool]) -> int:
        # Filter into a new mapping and swap; keys held by a writer survive.
        kept: Dict[str, Tuple[Any, Optional[float]]] = {}
        removed = 0
        for key, (value, expires_at) in list(self._data.items()):
            if self.is_locked(key):
                kept[key] = (value, expires_at)
            elif self._expired(expires_at) or predicate(key, value):
                removed += 1
            else:
                kept[key] = (value, expires_at)
        self._data = kept

        if removed:
            self.logger.debug(
                f"Swept {removed} expired entries",
                operation="sweep",
                removed=removed,
                remaining=len(kept)
            )
        return removed

    def __len__(self) -> int:
        return len(self._data)
