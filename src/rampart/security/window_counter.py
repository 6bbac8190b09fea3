"""
Fixed-window request counter with optional block-on-exceed.

A window starts on the first observation of a key and restarts on the first
observation after it expires, so admission near a boundary is approximate.
An active block outlives the window it was raised in: no call returns
``allowed`` while ``now < block_until``.

Each check runs under the store's per-key lock, which keeps concurrent
callers on one key from over-admitting. Stores whose locks are not shared
across processes still give a soft limit across nodes.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from ..shared.clock import Clock, get_clock
from ..shared.logging_config import get_logger
from ..shared.store import InMemoryStore, KeyValueStore

KEY_PREFIX = "window:"


@dataclass(frozen=True)
class WindowEntry:
    """Counter state for one key. ``count`` only grows within a window."""
    count: int
    window_start: datetime
    reset_at: datetime
    blocked: bool = False
    block_until: Optional[datetime] = None

    def is_block_active(self, now: datetime) -> bool:
        return self.blocked and self.block_until is not None and now < self.block_until

    def is_expired(self, now: datetime) -> bool:
        return now > self.reset_at and not self.is_block_active(now)


@dataclass
class WindowResult:
    """Outcome of a single ``WindowCounter.check`` call."""
    allowed: bool
    remaining: int
    reset_at: datetime
    blocked: bool = False
    block_until: Optional[datetime] = None
    retry_after: Optional[float] = None
    limit: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'allowed': self.allowed,
            'remaining': self.remaining,
            'reset_at': self.reset_at.isoformat(),
            'blocked': self.blocked,
            'block_until': self.block_until.isoformat() if self.block_until else None,
            'retry_after': self.retry_after,
            'limit': self.limit,
        }


class WindowCounter:
    """Per-key window counting over a pluggable store."""

    def __init__(self, store: Optional[KeyValueStore] = None, clock: Optional[Clock] = None):
        self.clock = clock or get_clock()
        self.store = store or InMemoryStore(self.clock)
        self.logger = get_logger(__name__, 'window_counter')

    @staticmethod
    def _key(key: str) -> str:
        return f"{KEY_PREFIX}{key}"

    def _ttl(self, entry: WindowEntry, now: datetime) -> float:
        horizon = entry.reset_at
        if entry.block_until and entry.block_until > horizon:
            horizon = entry.block_until
        return max(1.0, (horizon - now).total_seconds() + 1.0)

    async def _save(self, store_key: str, entry: WindowEntry, now: datetime):
        await self.store.set(store_key, entry, ttl=self._ttl(entry, now))

    async def check(
        self,
        key: str,
        max_count: int,
        window_seconds: float,
        block_seconds: Optional[float] = None
    ) -> WindowResult:
        """
        Count one observation of ``key`` and decide admission.

        Args:
            key: Identifier being throttled
            max_count: Observations admitted per window
            window_seconds: Window length
            block_seconds: Block applied once the limit is hit, if any

        Returns:
            WindowResult with remaining quota and retry hint
        """
        store_key = self._key(key)
        async with self.store.lock(store_key):
            now = self.clock.now()
            window = timedelta(seconds=window_seconds)
            entry: Optional[WindowEntry] = await self.store.get(store_key)

            if entry is not None and entry.is_block_active(now):
                return WindowResult(
                    allowed=False,
                    remaining=0,
                    reset_at=entry.reset_at,
                    blocked=True,
                    block_until=entry.block_until,
                    retry_after=(entry.block_until - now).total_seconds(),
                    limit=max_count
                )

            if entry is None or now > entry.reset_at:
                entry = WindowEntry(count=1, window_start=now, reset_at=now + window)
                await self._save(store_key, entry, now)
                return WindowResult(
                    allowed=True,
                    remaining=max(0, max_count - 1),
                    reset_at=entry.reset_at,
                    limit=max_count
                )

            if entry.count >= max_count:
                if block_seconds:
                    entry = replace(entry, blocked=True, block_until=now + timedelta(seconds=block_seconds))
                    await self._save(store_key, entry, now)
                    self.logger.warning(
                        "Window limit exceeded, key blocked",
                        operation="check",
                        key=key,
                        count=entry.count,
                        limit=max_count,
                        block_seconds=block_seconds
                    )
                retry_at = entry.block_until if entry.block_until and entry.block_until > now else entry.reset_at
                return WindowResult(
                    allowed=False,
                    remaining=0,
                    reset_at=entry.reset_at,
                    blocked=entry.is_block_active(now),
                    block_until=entry.block_until if entry.is_block_active(now) else None,
                    retry_after=max(0.0, (retry_at - now).total_seconds()),
                    limit=max_count
                )

            entry = replace(entry, count=entry.count + 1, blocked=False, block_until=None)
            await self._save(store_key, entry, now)
            return WindowResult(
                allowed=True,
                remaining=max(0, max_count - entry.count),
                reset_at=entry.reset_at,
                limit=max_count
            )

    async def block(self, key: str, seconds: float, window_seconds: Optional[float] = None) -> datetime:
        """Block ``key`` outright until ``now + seconds``."""
        store_key = self._key(key)
        async with self.store.lock(store_key):
            now = self.clock.now()
            block_until = now + timedelta(seconds=seconds)
            entry: Optional[WindowEntry] = await self.store.get(store_key)
            if entry is None:
                reset_at = now + timedelta(seconds=window_seconds or seconds)
                entry = WindowEntry(count=0, window_start=now, reset_at=reset_at)
            if entry.block_until and entry.block_until > block_until:
                block_until = entry.block_until
            entry = replace(entry, blocked=True, block_until=block_until)
            await self._save(store_key, entry, now)
        return block_until

    async def is_blocked(self, key: str) -> bool:
        entry: Optional[WindowEntry] = await self.store.get(self._key(key))
        return entry is not None and entry.is_block_active(self.clock.now())

    async def get_entry(self, key: str) -> Optional[WindowEntry]:
        return await self.store.get(self._key(key))

    async def reset(self, key: str) -> bool:
        store_key = self._key(key)
        async with self.store.lock(store_key):
            return await self.store.delete(store_key)

    async def cleanup_expired(self) -> int:
        """Drop entries whose window and block are both over."""
        now = self.clock.now()
        removed = await self.store.sweep(
            lambda key, value: key.startswith(KEY_PREFIX)
            and isinstance(value, WindowEntry)
            and value.is_expired(now)
        )
        if removed:
            self.logger.info(
                f"Cleaned up {removed} expired window entries",
                operation="cleanup_expired",
                removed=removed
            )
        return removed

    async def get_stats(self) -> Dict[str, int]:
        now = self.clock.now()
        total = 0
        blocked = 0
        for store_key in await self.store.keys(KEY_PREFIX):
            entry = await self.store.get(store_key)
            if entry is None:
                continue
            total += 1
            if entry.is_block_active(now):
                blocked += 1
        return {'total_keys': total, 'blocked_keys': blocked}
