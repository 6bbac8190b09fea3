"""
Injectable time source.

Every window, lockout and backoff computation reads time through a Clock so
that expiry logic can be driven deterministically in tests.
"""

import asyncio
from datetime import datetime, timezone


class Clock:
    """Abstract time source."""

    def now(self) -> datetime:
        raise NotImplementedError

    async def sleep(self, seconds: float) -> None:
        raise NotImplementedError

    def timestamp(self) -> float:
        """Current time as POSIX seconds."""
        return self.now().timestamp()


class SystemClock(Clock):
    """Wall clock backed by the running event loop."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        if seconds > 0:
            await asyncio.sleep(seconds)


_system_clock = SystemClock()


def get_clock() -> Clock:
    """Get the shared system clock."""
    return _system_clock
