"""
Resilience - Recovery Strategies

An ordered chain of strategies that try to repair a failed operation's
environment before the next retry. Strategies are tried in registration
order among those whose ``can_recover`` matches; the first that reports
success ends the attempt. A strategy that raises or overruns its timeout
counts as not recovered and never propagates.
"""
import asyncio
import gc
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import structlog
from sqlalchemy import exc as sa_exc
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from ..shared.clock import Clock, get_clock
from ..shared.config import get_retry_settings
from ..shared.metrics_collector import get_metrics_collector
from .errors import ErrorType, classify_error

logger = structlog.get_logger(__name__)


@dataclass
class RecoveryContext:
    """What a strategy knows about the failure it is repairing."""
    error: BaseException
    attempt: int
    operation_id: str
    request_id: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RecoveryStrategy:
    """A named repair action."""
    name: str
    can_recover: Callable[[BaseException], bool]
    recover: Callable[[RecoveryContext], Awaitable[bool]]
    timeout: Optional[float] = None


_CONNECTION_PATTERN = re.compile(r"connection|timeout|pool", re.IGNORECASE)
_UNIQUE_PATTERN = re.compile(r"unique constraint|duplicate key|already exists", re.IGNORECASE)
_RESOURCE_PATTERN = re.compile(r"out of memory|resource|heap", re.IGNORECASE)

RATE_LIMIT_BACKOFF_BASE = 1.0
RATE_LIMIT_BACKOFF_MAX = 30.0


def database_reconnect_strategy(
    reconnect: Callable[[], Awaitable[Any]],
    probe: Callable[[], Awaitable[Any]],
    timeout: Optional[float] = None
) -> RecoveryStrategy:
    """Reconnect and probe for connection, timeout and pool errors."""

    def can_recover(error: BaseException) -> bool:
        if isinstance(error, (sa_exc.OperationalError, sa_exc.DisconnectionError, sa_exc.TimeoutError)):
            return True
        return bool(_CONNECTION_PATTERN.search(str(error)))

    async def recover(context: RecoveryContext) -> bool:
        logger.info("Attempting database reconnection", operation_id=context.operation_id)
        await reconnect()
        result = await probe()
        return result is not False

    return RecoveryStrategy("database_connection_recovery", can_recover, recover, timeout)


def sqlalchemy_engine_hooks(engine: AsyncEngine) -> Tuple[Callable[[], Awaitable[None]], Callable[[], Awaitable[bool]]]:
    """Reconnect and probe callables for a SQLAlchemy async engine."""

    async def reconnect() -> None:
        await engine.dispose()

    async def probe() -> bool:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        return True

    return reconnect, probe


def unique_constraint_strategy() -> RecoveryStrategy:
    """
    Acknowledge unique-constraint violations.

    Nothing is repaired here; the caller is expected to turn the create
    into an update on the next attempt.
    """

    def can_recover(error: BaseException) -> bool:
        return bool(_UNIQUE_PATTERN.search(str(error)))

    async def recover(context: RecoveryContext) -> bool:
        logger.info(
            "Unique constraint violation acknowledged",
            operation_id=context.operation_id,
            request_id=context.request_id,
        )
        return True

    return RecoveryStrategy("unique_constraint_recovery", can_recover, recover)


def rate_limit_backoff_strategy(clock: Optional[Clock] = None, timeout: Optional[float] = None) -> RecoveryStrategy:
    """Wait ``min(1s * 2^attempt, 30s)`` on rate-limit errors."""
    clock = clock or get_clock()

    def can_recover(error: BaseException) -> bool:
        return classify_error(error).error_type == ErrorType.RATE_LIMIT

    async def recover(context: RecoveryContext) -> bool:
        delay = min(RATE_LIMIT_BACKOFF_BASE * (2 ** context.attempt), RATE_LIMIT_BACKOFF_MAX)
        logger.info("Rate limit backoff", operation_id=context.operation_id, delay_seconds=delay)
        await clock.sleep(delay)
        return True

    if timeout is None:
        timeout = RATE_LIMIT_BACKOFF_MAX + 1.0
    return RecoveryStrategy("rate_limit_recovery", can_recover, recover, timeout)


def resource_cleanup_strategy(cache_clearers: Sequence[Callable[[], Any]] = ()) -> RecoveryStrategy:
    """Best-effort release of memory for resource exhaustion errors."""
    clearers = tuple(cache_clearers)

    def can_recover(error: BaseException) -> bool:
        return isinstance(error, MemoryError) or bool(_RESOURCE_PATTERN.search(str(error)))

    async def recover(context: RecoveryContext) -> bool:
        metrics = get_metrics_collector()
        before = metrics.record_process_memory()
        for clear in clearers:
            clear()
        collected = gc.collect()
        after = metrics.record_process_memory()
        logger.info(
            "Resource cleanup completed",
            operation_id=context.operation_id,
            objects_collected=collected,
            rss_before=before['rss_bytes'],
            rss_after=after['rss_bytes'],
        )
        return True

    return RecoveryStrategy("resource_cleanup_recovery", can_recover, recover)


class RecoveryChain:
    """Ordered recovery strategies with per-strategy statistics."""

    def __init__(
        self,
        strategies: Optional[Sequence[RecoveryStrategy]] = None,
        default_timeout: Optional[float] = None
    ):
        self._strategies: List[RecoveryStrategy] = list(strategies or [])
        self.default_timeout = default_timeout if default_timeout is not None else get_retry_settings().recovery_timeout_seconds
        self.metrics = get_metrics_collector()
        self.stats: Dict[str, Dict[str, int]] = {
            s.name: {'attempts': 0, 'successes': 0, 'failures': 0} for s in self._strategies
        }
        self.total_attempts = 0
        self.total_recoveries = 0

    @property
    def strategies(self) -> Tuple[RecoveryStrategy, ...]:
        return tuple(self._strategies)

    def add_recovery_strategy(self, strategy: RecoveryStrategy):
        self._strategies.append(strategy)
        self.stats.setdefault(strategy.name, {'attempts': 0, 'successes': 0, 'failures': 0})
        logger.info("Recovery strategy registered", strategy=strategy.name)

    def _matches(self, strategy: RecoveryStrategy, error: BaseException) -> bool:
        try:
            return bool(strategy.can_recover(error))
        except Exception as e:
            logger.error("Recovery strategy matcher failed", strategy=strategy.name, error=str(e))
            return False

    async def attempt_recovery(self, error: BaseException, context: RecoveryContext) -> bool:
        """
        Try matching strategies in order until one succeeds.

        Returns:
            True if some strategy recovered; False otherwise, in which case
            the caller surfaces the original error
        """
        self.total_attempts += 1
        candidates = [s for s in self._strategies if self._matches(s, error)]
        if not candidates:
            logger.info("No recovery strategy applies", operation_id=context.operation_id, error=str(error))
            return False

        for strategy in candidates:
            stats = self.stats[strategy.name]
            stats['attempts'] += 1
            timeout = strategy.timeout if strategy.timeout is not None else self.default_timeout
            try:
                recovered = await asyncio.wait_for(strategy.recover(context), timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "Recovery strategy timed out",
                    strategy=strategy.name,
                    operation_id=context.operation_id,
                    timeout=timeout,
                )
                recovered = False
            except Exception as e:
                logger.error(
                    "Recovery strategy failed",
                    strategy=strategy.name,
                    operation_id=context.operation_id,
                    error=str(e),
                )
                recovered = False

            if recovered:
                stats['successes'] += 1
                self.total_recoveries += 1
                self.metrics.get_counter('recoveries_total').increment(strategy=strategy.name)
                logger.info(
                    "Recovery succeeded",
                    strategy=strategy.name,
                    operation_id=context.operation_id,
                    attempt=context.attempt,
                )
                return True
            stats['failures'] += 1

        logger.warning("All recovery strategies failed", operation_id=context.operation_id, error=str(error))
        return False

    def get_recovery_stats(self) -> Dict[str, Any]:
        return {
            'total_attempts': self.total_attempts,
            'total_recoveries': self.total_recoveries,
            'strategies': {name: dict(values) for name, values in self.stats.items()},
        }


def create_default_recovery_chain(
    engine: Optional[AsyncEngine] = None,
    clock: Optional[Clock] = None,
    cache_clearers: Sequence[Callable[[], Any]] = ()
) -> RecoveryChain:
    """Built-in strategies; database reconnection only when an engine is given."""
    strategies: List[RecoveryStrategy] = []
    if engine is not None:
        reconnect, probe = sqlalchemy_engine_hooks(engine)
        strategies.append(database_reconnect_strategy(reconnect, probe))
    strategies.extend([
        unique_constraint_strategy(),
        rate_limit_backoff_strategy(clock),
        resource_cleanup_strategy(cache_clearers),
    ])
    return RecoveryChain(strategies)
