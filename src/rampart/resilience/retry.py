"""
Resilience - Retry Executor

Runs an async operation with classified exponential backoff:

- non-retryable classifications fail after exactly one attempt
- retryable errors consult the recovery chain, sleep, and retry until
  ``max_attempts`` is exhausted
- an optional overall timeout aborts with ``RetryDeadlineExceeded`` when the
  next sleep would pass it

Failures are re-raised to the caller (fail closed).
"""
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, TypeVar
from uuid import uuid4

import structlog

from ..shared.clock import Clock, get_clock
from ..shared.config import RetrySettings, get_retry_settings
from ..shared.metrics_collector import MetricUnit, get_metrics_collector
from .errors import ErrorClassification, RetryDeadlineExceeded, classify_error
from .monitor import ResilienceMonitor
from .recovery import RecoveryChain, RecoveryContext

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must not be negative")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be at least 1")

    @classmethod
    def default(cls, settings: Optional[RetrySettings] = None) -> "RetryConfig":
        s = settings or get_retry_settings()
        return cls(s.max_attempts, s.base_delay, s.max_delay, s.backoff_multiplier)

    @classmethod
    def database(cls, settings: Optional[RetrySettings] = None) -> "RetryConfig":
        s = settings or get_retry_settings()
        return cls(
            s.database_max_attempts,
            s.database_base_delay,
            s.database_max_delay,
            s.database_backoff_multiplier,
        )

    @classmethod
    def external_api(cls, settings: Optional[RetrySettings] = None) -> "RetryConfig":
        s = settings or get_retry_settings()
        return cls(
            s.external_api_max_attempts,
            s.external_api_base_delay,
            s.external_api_max_delay,
            s.external_api_backoff_multiplier,
        )


@dataclass
class RetryContext:
    """Per-invocation retry state."""
    attempt: int
    request_id: str
    operation_id: str
    last_error: Optional[BaseException] = None


def compute_delay(config: RetryConfig, attempt: int, classification: ErrorClassification) -> float:
    """
    Delay before the attempt following ``attempt`` (1-based).

    The suggested delay of the classification acts as a floor; ``max_delay``
    caps the result.
    """
    delay = config.base_delay * (config.backoff_multiplier ** (attempt - 1))
    if classification.suggested_delay is not None:
        delay = max(delay, classification.suggested_delay)
    return min(config.max_delay, delay)


class RetryExecutor:
    """Executes async operations with classified retry and optional recovery."""

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        recovery_chain: Optional[RecoveryChain] = None,
        monitor: Optional[ResilienceMonitor] = None,
        clock: Optional[Clock] = None,
        event_type: str = "operation"
    ):
        self.config = config or RetryConfig.default()
        self.recovery_chain = recovery_chain
        self.monitor = monitor
        self.clock = clock or get_clock()
        self.event_type = event_type
        self.metrics = get_metrics_collector()

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_id: Optional[str] = None,
        request_id: Optional[str] = None,
        timeout: Optional[float] = None
    ) -> T:
        """
        Run ``operation`` until it succeeds or retrying is no longer allowed.

        Args:
            operation: Zero-argument coroutine function
            operation_id: Identifier used in logs and recovery context
            request_id: Request correlation id
            timeout: Overall deadline in seconds across attempts and sleeps

        Returns:
            The operation's result

        Raises:
            The last error raised by ``operation``, or RetryDeadlineExceeded
        """
        context = RetryContext(
            attempt=0,
            request_id=request_id or str(uuid4()),
            operation_id=operation_id or f"op_{uuid4().hex[:12]}",
        )
        started = self.clock.timestamp()
        deadline = started + timeout if timeout is not None else None
        delays: List[float] = []

        while True:
            context.attempt += 1
            self.metrics.get_counter('retry_attempts_total').increment(event_type=self.event_type)
            try:
                result = await operation()
            except Exception as error:
                context.last_error = error
                classification = classify_error(error)
                await self._handle_failure(error, classification, context, delays, deadline, started)
                continue

            elapsed_ms = (self.clock.timestamp() - started) * 1000
            if context.attempt > 1:
                logger.info(
                    "Operation recovered after retries",
                    operation_id=context.operation_id,
                    request_id=context.request_id,
                    attempts=context.attempt,
                    recovered_from=str(context.last_error),
                    total_delay=sum(delays),
                )
            await self._report(True, elapsed_ms)
            return result

    async def _handle_failure(
        self,
        error: Exception,
        classification: ErrorClassification,
        context: RetryContext,
        delays: List[float],
        deadline: Optional[float],
        started: float
    ):
        log_fields = dict(
            operation_id=context.operation_id,
            request_id=context.request_id,
            attempt=context.attempt,
            max_attempts=self.config.max_attempts,
            error=str(error),
            classification=classification.to_dict(),
        )

        if not classification.is_retryable:
            logger.critical("Non-retryable error, giving up", **log_fields)
            await self._fail(error, started)

        if context.attempt >= self.config.max_attempts:
            logger.critical("Retry attempts exhausted", **log_fields)
            self.metrics.get_counter('retry_exhausted_total').increment(event_type=self.event_type)
            await self._fail(error, started)

        logger.warning("Operation failed, retrying", **log_fields)

        if self.recovery_chain is not None:
            await self.recovery_chain.attempt_recovery(error, RecoveryContext(
                error=error,
                attempt=context.attempt,
                operation_id=context.operation_id,
                request_id=context.request_id,
                metadata={'error_type': classification.error_type.value},
            ))

        delay = compute_delay(self.config, context.attempt, classification)
        if deadline is not None and self.clock.timestamp() + delay > deadline:
            logger.critical("Retry deadline exceeded", delay=delay, **log_fields)
            await self._fail(
                RetryDeadlineExceeded(
                    f"Operation {context.operation_id} exceeded its retry deadline after {context.attempt} attempts",
                    last_error=error
                ),
                started,
                cause=error
            )

        delays.append(delay)
        self.metrics.get_histogram(
            'retry_delay_seconds', 'Backoff before a retry', MetricUnit.SECONDS
        ).observe(delay)
        await self.clock.sleep(delay)

    async def _fail(self, error: BaseException, started: float, cause: Optional[BaseException] = None):
        elapsed_ms = (self.clock.timestamp() - started) * 1000
        await self._report(False, elapsed_ms, error)
        if cause is not None:
            raise error from cause
        raise error

    async def _report(self, success: bool, elapsed_ms: float, error: Optional[BaseException] = None):
        if self.monitor is None:
            return
        try:
            await self.monitor.track_result(success, self.event_type, elapsed_ms, error)
        except Exception as e:
            logger.error("Failed to report operation outcome", error=str(e))


def database_retry_executor(
    recovery_chain: Optional[RecoveryChain] = None,
    monitor: Optional[ResilienceMonitor] = None,
    clock: Optional[Clock] = None
) -> RetryExecutor:
    """Short retries for database calls."""
    return RetryExecutor(RetryConfig.database(), recovery_chain, monitor, clock, event_type="database")


def external_api_retry_executor(
    recovery_chain: Optional[RecoveryChain] = None,
    monitor: Optional[ResilienceMonitor] = None,
    clock: Optional[Clock] = None
) -> RetryExecutor:
    """Slower retries with a gentler multiplier for outbound API calls."""
    return RetryExecutor(RetryConfig.external_api(), recovery_chain, monitor, clock, event_type="external_api")


async def retry_database_operation(
    operation: Callable[[], Awaitable[T]],
    operation_id: Optional[str] = None,
    request_id: Optional[str] = None,
    **executor_kwargs: Any
) -> T:
    return await database_retry_executor(**executor_kwargs).execute_with_retry(
        operation, operation_id=operation_id, request_id=request_id
    )


async def retry_external_api_call(
    operation: Callable[[], Awaitable[T]],
    operation_id: Optional[str] = None,
    request_id: Optional[str] = None,
    **executor_kwargs: Any
) -> T:
    return await external_api_retry_executor(**executor_kwargs).execute_with_retry(
        operation, operation_id=operation_id, request_id=request_id
    )
