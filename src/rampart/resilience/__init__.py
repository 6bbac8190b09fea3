"""
Resilience for Rampart.

Classified retry with backoff, recovery strategies run between attempts and
health monitoring over operation outcomes.
"""

from .errors import (
    ErrorType,
    ErrorSeverity,
    ErrorClassification,
    ClassifiedError,
    NetworkError,
    DatabaseError,
    RateLimitError,
    AuthenticationError,
    ValidationError,
    SecurityViolationError,
    RetryDeadlineExceeded,
    classify_error
)

from .recovery import (
    RecoveryChain,
    RecoveryContext,
    RecoveryStrategy,
    database_reconnect_strategy,
    sqlalchemy_engine_hooks,
    unique_constraint_strategy,
    rate_limit_backoff_strategy,
    resource_cleanup_strategy,
    create_default_recovery_chain
)

from .monitor import (
    ResilienceMonitor,
    HealthStatus,
    AlertType,
    get_resilience_monitor
)

from .retry import (
    RetryExecutor,
    RetryConfig,
    RetryContext,
    compute_delay,
    database_retry_executor,
    external_api_retry_executor,
    retry_database_operation,
    retry_external_api_call
)

__all__ = [
    # Errors
    'ErrorType',
    'ErrorSeverity',
    'ErrorClassification',
    'ClassifiedError',
    'NetworkError',
    'DatabaseError',
    'RateLimitError',
    'AuthenticationError',
    'ValidationError',
    'SecurityViolationError',
    'RetryDeadlineExceeded',
    'classify_error',

    # Recovery
    'RecoveryChain',
    'RecoveryContext',
    'RecoveryStrategy',
    'database_reconnect_strategy',
    'sqlalchemy_engine_hooks',
    'unique_constraint_strategy',
    'rate_limit_backoff_strategy',
    'resource_cleanup_strategy',
    'create_default_recovery_chain',

    # Monitoring
    'ResilienceMonitor',
    'HealthStatus',
    'AlertType',
    'get_resilience_monitor',

    # Retry
    'RetryExecutor',
    'RetryConfig',
    'RetryContext',
    'compute_delay',
    'database_retry_executor',
    'external_api_retry_executor',
    'retry_database_operation',
    'retry_external_api_call'
]
