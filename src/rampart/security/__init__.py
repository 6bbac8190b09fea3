"""
Request defense for Rampart.

Window counting, route-class rate limiting, brute-force lockout, unusual
login detection, security event monitoring and the request middleware
that ties them together.
"""

from .severity import SecuritySeverity, escalate

from .request_facts import RequestFacts, extract_ip

from .window_counter import (
    WindowCounter,
    WindowEntry,
    WindowResult
)

from .rate_limiter import (
    RateLimiter,
    RateLimitConfig,
    KeyStrategy,
    RouteClass,
    build_rate_limit_configs,
    resolve_route_class,
    generate_key,
    add_rate_limit_headers,
    get_rate_limiter,
    start_rate_limiter_cleanup_task
)

from .brute_force import (
    BruteForceGuard,
    BruteForceConfig,
    BruteForceResult,
    AccountLockStatus,
    LoginAttempt,
    lockout_duration,
    evaluate_attempts,
    combine_results
)

from .anomaly_detector import (
    AnomalyDetector,
    AnomalyConfig,
    AnomalyReport,
    AttemptContext,
    GeoLocation,
    detect_unusual_patterns,
    haversine_km
)

from .security_monitor import (
    SecurityMonitor,
    SecurityEvent,
    SecurityEventType,
    SecurityAction,
    calculate_risk_score,
    determine_security_action,
    generate_correlation_id,
    get_security_monitor
)

from .middleware import DefenseMiddleware

__all__ = [
    # Shared types
    'SecuritySeverity',
    'escalate',
    'RequestFacts',
    'extract_ip',

    # Window counting
    'WindowCounter',
    'WindowEntry',
    'WindowResult',

    # Rate Limiting
    'RateLimiter',
    'RateLimitConfig',
    'KeyStrategy',
    'RouteClass',
    'build_rate_limit_configs',
    'resolve_route_class',
    'generate_key',
    'add_rate_limit_headers',
    'get_rate_limiter',
    'start_rate_limiter_cleanup_task',

    # Brute force
    'BruteForceGuard',
    'BruteForceConfig',
    'BruteForceResult',
    'AccountLockStatus',
    'LoginAttempt',
    'lockout_duration',
    'evaluate_attempts',
    'combine_results',

    # Anomaly detection
    'AnomalyDetector',
    'AnomalyConfig',
    'AnomalyReport',
    'AttemptContext',
    'GeoLocation',
    'detect_unusual_patterns',
    'haversine_km',

    # Security monitoring
    'SecurityMonitor',
    'SecurityEvent',
    'SecurityEventType',
    'SecurityAction',
    'calculate_risk_score',
    'determine_security_action',
    'generate_correlation_id',
    'get_security_monitor',

    # Middleware
    'DefenseMiddleware'
]
