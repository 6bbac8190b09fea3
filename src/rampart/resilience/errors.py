"""
Resilience - Error Classification

Errors raised by wrapped operations are classified into a fixed taxonomy.
Each class carries a retryable flag, a severity and an optional suggested
delay. Classification prefers an explicit tag set where the error was raised,
then known library exception types, and only then message patterns for
errors from opaque dependencies.
"""
import asyncio
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

import aiohttp
import structlog
from sqlalchemy import exc as sa_exc

logger = structlog.get_logger(__name__)


class ErrorType(str, Enum):
    """Error taxonomy."""
    NETWORK = "network"
    DATABASE = "database"
    RATE_LIMIT = "rate_limit"
    AUTHENTICATION = "authentication"
    VALIDATION = "validation"
    SECURITY_VIOLATION = "security_violation"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class ErrorSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class ErrorClassification:
    """How an error should be treated by the retry loop."""
    error_type: ErrorType
    is_retryable: bool
    severity: ErrorSeverity
    suggested_delay: Optional[float] = None

    def to_dict(self):
        return {
            'type': self.error_type.value,
            'is_retryable': self.is_retryable,
            'severity': self.severity.value,
            'suggested_delay': self.suggested_delay,
        }


CLASSIFICATIONS = {
    ErrorType.NETWORK: ErrorClassification(ErrorType.NETWORK, True, ErrorSeverity.MEDIUM),
    ErrorType.DATABASE: ErrorClassification(ErrorType.DATABASE, True, ErrorSeverity.HIGH),
    ErrorType.RATE_LIMIT: ErrorClassification(ErrorType.RATE_LIMIT, True, ErrorSeverity.MEDIUM, suggested_delay=5.0),
    ErrorType.AUTHENTICATION: ErrorClassification(ErrorType.AUTHENTICATION, False, ErrorSeverity.CRITICAL),
    ErrorType.VALIDATION: ErrorClassification(ErrorType.VALIDATION, False, ErrorSeverity.MEDIUM),
    ErrorType.SECURITY_VIOLATION: ErrorClassification(ErrorType.SECURITY_VIOLATION, True, ErrorSeverity.HIGH),
    ErrorType.TIMEOUT: ErrorClassification(ErrorType.TIMEOUT, False, ErrorSeverity.HIGH),
    ErrorType.UNKNOWN: ErrorClassification(ErrorType.UNKNOWN, True, ErrorSeverity.MEDIUM),
}


class ClassifiedError(Exception):
    """Base for errors that carry their classification from the point of origin."""

    error_type: ErrorType = ErrorType.UNKNOWN

    def __init__(self, message: str, error_type: Optional[ErrorType] = None, suggested_delay: Optional[float] = None):
        super().__init__(message)
        if error_type is not None:
            self.error_type = error_type
        self.suggested_delay = suggested_delay

    @property
    def classification(self) -> ErrorClassification:
        base = CLASSIFICATIONS[self.error_type]
        if self.suggested_delay is None:
            return base
        return ErrorClassification(base.error_type, base.is_retryable, base.severity, self.suggested_delay)


class NetworkError(ClassifiedError):
    error_type = ErrorType.NETWORK


class DatabaseError(ClassifiedError):
    error_type = ErrorType.DATABASE


class RateLimitError(ClassifiedError):
    error_type = ErrorType.RATE_LIMIT


class AuthenticationError(ClassifiedError):
    error_type = ErrorType.AUTHENTICATION


class ValidationError(ClassifiedError):
    error_type = ErrorType.VALIDATION


class SecurityViolationError(ClassifiedError):
    error_type = ErrorType.SECURITY_VIOLATION


class RetryDeadlineExceeded(ClassifiedError):
    """The retry loop ran out of time before the next attempt."""
    error_type = ErrorType.TIMEOUT

    def __init__(self, message: str, last_error: Optional[BaseException] = None):
        super().__init__(message)
        self.last_error = last_error


# Message fallback, checked in order.
MESSAGE_PATTERNS: Tuple[Tuple[ErrorType, "re.Pattern"], ...] = (
    (ErrorType.AUTHENTICATION, re.compile(r"unauthori[sz]ed|authentication|forbidden|\b401\b|\b403\b", re.IGNORECASE)),
    (ErrorType.RATE_LIMIT, re.compile(r"rate limit|too many requests|\b429\b", re.IGNORECASE)),
    (ErrorType.DATABASE, re.compile(r"database|connection pool|deadlock|sqlstate", re.IGNORECASE)),
    (ErrorType.NETWORK, re.compile(r"network|timeout|timed out|connection|econnrefused|econnreset", re.IGNORECASE)),
    (ErrorType.VALIDATION, re.compile(r"validation|invalid|\b400\b|\b422\b", re.IGNORECASE)),
)


def _classify_http_status(status: int) -> Optional[ErrorType]:
    if status == 429:
        return ErrorType.RATE_LIMIT
    if status in (401, 403):
        return ErrorType.AUTHENTICATION
    if status in (400, 422):
        return ErrorType.VALIDATION
    if status in (408, 504):
        return ErrorType.NETWORK
    if status >= 500:
        return ErrorType.NETWORK
    return None


def _classify_by_type(error: BaseException) -> Optional[ErrorType]:
    if isinstance(error, aiohttp.ClientResponseError):
        return _classify_http_status(error.status)
    if isinstance(error, (aiohttp.ClientConnectionError, aiohttp.ServerTimeoutError)):
        return ErrorType.NETWORK
    if isinstance(error, sa_exc.IntegrityError):
        return ErrorType.DATABASE
    if isinstance(error, (sa_exc.OperationalError, sa_exc.DisconnectionError, sa_exc.TimeoutError)):
        return ErrorType.DATABASE
    if isinstance(error, sa_exc.DBAPIError) and error.connection_invalidated:
        return ErrorType.DATABASE
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return ErrorType.NETWORK
    return None


def _classify_by_message(message: str) -> ErrorType:
    for error_type, pattern in MESSAGE_PATTERNS:
        if pattern.search(message):
            return error_type
    return ErrorType.UNKNOWN


def classify_error(error: BaseException) -> ErrorClassification:
    """Classify an error raised by a wrapped operation."""
    if isinstance(error, ClassifiedError):
        return error.classification

    error_type = _classify_by_type(error)
    if error_type is None:
        error_type = _classify_by_message(str(error))

    classification = CLASSIFICATIONS[error_type]
    logger.debug(
        "Error classified",
        error_class=type(error).__name__,
        error_type=classification.error_type.value,
        is_retryable=classification.is_retryable,
    )
    return classification
