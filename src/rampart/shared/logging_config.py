"""
Logging configuration for Rampart.

Provides structured logging with correlation IDs and multiple output formats.
Defense components log through RampartLogger, which passes structured fields
as ``extra`` on stdlib records; resilience components log through structlog,
which ``LoggingConfig.setup_logging`` routes into the same stdlib handlers.
Nothing is configured on import.
"""

import json
import logging
import sys
import traceback
from contextvars import ContextVar
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Union
from uuid import uuid4

import structlog


class LogLevel(str, Enum):
    """Log levels for filtering."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


# Context variables for correlation tracking
correlation_id: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)
user_id: ContextVar[Optional[str]] = ContextVar('user_id', default=None)
request_id: ContextVar[Optional[str]] = ContextVar('request_id', default=None)

# Attributes LogRecord reserves; passing them in ``extra`` raises KeyError.
_RESERVED_RECORD_KEYS = frozenset(
    logging.LogRecord('', 0, '', 0, '', (), None).__dict__
) | {'message', 'asctime'}


class CorrelationFilter(logging.Filter):
    """Add correlation IDs and context to log records."""

    def filter(self, record):
        record.correlation_id = getattr(record, 'correlation_id', None) or correlation_id.get() or 'unknown'
        record.user_id = user_id.get() or 'anonymous'
        record.request_id = getattr(record, 'request_id', None) or request_id.get() or 'no-request'
        record.component = getattr(record, 'component', 'unknown')
        record.operation = getattr(record, 'operation', 'unknown')
        return True


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def __init__(self, include_extra=True):
        super().__init__()
        self.include_extra = include_extra

    def format(self, record):
        log_entry = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'correlation_id': getattr(record, 'correlation_id', 'unknown'),
            'user_id': getattr(record, 'user_id', 'anonymous'),
            'request_id': getattr(record, 'request_id', 'no-request'),
            'component': getattr(record, 'component', 'unknown'),
            'operation': getattr(record, 'operation', 'unknown'),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        if record.exc_info:
            log_entry['exception'] = {
                'type': record.exc_info[0].__name__,
                'message': str(record.exc_info[1]),
                'traceback': traceback.format_exception(*record.exc_info)
            }

        if self.include_extra:
            for key, value in record.__dict__.items():
                if key in log_entry or key in _RESERVED_RECORD_KEYS or key.startswith('_'):
                    continue
                try:
                    json.dumps(value)
                    log_entry[key] = value
                except (TypeError, ValueError):
                    log_entry[key] = str(value)

        return json.dumps(log_entry, default=str)


class ColoredFormatter(logging.Formatter):
    """Colored formatter for console output."""

    COLORS = {
        'DEBUG': '\033[36m',
        'INFO': '\033[32m',
        'WARNING': '\033[33m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[35m',
    }
    RESET = '\033[0m'

    def format(self, record):
        color = self.COLORS.get(record.levelname, '')
        formatted = super().format(record)
        correlation_info = f"[{str(getattr(record, 'correlation_id', 'unknown'))[:8]}]"
        return f"{color}{formatted}{self.RESET} {correlation_info}"


class RampartLogger:
    """
    Logger sink accepting ``(level, message, operation, **metadata)``.

    Components only supply structured fields; formatting and transport are
    left to whatever handlers the host application installs.
    """

    def __init__(self, name: str, component: str = None):
        self.logger = logging.getLogger(name)
        self.component = component or name.split('.')[-1]

    def log(self, _level: Union[int, str], _message: str, /, operation: str = None, **kwargs):
        level = _level
        if isinstance(level, str):
            level = logging.getLevelName(level.upper())
            if not isinstance(level, int):
                level = logging.INFO
        extra = {
            'component': self.component,
            'operation': operation or 'unknown',
        }
        for key, value in kwargs.items():
            # Reserved names are prefixed rather than dropped.
            extra[f"ctx_{key}" if key in _RESERVED_RECORD_KEYS else key] = value
        self.logger.log(level, _message, extra=extra)

    def debug(self, _message: str, /, operation: str = None, **kwargs):
        self.log(logging.DEBUG, _message, operation, **kwargs)

    def info(self, _message: str, /, operation: str = None, **kwargs):
        self.log(logging.INFO, _message, operation, **kwargs)

    def warning(self, _message: str, /, operation: str = None, **kwargs):
        self.log(logging.WARNING, _message, operation, **kwargs)

    def error(self, _message: str, /, operation: str = None, **kwargs):
        self.log(logging.ERROR, _message, operation, **kwargs)

    def critical(self, _message: str, /, operation: str = None, **kwargs):
        self.log(logging.CRITICAL, _message, operation, **kwargs)

    def exception(self, _message: str, /, operation: str = None, **kwargs):
        """Log exception with traceback."""
        extra = {
            'component': self.component,
            'operation': operation or 'exception',
        }
        for key, value in kwargs.items():
            extra[f"ctx_{key}" if key in _RESERVED_RECORD_KEYS else key] = value
        self.logger.exception(_message, extra=extra)


class LoggingConfig:
    """Centralized logging configuration."""

    DEFAULT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

    @classmethod
    def setup_logging(
        cls,
        level: Union[str, int] = logging.INFO,
        format_type: str = 'json',
        log_file: Optional[str] = None,
        console_output: bool = True,
        correlation_tracking: bool = True
    ):
        """
        Setup logging for the host process.

        Args:
            level: Logging level
            format_type: 'json', 'colored', or 'standard'
            log_file: Optional log file path (always JSON)
            console_output: Enable console output
            correlation_tracking: Enable correlation ID tracking
        """
        if isinstance(level, LogLevel):
            level = level.value
        if log_file:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)

        root_logger = logging.getLogger()
        root_logger.setLevel(level)
        root_logger.handlers.clear()

        correlation_filter = CorrelationFilter() if correlation_tracking else None

        if console_output:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(level)
            console_handler.setFormatter(cls._build_formatter(format_type))
            if correlation_filter:
                console_handler.addFilter(correlation_filter)
            root_logger.addHandler(console_handler)

        if log_file:
            file_handler = logging.FileHandler(log_file)
            file_handler.setLevel(level)
            file_handler.setFormatter(JSONFormatter())
            if correlation_filter:
                file_handler.addFilter(correlation_filter)
            root_logger.addHandler(file_handler)

        cls._configure_structlog()
        cls._configure_component_loggers()

        logger = RampartLogger(__name__, 'logging_config')
        logger.info(
            "Logging system initialized",
            operation="setup_logging",
            log_level=logging.getLevelName(level) if isinstance(level, int) else level,
            format_type=format_type,
            log_file=log_file
        )

    @classmethod
    def _build_formatter(cls, format_type: str) -> logging.Formatter:
        if format_type == 'json':
            return JSONFormatter()
        if format_type == 'colored':
            return ColoredFormatter(cls.DEFAULT_FORMAT)
        return logging.Formatter(cls.DEFAULT_FORMAT)

    @classmethod
    def _configure_structlog(cls):
        """Route structlog events into stdlib handlers with fields as ``extra``."""
        structlog.configure(
            processors=[
                structlog.stdlib.filter_by_level,
                structlog.stdlib.add_logger_name,
                structlog.stdlib.PositionalArgumentsFormatter(),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.stdlib.render_to_log_kwargs,
            ],
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=True,
        )

    @classmethod
    def _configure_component_loggers(cls):
        logging.getLogger('rampart').setLevel(logging.INFO)

        third_party_loggers = {
            'uvicorn': logging.WARNING,
            'fastapi': logging.WARNING,
            'httpx': logging.WARNING,
            'aiohttp': logging.WARNING,
            'sqlalchemy': logging.WARNING,
        }
        for logger_name, level in third_party_loggers.items():
            logging.getLogger(logger_name).setLevel(level)


class CorrelationContext:
    """Context manager for correlation tracking."""

    def __init__(self, correlation_id_value: str = None, user_id_value: str = None, request_id_value: str = None):
        self.correlation_id_value = correlation_id_value or str(uuid4())
        self.user_id_value = user_id_value
        self.request_id_value = request_id_value
        self.correlation_token = None
        self.user_token = None
        self.request_token = None

    def __enter__(self):
        self.correlation_token = correlation_id.set(self.correlation_id_value)
        if self.user_id_value:
            self.user_token = user_id.set(self.user_id_value)
        if self.request_id_value:
            self.request_token = request_id.set(self.request_id_value)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.correlation_token:
            correlation_id.reset(self.correlation_token)
        if self.user_token:
            user_id.reset(self.user_token)
        if self.request_token:
            request_id.reset(self.request_token)


def get_logger(name: str, component: str = None) -> RampartLogger:
    """Get a Rampart logger instance."""
    return RampartLogger(name, component)


def get_correlation_id() -> Optional[str]:
    """Get current correlation ID."""
    return correlation_id.get()


def get_request_id() -> Optional[str]:
    """Get current request ID."""
    return request_id.get()


def logging_config_from_settings(settings: Any) -> Dict[str, Any]:
    """Keyword arguments for ``setup_logging`` taken from ``LoggingSettings``."""
    return {
        'level': settings.level.value if isinstance(settings.level, LogLevel) else settings.level,
        'format_type': settings.format_type,
        'log_file': settings.log_file,
    }
