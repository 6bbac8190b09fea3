"""
Per-identifier request throttling.

Each route class carries its own window, limit, optional block duration and
key strategy. Keys are built from the client IP, optionally combined with a
user-agent prefix or a webhook signature prefix. Checks fail open: an internal
error admits the request and is logged at error level.
"""

import asyncio
import math
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, Optional

from starlette.responses import Response

from ..shared.clock import Clock, get_clock
from ..shared.config import RateLimitSettings, get_rate_limit_settings
from ..shared.logging_config import get_logger
from ..shared.metrics_collector import get_metrics_collector
from ..shared.store import KeyValueStore
from .request_facts import RequestFacts, extract_ip
from .window_counter import WindowCounter, WindowResult


class KeyStrategy(str, Enum):
    """How a rate-limit identifier is derived from a request."""
    IP = "ip"
    IP_USER_AGENT = "ip_user_agent"
    IP_SIGNATURE = "ip_signature"


class RouteClass(str, Enum):
    """Route classes with distinct limits."""
    DEFAULT = "default"
    AUTH = "auth"
    WEBHOOK = "webhook"
    API = "api"
    MONITORING = "monitoring"
    HEALTH = "health"


@dataclass(frozen=True)
class RateLimitConfig:
    """Limit applied to one route class."""
    name: str
    window_seconds: float
    max_requests: int
    block_seconds: Optional[float] = None
    key_strategy: KeyStrategy = KeyStrategy.IP
    allow_burst: bool = False


USER_AGENT_KEY_LENGTH = 50
SIGNATURE_KEY_LENGTH = 20
SIGNATURE_HEADERS = ("svix-signature", "webhook-signature")


def build_rate_limit_configs(settings: Optional[RateLimitSettings] = None) -> Dict[RouteClass, RateLimitConfig]:
    """Route-class limits from settings."""
    s = settings or get_rate_limit_settings()
    return {
        RouteClass.DEFAULT: RateLimitConfig(
            name=RouteClass.DEFAULT.value,
            window_seconds=s.default_window_seconds,
            max_requests=s.default_max_requests,
        ),
        RouteClass.AUTH: RateLimitConfig(
            name=RouteClass.AUTH.value,
            window_seconds=s.auth_window_seconds,
            max_requests=s.auth_max_requests,
            block_seconds=s.auth_block_seconds,
            key_strategy=KeyStrategy.IP_USER_AGENT,
        ),
        RouteClass.WEBHOOK: RateLimitConfig(
            name=RouteClass.WEBHOOK.value,
            window_seconds=s.webhook_window_seconds,
            max_requests=s.webhook_max_requests,
            key_strategy=KeyStrategy.IP_SIGNATURE,
            allow_burst=True,
        ),
        RouteClass.API: RateLimitConfig(
            name=RouteClass.API.value,
            window_seconds=s.api_window_seconds,
            max_requests=s.api_max_requests,
            key_strategy=KeyStrategy.IP_USER_AGENT,
        ),
        RouteClass.MONITORING: RateLimitConfig(
            name=RouteClass.MONITORING.value,
            window_seconds=s.monitoring_window_seconds,
            max_requests=s.monitoring_max_requests,
        ),
        RouteClass.HEALTH: RateLimitConfig(
            name=RouteClass.HEALTH.value,
            window_seconds=s.health_window_seconds,
            max_requests=s.health_max_requests,
        ),
    }


def resolve_route_class(path: str) -> RouteClass:
    """Pick the route class for a request path."""
    if path.startswith("/api/webhooks"):
        return RouteClass.WEBHOOK
    if path.startswith("/health"):
        return RouteClass.HEALTH
    if path.startswith("/monitoring") or path.startswith("/metrics"):
        return RouteClass.MONITORING
    if path.startswith("/api/auth") or "sign-in" in path or "sign-up" in path:
        return RouteClass.AUTH
    if path.startswith("/api"):
        return RouteClass.API
    return RouteClass.DEFAULT


def generate_key(facts: RequestFacts, strategy: KeyStrategy) -> str:
    """Build the throttling identifier for a request."""
    ip = extract_ip(facts)

    if strategy == KeyStrategy.IP_USER_AGENT:
        user_agent = facts.user_agent or "unknown"
        return f"{ip}:{user_agent[:USER_AGENT_KEY_LENGTH]}"

    if strategy == KeyStrategy.IP_SIGNATURE:
        signature = ""
        for header in SIGNATURE_HEADERS:
            signature = facts.header(header)
            if signature:
                break
        return f"{ip}:{signature[:SIGNATURE_KEY_LENGTH]}"

    return ip


class RateLimiter:
    """Request throttling over a WindowCounter."""

    def __init__(
        self,
        counter: Optional[WindowCounter] = None,
        configs: Optional[Dict[RouteClass, RateLimitConfig]] = None,
        store: Optional[KeyValueStore] = None,
        clock: Optional[Clock] = None,
        enabled: Optional[bool] = None
    ):
        self.clock = clock or get_clock()
        self.counter = counter or WindowCounter(store=store, clock=self.clock)
        self.configs = configs or build_rate_limit_configs()
        self.enabled = get_rate_limit_settings().enabled if enabled is None else enabled
        self.logger = get_logger(__name__, 'rate_limiter')
        self.metrics = get_metrics_collector()

        self.stats = {
            'total_requests': 0,
            'allowed_requests': 0,
            'blocked_requests': 0,
            'internal_errors': 0,
        }

    def get_config(self, route_class: RouteClass) -> RateLimitConfig:
        return self.configs.get(route_class, self.configs[RouteClass.DEFAULT])

    def _fail_open(self, config: RateLimitConfig) -> WindowResult:
        return WindowResult(
            allowed=True,
            remaining=config.max_requests,
            reset_at=self.clock.now() + timedelta(seconds=config.window_seconds),
            limit=config.max_requests
        )

    async def check_rate_limit(self, identifier: str, config: RateLimitConfig) -> WindowResult:
        """
        Count one request against ``identifier`` under ``config``.

        Returns:
            The WindowCounter verdict; on internal error an allowing verdict
        """
        self.stats['total_requests'] += 1

        if not self.enabled:
            return self._fail_open(config)

        try:
            result = await self.counter.check(
                f"rate_limit:{config.name}:{identifier}",
                config.max_requests,
                config.window_seconds,
                config.block_seconds
            )
        except Exception as e:
            self.stats['internal_errors'] += 1
            self.logger.error(
                f"Rate limit check failed, admitting request: {e}",
                operation="check_rate_limit",
                identifier=identifier,
                policy=config.name,
                error=str(e)
            )
            return self._fail_open(config)

        if result.allowed:
            self.stats['allowed_requests'] += 1
            self.metrics.get_counter('rate_limit_requests_allowed_total').increment(policy=config.name)
        else:
            self.stats['blocked_requests'] += 1
            self.metrics.get_counter('rate_limit_blocks_total').increment(policy=config.name)
            self.logger.warning(
                "Rate limit exceeded",
                operation="check_rate_limit",
                identifier=identifier,
                policy=config.name,
                blocked=result.blocked,
                retry_after=result.retry_after
            )

        return result

    async def check_request(self, facts: RequestFacts) -> Dict[str, Any]:
        """Resolve the route class and key for a request and check it."""
        route_class = resolve_route_class(facts.path)
        config = self.get_config(route_class)
        try:
            identifier = generate_key(facts, config.key_strategy)
        except Exception as e:
            self.stats['internal_errors'] += 1
            self.logger.error(
                f"Rate limit key generation failed, admitting request: {e}",
                operation="check_request",
                path=facts.path,
                error=str(e)
            )
            return {'result': self._fail_open(config), 'config': config, 'identifier': None}

        result = await self.check_rate_limit(identifier, config)
        return {'result': result, 'config': config, 'identifier': identifier}

    async def cleanup_expired_entries(self) -> int:
        return await self.counter.cleanup_expired()

    async def get_stats(self) -> Dict[str, Any]:
        counter_stats = await self.counter.get_stats()
        return {**self.stats, **counter_stats}


def add_rate_limit_headers(response: Response, result: WindowResult, policy: Optional[str] = None) -> Response:
    """Attach informational rate-limit headers from a verdict."""
    now = get_clock().now()
    if result.limit is not None:
        response.headers['X-RateLimit-Limit'] = str(result.limit)
    response.headers['X-RateLimit-Remaining'] = str(result.remaining)
    response.headers['X-RateLimit-Reset'] = str(math.ceil(result.reset_at.timestamp()))
    if policy:
        response.headers['X-RateLimit-Policy'] = policy

    if result.blocked and result.block_until:
        response.headers['X-RateLimit-Blocked'] = 'true'
        response.headers['X-RateLimit-Block-Until'] = str(math.ceil(result.block_until.timestamp()))

    if not result.allowed:
        retry_after = result.retry_after
        if retry_after is None:
            retry_after = max(0.0, (result.reset_at - now).total_seconds())
        response.headers['Retry-After'] = str(max(1, math.ceil(retry_after)))

    return response


async def start_rate_limiter_cleanup_task(rate_limiter: 'RateLimiter', interval_seconds: Optional[float] = None):
    """Start background cleanup task for rate limiter."""
    interval = interval_seconds or get_rate_limit_settings().cleanup_interval_seconds
    logger = get_logger(__name__, 'rate_limiter_cleanup')
    while True:
        try:
            await asyncio.sleep(interval)
            cleaned = await rate_limiter.cleanup_expired_entries()
            if cleaned > 0:
                logger.info(f"Cleaned up {cleaned} expired rate limit entries", operation="cleanup")
        except Exception as e:
            logger.error(f"Error in rate limiter cleanup: {e}", operation="cleanup")


_rate_limiter: Optional[RateLimiter] = None


def get_rate_limiter() -> RateLimiter:
    """Get the global rate limiter instance."""
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter()
    return _rate_limiter
