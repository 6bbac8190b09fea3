"""
Request-defense middleware.

Runs security analysis, rejects blocked addresses, applies route-class rate
limits and stamps rate-limit headers on the response. Failures inside the
defense layer are logged and the request proceeds.
"""

import math
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from fastapi import status
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp

from ..shared.logging_config import CorrelationContext, get_logger
from .rate_limiter import RateLimiter, add_rate_limit_headers
from .request_facts import RequestFacts, extract_ip
from .security_monitor import SecurityMonitor


class DefenseMiddleware(BaseHTTPMiddleware):
    """Security analysis and admission control for every request."""

    def __init__(
        self,
        app: ASGIApp,
        security_monitor: Optional[SecurityMonitor] = None,
        rate_limiter: Optional[RateLimiter] = None
    ):
        super().__init__(app)
        self.security_monitor = security_monitor or SecurityMonitor()
        self.rate_limiter = rate_limiter or RateLimiter()
        self.logger = get_logger(__name__, 'defense_middleware')

    async def dispatch(self, request: Request, call_next) -> Response:
        facts = RequestFacts.from_request(request)
        request_id = facts.header("x-request-id") or str(uuid4())
        user_id = getattr(request.state, 'user_id', None)
        ip = extract_ip(facts)

        try:
            await self.security_monitor.analyze_request(facts, request_id, user_id)
            if await self.security_monitor.is_ip_blocked(ip):
                return await self._blocked_response(ip, request_id)
        except Exception as e:
            self.logger.error(
                f"Security analysis failed, continuing: {e}",
                operation="dispatch",
                request_id=request_id,
                path=facts.path,
                error=str(e)
            )

        verdict = await self.rate_limiter.check_request(facts)
        result = verdict['result']
        config = verdict['config']

        if not result.allowed:
            self.logger.warning(
                "Request blocked by rate limiter",
                operation="rate_limit_block",
                request_id=request_id,
                client_ip=ip,
                path=facts.path,
                policy=config.name
            )
            response = JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={
                    "error": "rate_limit_exceeded",
                    "retry_after": math.ceil(result.retry_after or 0),
                    "timestamp": datetime.now(timezone.utc).isoformat()
                }
            )
            return add_rate_limit_headers(response, result, config.name)

        with CorrelationContext(request_id_value=request_id, user_id_value=user_id):
            response = await call_next(request)

        return add_rate_limit_headers(response, result, config.name)

    async def _blocked_response(self, ip: str, request_id: str) -> Response:
        entry = await self.security_monitor.window_counter.get_entry(f"ip_block:{ip}")
        retry_after = 60
        if entry and entry.block_until:
            now = self.security_monitor.clock.now()
            retry_after = max(1, math.ceil((entry.block_until - now).total_seconds()))

        self.logger.warning(
            "Request from blocked address rejected",
            operation="ip_block",
            request_id=request_id,
            client_ip=ip
        )
        return JSONResponse(
            status_code=status.HTTP_403_FORBIDDEN,
            content={
                "error": "address_blocked",
                "retry_after": retry_after,
                "timestamp": datetime.now(timezone.utc).isoformat()
            },
            headers={'Retry-After': str(retry_after)}
        )
