"""
Tests for the defense middleware and the monitoring endpoints.
"""

from unittest.mock import AsyncMock

import httpx
import pytest
from fastapi import FastAPI

from rampart.dashboard import create_monitoring_router
from rampart.resilience.errors import NetworkError
from rampart.resilience.monitor import ResilienceMonitor
from rampart.security.middleware import DefenseMiddleware
from rampart.security.rate_limiter import RateLimitConfig, RateLimiter, RouteClass
from rampart.security.request_facts import RequestFacts
from rampart.security.security_monitor import SecurityMonitor
from rampart.security.window_counter import WindowCounter
from rampart.shared.alerting import AlertSeverity
from rampart.shared.config import ResilienceSettings
from rampart.shared.store import InMemoryStore


def client_for(app: FastAPI) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver")


@pytest.fixture
def security_monitor(clock):
    return SecurityMonitor(window_counter=WindowCounter(store=InMemoryStore(clock), clock=clock), clock=clock)


@pytest.fixture
def resilience_monitor(clock):
    return ResilienceMonitor(settings=ResilienceSettings(), clock=clock)


class TestDefenseMiddleware:
    """Test admission control on a small app."""

    @pytest.fixture
    def app(self, clock, security_monitor):
        limiter = RateLimiter(
            counter=WindowCounter(store=InMemoryStore(clock), clock=clock),
            configs={RouteClass.DEFAULT: RateLimitConfig(name="default", window_seconds=60, max_requests=2)},
            clock=clock,
            enabled=True
        )
        app = FastAPI()
        app.add_middleware(DefenseMiddleware, security_monitor=security_monitor, rate_limiter=limiter)

        @app.get("/items")
        async def items():
            return {"ok": True}

        return app

    @pytest.mark.asyncio
    async def test_rate_limit_headers_and_rejection(self, app):
        async with client_for(app) as client:
            first = await client.get("/items")
            second = await client.get("/items")
            third = await client.get("/items")

        assert first.status_code == 200
        assert first.json() == {"ok": True}
        assert first.headers['X-RateLimit-Limit'] == "2"
        assert first.headers['X-RateLimit-Remaining'] == "1"
        assert first.headers['X-RateLimit-Policy'] == "default"
        assert second.headers['X-RateLimit-Remaining'] == "0"

        assert third.status_code == 429
        assert third.json()['error'] == "rate_limit_exceeded"
        assert int(third.headers['Retry-After']) >= 1

    @pytest.mark.asyncio
    async def test_injection_blocks_address(self, app, security_monitor):
        async with client_for(app) as client:
            attack = await client.get("/items", params={"q": "1 union select password from users"})
            follow_up = await client.get("/items")

        assert attack.status_code == 403
        assert attack.json()['error'] == "address_blocked"
        assert attack.headers['Retry-After'] == "3600"
        assert follow_up.status_code == 403

        events = security_monitor.events
        assert events[0].type.value == "sql_injection_attempt"
        assert events[0].risk_score == 100
        assert len(security_monitor.alert_manager.get_active_alerts()) == 1

    @pytest.mark.asyncio
    async def test_security_failure_does_not_block(self, app, security_monitor):
        security_monitor.analyze_request = AsyncMock(side_effect=RuntimeError("monitor down"))

        async with client_for(app) as client:
            response = await client.get("/items")

        assert response.status_code == 200


class TestMonitoringEndpoints:
    """Test the monitoring router."""

    @pytest.fixture
    def app(self, resilience_monitor, security_monitor):
        app = FastAPI()
        app.include_router(
            create_monitoring_router(resilience_monitor, security_monitor),
            prefix="/monitoring"
        )
        return app

    @pytest.mark.asyncio
    async def test_health_healthy(self, app, resilience_monitor):
        await resilience_monitor.track_result(True, processing_time_ms=15.0)

        async with client_for(app) as client:
            response = await client.get("/monitoring/health")

        assert response.status_code == 200
        body = response.json()
        assert body['status'] == "healthy"
        assert body['recommendations'] == ["System operating normally"]

    @pytest.mark.asyncio
    async def test_health_degraded(self, app, resilience_monitor):
        for _ in range(17):
            await resilience_monitor.track_result(True)
        for _ in range(3):
            await resilience_monitor.track_result(False, error=NetworkError("reset"))

        async with client_for(app) as client:
            response = await client.get("/monitoring/health")

        assert response.status_code == 207
        body = response.json()
        assert body['status'] == "degraded"
        assert [a['type'] for a in body['new_alerts']] == ["error_rate"]

    @pytest.mark.asyncio
    async def test_health_unhealthy(self, app, resilience_monitor):
        for _ in range(5):
            await resilience_monitor.track_result(False, error=NetworkError("reset"))

        async with client_for(app) as client:
            response = await client.get("/monitoring/health")

        assert response.status_code == 503
        assert response.json()['summary']['consecutive_failures'] == 5

    @pytest.mark.asyncio
    async def test_alerts_and_resolution(self, app, resilience_monitor, security_monitor, clock):
        for _ in range(5):
            await resilience_monitor.track_result(False, error=NetworkError("reset"))
        clock.advance(minutes=1)
        security_alert = await security_monitor.alert_manager.create_alert(
            "xss_attempt", AlertSeverity.HIGH, "Script injection in form field"
        )

        async with client_for(app) as client:
            listed = (await client.get("/monitoring/alerts")).json()
            resolved = await client.post(f"/monitoring/alerts/{security_alert.id}/resolve")
            again = await client.post(f"/monitoring/alerts/{security_alert.id}/resolve")
            missing = await client.post("/monitoring/alerts/alert_unknown/resolve")
            active = (await client.get("/monitoring/alerts")).json()
            everything = (await client.get("/monitoring/alerts", params={"active_only": "false"})).json()

        assert listed['count'] == 2
        assert [a['source'] for a in listed['alerts']] == ["security", "resilience"]

        assert resolved.json() == {'alert_id': security_alert.id, 'resolved': True}
        assert again.json()['resolved'] is False
        assert missing.status_code == 404

        assert active['count'] == 1
        assert active['alerts'][0]['type'] == "consecutive_failures"
        assert everything['count'] == 2

    @pytest.mark.asyncio
    async def test_alerts_window(self, app, resilience_monitor, clock):
        for _ in range(5):
            await resilience_monitor.track_result(False, error=NetworkError("reset"))
        clock.advance(minutes=30)

        async with client_for(app) as client:
            recent = (await client.get("/monitoring/alerts", params={"window_minutes": 10})).json()
            wider = (await client.get("/monitoring/alerts", params={"window_minutes": 60})).json()

        assert recent['count'] == 0
        assert wider['count'] == 1

    @pytest.mark.asyncio
    async def test_security_metrics(self, app, security_monitor):
        await security_monitor.analyze_request(
            RequestFacts.build(path="/wp-admin/setup.php", client_host="10.0.0.5"),
            request_id="req-1"
        )

        async with client_for(app) as client:
            response = await client.get("/monitoring/security/metrics", params={"window_minutes": 30})

        assert response.status_code == 200
        metrics = response.json()
        assert metrics['total_events'] == 1
        assert metrics['events_by_type'] == {'suspicious_activity': 1}
        assert metrics['top_risky_ips'][0]['ip'] == "10.0.0.5"
