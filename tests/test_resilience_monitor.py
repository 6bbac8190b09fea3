"""
Tests for outcome tracking, alerting and health status.
"""

from unittest.mock import Mock

import pytest

from rampart.resilience.errors import DatabaseError, NetworkError
from rampart.resilience.monitor import AlertType, HealthStatus, ResilienceMonitor
from rampart.shared.alerting import AlertSeverity
from rampart.shared.config import ResilienceSettings


@pytest.fixture
def monitor(clock):
    return ResilienceMonitor(settings=ResilienceSettings(), clock=clock)


async def track_many(monitor, successes=0, failures=0, **kwargs):
    for _ in range(successes):
        await monitor.track_result(True, **kwargs)
    for _ in range(failures):
        await monitor.track_result(False, error=NetworkError("connection reset"), **kwargs)


class TestTrackResult:
    """Test failure streaks and liveness alerts."""

    @pytest.mark.asyncio
    async def test_consecutive_failures_alert_once(self, monitor):
        handler = Mock()
        monitor.alert_manager.add_alert_handler(handler)

        alerts = []
        for _ in range(4):
            alerts.extend(await monitor.track_result(False, error=NetworkError("reset")))
        assert alerts == []

        alerts = await monitor.track_result(False, error=NetworkError("reset"))
        assert [a.type for a in alerts] == [AlertType.CONSECUTIVE_FAILURES.value]
        assert alerts[0].severity == AlertSeverity.CRITICAL
        assert alerts[0].metadata['consecutive_failures'] == 5

        # Active alert of the same type suppresses duplicates
        assert await monitor.track_result(False, error=NetworkError("reset")) == []
        handler.assert_called_once()

    @pytest.mark.asyncio
    async def test_success_resets_streak(self, monitor, clock):
        await track_many(monitor, failures=3)
        await monitor.track_result(True, processing_time_ms=12.0)

        assert monitor.consecutive_failures == 0
        assert monitor.last_success_at == clock.now()

    @pytest.mark.asyncio
    async def test_system_down_after_quiet_period(self, monitor, clock):
        await monitor.track_result(True)
        clock.advance(minutes=29)
        assert await monitor.track_result(False, error=NetworkError("reset")) == []

        clock.advance(minutes=2)
        alerts = await monitor.track_result(False, error=NetworkError("reset"))

        assert [a.type for a in alerts] == [AlertType.SYSTEM_DOWN.value]
        assert alerts[0].metadata['minutes_since_success'] == pytest.approx(31)

    @pytest.mark.asyncio
    async def test_system_down_measured_from_start(self, monitor, clock):
        clock.advance(minutes=45)
        alerts = await monitor.track_result(False, error=NetworkError("reset"))

        assert [a.type for a in alerts] == [AlertType.SYSTEM_DOWN.value]
        assert alerts[0].metadata['last_success'] is None


class TestCheckAlerts:
    """Test periodic threshold evaluation."""

    @pytest.mark.asyncio
    async def test_no_data_no_alerts(self, monitor):
        assert await monitor.check_alerts() == []
        assert monitor.get_error_rate() == 0.0

    @pytest.mark.asyncio
    async def test_error_rate_high(self, monitor):
        await track_many(monitor, successes=17, failures=3)

        alerts = await monitor.check_alerts()

        assert monitor.get_error_rate() == pytest.approx(15.0)
        assert [a.type for a in alerts] == [AlertType.ERROR_RATE.value]
        assert alerts[0].severity == AlertSeverity.HIGH
        assert await monitor.check_alerts() == []

    @pytest.mark.asyncio
    async def test_error_rate_critical(self, monitor):
        await track_many(monitor, successes=5, failures=4)

        alerts = await monitor.check_alerts()

        assert alerts[0].severity == AlertSeverity.CRITICAL

    @pytest.mark.asyncio
    async def test_error_rate_at_threshold_matches_health(self, monitor):
        await track_many(monitor, successes=18, failures=2)

        alerts = await monitor.check_alerts()

        assert monitor.get_error_rate() == pytest.approx(10.0)
        assert alerts[0].severity == AlertSeverity.HIGH
        assert monitor.get_health_summary()['status'] == HealthStatus.DEGRADED.value

    @pytest.mark.asyncio
    async def test_error_rate_at_double_threshold(self, monitor):
        await track_many(monitor, successes=4, failures=1)

        alerts = await monitor.check_alerts()

        assert alerts[0].severity == AlertSeverity.CRITICAL
        assert monitor.get_health_summary()['status'] == HealthStatus.UNHEALTHY.value

    @pytest.mark.asyncio
    async def test_slow_operations(self, monitor):
        await monitor.track_result(True, processing_time_ms=45000)
        await monitor.track_result(True, processing_time_ms=100)

        alerts = await monitor.check_alerts()

        assert [a.type for a in alerts] == [AlertType.PROCESSING_TIME.value]
        assert alerts[0].severity == AlertSeverity.MEDIUM
        assert alerts[0].metadata['slow_operations'] == 1

    @pytest.mark.asyncio
    async def test_window_excludes_old_metrics(self, monitor, clock):
        await track_many(monitor, failures=2)
        clock.advance(minutes=61)
        await track_many(monitor, successes=2)

        assert monitor.get_error_rate() == 0.0
        assert monitor.get_error_rate(window_minutes=120) == pytest.approx(50.0)


class TestHealth:
    """Test health status derivation."""

    @pytest.mark.asyncio
    async def test_healthy(self, monitor):
        await track_many(monitor, successes=3)

        summary = monitor.get_health_summary()

        assert summary['status'] == HealthStatus.HEALTHY.value
        assert summary['total_operations'] == 3
        assert monitor.get_recommendations(summary) == ["System operating normally"]

    @pytest.mark.asyncio
    async def test_degraded_on_error_rate(self, monitor):
        await track_many(monitor, successes=17, failures=3)
        assert monitor.get_health_summary()['status'] == HealthStatus.DEGRADED.value

    @pytest.mark.asyncio
    async def test_unhealthy_on_failure_streak(self, monitor):
        await track_many(monitor, failures=5)

        summary = monitor.get_health_summary()

        assert summary['status'] == HealthStatus.UNHEALTHY.value
        assert summary['critical_alerts'] == 1
        recommendations = monitor.get_recommendations(summary)
        assert "Critical alerts require immediate attention" in recommendations

    @pytest.mark.asyncio
    async def test_resolve_restores_health(self, monitor):
        await track_many(monitor, failures=5)
        await track_many(monitor, successes=45)
        alert = monitor.get_active_alerts()[0]

        assert monitor.get_health_summary()['status'] == HealthStatus.UNHEALTHY.value
        assert monitor.resolve_alert(alert.id) is True
        assert monitor.resolve_alert(alert.id) is False
        assert monitor.resolve_alert("alert_missing") is False

        # 5 of 50 failed: exactly at the threshold
        assert monitor.get_health_summary()['status'] == HealthStatus.DEGRADED.value

    @pytest.mark.asyncio
    async def test_perform_health_check(self, monitor):
        await track_many(monitor, successes=5, failures=4)

        report = await monitor.perform_health_check()

        assert len(report['new_alerts']) == 1
        assert report['health_summary']['status'] == HealthStatus.UNHEALTHY.value
        assert "Investigate recent failures: error rate is above threshold" in report['recommendations']

    @pytest.mark.asyncio
    async def test_no_success_recommendation(self, monitor, clock):
        await monitor.track_result(True)
        clock.advance(minutes=20)
        await monitor.track_result(False, error=NetworkError("reset"))

        recommendations = monitor.get_recommendations(monitor.get_health_summary())

        assert "No recent successful operations: verify configuration and credentials" in recommendations


class TestErrorAnalysis:
    """Test error breakdowns."""

    @pytest.mark.asyncio
    async def test_breakdown(self, monitor):
        for ms in range(1, 21):
            await monitor.track_result(True, event_type="webhook", processing_time_ms=float(ms * 10))
        await monitor.track_result(False, event_type="webhook", error=NetworkError("reset"))
        await monitor.track_result(False, event_type="database", error=DatabaseError("deadlock"))
        await monitor.track_result(False, event_type="database", error=Exception("mystery"))

        analysis = monitor.get_error_analysis()

        assert analysis['total_operations'] == 23
        assert analysis['total_errors'] == 3
        assert analysis['errors_by_type'] == {'network': 1, 'database': 1, 'unknown': 1}
        assert analysis['errors_by_event_type'] == {'webhook': 1, 'database': 2}
        assert [e['error'] for e in analysis['recent_errors']] == ["reset", "deadlock", "mystery"]
        assert analysis['performance']['slowest_ms'] == 200.0
        assert analysis['performance']['p95_ms'] == 200.0
        assert analysis['performance']['average_ms'] == pytest.approx(105.0)

    def test_empty(self, monitor):
        analysis = monitor.get_error_analysis()
        assert analysis['total_operations'] == 0
        assert analysis['performance'] == {'average_ms': None, 'p95_ms': None, 'slowest_ms': None}
