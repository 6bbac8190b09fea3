"""
Tests for security event scoring, correlation and request analysis.
"""

import asyncio
import json
from datetime import timedelta
from unittest.mock import AsyncMock, Mock

import pytest

from rampart.security.request_facts import RequestFacts
from rampart.security.security_monitor import (
    SecurityAction,
    SecurityEventType,
    SecurityMonitor,
    calculate_risk_score,
    determine_security_action,
    extract_session_id,
    generate_correlation_id,
    start_security_monitor_cleanup_task
)
from rampart.security.severity import SecuritySeverity
from rampart.security.window_counter import WindowCounter
from rampart.shared.config import SecurityMonitorSettings


def make_facts(path="/api/users", query_string="", headers=None, ip="203.0.113.7"):
    return RequestFacts.build(
        path=path,
        query_string=query_string,
        headers={"user-agent": "Mozilla/5.0", **(headers or {})},
        client_host=ip
    )


class TestRiskScoring:
    """Test the risk score and action tables."""

    def test_brute_force_critical_with_many_attempts(self):
        score = calculate_risk_score(
            SecurityEventType.BRUTE_FORCE_ATTEMPT,
            SecuritySeverity.CRITICAL,
            {'attempts': 12}
        )
        assert score == 100

    def test_weighted_base_score(self):
        assert calculate_risk_score(SecurityEventType.SUSPICIOUS_ACTIVITY, SecuritySeverity.MEDIUM) == 20
        assert calculate_risk_score(SecurityEventType.MULTIPLE_FAILED_LOGINS, SecuritySeverity.INFO) == 25
        assert calculate_risk_score(SecurityEventType.LOGIN_FROM_NEW_LOCATION, SecuritySeverity.HIGH) == 45

    def test_detail_bonuses(self):
        base = calculate_risk_score(SecurityEventType.SUSPICIOUS_ACTIVITY, SecuritySeverity.LOW)
        assert calculate_risk_score(
            SecurityEventType.SUSPICIOUS_ACTIVITY, SecuritySeverity.LOW, {'unique_ips': 6}
        ) == base + 15
        assert calculate_risk_score(
            SecurityEventType.SUSPICIOUS_ACTIVITY, SecuritySeverity.LOW, {'pattern': 'malicious_path'}
        ) == base + 20
        assert calculate_risk_score(
            SecurityEventType.SUSPICIOUS_ACTIVITY, SecuritySeverity.LOW, {'attempts': 10}
        ) == base

    def test_score_always_in_range(self):
        details_options = [
            {},
            {'attempts': 50, 'unique_ips': 50, 'pattern': 'malicious_query'},
            {'attempts': "many"},
            {'pattern': ['malicious_path', 'malicious_query'], 'unique_ips': {'a': 1}},
            {'pattern': {'kind': 'xss'}, 'attempts': [11]},
        ]
        for event_type in SecurityEventType:
            for severity in SecuritySeverity:
                for details in details_options:
                    assert 0 <= calculate_risk_score(event_type, severity, details) <= 100

    @pytest.mark.parametrize("event_type,severity,expected", [
        (SecurityEventType.ACCOUNT_TAKEOVER, SecuritySeverity.CRITICAL, SecurityAction.SESSION_TERMINATED),
        (SecurityEventType.DATA_BREACH_ATTEMPT, SecuritySeverity.CRITICAL, SecurityAction.INVESTIGATION_REQUIRED),
        (SecurityEventType.BRUTE_FORCE_ATTEMPT, SecuritySeverity.CRITICAL, SecurityAction.BLOCKED),
        (SecurityEventType.BRUTE_FORCE_ATTEMPT, SecuritySeverity.HIGH, SecurityAction.ACCOUNT_LOCKED),
        (SecurityEventType.SQL_INJECTION_ATTEMPT, SecuritySeverity.HIGH, SecurityAction.BLOCKED),
        (SecurityEventType.SUSPICIOUS_ACTIVITY, SecuritySeverity.HIGH, SecurityAction.RATE_LIMITED),
        (SecurityEventType.RATE_LIMIT_EXCEEDED, SecuritySeverity.MEDIUM, SecurityAction.RATE_LIMITED),
        (SecurityEventType.SUSPICIOUS_ACTIVITY, SecuritySeverity.MEDIUM, SecurityAction.LOGGED),
        (SecurityEventType.XSS_ATTEMPT, SecuritySeverity.LOW, SecurityAction.LOGGED),
    ])
    def test_action_table(self, event_type, severity, expected):
        assert determine_security_action(event_type, severity) == expected


class TestCorrelation:
    """Test correlation ids and request fingerprints."""

    def test_same_bucket_shares_id(self, clock):
        start = clock.now().replace(minute=0, second=0)
        first = generate_correlation_id(SecurityEventType.XSS_ATTEMPT, "1.1.1.1", start + timedelta(seconds=10))
        second = generate_correlation_id(SecurityEventType.XSS_ATTEMPT, "1.1.1.1", start + timedelta(minutes=4))
        assert first == second

    def test_bucket_boundary_changes_id(self, clock):
        start = clock.now().replace(minute=0, second=0)
        first = generate_correlation_id(SecurityEventType.XSS_ATTEMPT, "1.1.1.1", start + timedelta(minutes=4))
        second = generate_correlation_id(SecurityEventType.XSS_ATTEMPT, "1.1.1.1", start + timedelta(minutes=5))
        assert first != second

    def test_type_and_ip_change_id(self, clock):
        now = clock.now()
        base = generate_correlation_id(SecurityEventType.XSS_ATTEMPT, "1.1.1.1", now)
        assert base.startswith("xss_attempt_1.1.1.1_")
        assert base != generate_correlation_id(SecurityEventType.CSRF_ATTEMPT, "1.1.1.1", now)
        assert base != generate_correlation_id(SecurityEventType.XSS_ATTEMPT, "2.2.2.2", now)

    def test_session_id_is_truncated(self):
        facts = make_facts(headers={"cookie": "theme=dark; __session=abcdefghijklmnopqrstuvwxyz"})
        assert extract_session_id(facts) == "abcdefghijklmnop..."
        assert extract_session_id(make_facts()) is None


class TestSecurityMonitor:
    """Test event logging, request analysis and login tracking."""

    @pytest.fixture
    def settings(self):
        return SecurityMonitorSettings(request_window_max=3, request_window_seconds=60)

    @pytest.fixture
    def monitor(self, settings, clock, store):
        return SecurityMonitor(
            settings=settings,
            window_counter=WindowCounter(store=store, clock=clock),
            clock=clock
        )

    @pytest.mark.asyncio
    async def test_log_security_event(self, monitor, clock):
        facts = make_facts(headers={"cf-ipcountry": "GB"})
        event = await monitor.log_security_event(
            SecurityEventType.BRUTE_FORCE_ATTEMPT,
            SecuritySeverity.CRITICAL,
            facts,
            "req-1",
            "Brute force attack detected",
            {'attempts': 12},
            email="victim@example.com"
        )

        assert event.risk_score == 100
        assert event.action == SecurityAction.BLOCKED
        assert event.ip == "203.0.113.7"
        assert event.timestamp == clock.now()
        assert event.geolocation['country'] == "GB"
        assert len(event.device_fingerprint) == 16
        assert monitor.events == [event]

        # Critical events alert, and a blocked action bans the address
        alerts = monitor.alert_manager.get_active_alerts()
        assert len(alerts) == 1
        assert alerts[0].metadata['event_id'] == event.id
        assert await monitor.is_ip_blocked("203.0.113.7") is True

    @pytest.mark.asyncio
    async def test_low_risk_event_does_not_alert(self, monitor):
        await monitor.log_security_event(
            SecurityEventType.SUSPICIOUS_ACTIVITY, SecuritySeverity.LOW, make_facts(), "req-1", "Odd request"
        )
        assert monitor.alert_manager.get_active_alerts() == []

    @pytest.mark.asyncio
    async def test_alert_handlers_receive_alerts(self, settings, clock, store):
        sync_handler = Mock()
        async_handler = AsyncMock()
        monitor = SecurityMonitor(
            settings=settings,
            window_counter=WindowCounter(store=store, clock=clock),
            alert_handlers=[sync_handler, async_handler],
            clock=clock
        )

        await monitor.log_security_event(
            SecurityEventType.PRIVILEGE_ESCALATION, SecuritySeverity.HIGH, make_facts(), "req-1", "Escalation"
        )

        sync_handler.assert_called_once()
        async_handler.assert_awaited_once()
        assert sync_handler.call_args[0][0].type == "privilege_escalation"

    @pytest.mark.asyncio
    async def test_failing_alert_handler_is_contained(self, settings, clock, store):
        handler = Mock(side_effect=RuntimeError("pager down"))
        monitor = SecurityMonitor(
            settings=settings,
            window_counter=WindowCounter(store=store, clock=clock),
            alert_handlers=[handler],
            clock=clock
        )

        event = await monitor.log_security_event(
            SecurityEventType.ACCOUNT_TAKEOVER, SecuritySeverity.HIGH, make_facts(), "req-1", "Takeover"
        )

        assert event is not None
        assert monitor.alert_manager.get_stats()['handler_errors'] == 1

    @pytest.mark.asyncio
    async def test_clean_request_yields_nothing(self, monitor):
        assert await monitor.analyze_request(make_facts(query_string="page=2&selection=all"), "req-1") == []

    @pytest.mark.asyncio
    async def test_malicious_user_agent(self, monitor):
        events = await monitor.analyze_request(make_facts(headers={"user-agent": "sqlmap/1.7"}), "req-1")

        assert len(events) == 1
        assert events[0].type == SecurityEventType.SUSPICIOUS_ACTIVITY
        assert events[0].severity == SecuritySeverity.MEDIUM

    @pytest.mark.asyncio
    async def test_suspicious_path(self, monitor):
        events = await monitor.analyze_request(make_facts(path="/wp-admin/setup.php"), "req-1")

        assert [e.severity for e in events] == [SecuritySeverity.HIGH]
        assert events[0].details['pattern'] == 'malicious_path'

    @pytest.mark.asyncio
    async def test_sql_injection_blocks_address(self, monitor):
        events = await monitor.analyze_request(
            make_facts(query_string="id=1%20UNION%20SELECT%20password"), "req-1"
        )

        assert [e.type for e in events] == [SecurityEventType.SQL_INJECTION_ATTEMPT]
        assert events[0].action == SecurityAction.BLOCKED
        assert events[0].risk_score == 100
        assert await monitor.is_ip_blocked("203.0.113.7") is True

    @pytest.mark.asyncio
    async def test_spoofable_headers(self, monitor):
        events = await monitor.analyze_request(make_facts(headers={"x-original-url": "/admin"}), "req-1")

        assert len(events) == 1
        assert events[0].details['suspicious_headers'] == "x-original-url"

    @pytest.mark.asyncio
    async def test_request_window(self, monitor):
        for _ in range(3):
            assert await monitor.analyze_request(make_facts(), "req-1") == []

        events = await monitor.analyze_request(make_facts(), "req-1")
        assert [e.type for e in events] == [SecurityEventType.RATE_LIMIT_EXCEEDED]
        assert events[0].action == SecurityAction.RATE_LIMITED

    @pytest.mark.asyncio
    async def test_analysis_fails_open(self, monitor):
        monitor.window_counter.check = AsyncMock(side_effect=RuntimeError("store down"))
        assert await monitor.analyze_request(make_facts(), "req-1") == []

    @pytest.mark.asyncio
    async def test_failed_login_escalation(self, monitor, clock):
        facts = make_facts(path="/api/auth/login")
        for _ in range(4):
            events = await monitor.track_failed_login("Victim@Example.com", facts, "req", "bad password")
            assert [e.type for e in events] == [SecurityEventType.MULTIPLE_FAILED_LOGINS]
            clock.advance(10)

        events = await monitor.track_failed_login("victim@example.com", facts, "req", "bad password")
        assert [e.type for e in events] == [
            SecurityEventType.MULTIPLE_FAILED_LOGINS,
            SecurityEventType.BRUTE_FORCE_ATTEMPT,
        ]
        assert events[1].details['attempts'] == 5

    @pytest.mark.asyncio
    async def test_credential_stuffing(self, monitor):
        facts = make_facts(path="/api/auth/login")
        events = []
        for ip in ("10.0.0.1", "10.0.0.2", "10.0.0.3"):
            events = await monitor.track_failed_login("victim@example.com", facts, "req", "bad password", ip=ip)

        assert SecurityEventType.CREDENTIAL_STUFFING in [e.type for e in events]

    @pytest.mark.asyncio
    async def test_failed_login_tracking_restarts(self, monitor, clock):
        facts = make_facts()
        for _ in range(3):
            await monitor.track_failed_login("victim@example.com", facts, "req", "bad password")

        clock.advance(minutes=61)
        events = await monitor.track_failed_login("victim@example.com", facts, "req", "bad password")
        assert events[0].details['attempts'] == 1

    @pytest.mark.asyncio
    async def test_login_from_new_location(self, monitor):
        first = await monitor.track_successful_login("user-1", "a@example.com", make_facts(), "req", ip="10.0.0.1")
        same = await monitor.track_successful_login("user-1", "a@example.com", make_facts(), "req", ip="10.0.0.1")
        moved = await monitor.track_successful_login("user-1", "a@example.com", make_facts(), "req", ip="10.0.0.9")

        assert first == []
        assert same == []
        assert [e.type for e in moved] == [SecurityEventType.LOGIN_FROM_NEW_LOCATION]

    @pytest.mark.asyncio
    async def test_successful_login_resets_failures(self, monitor):
        facts = make_facts()
        for _ in range(3):
            await monitor.track_failed_login("a@example.com", facts, "req", "bad password")
        await monitor.track_successful_login("user-1", "a@example.com", facts, "req")

        events = await monitor.track_failed_login("a@example.com", facts, "req", "bad password")
        assert events[0].details['attempts'] == 1

    @pytest.mark.asyncio
    async def test_security_metrics(self, monitor, clock):
        facts = make_facts(ip="10.0.0.1")
        await monitor.log_security_event(
            SecurityEventType.SUSPICIOUS_ACTIVITY, SecuritySeverity.LOW, facts, "r1", "low", user_id="u1"
        )
        await monitor.log_security_event(
            SecurityEventType.MULTIPLE_FAILED_LOGINS, SecuritySeverity.MEDIUM, facts, "r2", "medium", user_id="u1"
        )
        await monitor.log_security_event(
            SecurityEventType.XSS_ATTEMPT, SecuritySeverity.HIGH, make_facts(ip="10.0.0.2"), "r3", "high"
        )

        metrics = monitor.get_security_metrics(60)

        assert metrics['total_events'] == 3
        assert metrics['events_by_type']['xss_attempt'] == 1
        assert metrics['events_by_severity'] == {'low': 1, 'medium': 1, 'high': 1}
        assert metrics['risk_score_distribution'] == {'low': 1, 'medium': 1, 'high': 1}
        assert metrics['top_risky_ips'][0]['ip'] == "10.0.0.2"
        assert metrics['top_risky_users'] == [{'user_id': "u1", 'events': 2, 'risk_score': 32}]

        clock.advance(minutes=61)
        assert monitor.get_security_metrics(60)['total_events'] == 0

    @pytest.mark.asyncio
    async def test_expired_events_dropped_on_append(self, monitor, clock):
        await monitor.log_security_event(
            SecurityEventType.SUSPICIOUS_ACTIVITY, SecuritySeverity.LOW, make_facts(), "old", "old event"
        )
        clock.advance(days=8)
        await monitor.log_security_event(
            SecurityEventType.SUSPICIOUS_ACTIVITY, SecuritySeverity.LOW, make_facts(), "new", "new event"
        )

        assert [e.request_id for e in monitor.get_recent_events()] == ["new"]
        assert [e.request_id for e in monitor.events] == ["new"]
        assert json.loads(monitor.export_security_events())['total_events'] == 1
        assert monitor.cleanup_old_events() == 0

    @pytest.mark.asyncio
    async def test_cleanup_old_events(self, monitor, clock):
        await monitor.log_security_event(
            SecurityEventType.SUSPICIOUS_ACTIVITY, SecuritySeverity.LOW, make_facts(), "old", "old event"
        )
        clock.advance(hours=100)
        await monitor.log_security_event(
            SecurityEventType.SUSPICIOUS_ACTIVITY, SecuritySeverity.LOW, make_facts(), "new", "new event"
        )
        clock.advance(hours=69)

        assert [e.request_id for e in monitor.get_recent_events()] == ["new"]
        assert monitor.cleanup_old_events() == 1
        assert [e.request_id for e in monitor.events] == ["new"]

    @pytest.mark.asyncio
    async def test_cleanup_expired_sweeps_counters_and_locations(self, monitor, clock, store):
        await monitor.analyze_request(make_facts(ip="10.0.0.3"), "req-1")
        await monitor.track_successful_login("user-1", "a@example.com", make_facts(), "req", ip="10.0.0.1")
        assert len(store) == 1

        clock.advance(days=8)
        await monitor.cleanup_expired()

        assert len(store) == 0
        moved = await monitor.track_successful_login("user-1", "a@example.com", make_facts(), "req", ip="10.0.0.9")
        assert moved == []

    @pytest.mark.asyncio
    async def test_known_locations_are_bounded(self, clock, store):
        monitor = SecurityMonitor(
            settings=SecurityMonitorSettings(max_known_locations=2),
            window_counter=WindowCounter(store=store, clock=clock),
            clock=clock
        )
        for ip in ("10.0.0.1", "10.0.0.2", "10.0.0.3"):
            await monitor.track_successful_login("user-1", "a@example.com", make_facts(), "req", ip=ip)
            clock.advance(minutes=1)

        returning = await monitor.track_successful_login(
            "user-1", "a@example.com", make_facts(), "req", ip="10.0.0.1"
        )

        assert [e.details['known_locations'] for e in returning] == [2]

    @pytest.mark.asyncio
    async def test_list_pattern_detail_is_scored(self, monitor):
        event = await monitor.log_security_event(
            SecurityEventType.XSS_ATTEMPT, SecuritySeverity.HIGH, make_facts(), "r1", "xss",
            {'pattern': ['<script>', 'onerror=']}
        )

        assert 0 <= event.risk_score <= 100

    @pytest.mark.asyncio
    async def test_cleanup_task_keeps_running(self, monitor):
        monitor.cleanup_expired = AsyncMock(side_effect=[RuntimeError("store busy")] + [1] * 50)

        task = asyncio.create_task(start_security_monitor_cleanup_task(monitor, interval_seconds=0.01))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert monitor.cleanup_expired.await_count >= 2

    @pytest.mark.asyncio
    async def test_export(self, monitor):
        await monitor.log_security_event(
            SecurityEventType.CSRF_ATTEMPT, SecuritySeverity.MEDIUM, make_facts(), "r1", "csrf"
        )
        await monitor.log_security_event(
            SecurityEventType.SUSPICIOUS_ACTIVITY, SecuritySeverity.LOW, make_facts(), "r2", "odd"
        )

        exported = json.loads(monitor.export_security_events(event_type=SecurityEventType.CSRF_ATTEMPT))

        assert exported['total_events'] == 1
        assert exported['events'][0]['type'] == "csrf_attempt"
        assert exported['filters']['event_type'] == "csrf_attempt"
        assert exported['metrics']['total_events'] == 2
