"""
Security event monitoring.

Classifies inbound request facts against known-bad patterns, scores each
resulting event on a 0-100 risk scale, assigns a response action and keeps a
bounded, time-limited buffer of events for metrics and export. Events at or
above the alert threshold, or of critical severity, raise an alert.
"""

import asyncio
import hashlib
import json
import math
import re
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Pattern, Set
from urllib.parse import unquote_plus
from uuid import uuid4

from starlette.requests import cookie_parser

from ..shared.alerting import AlertHandler, AlertManager, AlertSeverity
from ..shared.clock import Clock, get_clock
from ..shared.config import SecurityMonitorSettings, get_security_settings
from ..shared.logging_config import get_logger
from ..shared.metrics_collector import get_metrics_collector
from .request_facts import RequestFacts, extract_ip
from .severity import SecuritySeverity
from .window_counter import WindowCounter


class SecurityEventType(str, Enum):
    """Kinds of security event."""
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    BRUTE_FORCE_ATTEMPT = "brute_force_attempt"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    INVALID_SIGNATURE = "invalid_signature"
    BLOCKED_REQUEST = "blocked_request"
    UNAUTHORIZED_ACCESS = "unauthorized_access"
    PRIVILEGE_ESCALATION = "privilege_escalation"
    DATA_BREACH_ATTEMPT = "data_breach_attempt"
    MALICIOUS_PAYLOAD = "malicious_payload"
    ACCOUNT_TAKEOVER = "account_takeover"
    SESSION_HIJACKING = "session_hijacking"
    CSRF_ATTEMPT = "csrf_attempt"
    XSS_ATTEMPT = "xss_attempt"
    SQL_INJECTION_ATTEMPT = "sql_injection_attempt"
    UNUSUAL_LOGIN_PATTERN = "unusual_login_pattern"
    MULTIPLE_FAILED_LOGINS = "multiple_failed_logins"
    LOGIN_FROM_NEW_LOCATION = "login_from_new_location"
    CONCURRENT_SESSIONS = "concurrent_sessions"
    PASSWORD_SPRAY_ATTACK = "password_spray_attack"
    CREDENTIAL_STUFFING = "credential_stuffing"


class SecurityAction(str, Enum):
    """Response assigned to an event."""
    LOGGED = "logged"
    BLOCKED = "blocked"
    RATE_LIMITED = "rate_limited"
    ACCOUNT_LOCKED = "account_locked"
    SESSION_TERMINATED = "session_terminated"
    IP_BANNED = "ip_banned"
    ALERT_SENT = "alert_sent"
    INVESTIGATION_REQUIRED = "investigation_required"


BASE_RISK_SCORES: Dict[SecurityEventType, int] = {
    SecurityEventType.SUSPICIOUS_ACTIVITY: 20,
    SecurityEventType.BRUTE_FORCE_ATTEMPT: 80,
    SecurityEventType.RATE_LIMIT_EXCEEDED: 30,
    SecurityEventType.INVALID_SIGNATURE: 70,
    SecurityEventType.BLOCKED_REQUEST: 40,
    SecurityEventType.UNAUTHORIZED_ACCESS: 60,
    SecurityEventType.PRIVILEGE_ESCALATION: 90,
    SecurityEventType.DATA_BREACH_ATTEMPT: 95,
    SecurityEventType.MALICIOUS_PAYLOAD: 85,
    SecurityEventType.ACCOUNT_TAKEOVER: 95,
    SecurityEventType.SESSION_HIJACKING: 90,
    SecurityEventType.CSRF_ATTEMPT: 60,
    SecurityEventType.XSS_ATTEMPT: 70,
    SecurityEventType.SQL_INJECTION_ATTEMPT: 85,
    SecurityEventType.UNUSUAL_LOGIN_PATTERN: 40,
    SecurityEventType.MULTIPLE_FAILED_LOGINS: 50,
    SecurityEventType.LOGIN_FROM_NEW_LOCATION: 30,
    SecurityEventType.CONCURRENT_SESSIONS: 25,
    SecurityEventType.PASSWORD_SPRAY_ATTACK: 75,
    SecurityEventType.CREDENTIAL_STUFFING: 80,
}

SEVERITY_MULTIPLIERS: Dict[SecuritySeverity, float] = {
    SecuritySeverity.INFO: 0.5,
    SecuritySeverity.LOW: 0.7,
    SecuritySeverity.MEDIUM: 1.0,
    SecuritySeverity.HIGH: 1.5,
    SecuritySeverity.CRITICAL: 2.0,
}

PATTERN_BONUSES = {
    'malicious_query': 25,
    'malicious_path': 20,
}

MALICIOUS_USER_AGENTS: List[Pattern] = [
    re.compile(r"bot|crawler|spider|scraper", re.IGNORECASE),
    re.compile(r"sqlmap|nikto|nmap|masscan", re.IGNORECASE),
    re.compile(r"burp|owasp|zap", re.IGNORECASE),
]

SUSPICIOUS_PATHS: List[Pattern] = [
    re.compile(r"/admin|/wp-admin|/phpmyadmin", re.IGNORECASE),
    re.compile(r"\.php|\.asp|\.jsp", re.IGNORECASE),
    re.compile(r"/api/v\d+/admin", re.IGNORECASE),
    re.compile(r"/\.env|/config|/backup", re.IGNORECASE),
]

MALICIOUS_QUERIES: List[Pattern] = [
    re.compile(r"\b(union|select|insert|delete|drop|exec)\b", re.IGNORECASE),
    re.compile(r"<script|javascript:|vbscript:", re.IGNORECASE),
    re.compile(r"\.\.|/etc/passwd|/proc/|/sys/", re.IGNORECASE),
]

SPOOFABLE_HEADERS = ("x-forwarded-host", "x-original-url", "x-rewrite-url", "x-real-ip")
SESSION_COOKIES = ("__session", "session")

LOW_RISK_CEILING = 30
MEDIUM_RISK_CEILING = 70
TOP_RISK_LIMIT = 10


@dataclass(frozen=True)
class SecurityEvent:
    """An immutable security event."""
    id: str
    type: SecurityEventType
    severity: SecuritySeverity
    risk_score: int
    action: SecurityAction
    timestamp: datetime
    ip: str
    path: str
    method: str
    user_agent: str
    request_id: str
    description: str
    correlation_id: str
    details: Dict[str, Any] = field(default_factory=dict)
    user_id: Optional[str] = None
    email: Optional[str] = None
    device_fingerprint: Optional[str] = None
    geolocation: Dict[str, Optional[str]] = field(default_factory=dict)
    session_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'type': self.type.value,
            'severity': self.severity.value,
            'risk_score': self.risk_score,
            'action': self.action.value,
            'timestamp': self.timestamp.isoformat(),
            'ip': self.ip,
            'user_id': self.user_id,
            'email': self.email,
            'path': self.path,
            'method': self.method,
            'user_agent': self.user_agent,
            'request_id': self.request_id,
            'description': self.description,
            'details': self.details,
            'correlation_id': self.correlation_id,
            'device_fingerprint': self.device_fingerprint,
            'geolocation': self.geolocation,
            'session_id': self.session_id,
        }


@dataclass
class FailedLoginTracking:
    attempts: int
    first_attempt: datetime
    last_attempt: datetime
    ips: Set[str] = field(default_factory=set)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def calculate_risk_score(
    event_type: SecurityEventType,
    severity: SecuritySeverity,
    details: Optional[Dict[str, Any]] = None
) -> int:
    """Risk score in [0, 100]: weighted base score plus detail bonuses."""
    details = details or {}
    score = _round_half_up(BASE_RISK_SCORES.get(event_type, 20) * SEVERITY_MULTIPLIERS[severity])

    attempts = details.get('attempts')
    if isinstance(attempts, (int, float)) and not isinstance(attempts, bool) and attempts > 10:
        score += 20
    unique_ips = details.get('unique_ips')
    if isinstance(unique_ips, (int, float)) and not isinstance(unique_ips, bool) and unique_ips > 5:
        score += 15
    pattern = details.get('pattern')
    if isinstance(pattern, str):
        score += PATTERN_BONUSES.get(pattern, 0)

    return max(0, min(100, score))


def determine_security_action(event_type: SecurityEventType, severity: SecuritySeverity) -> SecurityAction:
    """Fixed response table keyed on severity, then event type."""
    if severity == SecuritySeverity.CRITICAL:
        if event_type in (SecurityEventType.ACCOUNT_TAKEOVER, SecurityEventType.SESSION_HIJACKING):
            return SecurityAction.SESSION_TERMINATED
        if event_type in (SecurityEventType.DATA_BREACH_ATTEMPT, SecurityEventType.PRIVILEGE_ESCALATION):
            return SecurityAction.INVESTIGATION_REQUIRED
        return SecurityAction.BLOCKED

    if severity == SecuritySeverity.HIGH:
        if event_type in (SecurityEventType.BRUTE_FORCE_ATTEMPT, SecurityEventType.CREDENTIAL_STUFFING):
            return SecurityAction.ACCOUNT_LOCKED
        if event_type in (SecurityEventType.SQL_INJECTION_ATTEMPT, SecurityEventType.XSS_ATTEMPT):
            return SecurityAction.BLOCKED
        return SecurityAction.RATE_LIMITED

    if severity == SecuritySeverity.MEDIUM and event_type == SecurityEventType.RATE_LIMIT_EXCEEDED:
        return SecurityAction.RATE_LIMITED

    return SecurityAction.LOGGED


def generate_correlation_id(
    event_type: SecurityEventType,
    ip: str,
    timestamp: datetime,
    bucket_minutes: float = 5
) -> str:
    """Same type and IP within one time bucket share an id."""
    bucket = math.floor(timestamp.timestamp() / (bucket_minutes * 60))
    return f"{event_type.value}_{ip}_{bucket}"


def generate_device_fingerprint(facts: RequestFacts) -> str:
    raw = "|".join((
        facts.header("user-agent"),
        facts.header("accept-language"),
        facts.header("accept-encoding"),
    ))
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


def extract_geolocation(facts: RequestFacts) -> Dict[str, Optional[str]]:
    return {
        'country': facts.header("cf-ipcountry") or None,
        'region': facts.header("cf-region") or None,
        'city': facts.header("cf-ipcity") or None,
    }


def extract_session_id(facts: RequestFacts) -> Optional[str]:
    cookie_header = facts.header("cookie")
    if not cookie_header:
        return None
    cookies = cookie_parser(cookie_header)
    for name in SESSION_COOKIES:
        value = cookies.get(name)
        if value:
            return value[:16] + "..."
    return None


_ALERT_SEVERITY = {
    SecuritySeverity.INFO: AlertSeverity.LOW,
    SecuritySeverity.LOW: AlertSeverity.LOW,
    SecuritySeverity.MEDIUM: AlertSeverity.MEDIUM,
    SecuritySeverity.HIGH: AlertSeverity.HIGH,
    SecuritySeverity.CRITICAL: AlertSeverity.CRITICAL,
}


class SecurityMonitor:
    """Scores, correlates and retains security events."""

    def __init__(
        self,
        settings: Optional[SecurityMonitorSettings] = None,
        window_counter: Optional[WindowCounter] = None,
        alert_manager: Optional[AlertManager] = None,
        alert_handlers: Optional[List[AlertHandler]] = None,
        clock: Optional[Clock] = None
    ):
        self.settings = settings or get_security_settings()
        self.clock = clock or get_clock()
        self.window_counter = window_counter or WindowCounter(clock=self.clock)
        self.alert_manager = alert_manager or AlertManager(
            max_alerts=1000,
            clock=self.clock,
            component='security_alerts'
        )
        for handler in alert_handlers or []:
            self.alert_manager.add_alert_handler(handler)

        self.logger = get_logger(__name__, 'security_monitor')
        self.metrics = get_metrics_collector()

        self._events: Deque[SecurityEvent] = deque(maxlen=self.settings.max_events)
        self._failed_logins: Dict[str, FailedLoginTracking] = {}
        self._known_locations: Dict[str, Dict[str, datetime]] = {}

    @property
    def events(self) -> List[SecurityEvent]:
        cutoff = self._retention_cutoff(self.clock.now())
        return [e for e in self._events if e.timestamp > cutoff]

    async def log_security_event(
        self,
        event_type: SecurityEventType,
        severity: SecuritySeverity,
        facts: RequestFacts,
        request_id: str,
        description: str,
        details: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        email: Optional[str] = None
    ) -> SecurityEvent:
        """
        Build, retain and act on a security event.

        Args:
            event_type: What happened
            severity: How bad it is
            facts: The request the event came from
            request_id: Caller's request identifier
            description: Human-readable summary
            details: Structured context; ``attempts``, ``unique_ips`` and
                ``pattern`` feed the risk score
            user_id: Authenticated user, if any
            email: Account email, if any

        Returns:
            The stored SecurityEvent
        """
        details = dict(details or {})
        now = self.clock.now()
        ip = extract_ip(facts)

        event = SecurityEvent(
            id=str(uuid4()),
            type=event_type,
            severity=severity,
            risk_score=calculate_risk_score(event_type, severity, details),
            action=determine_security_action(event_type, severity),
            timestamp=now,
            ip=ip,
            path=facts.path,
            method=facts.method,
            user_agent=facts.user_agent or "unknown",
            request_id=request_id,
            description=description,
            correlation_id=generate_correlation_id(
                event_type, ip, now, self.settings.correlation_bucket_minutes
            ),
            details=details,
            user_id=user_id,
            email=email,
            device_fingerprint=generate_device_fingerprint(facts),
            geolocation=extract_geolocation(facts),
            session_id=extract_session_id(facts),
        )

        self._drop_expired_events(now)
        self._events.append(event)
        self.metrics.get_counter('security_events_total').increment(
            event_type=event_type.value, severity=severity.value
        )
        self._log_event(event)
        await self._process_event(event)
        return event

    def _log_event(self, event: SecurityEvent):
        level = {
            SecuritySeverity.INFO: 'INFO',
            SecuritySeverity.LOW: 'INFO',
            SecuritySeverity.MEDIUM: 'WARNING',
            SecuritySeverity.HIGH: 'ERROR',
            SecuritySeverity.CRITICAL: 'CRITICAL',
        }[event.severity]
        self.logger.log(
            level,
            f"Security event: {event.description}",
            operation="log_security_event",
            event_id=event.id,
            event_type=event.type.value,
            severity=event.severity.value,
            risk_score=event.risk_score,
            action=event.action.value,
            correlation_id=event.correlation_id,
            request_id=event.request_id,
            ip=event.ip,
            path=event.path,
            user_id=event.user_id
        )

    async def _process_event(self, event: SecurityEvent):
        if event.risk_score >= self.settings.alert_risk_threshold or event.severity == SecuritySeverity.CRITICAL:
            await self.alert_manager.create_alert(
                event.type.value,
                _ALERT_SEVERITY[event.severity],
                event.description,
                metadata={
                    'event_id': event.id,
                    'risk_score': event.risk_score,
                    'ip': event.ip,
                    'user_id': event.user_id,
                    'correlation_id': event.correlation_id,
                    'action': event.action.value,
                }
            )

        if event.action in (SecurityAction.BLOCKED, SecurityAction.IP_BANNED):
            await self.block_ip(event.ip, reason=event.description, event_id=event.id)
        elif event.action == SecurityAction.RATE_LIMITED:
            self.logger.warning(
                "Rate limiting applied",
                operation="apply_rate_limit",
                ip=event.ip,
                reason=event.description,
                event_id=event.id
            )

    async def block_ip(self, ip: str, reason: str, event_id: Optional[str] = None, seconds: Optional[float] = None):
        if not ip or ip == "unknown":
            return None
        block_until = await self.window_counter.block(
            f"ip_block:{ip}", seconds or self.settings.auto_block_seconds
        )
        self.metrics.get_counter('security_ip_blocks_total').increment()
        self.logger.warning(
            "IP blocked",
            operation="block_ip",
            ip=ip,
            reason=reason,
            event_id=event_id,
            block_until=block_until.isoformat()
        )
        return block_until

    async def is_ip_blocked(self, ip: str) -> bool:
        return await self.window_counter.is_blocked(f"ip_block:{ip}")

    async def analyze_request(
        self,
        facts: RequestFacts,
        request_id: str,
        user_id: Optional[str] = None
    ) -> List[SecurityEvent]:
        """Run every request detector; each positive one yields an event."""
        events: List[SecurityEvent] = []
        try:
            user_agent = facts.user_agent
            if user_agent and any(p.search(user_agent) for p in MALICIOUS_USER_AGENTS):
                events.append(await self.log_security_event(
                    SecurityEventType.SUSPICIOUS_ACTIVITY,
                    SecuritySeverity.MEDIUM,
                    facts, request_id,
                    "Malicious user agent detected",
                    {'user_agent': user_agent, 'pattern': 'malicious_user_agent'},
                    user_id
                ))

            if any(p.search(facts.path) for p in SUSPICIOUS_PATHS):
                events.append(await self.log_security_event(
                    SecurityEventType.SUSPICIOUS_ACTIVITY,
                    SecuritySeverity.HIGH,
                    facts, request_id,
                    "Suspicious path access attempt",
                    {'path': facts.path, 'pattern': 'malicious_path'},
                    user_id
                ))

            query = unquote_plus(facts.query_string) if facts.query_string else ""
            if query and any(p.search(query) for p in MALICIOUS_QUERIES):
                events.append(await self.log_security_event(
                    SecurityEventType.SQL_INJECTION_ATTEMPT,
                    SecuritySeverity.HIGH,
                    facts, request_id,
                    "Potential SQL injection or XSS attempt detected",
                    {'query_string': facts.query_string, 'pattern': 'malicious_query'},
                    user_id
                ))

            rate_event = await self._check_request_rate(facts, request_id, user_id)
            if rate_event:
                events.append(rate_event)

            found = [h for h in SPOOFABLE_HEADERS if h in facts.headers]
            if found:
                events.append(await self.log_security_event(
                    SecurityEventType.SUSPICIOUS_ACTIVITY,
                    SecuritySeverity.MEDIUM,
                    facts, request_id,
                    "Suspicious headers detected",
                    {'suspicious_headers_count': len(found), 'suspicious_headers': ",".join(found)},
                    user_id
                ))
        except Exception as e:
            self.logger.error(
                f"Request analysis failed: {e}",
                operation="analyze_request",
                request_id=request_id,
                path=facts.path,
                error=str(e)
            )
        return events

    async def _check_request_rate(
        self,
        facts: RequestFacts,
        request_id: str,
        user_id: Optional[str]
    ) -> Optional[SecurityEvent]:
        key = user_id or extract_ip(facts)
        result = await self.window_counter.check(
            f"monitor:{key}",
            self.settings.request_window_max,
            self.settings.request_window_seconds
        )
        if result.allowed:
            return None
        return await self.log_security_event(
            SecurityEventType.RATE_LIMIT_EXCEEDED,
            SecuritySeverity.MEDIUM,
            facts, request_id,
            "Rate limit exceeded",
            {
                'window_seconds': self.settings.request_window_seconds,
                'max_requests': self.settings.request_window_max,
            },
            user_id
        )

    async def track_failed_login(
        self,
        email: str,
        facts: RequestFacts,
        request_id: str,
        reason: str,
        ip: Optional[str] = None
    ) -> List[SecurityEvent]:
        """Record a failed login and emit brute-force/stuffing events."""
        key = email.lower()
        now = self.clock.now()
        ip = ip or extract_ip(facts)
        horizon = timedelta(minutes=self.settings.failed_login_horizon_minutes)

        tracking = self._failed_logins.get(key)
        if tracking is None or now - tracking.first_attempt > horizon:
            tracking = FailedLoginTracking(attempts=0, first_attempt=now, last_attempt=now)
            self._failed_logins[key] = tracking

        tracking.attempts += 1
        tracking.last_attempt = now
        tracking.ips.add(ip)
        elapsed = (now - tracking.first_attempt).total_seconds()

        events = [await self.log_security_event(
            SecurityEventType.MULTIPLE_FAILED_LOGINS,
            SecuritySeverity.HIGH if tracking.attempts > 5 else SecuritySeverity.MEDIUM,
            facts, request_id,
            f"Failed login attempt #{tracking.attempts} for user",
            {
                'email': email,
                'attempts': tracking.attempts,
                'time_window_seconds': elapsed,
                'unique_ips': len(tracking.ips),
                'reason': reason,
            },
            email=email
        )]

        if tracking.attempts >= 5:
            events.append(await self.log_security_event(
                SecurityEventType.BRUTE_FORCE_ATTEMPT,
                SecuritySeverity.HIGH,
                facts, request_id,
                "Brute force attack detected",
                {
                    'email': email,
                    'attempts': tracking.attempts,
                    'time_window_seconds': elapsed,
                    'unique_ips': len(tracking.ips),
                },
                email=email
            ))

        if len(tracking.ips) >= 3:
            events.append(await self.log_security_event(
                SecurityEventType.CREDENTIAL_STUFFING,
                SecuritySeverity.HIGH,
                facts, request_id,
                "Credential stuffing attack detected",
                {
                    'email': email,
                    'attempts': tracking.attempts,
                    'unique_ips': len(tracking.ips),
                },
                email=email
            ))

        return events

    async def track_successful_login(
        self,
        user_id: str,
        email: str,
        facts: RequestFacts,
        request_id: str,
        ip: Optional[str] = None
    ) -> List[SecurityEvent]:
        """Flag logins from an address not seen before for the user."""
        ip = ip or extract_ip(facts)
        events: List[SecurityEvent] = []

        now = self.clock.now()
        known = self._known_locations.setdefault(user_id, {})
        if known and ip not in known:
            events.append(await self.log_security_event(
                SecurityEventType.LOGIN_FROM_NEW_LOCATION,
                SecuritySeverity.MEDIUM,
                facts, request_id,
                "Login from new location detected",
                {
                    'user_id': user_id,
                    'email': email,
                    'ip': ip,
                    'user_agent': facts.user_agent,
                    'known_locations': len(known),
                },
                user_id=user_id,
                email=email
            ))
        known[ip] = now
        if len(known) > self.settings.max_known_locations:
            del known[min(known, key=known.get)]

        self._failed_logins.pop(email.lower(), None)
        return events

    def _retention_cutoff(self, now: datetime) -> datetime:
        return now - timedelta(hours=self.settings.retention_hours)

    def _drop_expired_events(self, now: datetime):
        cutoff = self._retention_cutoff(now)
        if self._events and self._events[0].timestamp <= cutoff:
            self._events = deque(
                (e for e in self._events if e.timestamp > cutoff), maxlen=self.settings.max_events
            )

    def cleanup_old_events(self) -> int:
        """Drop events, failed-login tracking and known locations past their horizons."""
        now = self.clock.now()
        cutoff = self._retention_cutoff(now)
        kept = deque((e for e in self._events if e.timestamp > cutoff), maxlen=self.settings.max_events)
        removed = len(self._events) - len(kept)
        self._events = kept

        horizon = timedelta(minutes=self.settings.failed_login_horizon_minutes)
        self._failed_logins = {
            k: v for k, v in self._failed_logins.items() if now - v.first_attempt <= horizon
        }

        locations: Dict[str, Dict[str, datetime]] = {}
        for user_id, seen in self._known_locations.items():
            recent = {ip: at for ip, at in seen.items() if at > cutoff}
            if recent:
                locations[user_id] = recent
        self._known_locations = locations

        if removed:
            self.logger.info(
                f"Removed {removed} expired security events",
                operation="cleanup_old_events",
                removed=removed
            )
        return removed

    async def cleanup_expired(self) -> int:
        """Run cleanup_old_events and sweep the monitor's request and block counters."""
        removed = self.cleanup_old_events()
        return removed + await self.window_counter.cleanup_expired()

    def _events_since(self, window_minutes: Optional[float]) -> List[SecurityEvent]:
        if not window_minutes:
            return self.events
        cutoff = self.clock.now() - timedelta(minutes=window_minutes)
        return [e for e in self._events if e.timestamp > cutoff]

    def get_security_metrics(self, window_minutes: float = 60) -> Dict[str, Any]:
        """Aggregate events inside the window."""
        now = self.clock.now()
        start = now - timedelta(minutes=window_minutes)
        recent = self._events_since(window_minutes)

        by_type: Dict[str, int] = {}
        by_severity: Dict[str, int] = {}
        by_action: Dict[str, int] = {}
        distribution = {'low': 0, 'medium': 0, 'high': 0}
        ip_risk: Dict[str, List[int]] = {}
        user_risk: Dict[str, List[int]] = {}

        for event in recent:
            by_type[event.type.value] = by_type.get(event.type.value, 0) + 1
            by_severity[event.severity.value] = by_severity.get(event.severity.value, 0) + 1
            by_action[event.action.value] = by_action.get(event.action.value, 0) + 1

            if event.risk_score <= LOW_RISK_CEILING:
                distribution['low'] += 1
            elif event.risk_score <= MEDIUM_RISK_CEILING:
                distribution['medium'] += 1
            else:
                distribution['high'] += 1

            ip_risk.setdefault(event.ip, []).append(event.risk_score)
            if event.user_id:
                user_risk.setdefault(event.user_id, []).append(event.risk_score)

        def top(scores: Dict[str, List[int]], key_name: str) -> List[Dict[str, Any]]:
            ranked = [
                {key_name: key, 'events': len(values), 'risk_score': _round_half_up(sum(values) / len(values))}
                for key, values in scores.items()
            ]
            ranked.sort(key=lambda item: item['risk_score'], reverse=True)
            return ranked[:TOP_RISK_LIMIT]

        return {
            'total_events': len(recent),
            'events_by_type': by_type,
            'events_by_severity': by_severity,
            'events_by_action': by_action,
            'risk_score_distribution': distribution,
            'top_risky_ips': top(ip_risk, 'ip'),
            'top_risky_users': top(user_risk, 'user_id'),
            'time_window': {'start': start.isoformat(), 'end': now.isoformat()},
        }

    def get_recent_events(self, limit: int = 100) -> List[SecurityEvent]:
        """Newest first."""
        return sorted(self.events, key=lambda e: e.timestamp, reverse=True)[:limit]

    def export_security_events(
        self,
        window_minutes: Optional[float] = None,
        event_type: Optional[SecurityEventType] = None,
        severity: Optional[SecuritySeverity] = None
    ) -> str:
        events = self._events_since(window_minutes)
        if event_type:
            events = [e for e in events if e.type == event_type]
        if severity:
            events = [e for e in events if e.severity == severity]

        return json.dumps(
            {
                'export_timestamp': self.clock.now().isoformat(),
                'filters': {
                    'window_minutes': window_minutes,
                    'event_type': event_type.value if event_type else None,
                    'severity': severity.value if severity else None,
                },
                'total_events': len(events),
                'events': [e.to_dict() for e in events],
                'metrics': self.get_security_metrics(window_minutes or self.settings.retention_hours * 60),
            },
            indent=2,
            default=str
        )


_security_monitor: Optional[SecurityMonitor] = None


def get_security_monitor() -> SecurityMonitor:
    """Get the global security monitor instance."""
    global _security_monitor
    if _security_monitor is None:
        _security_monitor = SecurityMonitor()
    return _security_monitor


async def start_security_monitor_cleanup_task(monitor: SecurityMonitor, interval_seconds: Optional[float] = None):
    """Start background cleanup task for the security monitor."""
    interval = interval_seconds or monitor.settings.cleanup_interval_seconds
    logger = get_logger(__name__, 'security_monitor_cleanup')
    while True:
        try:
            await asyncio.sleep(interval)
            cleaned = await monitor.cleanup_expired()
            if cleaned > 0:
                logger.info(f"Cleaned up {cleaned} expired security entries", operation="cleanup")
        except Exception as e:
            logger.error(f"Error in security monitor cleanup: {e}", operation="cleanup")
