"""
Unusual login pattern detection.

``detect_unusual_patterns`` is a pure function over an identifier's attempt
history and the current attempt. Every check runs independently and may only
raise the overall severity. The distance check needs a real location source
and is skipped unless a resolver is supplied.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..shared.config import AnomalySettings, get_settings
from ..shared.logging_config import get_logger
from .brute_force import BruteForceGuard, LoginAttempt
from .severity import SecuritySeverity, escalate

EARTH_RADIUS_KM = 6371.0


@dataclass(frozen=True)
class GeoLocation:
    """Approximate position of an IP address."""
    latitude: float
    longitude: float
    country: Optional[str] = None
    city: Optional[str] = None


LocationResolver = Callable[[str], Optional[GeoLocation]]


@dataclass(frozen=True)
class AttemptContext:
    """The login attempt being evaluated."""
    ip_address: str
    user_agent: str
    timestamp: datetime


@dataclass
class AnomalyConfig:
    normal_hours_start: int = 6
    normal_hours_end: int = 22
    rapid_attempt_threshold: int = 3
    rapid_attempt_window_minutes: float = 5
    max_travel_distance_km: Optional[float] = 1000.0

    @classmethod
    def from_settings(cls, settings: Optional[AnomalySettings] = None) -> 'AnomalyConfig':
        s = settings or get_settings().anomaly
        return cls(
            normal_hours_start=s.normal_hours_start,
            normal_hours_end=s.normal_hours_end,
            rapid_attempt_threshold=s.rapid_attempt_threshold,
            rapid_attempt_window_minutes=s.rapid_attempt_window_minutes,
            max_travel_distance_km=s.max_travel_distance_km,
        )


@dataclass
class AnomalyReport:
    is_unusual: bool = False
    patterns: List[str] = field(default_factory=list)
    severity: SecuritySeverity = SecuritySeverity.LOW
    recommended_actions: List[str] = field(default_factory=list)

    def flag(self, pattern: str, severity: SecuritySeverity, action: str):
        self.is_unusual = True
        self.patterns.append(pattern)
        self.severity = escalate(self.severity, severity)
        if action not in self.recommended_actions:
            self.recommended_actions.append(action)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'is_unusual': self.is_unusual,
            'patterns': list(self.patterns),
            'severity': self.severity.value,
            'recommended_actions': list(self.recommended_actions),
        }


def haversine_km(a: GeoLocation, b: GeoLocation) -> float:
    """Great-circle distance between two locations."""
    lat1, lon1, lat2, lon2 = map(math.radians, (a.latitude, a.longitude, b.latitude, b.longitude))
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(h))


def _last_known_ip(history: Sequence[LoginAttempt], current_ip: str) -> Optional[str]:
    for attempt in reversed(history):
        if attempt.success and attempt.ip_address not in (current_ip, "unknown"):
            return attempt.ip_address
    return None


def detect_unusual_patterns(
    history: Sequence[LoginAttempt],
    current: AttemptContext,
    config: Optional[AnomalyConfig] = None,
    locate: Optional[LocationResolver] = None
) -> AnomalyReport:
    """
    Evaluate the current attempt against the identifier's history.

    Args:
        history: Prior attempts for the identifier, oldest first
        current: The attempt being evaluated
        config: Thresholds; defaults when omitted
        locate: Optional IP-to-location resolver enabling the distance check

    Returns:
        AnomalyReport with triggered patterns and suggested actions
    """
    config = config or AnomalyConfig()
    report = AnomalyReport()

    hour = current.timestamp.hour
    if hour < config.normal_hours_start or hour > config.normal_hours_end:
        report.flag(
            "Login outside normal hours",
            SecuritySeverity.MEDIUM,
            "Verify user identity"
        )

    window_start = current.timestamp - timedelta(minutes=config.rapid_attempt_window_minutes)
    recent = [a for a in history if window_start <= a.timestamp <= current.timestamp]
    if len(recent) > config.rapid_attempt_threshold:
        report.flag(
            f"Rapid login attempts ({len(recent)} in {config.rapid_attempt_window_minutes:g} minutes)",
            SecuritySeverity.HIGH,
            "Implement additional verification"
        )

    known_agents = {a.user_agent for a in history}
    if history and current.user_agent not in known_agents:
        report.flag(
            "Login from new device",
            SecuritySeverity.MEDIUM,
            "Send device verification notification"
        )

    if locate is not None and config.max_travel_distance_km is not None:
        previous_ip = _last_known_ip(history, current.ip_address)
        if previous_ip:
            previous = locate(previous_ip)
            present = locate(current.ip_address)
            if previous and present:
                distance = haversine_km(previous, present)
                if distance > config.max_travel_distance_km:
                    report.flag(
                        f"Login from distant location ({distance:.0f} km from last login)",
                        SecuritySeverity.HIGH,
                        "Send location verification email"
                    )

    return report


class AnomalyDetector:
    """Runs pattern detection over histories kept by a BruteForceGuard."""

    def __init__(
        self,
        guard: BruteForceGuard,
        config: Optional[AnomalyConfig] = None,
        locate: Optional[LocationResolver] = None
    ):
        self.guard = guard
        self.config = config or AnomalyConfig.from_settings()
        self.locate = locate
        self.logger = get_logger(__name__, 'anomaly_detector')

    async def analyze_attempt(
        self,
        identifier: str,
        ip_address: str,
        user_agent: str,
        timestamp: Optional[datetime] = None,
        user_id: Optional[str] = None
    ) -> AnomalyReport:
        """
        Check an attempt that has not been recorded yet.

        History is read from the guard; the current attempt is excluded from
        it by construction, so call this before ``record_login_attempt``.
        """
        current = AttemptContext(
            ip_address=ip_address,
            user_agent=user_agent,
            timestamp=timestamp or self.guard.clock.now()
        )
        try:
            history = await self.guard.get_attempt_history(identifier)
            report = detect_unusual_patterns(history, current, self.config, self.locate)
        except Exception as e:
            self.logger.error(
                f"Unusual pattern detection failed: {e}",
                operation="analyze_attempt",
                identifier=identifier,
                error=str(e)
            )
            return AnomalyReport()

        if report.is_unusual:
            self.send_unusual_login_alert(user_id or identifier, report)
        return report

    def send_unusual_login_alert(self, subject: str, report: AnomalyReport):
        self.logger.warning(
            "Unusual login pattern detected",
            operation="unusual_login_alert",
            subject=subject,
            patterns=", ".join(report.patterns),
            severity=report.severity.value,
            recommended_actions=report.recommended_actions
        )

    def send_lockout_notification(self, identifier: str, lockout_until: Optional[datetime], attempt_count: int):
        self.logger.warning(
            "Account lockout notification",
            operation="lockout_notification",
            identifier=identifier,
            lockout_until=lockout_until.isoformat() if lockout_until else None,
            attempt_count=attempt_count
        )
