"""
Resilience - Health Monitoring

Aggregates operation outcomes into alerts and a health status for
dashboards and health-check endpoints.

Status rules:
- unhealthy: any active critical alert, error rate at or above twice the
  threshold, or consecutive failures at or above their threshold
- degraded: error rate at or above the threshold, or any active alert
- healthy: otherwise
"""
import statistics
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

import structlog

from ..shared.alerting import Alert, AlertHandler, AlertManager, AlertSeverity
from ..shared.clock import Clock, get_clock
from ..shared.config import ResilienceSettings, get_resilience_settings
from .errors import classify_error

logger = structlog.get_logger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class AlertType(str, Enum):
    ERROR_RATE = "error_rate"
    CONSECUTIVE_FAILURES = "consecutive_failures"
    PROCESSING_TIME = "processing_time"
    SYSTEM_DOWN = "system_down"


@dataclass(frozen=True)
class OperationMetric:
    """Outcome of one monitored operation."""
    event_type: str
    success: bool
    timestamp: datetime
    processing_time_ms: Optional[float] = None
    error: Optional[str] = None
    error_type: Optional[str] = None


SLOW_SAMPLE_SIZE = 50


class ResilienceMonitor:
    """Tracks operation outcomes and derives alerts and health."""

    def __init__(
        self,
        settings: Optional[ResilienceSettings] = None,
        clock: Optional[Clock] = None,
        alert_manager: Optional[AlertManager] = None,
        alert_handlers: Optional[List[AlertHandler]] = None
    ):
        self.settings = settings or get_resilience_settings()
        self.clock = clock or get_clock()
        self.alert_manager = alert_manager or AlertManager(
            max_alerts=self.settings.max_alerts,
            clock=self.clock,
            component='resilience_alerts'
        )
        for handler in alert_handlers or []:
            self.alert_manager.add_alert_handler(handler)

        self._metrics: Deque[OperationMetric] = deque(maxlen=self.settings.max_metrics)
        self.consecutive_failures = 0
        self.last_success_at: Optional[datetime] = None
        self.started_at = self.clock.now()

    def _window(self, window_minutes: Optional[float] = None) -> timedelta:
        return timedelta(minutes=window_minutes or self.settings.time_window_minutes)

    def _recent(self, window_minutes: Optional[float] = None) -> List[OperationMetric]:
        cutoff = self.clock.now() - self._window(window_minutes)
        return [m for m in self._metrics if m.timestamp >= cutoff]

    async def track_result(
        self,
        success: bool,
        event_type: str = "operation",
        processing_time_ms: Optional[float] = None,
        error: Optional[BaseException] = None
    ) -> List[Alert]:
        """
        Record one outcome.

        A success resets the consecutive-failure count. A failure may raise
        ``consecutive_failures`` and ``system_down`` alerts.
        """
        now = self.clock.now()
        error_type = classify_error(error).error_type.value if error is not None else None
        self._metrics.append(OperationMetric(
            event_type=event_type,
            success=success,
            timestamp=now,
            processing_time_ms=processing_time_ms,
            error=str(error) if error is not None else None,
            error_type=error_type
        ))

        if success:
            self.consecutive_failures = 0
            self.last_success_at = now
            return []

        self.consecutive_failures += 1
        logger.warning(
            "Operation failed",
            event_type=event_type,
            consecutive_failures=self.consecutive_failures,
            error_type=error_type,
        )

        new_alerts: List[Alert] = []
        if self.consecutive_failures >= self.settings.consecutive_failures_threshold:
            alert = await self._raise_once(
                AlertType.CONSECUTIVE_FAILURES,
                AlertSeverity.CRITICAL,
                f"{self.consecutive_failures} consecutive operation failures",
                {'consecutive_failures': self.consecutive_failures, 'last_error': str(error) if error else None}
            )
            if alert:
                new_alerts.append(alert)

        alert = await self._check_system_down()
        if alert:
            new_alerts.append(alert)
        return new_alerts

    async def _raise_once(
        self,
        alert_type: AlertType,
        severity: AlertSeverity,
        message: str,
        metadata: Dict[str, Any]
    ) -> Optional[Alert]:
        if self.alert_manager.has_active_alert(alert_type.value):
            return None
        return await self.alert_manager.create_alert(alert_type.value, severity, message, metadata)

    def _since_last_success(self) -> timedelta:
        return self.clock.now() - (self.last_success_at or self.started_at)

    async def _check_system_down(self) -> Optional[Alert]:
        quiet = self._since_last_success()
        if quiet < timedelta(minutes=self.settings.system_down_minutes):
            return None
        return await self._raise_once(
            AlertType.SYSTEM_DOWN,
            AlertSeverity.CRITICAL,
            f"No successful operation for {int(quiet.total_seconds() // 60)} minutes",
            {
                'last_success': self.last_success_at.isoformat() if self.last_success_at else None,
                'minutes_since_success': quiet.total_seconds() / 60,
            }
        )

    def get_error_rate(self, window_minutes: Optional[float] = None) -> float:
        """Failure percentage over the window; 0 with no data."""
        recent = self._recent(window_minutes)
        if not recent:
            return 0.0
        failures = sum(1 for m in recent if not m.success)
        return failures / len(recent) * 100

    async def check_alerts(self) -> List[Alert]:
        """Evaluate rate, latency and liveness thresholds."""
        new_alerts: List[Alert] = []
        threshold = self.settings.error_rate_threshold
        error_rate = self.get_error_rate()

        if error_rate >= threshold:
            alert = await self._raise_once(
                AlertType.ERROR_RATE,
                AlertSeverity.CRITICAL if error_rate >= threshold * 2 else AlertSeverity.HIGH,
                f"Error rate {error_rate:.1f}% at or above threshold {threshold:.1f}%",
                {'error_rate': error_rate, 'threshold': threshold}
            )
            if alert:
                new_alerts.append(alert)

        slow = [
            m for m in list(self._metrics)[-SLOW_SAMPLE_SIZE:]
            if m.success and m.processing_time_ms is not None
            and m.processing_time_ms > self.settings.processing_time_threshold_ms
        ]
        if slow:
            alert = await self._raise_once(
                AlertType.PROCESSING_TIME,
                AlertSeverity.MEDIUM,
                f"{len(slow)} operations exceeded {self.settings.processing_time_threshold_ms:.0f} ms",
                {
                    'slow_operations': len(slow),
                    'max_processing_time_ms': max(m.processing_time_ms for m in slow),
                }
            )
            if alert:
                new_alerts.append(alert)

        if self._metrics:
            alert = await self._check_system_down()
            if alert:
                new_alerts.append(alert)

        return new_alerts

    def get_active_alerts(self) -> List[Alert]:
        return self.alert_manager.get_active_alerts()

    def get_alerts(self, window_minutes: Optional[float] = None) -> List[Alert]:
        window = timedelta(minutes=window_minutes) if window_minutes else None
        return self.alert_manager.get_alerts(window)

    def resolve_alert(self, alert_id: str) -> bool:
        """True on the first resolution of a known alert, False afterwards."""
        return self.alert_manager.resolve_alert(alert_id)

    def get_health_summary(self) -> Dict[str, Any]:
        threshold = self.settings.error_rate_threshold
        error_rate = self.get_error_rate()
        active = self.get_active_alerts()
        critical = [a for a in active if a.severity == AlertSeverity.CRITICAL]

        if (
            critical
            or error_rate >= threshold * 2
            or self.consecutive_failures >= self.settings.consecutive_failures_threshold
        ):
            status = HealthStatus.UNHEALTHY
        elif error_rate >= threshold or active:
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.HEALTHY

        recent = self._recent()
        return {
            'status': status.value,
            'error_rate': round(error_rate, 2),
            'error_rate_threshold': threshold,
            'consecutive_failures': self.consecutive_failures,
            'active_alerts': len(active),
            'critical_alerts': len(critical),
            'total_operations': len(recent),
            'last_success': self.last_success_at.isoformat() if self.last_success_at else None,
            'window_minutes': self.settings.time_window_minutes,
        }

    def get_recommendations(self, summary: Dict[str, Any]) -> List[str]:
        recommendations = []
        if summary['error_rate'] >= self.settings.error_rate_threshold:
            recommendations.append("Investigate recent failures: error rate is above threshold")
        if summary['consecutive_failures'] >= self.settings.consecutive_failures_threshold:
            recommendations.append("Check connectivity to the database and external services")
        if summary['critical_alerts'] > 0:
            recommendations.append("Critical alerts require immediate attention")
        if self._metrics and self._since_last_success() >= timedelta(minutes=self.settings.no_success_warning_minutes):
            recommendations.append("No recent successful operations: verify configuration and credentials")
        if not recommendations:
            recommendations.append("System operating normally")
        return recommendations

    async def perform_health_check(self) -> Dict[str, Any]:
        new_alerts = await self.check_alerts()
        summary = self.get_health_summary()
        recommendations = self.get_recommendations(summary)
        logger.info(
            "Health check completed",
            status=summary['status'],
            error_rate=summary['error_rate'],
            new_alerts=len(new_alerts),
        )
        return {
            'new_alerts': new_alerts,
            'health_summary': summary,
            'recommendations': recommendations,
        }

    def get_error_analysis(self, window_minutes: Optional[float] = None) -> Dict[str, Any]:
        recent = self._recent(window_minutes)
        failures = [m for m in recent if not m.success]

        by_error_type: Dict[str, int] = {}
        by_event_type: Dict[str, int] = {}
        for m in failures:
            key = m.error_type or "unknown"
            by_error_type[key] = by_error_type.get(key, 0) + 1
            by_event_type[m.event_type] = by_event_type.get(m.event_type, 0) + 1

        timings = sorted(m.processing_time_ms for m in recent if m.processing_time_ms is not None)
        performance: Dict[str, Any] = {'average_ms': None, 'p95_ms': None, 'slowest_ms': None}
        if timings:
            p95_index = min(len(timings) - 1, int(len(timings) * 0.95))
            performance = {
                'average_ms': statistics.fmean(timings),
                'p95_ms': timings[p95_index],
                'slowest_ms': timings[-1],
            }

        return {
            'total_operations': len(recent),
            'total_errors': len(failures),
            'error_rate': self.get_error_rate(window_minutes),
            'errors_by_type': by_error_type,
            'errors_by_event_type': by_event_type,
            'recent_errors': [
                {
                    'event_type': m.event_type,
                    'error': m.error,
                    'error_type': m.error_type,
                    'timestamp': m.timestamp.isoformat(),
                }
                for m in failures[-10:]
            ],
            'performance': performance,
        }


_resilience_monitor: Optional[ResilienceMonitor] = None


def get_resilience_monitor() -> ResilienceMonitor:
    """Get the global resilience monitor instance."""
    global _resilience_monitor
    if _resilience_monitor is None:
        _resilience_monitor = ResilienceMonitor()
    return _resilience_monitor
