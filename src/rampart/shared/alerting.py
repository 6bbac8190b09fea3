"""
Alert bookkeeping shared by the security and resilience monitors.

Alerts are append-only in creation order. The only mutation is
``resolve_alert``, which flips ``resolved`` once; resolving again is a no-op
that returns False. History is bounded and evicts the oldest alerts first.
"""

import inspect
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional
from uuid import uuid4

from .clock import Clock, get_clock
from .logging_config import get_logger


class AlertSeverity(str, Enum):
    """Alert severity levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class Alert:
    """A raised alert."""
    id: str
    type: str
    severity: AlertSeverity
    message: str
    timestamp: datetime
    resolved: bool = False
    resolved_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['severity'] = self.severity.value
        data['timestamp'] = self.timestamp.isoformat()
        data['resolved_at'] = self.resolved_at.isoformat() if self.resolved_at else None
        return data

    def is_active(self) -> bool:
        return not self.resolved


AlertHandler = Callable[[Alert], Any]


class AlertManager:
    """Bounded, append-only alert log with handler fan-out."""

    def __init__(
        self,
        max_alerts: int = 1000,
        clock: Optional[Clock] = None,
        alert_handlers: Optional[List[AlertHandler]] = None,
        component: str = 'alerting'
    ):
        self.clock = clock or get_clock()
        self.logger = get_logger(__name__, component)
        self.max_alerts = max_alerts
        self.alert_handlers: List[AlertHandler] = list(alert_handlers or [])
        self._alerts: Deque[Alert] = deque()
        self._index: Dict[str, Alert] = {}
        self.stats = {
            'alerts_created': 0,
            'alerts_resolved': 0,
            'alerts_evicted': 0,
            'handler_errors': 0,
        }

    def add_alert_handler(self, handler: AlertHandler):
        self.alert_handlers.append(handler)

    async def create_alert(
        self,
        alert_type: str,
        severity: AlertSeverity,
        message: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Alert:
        """Record a new alert and hand it to every registered handler."""
        alert = Alert(
            id=f"alert_{uuid4().hex[:12]}",
            type=alert_type,
            severity=severity,
            message=message,
            timestamp=self.clock.now(),
            metadata=dict(metadata or {})
        )
        self._append(alert)
        self.stats['alerts_created'] += 1

        self.logger.warning(
            f"Alert raised: {message}",
            operation="create_alert",
            alert_id=alert.id,
            alert_type=alert_type,
            severity=severity.value
        )

        await self._dispatch(alert)
        return alert

    def _append(self, alert: Alert):
        if len(self._alerts) >= self.max_alerts:
            evicted = self._alerts.popleft()
            self._index.pop(evicted.id, None)
            self.stats['alerts_evicted'] += 1
        self._alerts.append(alert)
        self._index[alert.id] = alert

    async def _dispatch(self, alert: Alert):
        for handler in self.alert_handlers:
            try:
                result = handler(alert)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self.stats['handler_errors'] += 1
                self.logger.error(
                    f"Alert handler failed: {e}",
                    operation="dispatch_alert",
                    alert_id=alert.id,
                    error=str(e)
                )

    def resolve_alert(self, alert_id: str) -> bool:
        """Mark an alert resolved. True only on the first resolution."""
        alert = self._index.get(alert_id)
        if alert is None or alert.resolved:
            return False
        alert.resolved = True
        alert.resolved_at = self.clock.now()
        self.stats['alerts_resolved'] += 1
        self.logger.info(
            f"Alert resolved: {alert_id}",
            operation="resolve_alert",
            alert_id=alert_id,
            alert_type=alert.type
        )
        return True

    def get_alert(self, alert_id: str) -> Optional[Alert]:
        return self._index.get(alert_id)

    def get_active_alerts(
        self,
        severity: Optional[AlertSeverity] = None,
        alert_type: Optional[str] = None
    ) -> List[Alert]:
        return [
            a for a in self._alerts
            if not a.resolved
            and (severity is None or a.severity == severity)
            and (alert_type is None or a.type == alert_type)
        ]

    def has_active_alert(self, alert_type: str) -> bool:
        return any(a.type == alert_type and not a.resolved for a in self._alerts)

    def get_alerts(self, window: Optional[timedelta] = None) -> List[Alert]:
        """All alerts in creation order, optionally limited to a recent window."""
        if window is None:
            return list(self._alerts)
        cutoff = self.clock.now() - window
        return [a for a in self._alerts if a.timestamp >= cutoff]

    def get_stats(self) -> Dict[str, Any]:
        active = self.get_active_alerts()
        by_severity: Dict[str, int] = {}
        for alert in active:
            by_severity[alert.severity.value] = by_severity.get(alert.severity.value, 0) + 1
        return {
            **self.stats,
            'total_alerts': len(self._alerts),
            'active_alerts': len(active),
            'active_by_severity': by_severity,
        }

    def __len__(self) -> int:
        return len(self._alerts)
