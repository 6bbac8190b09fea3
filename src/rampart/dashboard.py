"""
Operational Endpoints

Read/write surface for dashboards and health checks:
- GET /health - Health summary (200 healthy, 207 degraded, 503 unhealthy)
- GET /alerts - Resilience and security alerts
- POST /alerts/{alert_id}/resolve - Resolve an alert
- GET /security/metrics - Aggregated security event metrics
"""

from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, status
from fastapi.responses import JSONResponse

from .resilience.monitor import HealthStatus, ResilienceMonitor, get_resilience_monitor
from .security.security_monitor import SecurityMonitor, get_security_monitor
from .shared.logging_config import get_logger

HEALTH_STATUS_CODES = {
    HealthStatus.HEALTHY.value: status.HTTP_200_OK,
    HealthStatus.DEGRADED.value: status.HTTP_207_MULTI_STATUS,
    HealthStatus.UNHEALTHY.value: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def create_monitoring_router(
    resilience_monitor: Optional[ResilienceMonitor] = None,
    security_monitor: Optional[SecurityMonitor] = None
) -> APIRouter:
    """Build the monitoring router over the given monitors."""
    resilience = resilience_monitor or get_resilience_monitor()
    security = security_monitor or get_security_monitor()
    logger = get_logger(__name__, 'monitoring_api')
    router = APIRouter()

    @router.get("/health", summary="Health summary")
    async def health() -> JSONResponse:
        result = await resilience.perform_health_check()
        summary = result['health_summary']
        return JSONResponse(
            status_code=HEALTH_STATUS_CODES[summary['status']],
            content={
                'status': summary['status'],
                'summary': summary,
                'new_alerts': [a.to_dict() for a in result['new_alerts']],
                'recommendations': result['recommendations'],
            }
        )

    @router.get("/alerts", summary="List alerts")
    async def list_alerts(
        active_only: bool = Query(True, description="Only unresolved alerts"),
        window_minutes: Optional[float] = Query(None, gt=0, description="Look-back window")
    ) -> JSONResponse:
        window = timedelta(minutes=window_minutes) if window_minutes is not None else None
        managers = (('resilience', resilience.alert_manager), ('security', security.alert_manager))
        alerts = []
        for source, manager in managers:
            selected = manager.get_alerts(window)
            if active_only:
                selected = [a for a in selected if a.is_active()]
            alerts.extend({**a.to_dict(), 'source': source} for a in selected)

        alerts.sort(key=lambda a: a['timestamp'], reverse=True)
        return JSONResponse(content={'alerts': alerts, 'count': len(alerts)})

    @router.post("/alerts/{alert_id}/resolve", summary="Resolve an alert")
    async def resolve_alert(alert_id: str) -> JSONResponse:
        for manager in (resilience.alert_manager, security.alert_manager):
            if manager.get_alert(alert_id) is None:
                continue
            resolved = manager.resolve_alert(alert_id)
            logger.info(
                f"Alert {alert_id} resolve requested",
                operation="resolve_alert",
                alert_id=alert_id,
                newly_resolved=resolved
            )
            return JSONResponse(content={'alert_id': alert_id, 'resolved': resolved})

        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Alert not found")

    @router.get("/security/metrics", summary="Security event metrics")
    async def security_metrics(
        window_minutes: float = Query(60, gt=0, description="Look-back window")
    ) -> JSONResponse:
        return JSONResponse(content=security.get_security_metrics(window_minutes))

    return router
