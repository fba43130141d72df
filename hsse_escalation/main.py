"""FastAPI application exposing the escalation core to the host application."""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from time import perf_counter
from typing import List, Optional

import httpx
import uvicorn
from fastapi import Depends, FastAPI, HTTPException
from fastapi.responses import JSONResponse

from hsse_escalation.config import settings
from hsse_escalation.errors import (
    EscalationError,
    InfrastructureError,
    RuleValidationError,
    TemplateNotFoundError,
)
from hsse_escalation.models.database import create_tables
from hsse_escalation.schemas import (
    EscalationHistoryOut,
    EscalationOutcomeOut,
    EvaluateResponse,
    IncidentSnapshotIn,
    ManualEscalationRequest,
    NotificationHistoryOut,
    ProviderStatusRequest,
    ProviderStatusResponse,
    SweepResponse,
    TransitionResponse,
)
from hsse_escalation.services.container import EscalationServices, build_services, seed_rules
from hsse_escalation.utils.logging import CorrelationContextManager, get_logger, setup_logging

# Setup logging
setup_logging()
logger = get_logger(__name__)

# Global service instance
escalation_services: Optional[EscalationServices] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global escalation_services

    logger.info("Starting HSSE escalation service")

    try:
        await create_tables()
        logger.info("Database tables created/verified")

        escalation_services = build_services()
        seeded = await seed_rules(escalation_services.rule_repository)
        if seeded:
            logger.info("Escalation rules seeded", rule_count=seeded)

        await escalation_services.start()
        logger.info("HSSE escalation service started successfully")

    except Exception as e:
        logger.error("Failed to start application", error=str(e))
        raise

    yield

    logger.info("Shutting down HSSE escalation service")
    try:
        if escalation_services:
            await escalation_services.stop(drain_timeout=settings.CHANNEL_SEND_TIMEOUT_SECONDS)
        logger.info("HSSE escalation service shutdown completed")

    except Exception as e:
        logger.error("Error during shutdown", error=str(e))


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    description="Escalation rule engine and notification pipeline for HSSE incidents",
    lifespan=lifespan,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None
)


def get_services() -> EscalationServices:
    if escalation_services is None:
        raise HTTPException(status_code=503, detail="Escalation services not initialized")
    return escalation_services


@app.get("/health")
async def health_check():
    """Basic health check endpoint."""
    return {
        "status": "healthy",
        "timestamp": _utcnow().isoformat(),
        "version": settings.VERSION,
        "environment": settings.ENVIRONMENT
    }


async def _component_health(check) -> dict:
    started = perf_counter()
    try:
        healthy = await check()
    except Exception as e:
        logger.error("Component health check failed", error=str(e))
        return {"status": "critical", "error": str(e), "last_check": _utcnow().isoformat()}

    return {
        "status": "healthy" if healthy else "degraded",
        "response_time_ms": round((perf_counter() - started) * 1000, 2),
        "last_check": _utcnow().isoformat()
    }


@app.get("/health/detailed")
async def detailed_health_check(services: EscalationServices = Depends(get_services)):
    """Detailed health check with component status."""
    components = {"database": await _component_health(services.audit_store.check_connection)}
    for channel, sender in services.dispatcher.senders.items():
        check = getattr(sender, "check_connection", None)
        if check is not None:
            components[channel.value] = await _component_health(check)

    if components["database"]["status"] != "healthy":
        overall = "critical"
    elif any(c["status"] != "healthy" for c in components.values()):
        overall = "degraded"
    else:
        overall = "healthy"

    health_status = {
        "overall_status": overall,
        "components": components,
        "scheduler_running": services.scheduler.is_running,
        "dispatcher_running": services.dispatcher.is_running,
        "timestamp": _utcnow().isoformat()
    }
    if overall == "critical":
        return JSONResponse(status_code=503, content=health_status)
    return health_status


# Incident endpoints
@app.post("/api/v1/incidents/evaluate", response_model=EvaluateResponse)
async def evaluate_incident(
    incident: IncidentSnapshotIn,
    services: EscalationServices = Depends(get_services),
):
    """Evaluate one incident after a state change in the host application."""
    with CorrelationContextManager(incident_id=incident.id):
        outcomes = await services.engine.evaluate(incident.to_snapshot())

    return EvaluateResponse(
        incident_id=incident.id,
        outcomes=[EscalationOutcomeOut.model_validate(o) for o in outcomes],
    )


@app.post("/api/v1/incidents/{incident_id}/escalate", response_model=EscalationOutcomeOut)
async def escalate_incident(
    incident_id: int,
    request: ManualEscalationRequest,
    services: EscalationServices = Depends(get_services),
):
    """Manually escalate an incident to management."""
    if request.incident is not None:
        if request.incident.id != incident_id:
            raise HTTPException(status_code=400, detail="Incident id does not match the path")
        snapshot = request.incident.to_snapshot()
    else:
        try:
            snapshot = await services.incident_provider.get_incident_snapshot(incident_id)
        except httpx.HTTPError as e:
            logger.error("Incident lookup failed", incident_id=incident_id, error=str(e))
            raise HTTPException(status_code=502, detail="Incident API unavailable")
        if snapshot is None:
            raise HTTPException(status_code=404, detail=f"Incident {incident_id} not found")

    with CorrelationContextManager(incident_id=snapshot.id):
        outcome = await services.engine.trigger_manual_escalation(
            snapshot,
            reason=request.reason,
            escalated_by=request.escalated_by,
            channels=request.channels,
        )
    return EscalationOutcomeOut.model_validate(outcome)


@app.get(
    "/api/v1/incidents/{incident_id}/escalation-history",
    response_model=List[EscalationHistoryOut]
)
async def get_escalation_history(
    incident_id: int,
    services: EscalationServices = Depends(get_services),
):
    rows = await services.audit_store.get_escalation_history(incident_id)
    return [EscalationHistoryOut.model_validate(row) for row in rows]


@app.get(
    "/api/v1/incidents/{incident_id}/notifications",
    response_model=List[NotificationHistoryOut]
)
async def get_incident_notifications(
    incident_id: int,
    services: EscalationServices = Depends(get_services),
):
    rows = await services.audit_store.get_notification_history(incident_id)
    return [NotificationHistoryOut.model_validate(row) for row in rows]


# Provider callbacks
async def _transition_response(
    services: EscalationServices,
    notification_id: int,
    applied: bool,
) -> TransitionResponse:
    row = await services.audit_store.get_notification(notification_id)
    if row is None:
        raise HTTPException(status_code=404, detail=f"Notification {notification_id} not found")
    return TransitionResponse(notification_id=notification_id, applied=applied, status=row.status)


@app.post("/api/v1/notifications/{notification_id}/delivered", response_model=TransitionResponse)
async def mark_notification_delivered(
    notification_id: int,
    services: EscalationServices = Depends(get_services),
):
    applied = await services.dispatcher.mark_delivered(notification_id)
    return await _transition_response(services, notification_id, applied)


@app.post("/api/v1/notifications/{notification_id}/read", response_model=TransitionResponse)
async def mark_notification_read(
    notification_id: int,
    services: EscalationServices = Depends(get_services),
):
    applied = await services.dispatcher.mark_read(notification_id)
    return await _transition_response(services, notification_id, applied)


@app.post("/api/v1/notifications/provider-status", response_model=ProviderStatusResponse)
async def provider_status_callback(
    request: ProviderStatusRequest,
    services: EscalationServices = Depends(get_services),
):
    """Delivery receipts from channel providers."""
    applied = await services.dispatcher.handle_provider_status(
        request.provider_message_id,
        request.status,
        request.error_message,
    )
    return ProviderStatusResponse(provider_message_id=request.provider_message_id, applied=applied)


# Escalation endpoints
@app.post("/api/v1/escalation/sweep", response_model=SweepResponse)
async def trigger_sweep(services: EscalationServices = Depends(get_services)):
    """Manually sweep all open incidents."""
    with CorrelationContextManager(job="manual_sweep"):
        try:
            result = await services.scheduler.trigger_sweep()
        except httpx.HTTPError as e:
            logger.error("Incident API unavailable during sweep", error=str(e))
            raise HTTPException(status_code=502, detail="Incident API unavailable")

    return SweepResponse(
        evaluated=result.evaluated,
        failed=result.failed,
        actions=result.fired,
        errors=result.errors,
        timestamp=_utcnow(),
    )


@app.get("/api/v1/escalation/status")
async def get_escalation_status(services: EscalationServices = Depends(get_services)):
    """Get escalation scheduler and dispatcher status."""
    status = services.scheduler.get_job_status()
    status["dispatcher"] = {
        "running": services.dispatcher.is_running,
        "queue_depth": services.dispatcher.queue_depth,
        "workers": services.dispatcher.worker_count,
    }
    return status


# Error handlers
def _error_response(request, status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": message,
            "timestamp": _utcnow().isoformat(),
            "path": str(request.url.path)
        }
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc):
    """Handle HTTP exceptions with structured logging."""
    logger.warning(
        "HTTP exception",
        status_code=exc.status_code,
        detail=exc.detail,
        path=request.url.path
    )
    return _error_response(request, exc.status_code, exc.detail)


@app.exception_handler(EscalationError)
async def escalation_exception_handler(request, exc):
    """Map escalation errors onto HTTP status codes."""
    if isinstance(exc, InfrastructureError):
        status_code = 503
    elif isinstance(exc, RuleValidationError):
        status_code = 422
    elif isinstance(exc, TemplateNotFoundError):
        status_code = 404
    else:
        status_code = 400

    logger.error(
        "Escalation error",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path
    )
    return _error_response(request, status_code, str(exc))


@app.exception_handler(Exception)
async def general_exception_handler(request, exc):
    """Handle general exceptions with structured logging."""
    logger.error(
        "Unhandled exception",
        error=str(exc),
        path=request.url.path,
        exc_info=True
    )
    return _error_response(request, 500, "Internal server error")


if __name__ == "__main__":
    uvicorn.run(
        "hsse_escalation.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level="info"
    )
