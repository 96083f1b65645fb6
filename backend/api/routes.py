"""Read-only status surface: service info, liveness, readiness and run statistics."""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter
from fastapi.responses import JSONResponse

import settings
from db import check_database
from schemas import HealthResponse, ReadinessResponse, StatusResponse
from scheduler.stats import ExecutionStats
from scheduler.worker import default_sender_factory

router = APIRouter()

FEATURES = [
    "follow_ups",
    "orphan_detection",
    "stale_item_cleanup",
    "appointment_reminders",
    "ai_personalization",
    "credit_control",
    "business_hours",
]

# Global references, set during app startup
_engine = None
_worker = None
_stats: Optional[ExecutionStats] = None


def set_engine(engine):
    global _engine
    _engine = engine


def set_worker(worker):
    global _worker
    _worker = worker


def set_stats(stats: ExecutionStats):
    global _stats
    _stats = stats


def _timestamp() -> str:
    return datetime.utcnow().isoformat() + "Z"


@router.get("/", response_model=StatusResponse)
def service_status():
    """Service status with the run statistics snapshot"""
    running = bool(_worker and _worker.is_running())
    return StatusResponse(
        status="running" if running else "stopped",
        service=settings.SERVICE_NAME,
        version=settings.SERVICE_VERSION,
        poll_interval_minutes=settings.POLL_INTERVAL_MINUTES,
        features=FEATURES,
        stats=_stats.snapshot() if _stats else {},
        timestamp=_timestamp(),
        note=None if settings.OPENAI_API_KEY else "LLM key not configured, template substitution only",
    )


@router.get("/health", response_model=HealthResponse)
def health_check():
    """Liveness endpoint with service metadata"""
    return HealthResponse(
        status="healthy",
        service=settings.SERVICE_NAME,
        version=settings.SERVICE_VERSION,
        timestamp=_timestamp(),
    )


@router.get("/ready", response_model=ReadinessResponse)
async def readiness_check():
    """
    Ready when the database answers and the worker thread is alive.

    The Evolution gateway is checked when configured. Its reachability is
    reported but does not decide readiness.
    """
    database_ok = bool(_engine is not None and check_database(_engine))
    worker_ok = bool(_worker and _worker.is_running())
    messaging_configured = bool(settings.EVOLUTION_API_URL and settings.EVOLUTION_API_KEY)
    body = ReadinessResponse(
        status="ready" if database_ok and worker_ok else "not_ready",
        database=database_ok,
        worker_running=worker_ok,
        messaging_configured=messaging_configured,
        llm_configured=bool(settings.OPENAI_API_KEY),
        timestamp=_timestamp(),
    )
    if messaging_configured:
        async with default_sender_factory() as sender:
            body.messaging_reachable, data = await sender.check_health()
        body.messaging_error = data.get("error")
    if body.status != "ready":
        return JSONResponse(status_code=503, content=body.model_dump())
    return body
