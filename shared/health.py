from typing import Awaitable, Callable, Optional

from fastapi import APIRouter, Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from shared.config import LifecycleConfig


def create_health_router(
    check_ready: Optional[Callable[[], Awaitable[bool]]] = None,
    service_name: str = "service",
    config: Optional[LifecycleConfig] = None,
) -> APIRouter:
    """Create health check router with liveness, readiness, and metrics endpoints.

    When a LifecycleConfig is given, readiness also reports the timing
    values the service is enforcing.
    """

    router = APIRouter(tags=["health"])

    @router.get("/health/live")
    async def liveness():
        return {"status": "ok", "service": service_name}

    @router.get("/health/ready")
    async def readiness():
        if check_ready:
            is_ready = await check_ready()
            if not is_ready:
                return Response(
                    content='{"status": "not_ready"}',
                    status_code=503,
                    media_type="application/json"
                )
        body = {"status": "ready", "service": service_name}
        if config:
            body["config"] = {
                "attempt_window_minutes": config.attempt_window.total_seconds() / 60,
                "verification_deadline_hours": config.verification_deadline.total_seconds() / 3600,
                "sweep_batch_size": config.sweep_batch_size,
                "sweep_interval_seconds": config.sweep_interval_seconds,
                "deadline_policy": config.deadline_policy.value,
            }
        return body

    @router.get("/metrics")
    async def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return router
