from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from app.core.auth import AuthUser, get_current_user
from app.core.config import get_settings
from app.crm.api import (
    activity_router,
    analytics_router,
    get_performance_recorder,
    intents_router,
    relationships_router,
)
from app.metrics import generate_metrics_payload, metrics_content_type
from app.performance import PerformanceRecorder

router = APIRouter()
router.include_router(relationships_router)
router.include_router(intents_router)
router.include_router(activity_router)
router.include_router(analytics_router)


def _require_metrics_access(user: AuthUser) -> None:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if "system.metrics.read" not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing permission: system.metrics.read")


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"])
async def me(user: AuthUser = Depends(get_current_user)) -> dict[str, str | list[str] | None]:
    return {
        "sub": user.sub,
        "roles": user.roles,
        "tenant_id": user.tenant_id,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    _require_metrics_access(user)
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())


@router.get("/performance/{operation}", tags=["system"])
def performance_stats(
    operation: str,
    window_seconds: float | None = None,
    user: AuthUser = Depends(get_current_user),
    recorder: PerformanceRecorder = Depends(get_performance_recorder),
) -> dict[str, str | int | float | None]:
    _require_metrics_access(user)
    stats = recorder.stats(operation, window_seconds)
    return {
        "operation": stats.operation,
        "count": stats.count,
        "min_ms": stats.min_ms,
        "max_ms": stats.max_ms,
        "avg_ms": stats.avg_ms,
        "p95_ms": stats.p95_ms,
        "error_count": recorder.stats(f"{operation}.error", window_seconds).count,
    }
