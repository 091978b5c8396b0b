from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from crmflow.activity.api import router as activity_router
from crmflow.automation.api import router as automation_router
from crmflow.core.auth import AuthUser, get_current_user, require_role
from crmflow.core.config import get_settings
from crmflow.documents.api import router as documents_router
from crmflow.metrics import render_metrics
from crmflow.pipelines.api import router as pipelines_router

router = APIRouter()
router.include_router(pipelines_router)
router.include_router(automation_router)
router.include_router(documents_router)
router.include_router(activity_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"])
async def me(user: AuthUser = Depends(get_current_user)) -> dict[str, str | list[str]]:
    return {
        "sub": user.sub,
        "roles": user.roles,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(require_role("system.metrics.read"))) -> Response:
    if not get_settings().metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    payload, content_type = render_metrics()
    return Response(content=payload, media_type=content_type)
