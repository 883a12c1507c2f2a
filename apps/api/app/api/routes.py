from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from app.analytics.api import dashboard_router, gc_hub_router, sga_hub_router
from app.analytics.schemas import PermissionsRead
from app.core.auth import get_permissions
from app.core.config import get_settings
from app.metrics import generate_metrics_payload, metrics_content_type
from app.platform.refresh.api import admin_router, cron_router
from app.platform.security.context import Permissions

router = APIRouter()
router.include_router(dashboard_router)
router.include_router(sga_hub_router)
router.include_router(gc_hub_router)
router.include_router(admin_router)
router.include_router(cron_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/api/auth/permissions", tags=["auth"], response_model=PermissionsRead)
async def permissions(current: Permissions = Depends(get_permissions)) -> PermissionsRead:
    return PermissionsRead.model_validate(current.to_payload())


@router.get("/metrics", tags=["system"])
def metrics(current: Permissions = Depends(get_permissions)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if not current.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
