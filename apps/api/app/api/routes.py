from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from app.authz.api import admin_router, me_router, session_router
from app.authz.catalog import PermissionKey
from app.core.config import get_settings
from app.core.rbac import require_permissions
from app.crm.api import (
    activities_router,
    leads_router,
    po_requests_router,
    projects_router,
    so_requests_router,
    tasks_router,
)
from app.metrics import generate_metrics_payload, metrics_content_type
from app.notifications.api import router as notifications_router
from app.platform.security.context import AuthedUser

router = APIRouter()
router.include_router(session_router)
router.include_router(me_router)
router.include_router(admin_router)
router.include_router(notifications_router)
router.include_router(leads_router)
router.include_router(tasks_router)
router.include_router(projects_router)
router.include_router(activities_router)
router.include_router(po_requests_router)
router.include_router(so_requests_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/metrics", tags=["system"])
def metrics(
    _user: AuthedUser = Depends(require_permissions(PermissionKey.ADMIN, PermissionKey.SETTINGS)),
) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
