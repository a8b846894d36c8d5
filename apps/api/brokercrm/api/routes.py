from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from brokercrm.auth.api import router as auth_router
from brokercrm.core.auth import AuthUser, get_current_user, require_user
from brokercrm.core.config import get_settings
from brokercrm.metrics import generate_metrics_payload, metrics_content_type
from brokercrm.records.api import record_routers

router = APIRouter()
router.include_router(auth_router)
for record_router in record_routers():
    router.include_router(record_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
        "storage": settings.storage_backend,
    }


@router.get("/me", tags=["auth"])
async def me(user: AuthUser = Depends(require_user)) -> dict[str, str | list[str] | None]:
    return {
        "sub": user.sub,
        "email": user.email,
        "name": user.name,
        "roles": user.roles,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser | None = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if user is not None and user.role != "admin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Requires role: admin")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
