from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import Response

from app.api.errors import error_response
from app.authz.api import router as roles_router
from app.authz.schemas import User
from app.core.auth import get_current_user
from app.core.config import get_settings
from app.entities.api import router as entities_router
from app.ingest.api import router as schemas_router
from app.metrics import generate_metrics_payload, metrics_content_type
from app.pipelines.api import router as pipelines_router
from app.platform.security.policies import is_admin, is_dev

router = APIRouter()
router.include_router(schemas_router)
router.include_router(pipelines_router)
router.include_router(entities_router)
router.include_router(roles_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
        "storage_backend": settings.storage_backend,
    }


@router.get("/me", tags=["auth"], response_model=User)
async def me(user: User = Depends(get_current_user)) -> User:
    return user


@router.get("/metrics", tags=["system"], response_model=None)
def metrics(request: Request, user: User = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        return error_response(request, status_code=status.HTTP_404_NOT_FOUND, code="not_found", message="not found")
    if not (is_admin(user) or is_dev(user)):
        return error_response(
            request,
            status_code=status.HTTP_403_FORBIDDEN,
            code="permission_denied",
            message="metrics are restricted to admin and dev roles",
        )
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
