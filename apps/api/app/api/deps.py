from __future__ import annotations

from fastapi import Depends
from sqlalchemy.orm import Session, sessionmaker
from starlette.requests import Request

from app.authz.schemas import RoleDefinition, User
from app.authz.service import role_service
from app.core.auth import get_current_user
from app.core.config import get_settings
from app.core.database import get_db
from app.storage.base import StorageAdapter
from app.storage.factory import DbConnectionConfig, create_storage_adapter


def get_roles(db: Session = Depends(get_db), user: User = Depends(get_current_user)) -> list[RoleDefinition]:
    return role_service.list_roles(db, user.company_id)


def get_storage_adapter(
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> StorageAdapter:
    settings = get_settings()
    config = DbConnectionConfig(
        company_id=user.company_id,
        type=settings.storage_backend,
        api_url=settings.rest_store_url or None,
        api_key=settings.rest_store_api_key or None,
    )
    return create_storage_adapter(
        config,
        store=request.app.state.kv_store,
        session_factory=sessionmaker(bind=db.get_bind(), autocommit=False, autoflush=False),
        http_client=getattr(request.app.state, "http_client", None),
        timeout=settings.rest_store_timeout_seconds,
    )
