from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.api.deps import get_roles, get_storage_adapter
from app.api.errors import domain_error_response
from app.authz.schemas import RoleDefinition, User
from app.core.auth import get_current_user
from app.core.database import get_db
from app.core.errors import CRMError
from app.pipelines.schemas import FieldDefinition, PipelineConfig, PipelineCreate, PipelineUpdate
from app.pipelines.service import pipeline_service
from app.storage.base import StorageAdapter


router = APIRouter(prefix="/api/pipelines", tags=["crm.pipelines"])


@router.get("", response_model=list[PipelineConfig])
def list_pipelines(
    include_inactive: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    roles: list[RoleDefinition] = Depends(get_roles),
) -> list[PipelineConfig]:
    return pipeline_service.list_pipelines(db, user, roles, include_inactive=include_inactive)


@router.post("", response_model=PipelineConfig, status_code=status.HTTP_201_CREATED)
def create_pipeline(
    request: Request,
    dto: PipelineCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    roles: list[RoleDefinition] = Depends(get_roles),
) -> PipelineConfig | JSONResponse:
    try:
        return pipeline_service.create_pipeline(db, user, roles, dto)
    except CRMError as exc:
        return domain_error_response(request, exc)


@router.get("/{pipeline_id}", response_model=PipelineConfig)
def get_pipeline(
    request: Request,
    pipeline_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    roles: list[RoleDefinition] = Depends(get_roles),
) -> PipelineConfig | JSONResponse:
    try:
        return pipeline_service.read_pipeline(db, user, roles, pipeline_id)
    except CRMError as exc:
        return domain_error_response(request, exc)


@router.get("/{pipeline_id}/fields", response_model=list[FieldDefinition])
def list_fields(
    request: Request,
    pipeline_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    roles: list[RoleDefinition] = Depends(get_roles),
) -> list[FieldDefinition] | JSONResponse:
    try:
        return pipeline_service.read_pipeline(db, user, roles, pipeline_id).sorted_fields()
    except CRMError as exc:
        return domain_error_response(request, exc)


@router.put("/{pipeline_id}", response_model=PipelineConfig)
def update_pipeline(
    request: Request,
    pipeline_id: str,
    dto: PipelineUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    roles: list[RoleDefinition] = Depends(get_roles),
) -> PipelineConfig | JSONResponse:
    try:
        return pipeline_service.update_pipeline(db, user, roles, pipeline_id, dto)
    except CRMError as exc:
        return domain_error_response(request, exc)


@router.delete("/{pipeline_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_pipeline(
    request: Request,
    pipeline_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    roles: list[RoleDefinition] = Depends(get_roles),
    adapter: StorageAdapter = Depends(get_storage_adapter),
) -> Any:
    try:
        pipeline_service.delete_pipeline(db, user, roles, pipeline_id, adapter)
        return {"status": "deleted"}
    except CRMError as exc:
        return domain_error_response(request, exc)
