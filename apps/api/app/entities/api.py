from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Body, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.api.deps import get_roles, get_storage_adapter
from app.api.errors import domain_error_response
from app.authz.schemas import RoleDefinition, User
from app.core.auth import get_current_user
from app.core.config import get_settings
from app.core.database import get_db
from app.core.errors import CRMError
from app.entities.schemas import StageMoveRequest
from app.entities.service import EntityService
from app.pipelines.schemas import FieldDefinition
from app.pipelines.service import pipeline_service
from app.storage.base import DateRange, PaginatedResult, QueryFilters, StageStats, StorageAdapter


router = APIRouter(prefix="/api/pipelines/{pipeline_id}/entities", tags=["crm.entities"])

_settings = get_settings()


def _bound(value: str | None) -> Any:
    # Timestamps are stored as epoch milliseconds; ISO strings pass through.
    if value is None:
        return None
    stripped = value.strip()
    if stripped.lstrip("-").isdigit():
        return int(stripped)
    return stripped


@router.get("", response_model=PaginatedResult)
def list_entities(
    request: Request,
    pipeline_id: str,
    search: str | None = Query(default=None),
    stage: list[str] | None = Query(default=None),
    sort_by: str | None = Query(default=None),
    sort_order: Literal["asc", "desc"] = Query(default="asc"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=_settings.default_page_size, ge=1, le=_settings.max_page_size),
    date_field: str | None = Query(default=None),
    date_from: str | None = Query(default=None),
    date_to: str | None = Query(default=None),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    roles: list[RoleDefinition] = Depends(get_roles),
    adapter: StorageAdapter = Depends(get_storage_adapter),
) -> PaginatedResult | JSONResponse:
    date_range = None
    if date_field:
        date_range = DateRange(field=date_field, from_=_bound(date_from), to=_bound(date_to))
    filters = QueryFilters(
        search=search or None,
        stage=stage,
        date_range=date_range,
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        limit=limit,
    )
    try:
        pipeline = pipeline_service.get_pipeline(db, user.company_id, pipeline_id)
        return EntityService(adapter).list_entities(user, roles, pipeline, filters)
    except CRMError as exc:
        return domain_error_response(request, exc)


@router.post("/query", response_model=PaginatedResult)
def query_entities(
    request: Request,
    pipeline_id: str,
    filters: QueryFilters,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    roles: list[RoleDefinition] = Depends(get_roles),
    adapter: StorageAdapter = Depends(get_storage_adapter),
) -> PaginatedResult | JSONResponse:
    try:
        pipeline = pipeline_service.get_pipeline(db, user.company_id, pipeline_id)
        return EntityService(adapter).list_entities(user, roles, pipeline, filters)
    except CRMError as exc:
        return domain_error_response(request, exc)


@router.get("/stats", response_model=StageStats)
def get_stats(
    request: Request,
    pipeline_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    roles: list[RoleDefinition] = Depends(get_roles),
    adapter: StorageAdapter = Depends(get_storage_adapter),
) -> StageStats | JSONResponse:
    try:
        pipeline = pipeline_service.get_pipeline(db, user.company_id, pipeline_id)
        return EntityService(adapter).get_stats(user, roles, pipeline)
    except CRMError as exc:
        return domain_error_response(request, exc)


@router.get("/fields", response_model=list[FieldDefinition])
def visible_fields(
    request: Request,
    pipeline_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    roles: list[RoleDefinition] = Depends(get_roles),
    adapter: StorageAdapter = Depends(get_storage_adapter),
) -> list[FieldDefinition] | JSONResponse:
    try:
        pipeline = pipeline_service.get_pipeline(db, user.company_id, pipeline_id)
        return EntityService(adapter).visible_fields(user, roles, pipeline)
    except CRMError as exc:
        return domain_error_response(request, exc)


@router.get("/by-stage/{stage}", response_model=list[dict[str, Any]])
def get_by_stage(
    request: Request,
    pipeline_id: str,
    stage: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    roles: list[RoleDefinition] = Depends(get_roles),
    adapter: StorageAdapter = Depends(get_storage_adapter),
) -> list[dict[str, Any]] | JSONResponse:
    try:
        pipeline = pipeline_service.get_pipeline(db, user.company_id, pipeline_id)
        return EntityService(adapter).get_by_stage(user, roles, pipeline, stage)
    except CRMError as exc:
        return domain_error_response(request, exc)


@router.post("", response_model=dict[str, Any], status_code=status.HTTP_201_CREATED)
def create_entity(
    request: Request,
    pipeline_id: str,
    data: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    roles: list[RoleDefinition] = Depends(get_roles),
    adapter: StorageAdapter = Depends(get_storage_adapter),
) -> dict[str, Any] | JSONResponse:
    try:
        pipeline = pipeline_service.get_pipeline(db, user.company_id, pipeline_id)
        return EntityService(adapter).create_entity(user, roles, pipeline, data)
    except CRMError as exc:
        return domain_error_response(request, exc)


@router.get("/{entity_id}", response_model=dict[str, Any])
def get_entity(
    request: Request,
    pipeline_id: str,
    entity_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    roles: list[RoleDefinition] = Depends(get_roles),
    adapter: StorageAdapter = Depends(get_storage_adapter),
) -> dict[str, Any] | JSONResponse:
    try:
        pipeline = pipeline_service.get_pipeline(db, user.company_id, pipeline_id)
        return EntityService(adapter).get_entity(user, roles, pipeline, entity_id)
    except CRMError as exc:
        return domain_error_response(request, exc)


@router.patch("/{entity_id}", response_model=dict[str, Any])
def update_entity(
    request: Request,
    pipeline_id: str,
    entity_id: str,
    patch: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    roles: list[RoleDefinition] = Depends(get_roles),
    adapter: StorageAdapter = Depends(get_storage_adapter),
) -> dict[str, Any] | JSONResponse:
    try:
        pipeline = pipeline_service.get_pipeline(db, user.company_id, pipeline_id)
        return EntityService(adapter).update_entity(user, roles, pipeline, entity_id, patch)
    except CRMError as exc:
        return domain_error_response(request, exc)


@router.delete("/{entity_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_entity(
    request: Request,
    pipeline_id: str,
    entity_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    roles: list[RoleDefinition] = Depends(get_roles),
    adapter: StorageAdapter = Depends(get_storage_adapter),
) -> Any:
    try:
        pipeline = pipeline_service.get_pipeline(db, user.company_id, pipeline_id)
        EntityService(adapter).delete_entity(user, roles, pipeline, entity_id)
        return {"status": "deleted"}
    except CRMError as exc:
        return domain_error_response(request, exc)


@router.post("/{entity_id}/stage", response_model=dict[str, Any])
def move_stage(
    request: Request,
    pipeline_id: str,
    entity_id: str,
    dto: StageMoveRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    roles: list[RoleDefinition] = Depends(get_roles),
    adapter: StorageAdapter = Depends(get_storage_adapter),
) -> dict[str, Any] | JSONResponse:
    try:
        pipeline = pipeline_service.get_pipeline(db, user.company_id, pipeline_id)
        return EntityService(adapter).move_stage(user, roles, pipeline, entity_id, dto.stage)
    except CRMError as exc:
        return domain_error_response(request, exc)
