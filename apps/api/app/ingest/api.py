from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.api.deps import get_roles
from app.api.errors import domain_error_response
from app.authz.schemas import RoleDefinition, User
from app.core.auth import get_current_user
from app.core.database import get_db
from app.core.errors import CRMError
from app.ingest.builder import parse_csv_text
from app.ingest.schemas import FileRecordRead, IngestFileRequest, IngestResult, TableRowsRead, TableSchema
from app.ingest.service import schema_registry_service
from app.platform.security.guards import require
from app.platform.security.policies import can_manage_pipelines


router = APIRouter(prefix="/api/schemas", tags=["ingest.schemas"])


@router.post("/files", response_model=IngestResult, status_code=status.HTTP_201_CREATED)
def ingest_file(
    request: Request,
    dto: IngestFileRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    roles: list[RoleDefinition] = Depends(get_roles),
) -> IngestResult | JSONResponse:
    try:
        require(can_manage_pipelines(user, roles), "schemas.ingest", user)
        rows = dto.rows if dto.rows is not None else parse_csv_text(dto.content or "")
        return schema_registry_service.ingest_file(db, user.company_id, dto.file_name, rows, actor_user_id=user.id)
    except CRMError as exc:
        return domain_error_response(request, exc)


@router.get("/files", response_model=list[FileRecordRead])
def list_files(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> list[FileRecordRead]:
    return schema_registry_service.list_files(db, user.company_id)


@router.delete("/files/{file_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_file(
    request: Request,
    file_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    roles: list[RoleDefinition] = Depends(get_roles),
) -> Any:
    try:
        require(can_manage_pipelines(user, roles), "schemas.delete", user)
        schema_registry_service.delete_file(db, user.company_id, file_id, actor_user_id=user.id)
        return {"status": "deleted"}
    except CRMError as exc:
        return domain_error_response(request, exc)


@router.get("", response_model=list[TableSchema])
def list_schemas(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> list[TableSchema]:
    return schema_registry_service.list_schemas(db, user.company_id)


@router.get("/{table_name}", response_model=TableSchema)
def get_schema(
    request: Request,
    table_name: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> TableSchema | JSONResponse:
    try:
        return schema_registry_service.get_schema(db, user.company_id, table_name)
    except CRMError as exc:
        return domain_error_response(request, exc)


@router.get("/{table_name}/rows", response_model=TableRowsRead)
def get_rows(
    request: Request,
    table_name: str,
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> TableRowsRead | JSONResponse:
    try:
        return schema_registry_service.get_rows(db, user.company_id, table_name, limit=limit, offset=offset)
    except CRMError as exc:
        return domain_error_response(request, exc)
