from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.api.errors import domain_error_response
from app.authz.schemas import RoleCreate, RoleDefinition, RoleUpdate, User
from app.authz.service import role_service
from app.core.auth import get_current_user
from app.core.database import get_db
from app.core.errors import CRMError


router = APIRouter(prefix="/api/roles", tags=["authz.roles"])


@router.get("", response_model=list[RoleDefinition])
def list_roles(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> list[RoleDefinition]:
    return role_service.list_roles(db, user.company_id)


@router.post("", response_model=RoleDefinition, status_code=status.HTTP_201_CREATED)
def create_role(
    request: Request,
    dto: RoleCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> RoleDefinition | JSONResponse:
    try:
        return role_service.create_role(db, user, dto)
    except CRMError as exc:
        return domain_error_response(request, exc)


@router.post("/seed", response_model=list[RoleDefinition])
def seed_roles(
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> list[RoleDefinition] | JSONResponse:
    try:
        return role_service.seed_default_roles(db, user.company_id, user=user)
    except CRMError as exc:
        return domain_error_response(request, exc)


@router.patch("/{role_id}", response_model=RoleDefinition)
def update_role(
    request: Request,
    role_id: str,
    dto: RoleUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> RoleDefinition | JSONResponse:
    try:
        return role_service.update_role(db, user, role_id, dto)
    except CRMError as exc:
        return domain_error_response(request, exc)


@router.delete("/{role_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_role(
    request: Request,
    role_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> Any:
    try:
        role_service.delete_role(db, user, role_id)
        return {"status": "deleted"}
    except CRMError as exc:
        return domain_error_response(request, exc)
