from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class PipelineAccessLevel(StrEnum):
    NONE = "none"
    VIEW = "view"
    EDIT = "edit"
    FULL = "full"


class PipelineAction(StrEnum):
    CREATE = "create"
    EDIT = "edit"
    DELETE = "delete"
    MOVE = "move"


class PipelineAccess(BaseModel):
    level: PipelineAccessLevel = PipelineAccessLevel.NONE
    can_create: bool | None = None
    can_delete: bool | None = None
    can_move_stages: bool | None = None
    visible_stages: list[str] | None = None


class RolePermissions(BaseModel):
    can_view_all_data: bool = False
    can_view_financial_data: bool = False
    can_manage_users: bool = False
    can_manage_roles: bool = False
    can_manage_pipelines: bool = False
    can_manage_settings: bool = False
    can_manage_integrations: bool = False
    can_export_data: bool = False
    can_delete_records: bool = False
    # Keyed by pipeline id.
    pipeline_access: dict[str, PipelineAccess] = Field(default_factory=dict)


class RoleDefinition(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(min_length=1)
    company_id: str
    name: str = Field(min_length=1)
    description: str | None = None
    is_system_role: bool = False
    permissions: RolePermissions = Field(default_factory=RolePermissions)


class User(BaseModel):
    """An already-authenticated caller. ``role`` stays a free string so unknown names are representable."""

    id: str
    company_id: str
    email: str = ""
    name: str = ""
    role: str = "team"
    role_id: str | None = None


class RoleCreate(BaseModel):
    id: str = Field(min_length=1, max_length=64, pattern=r"^[a-z0-9_\-]+$")
    name: str = Field(min_length=1)
    description: str | None = None
    permissions: RolePermissions = Field(default_factory=RolePermissions)


class RoleUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    permissions: RolePermissions | None = None
