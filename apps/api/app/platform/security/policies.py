"""Permission evaluation over ``(User, roles, pipeline)``.

Every function here is pure: nothing is cached, so callers re-evaluate on each
request and role edits take effect immediately. Ambiguity resolves to denial.
"""

from __future__ import annotations

from collections.abc import Sequence

from app.authz.defaults import default_permissions_for
from app.authz.schemas import (
    PipelineAccess,
    PipelineAccessLevel,
    PipelineAction,
    RoleDefinition,
    RolePermissions,
    User,
)
from app.pipelines.schemas import PipelineConfig


_UNRESTRICTED_ROLES = frozenset({"admin", "dev"})


def resolve_permissions(user: User, roles: Sequence[RoleDefinition]) -> RolePermissions:
    """Custom role by ``role_id`` first, then the built-in table, then ``team``."""

    if user.role_id:
        custom = next((role for role in roles if role.id == user.role_id), None)
        if custom is not None:
            return custom.permissions
    return default_permissions_for(user.role)


def _has_unrestricted_access(user: User, permissions: RolePermissions) -> bool:
    return user.role in _UNRESTRICTED_ROLES or permissions.can_view_all_data


def _pipeline_access(permissions: RolePermissions, pipeline_id: str) -> PipelineAccess | None:
    return permissions.pipeline_access.get(pipeline_id)


def can_access_pipeline(user: User, pipeline_id: str, roles: Sequence[RoleDefinition]) -> bool:
    permissions = resolve_permissions(user, roles)
    if _has_unrestricted_access(user, permissions):
        return True
    access = _pipeline_access(permissions, pipeline_id)
    return access is not None and access.level != PipelineAccessLevel.NONE


def get_pipeline_access_level(
    user: User,
    pipeline_id: str,
    roles: Sequence[RoleDefinition],
) -> PipelineAccessLevel:
    permissions = resolve_permissions(user, roles)
    if _has_unrestricted_access(user, permissions):
        return PipelineAccessLevel.FULL
    access = _pipeline_access(permissions, pipeline_id)
    return access.level if access is not None else PipelineAccessLevel.NONE


def can_perform_action(
    user: User,
    pipeline_id: str,
    action: PipelineAction | str,
    roles: Sequence[RoleDefinition],
) -> bool:
    try:
        requested = PipelineAction(action)
    except ValueError:
        return False

    permissions = resolve_permissions(user, roles)
    level = get_pipeline_access_level(user, pipeline_id, roles)
    if level in {PipelineAccessLevel.NONE, PipelineAccessLevel.VIEW}:
        return False
    if level == PipelineAccessLevel.FULL:
        return True

    access = _pipeline_access(permissions, pipeline_id)
    if access is None:
        return False
    if requested == PipelineAction.CREATE:
        return access.can_create is not False
    if requested == PipelineAction.EDIT:
        return True
    if requested == PipelineAction.DELETE:
        # Destructive, so it must be granted explicitly.
        return access.can_delete is True or permissions.can_delete_records
    if requested == PipelineAction.MOVE:
        return access.can_move_stages is not False
    return False


def get_visible_stages(user: User, pipeline: PipelineConfig, roles: Sequence[RoleDefinition]) -> list[str]:
    permissions = resolve_permissions(user, roles)
    all_stages = pipeline.stage_ids()
    if _has_unrestricted_access(user, permissions):
        return all_stages
    access = _pipeline_access(permissions, pipeline.id)
    if access is not None and access.visible_stages:
        return list(access.visible_stages)
    return all_stages


def is_admin(user: User) -> bool:
    return user.role == "admin"


def is_dev(user: User) -> bool:
    return user.role == "dev"


def is_management(user: User) -> bool:
    return user.role == "management"


def can_view_financial_data(user: User, roles: Sequence[RoleDefinition]) -> bool:
    return resolve_permissions(user, roles).can_view_financial_data


def can_manage_users(user: User, roles: Sequence[RoleDefinition]) -> bool:
    return resolve_permissions(user, roles).can_manage_users


def can_manage_roles(user: User, roles: Sequence[RoleDefinition]) -> bool:
    return resolve_permissions(user, roles).can_manage_roles


def can_manage_pipelines(user: User, roles: Sequence[RoleDefinition]) -> bool:
    return resolve_permissions(user, roles).can_manage_pipelines


def can_manage_settings(user: User, roles: Sequence[RoleDefinition]) -> bool:
    return resolve_permissions(user, roles).can_manage_settings


def can_export_data(user: User, roles: Sequence[RoleDefinition]) -> bool:
    return resolve_permissions(user, roles).can_export_data
