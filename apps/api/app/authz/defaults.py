from __future__ import annotations

from app.authz.schemas import PipelineAccess, PipelineAccessLevel, RoleDefinition, RolePermissions


FALLBACK_ROLE = "team"

DEFAULT_ROLE_PERMISSIONS: dict[str, RolePermissions] = {
    "admin": RolePermissions(
        can_view_all_data=True,
        can_view_financial_data=True,
        can_manage_users=True,
        can_manage_roles=True,
        can_manage_pipelines=True,
        can_manage_settings=True,
        can_manage_integrations=True,
        can_export_data=True,
        can_delete_records=True,
    ),
    "dev": RolePermissions(
        can_view_all_data=True,
        can_view_financial_data=True,
        can_manage_pipelines=True,
        can_manage_settings=True,
        can_manage_integrations=True,
        can_export_data=True,
        can_delete_records=True,
    ),
    "management": RolePermissions(
        can_view_all_data=True,
        can_view_financial_data=True,
        can_manage_pipelines=True,
        can_export_data=True,
    ),
    "sales": RolePermissions(
        pipeline_access={
            "students": PipelineAccess(
                level=PipelineAccessLevel.EDIT, can_create=True, can_delete=False, can_move_stages=True
            ),
            "packages": PipelineAccess(
                level=PipelineAccessLevel.EDIT, can_create=True, can_delete=False, can_move_stages=True
            ),
            "tutors": PipelineAccess(level=PipelineAccessLevel.NONE),
        },
    ),
    "support": RolePermissions(
        pipeline_access={
            "students": PipelineAccess(
                level=PipelineAccessLevel.VIEW, can_create=False, can_delete=False, can_move_stages=False
            ),
            "packages": PipelineAccess(level=PipelineAccessLevel.NONE),
            "tutors": PipelineAccess(level=PipelineAccessLevel.NONE),
        },
    ),
    FALLBACK_ROLE: RolePermissions(),
}

_ROLE_LABELS: list[tuple[str, str, str, bool]] = [
    ("admin", "Admin", "Full access to all features and data", True),
    ("dev", "Developer", "Technical access to pipelines, settings, and integrations", True),
    ("management", "Management", "Access to all pipelines and financial data", False),
    ("sales", "Sales", "Access to students and packages pipelines", False),
    ("support", "Support", "View-only access to students pipeline", False),
    (FALLBACK_ROLE, "Team Member", "Limited access based on assignment", False),
]


def default_permissions_for(role: str) -> RolePermissions:
    permissions = DEFAULT_ROLE_PERMISSIONS.get(role) or DEFAULT_ROLE_PERMISSIONS[FALLBACK_ROLE]
    return permissions.model_copy(deep=True)


def create_default_roles(company_id: str) -> list[RoleDefinition]:
    return [
        RoleDefinition(
            id=role_id,
            company_id=company_id,
            name=name,
            description=description,
            is_system_role=is_system,
            permissions=default_permissions_for(role_id),
        )
        for role_id, name, description, is_system in _ROLE_LABELS
    ]
