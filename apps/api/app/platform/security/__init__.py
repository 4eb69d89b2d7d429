from app.platform.security.errors import AuthorizationError, ForbiddenFieldError, PermissionDeniedError
from app.platform.security.fls import (
    filter_data_for_role,
    filter_fields_for_role,
    filter_record_for_role,
    validate_financial_write,
)
from app.platform.security.guards import require
from app.platform.security.policies import (
    can_access_pipeline,
    can_perform_action,
    get_pipeline_access_level,
    get_visible_stages,
    resolve_permissions,
)

__all__ = [
    "AuthorizationError",
    "ForbiddenFieldError",
    "PermissionDeniedError",
    "filter_data_for_role",
    "filter_fields_for_role",
    "filter_record_for_role",
    "validate_financial_write",
    "require",
    "can_access_pipeline",
    "can_perform_action",
    "get_pipeline_access_level",
    "get_visible_stages",
    "resolve_permissions",
]
