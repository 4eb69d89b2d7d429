from __future__ import annotations

from app.core.errors import CRMError


class AuthorizationError(CRMError):
    """Base authorization error for permission and field-level enforcement failures."""

    code = "authorization_error"


class PermissionDeniedError(AuthorizationError):
    """Raised when a user may not access a pipeline or perform an action on it."""

    code = "permission_denied"

    def __init__(self, action: str, *, pipeline_id: str | None = None, entity_id: str | None = None) -> None:
        self.action = action
        self.pipeline_id = pipeline_id
        self.entity_id = entity_id
        super().__init__(f"Permission denied: {action}", pipeline_id=pipeline_id, entity_id=entity_id)


class ForbiddenFieldError(AuthorizationError):
    """Raised when a payload writes fields the user is not allowed to edit."""

    code = "forbidden_fields"

    def __init__(self, resource: str, fields: list[str]) -> None:
        self.resource = resource
        self.fields = sorted(set(fields))
        super().__init__(f"Forbidden fields for resource '{resource}': {', '.join(self.fields)}", resource=resource)
