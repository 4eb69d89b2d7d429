from app.platform.security import AuthorizationError, ForbiddenFieldError, PermissionDeniedError

__all__ = [
    "AuthorizationError",
    "ForbiddenFieldError",
    "PermissionDeniedError",
]
