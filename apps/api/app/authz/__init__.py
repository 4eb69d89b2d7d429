from app.authz.models import AuthzRole

__all__ = [
    "AuthzRole",
]
