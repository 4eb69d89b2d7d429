from jose import JWTError, jwt
from starlette.requests import Request

from app.authz.schemas import User
from app.core.config import get_settings


ANONYMOUS_USER_ID = "anonymous"
ANONYMOUS_ROLE = "guest"


def _anonymous(company_id: str) -> User:
    return User(id=ANONYMOUS_USER_ID, company_id=company_id, role=ANONYMOUS_ROLE)


async def get_current_user(request: Request) -> User:
    """Decode an already-issued bearer token into a ``User``.

    A missing or invalid token yields an anonymous ``guest``, which resolves to
    the most restrictive built-in role.
    """

    auth_header = request.headers.get("authorization", "")
    token = auth_header[len("Bearer ") :] if auth_header.startswith("Bearer ") else ""
    fallback_company = request.headers.get("x-company-id", "public")

    if not token:
        return _anonymous(fallback_company)

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return _anonymous(fallback_company)

    role_id = payload.get("role_id")
    return User(
        id=str(payload.get("sub", ANONYMOUS_USER_ID)),
        company_id=str(payload.get("company_id") or fallback_company),
        email=str(payload.get("email", "")),
        name=str(payload.get("name", "")),
        role=str(payload.get("role") or ANONYMOUS_ROLE),
        role_id=str(role_id) if role_id else None,
    )
