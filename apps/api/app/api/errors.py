from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

from fastapi import status
from fastapi.responses import JSONResponse
from starlette.requests import Request

from app.context import get_correlation_id
from app.core.errors import ConflictError, CRMError, NotFoundError, TransportError, ValidationError
from app.platform.security.errors import AuthorizationError, ForbiddenFieldError


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(code=code, message=message, details=details, correlation_id=correlation_id)
    return JSONResponse(status_code=status_code, content=asdict(payload))


def _status_for(exc: CRMError) -> int:
    if isinstance(exc, ValidationError):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if isinstance(exc, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, AuthorizationError):
        return status.HTTP_403_FORBIDDEN
    if isinstance(exc, TransportError):
        return status.HTTP_502_BAD_GATEWAY
    if isinstance(exc, ConflictError):
        return status.HTTP_409_CONFLICT
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def domain_error_response(request: Request, exc: CRMError) -> JSONResponse:
    """Map a domain error to the envelope. Details carry ids and field names only."""

    details: dict[str, Any] = dict(exc.context)
    details.pop("status_code", None)
    if isinstance(exc, ValidationError) and exc.errors:
        details["errors"] = exc.errors
    if isinstance(exc, ForbiddenFieldError):
        details["forbidden_fields"] = exc.fields
    message = "remote store unavailable" if isinstance(exc, TransportError) else exc.message
    return error_response(
        request,
        status_code=_status_for(exc),
        code=exc.code,
        message=message,
        details=details or None,
    )


async def crm_error_handler(request: Request, exc: CRMError) -> JSONResponse:
    return domain_error_response(request, exc)
