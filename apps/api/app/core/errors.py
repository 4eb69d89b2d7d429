from __future__ import annotations

from typing import Any


class CRMError(Exception):
    """Base class for domain errors surfaced to callers with a stable code."""

    code = "crm_error"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = {key: value for key, value in context.items() if value is not None}


class ValidationError(CRMError):
    """Malformed schema, pipeline, role or entity data."""

    code = "validation_error"

    def __init__(self, message: str, *, errors: dict[str, list[str]] | None = None, **context: Any) -> None:
        super().__init__(message, **context)
        self.errors = errors or {}


class NotFoundError(CRMError):
    code = "not_found"


class TransportError(CRMError):
    """Adapter-level I/O failure. Never retried internally."""

    code = "transport_error"

    def __init__(self, message: str, *, status_code: int | None = None, **context: Any) -> None:
        super().__init__(message, status_code=status_code, **context)
        self.status_code = status_code


class ConflictError(CRMError):
    # Reserved for optimistic locking; nothing raises it yet.
    code = "conflict"
