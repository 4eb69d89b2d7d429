from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from app.authz.schemas import RoleDefinition, User
from app.pipelines.schemas import FieldDefinition
from app.platform.security.errors import ForbiddenFieldError
from app.platform.security.policies import can_view_financial_data


def filter_fields_for_role(
    fields: Sequence[FieldDefinition],
    user: User,
    roles: Sequence[RoleDefinition],
) -> list[FieldDefinition]:
    """Drop financial field definitions unless the user may see financial data."""

    if can_view_financial_data(user, roles):
        return list(fields)
    return [field for field in fields if not field.is_financial]


def filter_record_for_role(
    record: Mapping[str, Any],
    fields: Sequence[FieldDefinition],
    user: User,
    roles: Sequence[RoleDefinition],
) -> dict[str, Any]:
    return filter_data_for_role([record], fields, user, roles)[0]


def filter_data_for_role(
    records: Iterable[Mapping[str, Any]],
    fields: Sequence[FieldDefinition],
    user: User,
    roles: Sequence[RoleDefinition],
) -> list[dict[str, Any]]:
    """Return new record dicts without financial keys. Source records are never modified."""

    hidden = set() if can_view_financial_data(user, roles) else {field.name for field in fields if field.is_financial}
    return [{key: value for key, value in record.items() if key not in hidden} for record in records]


def validate_financial_write(
    payload: Mapping[str, Any],
    fields: Sequence[FieldDefinition],
    user: User,
    roles: Sequence[RoleDefinition],
    *,
    resource: str = "entity",
) -> None:
    if can_view_financial_data(user, roles):
        return
    financial = {field.name for field in fields if field.is_financial}
    denied = [key for key in payload if key in financial]
    if denied:
        raise ForbiddenFieldError(resource=resource, fields=denied)
