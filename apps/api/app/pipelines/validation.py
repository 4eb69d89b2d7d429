from __future__ import annotations

import math
import re
from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any

from pydantic import AnyUrl, EmailStr, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from app.core.errors import ValidationError
from app.pipelines.schemas import FieldDefinition, FieldType, PipelineConfig


_email_adapter = TypeAdapter(EmailStr)
_url_adapter = TypeAdapter(AnyUrl)
_PHONE_RE = re.compile(r"\+?[\d\s\-().]{10,20}")
_NON_DIGIT_RE = re.compile(r"\D")
_SCHEME_RE = re.compile(r"[a-z][a-z\d+.-]*://", re.IGNORECASE)
_URL_SCHEMES = {"http", "https"}


def _is_empty(value: Any) -> bool:
    return value is None or value == ""


def _validate_email(value: str) -> list[str]:
    candidate = value.strip()
    if len(candidate) > 254:
        return ["Email exceeds maximum length of 254 characters"]
    try:
        _email_adapter.validate_python(candidate)
    except PydanticValidationError:
        return ["Invalid email format. Expected: user@domain.com"]
    return []


def _validate_url(value: str) -> list[str]:
    # A bare host such as "acme.io/pricing" is read as https.
    candidate = value.strip()
    if not _SCHEME_RE.match(candidate):
        candidate = f"https://{candidate}"
    try:
        url = _url_adapter.validate_python(candidate)
    except PydanticValidationError:
        return ["Invalid URL format"]
    if url.scheme not in _URL_SCHEMES or "." not in (url.host or "").strip("."):
        return ["Invalid URL format"]
    return []


def _validate_phone(value: str) -> list[str]:
    candidate = value.strip()
    digits = _NON_DIGIT_RE.sub("", candidate)
    if len(digits) < 10:
        return ["Phone number must have at least 10 digits"]
    if len(digits) > 15:
        return ["Phone number cannot exceed 15 digits"]
    if not _PHONE_RE.fullmatch(candidate):
        return ["Invalid phone format. Use: +1 234 567 8900 or (123) 456-7890"]
    return []


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(number) else number


def _is_date(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return not math.isnan(value)
    if isinstance(value, str):
        try:
            datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return False
        return True
    return False


def validate_field(value: Any, field: FieldDefinition) -> list[str]:
    """Return the error messages for one field value; an empty list means valid."""

    if _is_empty(value):
        return [f"{field.label} is required"] if field.required else []

    rule = field.validation
    errors: list[str] = []

    if field.type == FieldType.EMAIL:
        errors.extend(_validate_email(str(value)))
    elif field.type == FieldType.PHONE:
        errors.extend(_validate_phone(str(value)))
    elif field.type == FieldType.URL:
        errors.extend(_validate_url(str(value)))
    elif field.type in {FieldType.NUMBER, FieldType.CURRENCY}:
        number = _as_number(value)
        if number is None:
            errors.append(f"{field.label} must be a valid number")
        elif rule is not None:
            if rule.min is not None and number < rule.min:
                errors.append(rule.message or f"{field.label} must be at least {rule.min:g}")
            if rule.max is not None and number > rule.max:
                errors.append(rule.message or f"{field.label} must be at most {rule.max:g}")
    elif field.type in {FieldType.TEXT, FieldType.TEXTAREA}:
        text = str(value)
        if rule is not None:
            if rule.min_length is not None and len(text) < rule.min_length:
                errors.append(rule.message or f"{field.label} must be at least {rule.min_length} characters")
            if rule.max_length is not None and len(text) > rule.max_length:
                errors.append(rule.message or f"{field.label} must be at most {rule.max_length} characters")
            if rule.pattern:
                try:
                    matched = re.search(rule.pattern, text) is not None
                except re.error:
                    matched = False
                if not matched:
                    errors.append(rule.message or f"{field.label} format is invalid")
    elif field.type == FieldType.SELECT:
        allowed = {option.value for option in field.options or []}
        if value not in allowed:
            errors.append(f"{field.label} must be one of the valid options")
    elif field.type == FieldType.MULTISELECT:
        allowed = {option.value for option in field.options or []}
        if not isinstance(value, list) or any(item not in allowed for item in value):
            errors.append(f"{field.label} contains invalid options")
    elif field.type in {FieldType.DATE, FieldType.DATETIME}:
        if not _is_date(value):
            errors.append(f"{field.label} must be a valid date")
    elif field.type == FieldType.BOOLEAN:
        if not isinstance(value, bool) and value not in {"true", "false"}:
            errors.append(f"{field.label} must be true or false")

    return errors


def validate_record(
    data: Mapping[str, Any],
    fields: Iterable[FieldDefinition],
    *,
    partial: bool = False,
) -> dict[str, list[str]]:
    """Validate a record against its field definitions.

    Keys without a definition are ignored. With ``partial`` only the keys present
    in ``data`` are checked, so a patch need not repeat required fields.
    """

    field_errors: dict[str, list[str]] = {}
    for field in fields:
        if partial and field.name not in data:
            continue
        errors = validate_field(data.get(field.name), field)
        if errors:
            field_errors[field.name] = errors
    return field_errors


def parse_pipeline_config(payload: Mapping[str, Any]) -> PipelineConfig:
    try:
        return PipelineConfig.model_validate(dict(payload))
    except PydanticValidationError as exc:
        errors: dict[str, list[str]] = {}
        for error in exc.errors():
            location = ".".join(str(part) for part in error.get("loc", ())) or "pipeline"
            errors.setdefault(location, []).append(str(error.get("msg", "invalid value")))
        raise ValidationError("invalid pipeline definition", errors=errors) from exc
