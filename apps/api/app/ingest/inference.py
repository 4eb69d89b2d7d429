from __future__ import annotations

import re
from datetime import datetime
from typing import Any

from app.ingest.schemas import ColumnType


_UUID_RE = re.compile(r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}")
_INTEGER_RE = re.compile(r"[0-9]+")
_DECIMAL_RE = re.compile(r"[0-9]*\.[0-9]+")
_BOOLEAN_RE = re.compile(r"true|false|yes|no|0|1", re.IGNORECASE)
_NON_IDENTIFIER_RE = re.compile(r"[^A-Za-z0-9]")
_EXTENSION_RE = re.compile(r"\.[^/.]+$")

_TEXT_THRESHOLD = 255
_DATE_MIN_LENGTH = 5
_DATE_FORMATS = (
    "%m/%d/%Y",
    "%d/%m/%Y",
    "%Y/%m/%d",
    "%d-%m-%Y",
    "%b %d %Y",
    "%b %d, %Y",
    "%B %d %Y",
    "%B %d, %Y",
    "%d %b %Y",
    "%d %B %Y",
)


def _looks_like_date(value: str) -> bool:
    if len(value) <= _DATE_MIN_LENGTH:
        return False
    try:
        datetime.fromisoformat(value)
        return True
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            datetime.strptime(value, fmt)
            return True
        except ValueError:
            continue
    return False


def _classify(value: str) -> ColumnType:
    if not value:
        return ColumnType.VARCHAR
    if _UUID_RE.fullmatch(value):
        return ColumnType.UUID
    if _INTEGER_RE.fullmatch(value):
        return ColumnType.INTEGER
    if _DECIMAL_RE.fullmatch(value):
        return ColumnType.DECIMAL
    if _BOOLEAN_RE.fullmatch(value):
        return ColumnType.BOOLEAN
    if _looks_like_date(value):
        return ColumnType.DATE
    if len(value) > _TEXT_THRESHOLD:
        return ColumnType.TEXT
    return ColumnType.VARCHAR


def infer_column_type(value: Any) -> ColumnType:
    """Classify one raw cell value. Checks run in priority order and the first match wins.

    Never raises: ``None``, empty strings and anything that cannot be classified
    become ``VARCHAR``.
    """

    if value is None:
        return ColumnType.VARCHAR
    try:
        text = value if isinstance(value, str) else str(value)
        return _classify(text)
    except Exception:
        return ColumnType.VARCHAR


def normalize_identifier(text: str) -> str:
    return _NON_IDENTIFIER_RE.sub("_", text).lower()


def normalize_table_name(file_name: str) -> str:
    return normalize_identifier(_EXTENSION_RE.sub("", file_name))
