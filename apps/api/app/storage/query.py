from __future__ import annotations

import math
import time
import uuid
from collections.abc import Iterable, Sequence
from typing import Any

from app.storage.base import DEFAULT_STAGE, RESERVED_KEYS, DateRange, Entity, PaginatedResult, QueryFilters, StageStats


def now_ms() -> int:
    return int(time.time() * 1000)


def new_entity(data: dict[str, Any], *, timestamp: int | None = None) -> Entity:
    stamp = timestamp if timestamp is not None else now_ms()
    payload = {key: value for key, value in data.items() if key not in RESERVED_KEYS}
    stage = payload.pop("stage", None) or DEFAULT_STAGE
    return {"id": str(uuid.uuid4()), "stage": stage, **payload, "created_at": stamp, "updated_at": stamp}


def merge_patch(current: Entity, patch: dict[str, Any], *, timestamp: int | None = None) -> Entity:
    merged = dict(current)
    merged.update({key: value for key, value in patch.items() if key not in RESERVED_KEYS})
    merged["updated_at"] = timestamp if timestamp is not None else now_ms()
    return merged


def matches_search(entity: Entity, search: str) -> bool:
    needle = search.lower()
    return any(needle in str(value).lower() for value in entity.values() if value is not None)


def _within(value: Any, lower: Any, upper: Any) -> bool:
    try:
        if lower is not None and value < lower:
            return False
        if upper is not None and value > upper:
            return False
    except TypeError:
        return False
    return True


def matches_date_range(entity: Entity, date_range: DateRange) -> bool:
    value = entity.get(date_range.field)
    if value is None or value == "":
        return False
    return _within(value, date_range.from_, date_range.to)


def apply_filters(entities: Iterable[Entity], filters: QueryFilters, *, include_search: bool = True) -> list[Entity]:
    stages = filters.stage_list()
    stage_set = set(stages) if stages is not None else None
    result: list[Entity] = []
    for entity in entities:
        if stage_set is not None and entity.get("stage") not in stage_set:
            continue
        if filters.date_range is not None and not matches_date_range(entity, filters.date_range):
            continue
        if filters.custom_filters and any(entity.get(key) != value for key, value in filters.custom_filters.items()):
            continue
        if include_search and filters.search and not matches_search(entity, filters.search):
            continue
        result.append(entity)
    return result


def _sort_key(value: Any) -> tuple[int, Any]:
    # Group by kind so mixed-type columns never compare across types.
    if isinstance(value, bool):
        return (1, int(value))
    if isinstance(value, (int, float)):
        return (0, value)
    if isinstance(value, str):
        return (2, value)
    return (3, str(value))


def sort_entities(entities: Sequence[Entity], sort_by: str | None, sort_order: str = "asc") -> list[Entity]:
    """Stable sort on the raw field value; entities missing the field always go last."""

    if not sort_by:
        return list(entities)
    present = [entity for entity in entities if entity.get(sort_by) is not None]
    missing = [entity for entity in entities if entity.get(sort_by) is None]
    ordered = sorted(present, key=lambda entity: _sort_key(entity[sort_by]), reverse=sort_order == "desc")
    return ordered + missing


def total_pages(total: int, limit: int) -> int:
    return math.ceil(total / limit) if limit > 0 else 0


def paginate(entities: Sequence[Entity], page: int, limit: int) -> PaginatedResult:
    start = (page - 1) * limit
    return PaginatedResult(
        items=[dict(entity) for entity in entities[start : start + limit]],
        total=len(entities),
        page=page,
        limit=limit,
        total_pages=total_pages(len(entities), limit),
    )


def run_query(entities: Iterable[Entity], filters: QueryFilters | None) -> PaginatedResult:
    filters = filters or QueryFilters()
    selected = apply_filters(entities, filters)
    ordered = sort_entities(selected, filters.sort_by, filters.sort_order)
    return paginate(ordered, filters.page, filters.limit)


def count_by_stage(entities: Iterable[Entity]) -> StageStats:
    by_stage: dict[str, int] = {}
    total = 0
    for entity in entities:
        total += 1
        stage = str(entity.get("stage") or DEFAULT_STAGE)
        by_stage[stage] = by_stage.get(stage, 0) + 1
    return StageStats(total=total, by_stage=by_stage)
