from __future__ import annotations

from typing import Any, Literal, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field


DEFAULT_STAGE = "new"
RESERVED_KEYS = frozenset({"id", "created_at", "updated_at"})

Entity = dict[str, Any]


class DateRange(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    field: str = Field(min_length=1)
    from_: Any = Field(default=None, alias="from")
    to: Any = None


class QueryFilters(BaseModel):
    search: str | None = None
    stage: str | list[str] | None = None
    date_range: DateRange | None = None
    sort_by: str | None = None
    sort_order: Literal["asc", "desc"] = "asc"
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=25, ge=1)
    custom_filters: dict[str, Any] | None = None

    def stage_list(self) -> list[str] | None:
        if self.stage is None:
            return None
        return [self.stage] if isinstance(self.stage, str) else list(self.stage)


class PaginatedResult(BaseModel):
    items: list[Entity] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 25
    total_pages: int = 0


class StageStats(BaseModel):
    total: int = 0
    by_stage: dict[str, int] = Field(default_factory=dict)


@runtime_checkable
class StorageAdapter(Protocol):
    """Uniform CRUD and query contract over one tenant's entity collections.

    Implementations keep no shared base-class state. Entities are plain dicts
    with ``id``, ``stage``, ``created_at`` and ``updated_at`` (epoch ms) plus
    the pipeline's field values.
    """

    backend: str

    def test_connection(self) -> bool: ...

    def get_all(self, entity_type: str, filters: QueryFilters | None = None) -> PaginatedResult: ...

    def get_by_id(self, entity_type: str, entity_id: str) -> Entity | None: ...

    def create(self, entity_type: str, data: dict[str, Any]) -> Entity: ...

    def update(self, entity_type: str, entity_id: str, data: dict[str, Any]) -> Entity: ...

    def delete(self, entity_type: str, entity_id: str) -> None: ...

    def move_stage(self, entity_type: str, entity_id: str, stage: str) -> Entity: ...

    def get_by_stage(self, entity_type: str, stage: str) -> list[Entity]: ...

    def get_stats(self, entity_type: str) -> StageStats: ...
