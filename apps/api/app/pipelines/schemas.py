from __future__ import annotations

import time
import uuid
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


def now_ms() -> int:
    return int(time.time() * 1000)


class FieldType(StrEnum):
    TEXT = "text"
    EMAIL = "email"
    PHONE = "phone"
    NUMBER = "number"
    CURRENCY = "currency"
    DATE = "date"
    DATETIME = "datetime"
    SELECT = "select"
    MULTISELECT = "multiselect"
    BOOLEAN = "boolean"
    TEXTAREA = "textarea"
    URL = "url"
    RELATION = "relation"


class StageAction(BaseModel):
    type: Literal["notify", "email", "webhook", "assign"]
    config: dict[str, Any] = Field(default_factory=dict)


class StageDefinition(BaseModel):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    color: str = "#64748b"
    order: int = 0
    description: str | None = None
    # Stage ids allowed to move into this stage; empty or None means any.
    allowed_transitions: list[str] | None = None
    auto_actions: list[StageAction] = Field(default_factory=list)


class SelectOption(BaseModel):
    value: str
    label: str
    color: str | None = None


class RelationConfig(BaseModel):
    entity_type: str = Field(min_length=1)
    display_field: str = Field(min_length=1)
    multiple: bool = False


class ValidationRule(BaseModel):
    pattern: str | None = None
    min: float | None = None
    max: float | None = None
    min_length: int | None = Field(default=None, ge=0)
    max_length: int | None = Field(default=None, ge=0)
    message: str | None = None


class FieldDefinition(BaseModel):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    type: FieldType
    label: str
    placeholder: str | None = None
    required: bool = False
    is_financial: bool = False
    is_searchable: bool = False
    is_sortable: bool = False
    show_in_kanban: bool = False
    show_in_table: bool = True
    options: list[SelectOption] | None = None
    relation_config: RelationConfig | None = None
    validation: ValidationRule | None = None
    default_value: Any = None
    order: int = 0

    @model_validator(mode="after")
    def _check_type_config(self) -> FieldDefinition:
        if self.type in {FieldType.SELECT, FieldType.MULTISELECT} and not self.options:
            raise ValueError(f"field '{self.name}' of type {self.type.value} requires options")
        if self.type == FieldType.RELATION and self.relation_config is None:
            raise ValueError(f"field '{self.name}' of type relation requires relation_config")
        return self


class PipelineConfig(BaseModel):
    """A tenant-defined entity type: its workflow stages and typed fields."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), min_length=1)
    company_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    description: str | None = None
    entity_type: str = Field(min_length=1)
    stages: list[StageDefinition]
    fields: list[FieldDefinition] = Field(default_factory=list)
    allowed_roles: list[str] = Field(default_factory=list)
    is_active: bool = True
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)

    @model_validator(mode="after")
    def _check_structure(self) -> PipelineConfig:
        if not self.stages:
            raise ValueError("pipeline must have at least one stage")
        stage_ids = [stage.id for stage in self.stages]
        if len(set(stage_ids)) != len(stage_ids):
            raise ValueError("stage ids must be unique")
        field_ids = [field.id for field in self.fields]
        if len(set(field_ids)) != len(field_ids):
            raise ValueError("field ids must be unique")
        field_names = [field.name for field in self.fields]
        if len(set(field_names)) != len(field_names):
            raise ValueError("field names must be unique")
        return self

    def sorted_stages(self) -> list[StageDefinition]:
        return sorted(self.stages, key=lambda stage: stage.order)

    def sorted_fields(self) -> list[FieldDefinition]:
        return sorted(self.fields, key=lambda field: field.order)

    @property
    def first_stage_id(self) -> str:
        return self.sorted_stages()[0].id

    def stage_ids(self) -> list[str]:
        return [stage.id for stage in self.sorted_stages()]

    def get_stage(self, stage_id: str | None) -> StageDefinition | None:
        return next((stage for stage in self.stages if stage.id == stage_id), None)

    def get_field(self, field_id: str | None) -> FieldDefinition | None:
        return next((field for field in self.fields if field.id == field_id), None)

    def get_field_by_name(self, name: str) -> FieldDefinition | None:
        return next((field for field in self.fields if field.name == name), None)

    def financial_field_names(self) -> set[str]:
        return {field.name for field in self.fields if field.is_financial}


class PipelineCreate(BaseModel):
    id: str | None = Field(default=None, min_length=1)
    name: str = Field(min_length=1)
    description: str | None = None
    entity_type: str = Field(min_length=1)
    stages: list[StageDefinition]
    fields: list[FieldDefinition] = Field(default_factory=list)
    allowed_roles: list[str] = Field(default_factory=list)
    is_active: bool = True


class PipelineUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    stages: list[StageDefinition] | None = None
    fields: list[FieldDefinition] | None = None
    allowed_roles: list[str] | None = None
    is_active: bool | None = None
