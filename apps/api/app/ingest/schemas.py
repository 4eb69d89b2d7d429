from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ColumnType(StrEnum):
    UUID = "UUID"
    INTEGER = "INTEGER"
    DECIMAL = "DECIMAL"
    BOOLEAN = "BOOLEAN"
    DATE = "DATE"
    VARCHAR = "VARCHAR"
    TEXT = "TEXT"


class ColumnReference(BaseModel):
    model_config = ConfigDict(frozen=True)

    table: str
    column: str


class ColumnDefinition(BaseModel):
    name: str
    type: ColumnType = ColumnType.VARCHAR
    is_primary_key: bool = False
    is_foreign_key: bool = False
    references: ColumnReference | None = None
    sample_value: str = ""


class TableSchema(BaseModel):
    """Typed description of one ingested tabular file.

    ``sample_rows`` holds a bounded slice of the data rows (header excluded);
    the full dataset lives in the schema registry, never on the schema itself.
    """

    table_name: str
    columns: list[ColumnDefinition] = Field(default_factory=list)
    row_count: int = Field(default=0, ge=0)
    sample_rows: list[list[str]] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_keys(self) -> TableSchema:
        primary_keys = [column.name for column in self.columns if column.is_primary_key]
        if len(primary_keys) > 1:
            raise ValueError(f"table '{self.table_name}' has more than one primary key: {primary_keys}")
        for column in self.columns:
            if column.is_primary_key and column.references is not None and column.references.table == self.table_name:
                raise ValueError(f"column '{column.name}' cannot reference its own table as primary key")
        return self

    def primary_key(self) -> ColumnDefinition | None:
        return next((column for column in self.columns if column.is_primary_key), None)

    def column(self, name: str) -> ColumnDefinition | None:
        return next((column for column in self.columns if column.name == name), None)

    def column_names(self) -> list[str]:
        return [column.name for column in self.columns]


class IngestFileRequest(BaseModel):
    file_name: str = Field(min_length=1)
    rows: list[list[str]] | None = None
    content: str | None = None

    @model_validator(mode="after")
    def _require_rows_or_content(self) -> IngestFileRequest:
        if self.rows is None and self.content is None:
            raise ValueError("either rows or content is required")
        if self.rows is not None and self.content is not None:
            raise ValueError("rows and content are mutually exclusive")
        return self


class FileRecordRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    file_name: str
    table_name: str
    row_count: int
    created_at: datetime


class IngestResult(BaseModel):
    file: FileRecordRead
    table: TableSchema
    relationships_detected: int = 0


class TableRowsRead(BaseModel):
    table_name: str
    total: int
    limit: int
    offset: int
    rows: list[dict[str, str]]
