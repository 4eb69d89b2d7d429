from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any, Protocol

from app.ingest.schemas import ColumnReference, ColumnType, TableSchema


logger = logging.getLogger("app.ingest.refinement")


class SchemaRefiner(Protocol):
    """External service that proposes better column types and keys for a schema set."""

    def refine(self, schemas: Sequence[TableSchema]) -> Sequence[TableSchema | Mapping[str, Any]]:
        ...


def _as_mapping(item: Any) -> Mapping[str, Any] | None:
    if isinstance(item, TableSchema):
        return item.model_dump()
    if isinstance(item, Mapping):
        return item
    return None


def _coerce_type(value: Any) -> ColumnType | None:
    if isinstance(value, ColumnType):
        return value
    if isinstance(value, str):
        try:
            return ColumnType(value.upper())
        except ValueError:
            return None
    return None


def _coerce_reference(value: Any) -> ColumnReference | None:
    if isinstance(value, ColumnReference):
        return value
    if isinstance(value, Mapping) and isinstance(value.get("table"), str) and isinstance(value.get("column"), str):
        return ColumnReference(table=value["table"], column=value["column"])
    return None


def _index_columns(raw_columns: Any) -> dict[str, Mapping[str, Any]]:
    indexed: dict[str, Mapping[str, Any]] = {}
    if not isinstance(raw_columns, Sequence) or isinstance(raw_columns, str):
        return indexed
    for raw in raw_columns:
        if isinstance(raw, Mapping) and isinstance(raw.get("name"), str):
            indexed.setdefault(raw["name"], raw)
    return indexed


def _merge_table(original: TableSchema, refined: Mapping[str, Any]) -> TableSchema:
    merged = original.model_copy(deep=True)
    proposals = _index_columns(refined.get("columns"))
    primary_key_taken = False

    for column in merged.columns:
        proposal = proposals.get(column.name)
        if proposal is not None:
            column_type = _coerce_type(proposal.get("type"))
            if column_type is not None:
                column.type = column_type
            if isinstance(proposal.get("is_primary_key"), bool):
                column.is_primary_key = proposal["is_primary_key"]
            if isinstance(proposal.get("is_foreign_key"), bool):
                column.is_foreign_key = proposal["is_foreign_key"]
            if "references" in proposal:
                column.references = _coerce_reference(proposal.get("references"))

        if column.is_primary_key:
            if primary_key_taken:
                column.is_primary_key = False
            primary_key_taken = True
        if column.references is not None and column.references.table == merged.table_name and column.is_primary_key:
            column.references = None
        if column.is_foreign_key and column.references is None:
            column.is_foreign_key = False

    return merged


def merge_refined_schemas(
    original: Sequence[TableSchema],
    refined: Sequence[TableSchema | Mapping[str, Any]],
) -> list[TableSchema]:
    """Fold refined column types and key flags back into copies of ``original``.

    Table names, column order, sample values, row counts and sample rows always
    come from ``original``. Tables or columns the refiner invented are ignored.
    """

    by_table: dict[str, Mapping[str, Any]] = {}
    for item in refined:
        mapping = _as_mapping(item)
        if mapping is not None and isinstance(mapping.get("table_name"), str):
            by_table.setdefault(mapping["table_name"], mapping)

    merged: list[TableSchema] = []
    for schema in original:
        proposal = by_table.get(schema.table_name)
        merged.append(_merge_table(schema, proposal) if proposal is not None else schema.model_copy(deep=True))
    return merged


def refine_schemas(schemas: Sequence[TableSchema], refiner: SchemaRefiner) -> list[TableSchema]:
    try:
        refined = refiner.refine([schema.model_copy(deep=True) for schema in schemas])
        if not isinstance(refined, Sequence) or isinstance(refined, (str, bytes)):
            raise TypeError(f"refiner returned {type(refined).__name__}, expected a sequence")
        return merge_refined_schemas(schemas, refined)
    except Exception as exc:
        logger.warning(
            "schema.refinement_failed",
            exc_info=True,
            extra={"operation": "refine", "error": str(exc)},
        )
        return [schema.model_copy(deep=True) for schema in schemas]
