from __future__ import annotations

from collections.abc import Sequence

from app.ingest.schemas import ColumnReference, TableSchema


def _singular(table_name: str) -> str:
    if table_name.endswith("ies") and len(table_name) > 3:
        return f"{table_name[:-3]}y"
    if table_name.endswith("s") and not table_name.endswith("ss") and len(table_name) > 1:
        return table_name[:-1]
    return table_name


def _candidate_names(target: TableSchema, primary_key: str) -> set[str]:
    candidates = {primary_key, f"{target.table_name}_id"}
    singular = _singular(target.table_name)
    if singular != target.table_name:
        candidates.add(f"{singular}_id")
    return candidates


def resolve_relationships(schemas: Sequence[TableSchema]) -> list[TableSchema]:
    """Mark foreign keys across a tenant's tables and return new schema objects.

    A non-key column matches another table when its name equals that table's
    primary key or ``{table}_id`` (singular or plural). The first matching table
    in iteration order wins and an existing reference is never replaced.
    The input schemas are left untouched.
    """

    resolved = [schema.model_copy(deep=True) for schema in schemas]
    targets: list[tuple[TableSchema, str, set[str]]] = []
    for schema in resolved:
        primary_key = schema.primary_key()
        if primary_key is not None:
            targets.append((schema, primary_key.name, _candidate_names(schema, primary_key.name)))

    for source in resolved:
        for column in source.columns:
            if column.is_primary_key or column.references is not None:
                continue
            for target, primary_key, candidates in targets:
                if target.table_name == source.table_name:
                    continue
                if column.name in candidates:
                    column.is_foreign_key = True
                    column.references = ColumnReference(table=target.table_name, column=primary_key)
                    break
    return resolved


def clear_references_to(schemas: Sequence[TableSchema], table_name: str) -> list[TableSchema]:
    cleaned = [schema.model_copy(deep=True) for schema in schemas]
    for schema in cleaned:
        for column in schema.columns:
            if column.references is not None and column.references.table == table_name:
                column.references = None
                column.is_foreign_key = False
    return cleaned


def count_relationships(schemas: Sequence[TableSchema]) -> int:
    return sum(1 for schema in schemas for column in schema.columns if column.is_foreign_key)
