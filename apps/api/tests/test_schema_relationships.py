from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

import pytest

from app.ingest.builder import build_table_schema
from app.ingest.refinement import merge_refined_schemas, refine_schemas
from app.ingest.relationships import clear_references_to, count_relationships, resolve_relationships
from app.ingest.schemas import ColumnReference, ColumnType, TableSchema


def _leads() -> TableSchema:
    return build_table_schema("Leads Q3.csv", [["id", "name", "tutor_id"], ["abc-123", "John", "xyz-789"]])


def _tutors() -> TableSchema:
    return build_table_schema("tutors.csv", [["id", "name"], ["xyz-789", "Marta"]])


def test_foreign_key_detected_against_singular_table_name() -> None:
    resolved = resolve_relationships([_leads(), _tutors()])

    leads = next(schema for schema in resolved if schema.table_name == "leads_q3")
    tutor_id = leads.column("tutor_id")
    assert tutor_id is not None
    assert tutor_id.is_foreign_key is True
    assert tutor_id.references == ColumnReference(table="tutors", column="id")
    assert leads.column("id").is_foreign_key is False
    assert count_relationships(resolved) == 1


def test_resolve_relationships_does_not_mutate_input() -> None:
    leads = _leads()

    resolve_relationships([leads, _tutors()])

    assert leads.column("tutor_id").references is None
    assert leads.column("tutor_id").is_foreign_key is False


def test_no_foreign_key_without_target_table() -> None:
    resolved = resolve_relationships([_leads()])

    assert count_relationships(resolved) == 0


def test_first_matching_table_wins_and_existing_reference_is_kept() -> None:
    tutors = _tutors()
    archive = build_table_schema("tutor.csv", [["tutor_id", "name"], ["1", "Old"]])
    leads = _leads()

    resolved = resolve_relationships([leads, tutors, archive])
    first = next(schema for schema in resolved if schema.table_name == "leads_q3")
    assert first.column("tutor_id").references == ColumnReference(table="tutors", column="id")

    again = resolve_relationships(list(reversed(resolved)))
    kept = next(schema for schema in again if schema.table_name == "leads_q3")
    assert kept.column("tutor_id").references == ColumnReference(table="tutors", column="id")


def test_clear_references_to_dropped_table() -> None:
    resolved = resolve_relationships([_leads(), _tutors()])

    cleaned = clear_references_to(resolved, "tutors")

    leads = next(schema for schema in cleaned if schema.table_name == "leads_q3")
    assert leads.column("tutor_id").references is None
    assert leads.column("tutor_id").is_foreign_key is False
    assert count_relationships(resolved) == 1


def test_table_schema_rejects_two_primary_keys() -> None:
    with pytest.raises(ValueError):
        TableSchema(
            table_name="broken",
            columns=[
                {"name": "id", "type": "INTEGER", "is_primary_key": True},
                {"name": "code", "type": "VARCHAR", "is_primary_key": True},
            ],
        )


def test_merge_refined_schemas_only_touches_types_and_keys() -> None:
    original = [_leads(), _tutors()]
    refined: list[dict[str, Any]] = [
        {
            "table_name": "leads_q3",
            "row_count": 999,
            "columns": [
                {"name": "id", "type": "uuid", "is_primary_key": True},
                {"name": "name", "type": "TEXT", "is_primary_key": True},
                {
                    "name": "tutor_id",
                    "type": "UUID",
                    "is_foreign_key": True,
                    "references": {"table": "tutors", "column": "id"},
                },
                {"name": "invented", "type": "INTEGER"},
            ],
        },
        {"table_name": "ghost", "columns": []},
    ]

    merged = merge_refined_schemas(original, refined)

    assert [schema.table_name for schema in merged] == ["leads_q3", "tutors"]
    leads = merged[0]
    assert leads.row_count == 1
    assert leads.column_names() == ["id", "name", "tutor_id"]
    assert leads.column("id").type == ColumnType.UUID
    assert leads.column("name").type == ColumnType.TEXT
    assert leads.column("name").is_primary_key is False
    assert leads.column("tutor_id").references == ColumnReference(table="tutors", column="id")
    assert leads.column("tutor_id").sample_value == "xyz-789"
    assert original[0].column("id").type == ColumnType.VARCHAR


def test_merge_resets_foreign_key_without_reference() -> None:
    merged = merge_refined_schemas(
        [_leads()],
        [{"table_name": "leads_q3", "columns": [{"name": "tutor_id", "is_foreign_key": True}]}],
    )

    assert merged[0].column("tutor_id").is_foreign_key is False


class _BrokenRefiner:
    def refine(self, schemas: Sequence[TableSchema]) -> Sequence[TableSchema]:
        raise RuntimeError("refinement service unavailable")


class _UppercaseRefiner:
    def refine(self, schemas: Sequence[TableSchema]) -> Sequence[dict[str, Any]]:
        return [
            {"table_name": schema.table_name, "columns": [{"name": "name", "type": "TEXT"}]}
            for schema in schemas
        ]


def test_refine_schemas_falls_back_to_original_on_failure(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.WARNING)
    original = [_leads()]

    result = refine_schemas(original, _BrokenRefiner())

    assert result == original
    assert result[0] is not original[0]
    assert any(record.getMessage() == "schema.refinement_failed" for record in caplog.records)


def test_refine_schemas_applies_refiner_output() -> None:
    result = refine_schemas([_leads(), _tutors()], _UppercaseRefiner())

    assert all(schema.column("name").type == ColumnType.TEXT for schema in result)
