from __future__ import annotations

import logging
from collections.abc import Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app import audit
from app.core.config import get_settings
from app.core.errors import NotFoundError
from app.ingest.builder import build_table_schema, pad_row
from app.ingest.models import IngestFile, IngestTableRow, IngestTableSchema
from app.ingest.refinement import SchemaRefiner, refine_schemas
from app.ingest.relationships import clear_references_to, count_relationships, resolve_relationships
from app.ingest.schemas import FileRecordRead, IngestResult, TableRowsRead, TableSchema
from app.metrics import observe_schema_ingested


logger = logging.getLogger("app.ingest")


class SchemaRegistryService:
    """Tenant-scoped store of ingested files, their schemas and their rows."""

    entity_type = "ingest.table_schema"

    def __init__(self, sample_limit: int | None = None) -> None:
        self._sample_limit = sample_limit

    def ingest_file(
        self,
        session: Session,
        company_id: str,
        file_name: str,
        rows: Sequence[Sequence[str]],
        *,
        actor_user_id: str = "system",
    ) -> IngestResult:
        sample_limit = self._sample_limit if self._sample_limit is not None else get_settings().schema_sample_rows
        schema = build_table_schema(file_name, rows, sample_limit=sample_limit)

        existing = self._schema_row(session, company_id, schema.table_name)
        replaced_file_id: str | None = None
        if existing is not None:
            replaced_file_id = existing.file_id
            session.delete(existing.file)
            session.flush()
            self._persist(session, clear_references_to(self._load(session, company_id), schema.table_name), company_id)

        relationships_before = count_relationships(self._load(session, company_id))

        next_seq = session.scalar(select(func.max(IngestFile.ingest_seq)).where(IngestFile.company_id == company_id))
        file_row = IngestFile(
            company_id=company_id,
            file_name=file_name,
            table_name=schema.table_name,
            row_count=schema.row_count,
            ingest_seq=(next_seq or 0) + 1,
        )
        width = len(schema.columns)
        table_row = IngestTableSchema(
            company_id=company_id,
            table_name=schema.table_name,
            definition=schema.model_dump(mode="json"),
        )
        table_row.rows = [
            IngestTableRow(row_index=index, cells=pad_row(row, width)) for index, row in enumerate(rows[1:])
        ]
        file_row.table_schema = table_row
        session.add(file_row)
        session.flush()

        resolved = resolve_relationships(self._load(session, company_id))
        self._persist(session, resolved, company_id)
        detected = max(count_relationships(resolved) - relationships_before, 0)
        stored = next(item for item in resolved if item.table_name == schema.table_name)

        audit.record(
            actor_user_id=actor_user_id,
            entity_type=self.entity_type,
            entity_id=file_row.id,
            action="ingest",
            before={"replaced_file_id": replaced_file_id} if replaced_file_id else None,
            after={
                "file_name": file_name,
                "table_name": schema.table_name,
                "row_count": schema.row_count,
                "columns": stored.column_names(),
            },
            company_id=company_id,
        )
        session.commit()
        session.refresh(file_row)

        observe_schema_ingested(detected)
        logger.info(
            "schema.ingested",
            extra={"company_id": company_id, "table_name": schema.table_name, "operation": "ingest"},
        )
        return IngestResult(file=FileRecordRead.model_validate(file_row), table=stored, relationships_detected=detected)

    def list_files(self, session: Session, company_id: str) -> list[FileRecordRead]:
        rows = session.scalars(
            select(IngestFile).where(IngestFile.company_id == company_id).order_by(IngestFile.ingest_seq.asc())
        ).all()
        return [FileRecordRead.model_validate(row) for row in rows]

    def list_schemas(self, session: Session, company_id: str) -> list[TableSchema]:
        return self._load(session, company_id)

    def get_schema(self, session: Session, company_id: str, table_name: str) -> TableSchema:
        row = self._schema_row(session, company_id, table_name)
        if row is None:
            raise NotFoundError("table schema not found", table_name=table_name)
        return TableSchema.model_validate(row.definition)

    def get_rows(
        self,
        session: Session,
        company_id: str,
        table_name: str,
        *,
        limit: int = 100,
        offset: int = 0,
    ) -> TableRowsRead:
        row = self._schema_row(session, company_id, table_name)
        if row is None:
            raise NotFoundError("table schema not found", table_name=table_name)

        names = [column["name"] for column in row.definition.get("columns", [])]
        total = session.scalar(select(func.count(IngestTableRow.id)).where(IngestTableRow.schema_id == row.id)) or 0
        cells = session.scalars(
            select(IngestTableRow.cells)
            .where(IngestTableRow.schema_id == row.id)
            .order_by(IngestTableRow.row_index.asc())
            .offset(offset)
            .limit(limit)
        ).all()
        return TableRowsRead(
            table_name=table_name,
            total=total,
            limit=limit,
            offset=offset,
            rows=[dict(zip(names, values)) for values in cells],
        )

    def delete_file(self, session: Session, company_id: str, file_id: str, *, actor_user_id: str = "system") -> None:
        file_row = session.scalar(
            select(IngestFile).where(IngestFile.company_id == company_id, IngestFile.id == file_id)
        )
        if file_row is None:
            raise NotFoundError("file not found", file_id=file_id)

        table_name = file_row.table_name
        session.delete(file_row)
        session.flush()
        self._persist(session, clear_references_to(self._load(session, company_id), table_name), company_id)

        audit.record(
            actor_user_id=actor_user_id,
            entity_type=self.entity_type,
            entity_id=file_id,
            action="delete",
            before={"table_name": table_name},
            after=None,
            company_id=company_id,
        )
        session.commit()
        logger.info("schema.dropped", extra={"company_id": company_id, "table_name": table_name, "operation": "delete"})

    def apply_refinement(self, session: Session, company_id: str, refiner: SchemaRefiner) -> list[TableSchema]:
        refined = refine_schemas(self._load(session, company_id), refiner)
        self._persist(session, refined, company_id)
        session.commit()
        return refined

    def _schema_row(self, session: Session, company_id: str, table_name: str) -> IngestTableSchema | None:
        return session.scalar(
            select(IngestTableSchema).where(
                IngestTableSchema.company_id == company_id,
                IngestTableSchema.table_name == table_name,
            )
        )

    def _load(self, session: Session, company_id: str) -> list[TableSchema]:
        rows = session.scalars(
            select(IngestTableSchema)
            .join(IngestFile, IngestTableSchema.file_id == IngestFile.id)
            .where(IngestTableSchema.company_id == company_id)
            .order_by(IngestFile.ingest_seq.asc())
        ).all()
        return [TableSchema.model_validate(row.definition) for row in rows]

    def _persist(self, session: Session, schemas: Sequence[TableSchema], company_id: str) -> None:
        by_name = {schema.table_name: schema for schema in schemas}
        rows = session.scalars(select(IngestTableSchema).where(IngestTableSchema.company_id == company_id)).all()
        for row in rows:
            schema = by_name.get(row.table_name)
            if schema is not None:
                row.definition = schema.model_dump(mode="json")
        session.flush()


schema_registry_service = SchemaRegistryService()
