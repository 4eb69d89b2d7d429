from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import Select, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.core.errors import NotFoundError, TransportError
from app.metrics import observe_storage_operation, observe_storage_transport_error
from app.storage.base import RESERVED_KEYS, Entity, PaginatedResult, QueryFilters, StageStats
from app.storage.models import CRMEntityRecord
from app.storage.query import count_by_stage, merge_patch, new_entity, run_query


logger = logging.getLogger("app.storage.sql")


class SqlStorageAdapter:
    """Relational backend: one row per entity, field values in a JSON column.

    Stage filters run in SQL; search, date range, custom filters, sorting and
    pagination reuse the shared in-Python query semantics.
    """

    backend = "sql"

    def __init__(self, session_factory: sessionmaker[Session], company_id: str) -> None:
        self._session_factory = session_factory
        self._company_id = company_id

    @contextmanager
    def _session(self, operation: str) -> Iterator[Session]:
        try:
            with self._session_factory() as session:
                yield session
        except SQLAlchemyError as exc:
            observe_storage_operation(self.backend, operation, outcome="error")
            observe_storage_transport_error(self.backend)
            logger.warning(
                "storage.transport_error",
                extra={"backend": self.backend, "operation": operation, "error": str(exc)},
            )
            raise TransportError("database operation failed", operation=operation) from exc
        observe_storage_operation(self.backend, operation)

    def _scope(self, entity_type: str) -> Select[tuple[CRMEntityRecord]]:
        return (
            select(CRMEntityRecord)
            .where(CRMEntityRecord.company_id == self._company_id, CRMEntityRecord.entity_type == entity_type)
            .order_by(CRMEntityRecord.row_id.asc())
        )

    def _find(self, session: Session, entity_type: str, entity_id: str) -> CRMEntityRecord | None:
        return session.scalar(self._scope(entity_type).where(CRMEntityRecord.entity_id == entity_id))

    @staticmethod
    def _to_entity(row: CRMEntityRecord) -> Entity:
        return {
            "id": row.entity_id,
            "stage": row.stage,
            **(row.data or {}),
            "created_at": row.created_at,
            "updated_at": row.updated_at,
        }

    @staticmethod
    def _apply(row: CRMEntityRecord, entity: Entity) -> None:
        row.stage = entity["stage"]
        row.created_at = entity["created_at"]
        row.updated_at = entity["updated_at"]
        row.data = {key: value for key, value in entity.items() if key not in RESERVED_KEYS and key != "stage"}

    def test_connection(self) -> bool:
        try:
            with self._session("test_connection") as session:
                session.execute(select(1))
        except TransportError:
            return False
        return True

    def get_all(self, entity_type: str, filters: QueryFilters | None = None) -> PaginatedResult:
        filters = filters or QueryFilters()
        stmt = self._scope(entity_type)
        stages = filters.stage_list()
        if stages is not None:
            stmt = stmt.where(CRMEntityRecord.stage.in_(stages))
        with self._session("get_all") as session:
            entities = [self._to_entity(row) for row in session.scalars(stmt).all()]
        return run_query(entities, filters)

    def get_by_id(self, entity_type: str, entity_id: str) -> Entity | None:
        with self._session("get_by_id") as session:
            row = self._find(session, entity_type, entity_id)
            return self._to_entity(row) if row is not None else None

    def create(self, entity_type: str, data: dict[str, Any]) -> Entity:
        entity = new_entity(data)
        row = CRMEntityRecord(company_id=self._company_id, entity_type=entity_type, entity_id=entity["id"])
        self._apply(row, entity)
        with self._session("create") as session:
            session.add(row)
            session.commit()
        return entity

    def update(self, entity_type: str, entity_id: str, data: dict[str, Any]) -> Entity:
        with self._session("update") as session:
            row = self._find(session, entity_type, entity_id)
            if row is None:
                raise NotFoundError("entity not found", entity_type=entity_type, entity_id=entity_id)
            merged = merge_patch(self._to_entity(row), data)
            self._apply(row, merged)
            session.commit()
        return merged

    def delete(self, entity_type: str, entity_id: str) -> None:
        with self._session("delete") as session:
            row = self._find(session, entity_type, entity_id)
            if row is None:
                raise NotFoundError("entity not found", entity_type=entity_type, entity_id=entity_id)
            session.delete(row)
            session.commit()

    def move_stage(self, entity_type: str, entity_id: str, stage: str) -> Entity:
        return self.update(entity_type, entity_id, {"stage": stage})

    def get_by_stage(self, entity_type: str, stage: str) -> list[Entity]:
        with self._session("get_by_stage") as session:
            rows = session.scalars(self._scope(entity_type).where(CRMEntityRecord.stage == stage)).all()
            return [self._to_entity(row) for row in rows]

    def get_stats(self, entity_type: str) -> StageStats:
        with self._session("get_stats") as session:
            stages = session.scalars(
                select(CRMEntityRecord.stage).where(
                    CRMEntityRecord.company_id == self._company_id,
                    CRMEntityRecord.entity_type == entity_type,
                )
            ).all()
        return count_by_stage({"stage": stage} for stage in stages)
