from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from threading import Lock
from typing import Any

from app.core.errors import NotFoundError
from app.metrics import observe_storage_operation
from app.storage.base import Entity, PaginatedResult, QueryFilters, StageStats
from app.storage.query import count_by_stage, merge_patch, new_entity, run_query


class KeyValueStore:
    """In-process string store shared by the adapters created from it.

    ``locked(key)`` serialises a read-modify-write of one key; plain get/set
    calls never wait on it.
    """

    def __init__(self) -> None:
        self._data: dict[str, str] = {}
        self._lock = Lock()
        self._key_locks: dict[str, Lock] = {}

    @contextmanager
    def locked(self, key: str) -> Iterator[None]:
        with self._lock:
            key_lock = self._key_locks.setdefault(key, Lock())
        with key_lock:
            yield

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            return [key for key in self._data if key.startswith(prefix)]

    def clear(self) -> None:
        with self._lock:
            self._data.clear()


class InMemoryStorageAdapter:
    """Embedded backend keeping each entity collection as one JSON document.

    Writes hold the collection's key lock from read to write-back, so writes
    to different entities never drop each other. Two patches to the same
    entity still apply in arrival order and the last one wins; there is no
    version check.
    """

    backend = "local"

    def __init__(self, store: KeyValueStore, company_id: str) -> None:
        self._store = store
        self._company_id = company_id

    def _key(self, entity_type: str) -> str:
        return f"crm_data:{self._company_id}:{entity_type}"

    def _read(self, entity_type: str) -> list[Entity]:
        raw = self._store.get(self._key(entity_type))
        if not raw:
            return []
        return json.loads(raw)

    def _write(self, entity_type: str, entities: list[Entity]) -> None:
        self._store.set(self._key(entity_type), json.dumps(entities))

    def test_connection(self) -> bool:
        return True

    def get_all(self, entity_type: str, filters: QueryFilters | None = None) -> PaginatedResult:
        observe_storage_operation(self.backend, "get_all")
        return run_query(self._read(entity_type), filters)

    def get_by_id(self, entity_type: str, entity_id: str) -> Entity | None:
        observe_storage_operation(self.backend, "get_by_id")
        return next((entity for entity in self._read(entity_type) if entity.get("id") == entity_id), None)

    def create(self, entity_type: str, data: dict[str, Any]) -> Entity:
        entity = new_entity(data)
        with self._store.locked(self._key(entity_type)):
            entities = self._read(entity_type)
            entities.append(entity)
            self._write(entity_type, entities)
        observe_storage_operation(self.backend, "create")
        return dict(entity)

    def update(self, entity_type: str, entity_id: str, data: dict[str, Any]) -> Entity:
        with self._store.locked(self._key(entity_type)):
            entities = self._read(entity_type)
            for index, entity in enumerate(entities):
                if entity.get("id") == entity_id:
                    entities[index] = merge_patch(entity, data)
                    self._write(entity_type, entities)
                    observe_storage_operation(self.backend, "update")
                    return dict(entities[index])
        observe_storage_operation(self.backend, "update", outcome="not_found")
        raise NotFoundError("entity not found", entity_type=entity_type, entity_id=entity_id)

    def delete(self, entity_type: str, entity_id: str) -> None:
        with self._store.locked(self._key(entity_type)):
            entities = self._read(entity_type)
            remaining = [entity for entity in entities if entity.get("id") != entity_id]
            if len(remaining) < len(entities):
                self._write(entity_type, remaining)
        if len(remaining) == len(entities):
            observe_storage_operation(self.backend, "delete", outcome="not_found")
            raise NotFoundError("entity not found", entity_type=entity_type, entity_id=entity_id)
        observe_storage_operation(self.backend, "delete")

    def move_stage(self, entity_type: str, entity_id: str, stage: str) -> Entity:
        return self.update(entity_type, entity_id, {"stage": stage})

    def get_by_stage(self, entity_type: str, stage: str) -> list[Entity]:
        return [entity for entity in self._read(entity_type) if entity.get("stage") == stage]

    def get_stats(self, entity_type: str) -> StageStats:
        return count_by_stage(self._read(entity_type))
