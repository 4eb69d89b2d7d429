from __future__ import annotations

from typing import Literal

import httpx
from pydantic import BaseModel, Field, model_validator
from sqlalchemy.orm import Session, sessionmaker

from app.core.errors import ValidationError
from app.storage.base import StorageAdapter
from app.storage.memory import InMemoryStorageAdapter, KeyValueStore
from app.storage.rest import RestStorageAdapter
from app.storage.sql import SqlStorageAdapter


class DbConnectionConfig(BaseModel):
    id: str = "default"
    company_id: str = Field(min_length=1)
    type: Literal["local", "rest", "sql"] = "local"
    api_url: str | None = None
    api_key: str | None = None

    @model_validator(mode="after")
    def _check_remote(self) -> DbConnectionConfig:
        if self.type == "rest" and not (self.api_url and self.api_key):
            raise ValueError("rest connections require api_url and api_key")
        return self


def create_storage_adapter(
    config: DbConnectionConfig,
    *,
    store: KeyValueStore | None = None,
    session_factory: sessionmaker[Session] | None = None,
    http_client: httpx.Client | None = None,
    timeout: float = 10.0,
) -> StorageAdapter:
    """Build the adapter for one tenant connection. Handles are injected; nothing is cached here."""

    if config.type == "rest":
        return RestStorageAdapter(
            config.api_url or "", config.api_key or "", config.company_id, timeout=timeout, client=http_client
        )
    if config.type == "sql":
        if session_factory is None:
            raise ValidationError("sql storage requires a session factory", connection_id=config.id)
        return SqlStorageAdapter(session_factory, config.company_id)
    if store is None:
        raise ValidationError("local storage requires a key-value store", connection_id=config.id)
    return InMemoryStorageAdapter(store, config.company_id)
