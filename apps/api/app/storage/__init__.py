from app.storage.base import DateRange, PaginatedResult, QueryFilters, StageStats, StorageAdapter
from app.storage.factory import DbConnectionConfig, create_storage_adapter
from app.storage.memory import InMemoryStorageAdapter, KeyValueStore
from app.storage.rest import RestStorageAdapter
from app.storage.sql import SqlStorageAdapter

__all__ = [
    "DateRange",
    "PaginatedResult",
    "QueryFilters",
    "StageStats",
    "StorageAdapter",
    "DbConnectionConfig",
    "create_storage_adapter",
    "InMemoryStorageAdapter",
    "KeyValueStore",
    "RestStorageAdapter",
    "SqlStorageAdapter",
]
