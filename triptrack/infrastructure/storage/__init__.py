"""Key-value storage backends for persisted progress."""

from .kv_store import JsonFileStore, KeyValueStore, MemoryStore, SqliteStore, StorageError, open_store

__all__ = [
    "KeyValueStore",
    "MemoryStore",
    "SqliteStore",
    "JsonFileStore",
    "StorageError",
    "open_store",
]
