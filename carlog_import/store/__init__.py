"""Record stores (in-memory, JSON file, PostgreSQL)."""

from .base import (
    ConflictError,
    DuplicateKeyError,
    RecordNotFoundError,
    RecordStore,
    StoreError,
)
from .memory import InMemoryRecordStore, JsonFileRecordStore

# PostgresRecordStore is imported from .postgres directly (needs psycopg2)
__all__ = [
    "ConflictError",
    "DuplicateKeyError",
    "InMemoryRecordStore",
    "JsonFileRecordStore",
    "RecordNotFoundError",
    "RecordStore",
    "StoreError",
]
