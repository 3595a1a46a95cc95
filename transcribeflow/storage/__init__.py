"""SQLite-backed persistence of job snapshots and failed-job records."""

from transcribeflow.storage.base import PersistenceStore
from transcribeflow.storage.database import DEFAULT_DB_PATH, create_schema, open_db
from transcribeflow.storage.repository import SqlitePersistenceStore

__all__ = [
    "DEFAULT_DB_PATH",
    "open_db",
    "create_schema",
    "PersistenceStore",
    "SqlitePersistenceStore",
]
