from .base import StorageBackend
from .postgres import PostgresBackend
from .sqlite import SQLiteBackend

__all__ = ("StorageBackend", "PostgresBackend", "SQLiteBackend")
