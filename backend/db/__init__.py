from .record_store import SQLiteRecordStore
from .sqlite_client import SQLiteClient, database_url_from_env

__all__ = ["SQLiteClient", "SQLiteRecordStore", "database_url_from_env"]
