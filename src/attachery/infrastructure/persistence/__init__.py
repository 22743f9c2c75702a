from attachery.infrastructure.persistence.sqlite import SQLiteClient, SQLitePersistence, get_sqlite_client

__all__ = ["SQLiteClient", "SQLitePersistence", "get_sqlite_client"]
