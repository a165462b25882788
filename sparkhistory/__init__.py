"""SQLite-backed storage of Spark listener events, with application, executor and analytics queries."""

__version__ = "0.0.1"

__all__ = ["analytics", "records", "store"]