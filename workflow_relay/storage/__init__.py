from .sqlite import SQLiteStore

__all__ = ["SQLiteStore"]
