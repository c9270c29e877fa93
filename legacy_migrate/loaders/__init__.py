"""Data loaders for the target store."""

from .base import BaseLoader, LoadResult
from .sql_loader import SQLUpsertLoader
from .run_log import RunLogWriter

__all__ = [
    "BaseLoader",
    "LoadResult",
    "SQLUpsertLoader",
    "RunLogWriter",
]
