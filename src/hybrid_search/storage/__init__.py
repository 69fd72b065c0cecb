"""Storage backends for hybrid retrieval."""

from .base import StorageBackend, WritableStorage, row_to_result
from .duckdb import DuckDBStorage

__all__ = [
    "StorageBackend",
    "WritableStorage",
    "row_to_result",
    "DuckDBStorage",
]
