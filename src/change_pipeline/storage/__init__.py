"""Change store backends."""

from change_pipeline.storage.base import ChangeStore
from change_pipeline.storage.memory import InMemoryChangeStore
from change_pipeline.storage.postgres import PostgresChangeStore

__all__ = [
    "ChangeStore",
    "InMemoryChangeStore",
    "PostgresChangeStore",
]
