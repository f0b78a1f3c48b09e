"""Storage backends and models."""

from tes_api.storage.base import TaskStorage
from tes_api.storage.memory import InMemoryTaskStorage
from tes_api.storage.models import TaskRecord
from tes_api.storage.postgres import PostgresTaskStorage

__all__ = [
    "InMemoryTaskStorage",
    "PostgresTaskStorage",
    "TaskRecord",
    "TaskStorage",
]
