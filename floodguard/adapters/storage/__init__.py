"""Client record storage adapters.

The decision engine talks to the abstract backend only, so the in-process
store and the relational table are interchangeable.
"""

from floodguard.adapters.storage.base import AbstractStorageBackend, ClientRecord
from floodguard.adapters.storage.factory import create_storage_backend
from floodguard.adapters.storage.in_memory import InMemoryStorage
from floodguard.adapters.storage.sql_table import SqlTableStorage

__all__ = [
    "AbstractStorageBackend",
    "ClientRecord",
    "InMemoryStorage",
    "SqlTableStorage",
    "create_storage_backend",
]
