"""Durable and volatile key-value stores."""

from ecm_harvest.storage.base import KeyValueStore
from ecm_harvest.storage.repository import SQLiteStore
from ecm_harvest.storage.volatile import MemoryStore

__all__ = [
    "KeyValueStore",
    "MemoryStore",
    "SQLiteStore",
]
