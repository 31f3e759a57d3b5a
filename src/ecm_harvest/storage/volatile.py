"""Process-scoped key-value store for locks and in-flight workflow state."""

from __future__ import annotations

import copy
from typing import Any


class MemoryStore:
    """In-memory store whose contents live only as long as the host process.

    Values are deep-copied on the way in and out so callers always
    read-modify-write whole records, the same way they do against the
    durable store.
    """

    def __init__(self) -> None:
        self._data: dict[str, Any] = {}

    def get(self, key: str, default: Any = None) -> Any:
        if key not in self._data:
            return default
        return copy.deepcopy(self._data[key])

    def set(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self, prefix: str = "") -> list[str]:
        return [key for key in self._data if key.startswith(prefix)]
