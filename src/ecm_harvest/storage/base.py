"""Key-value store protocol shared by durable and volatile backends."""

from __future__ import annotations

from typing import Any, Protocol


class KeyValueStore(Protocol):
    """Whole-record get/set/remove storage."""

    def get(self, key: str, default: Any = None) -> Any:
        """Return a copy of the value stored under ``key``."""

    def set(self, key: str, value: Any) -> None:
        """Replace the value stored under ``key``."""

    def remove(self, key: str) -> None:
        """Delete ``key`` if present."""
