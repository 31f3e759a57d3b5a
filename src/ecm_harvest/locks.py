"""Named mutual-exclusion flags for workflows that share storage."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from enum import Enum

from ecm_harvest.errors import LockAlreadyHeld
from ecm_harvest.storage.base import KeyValueStore

logger = logging.getLogger(__name__)

LOCK_KEY_PREFIX = "lock:"


class LockName(str, Enum):
    """Exclusive operation families."""

    BATCH_PROCESSING = "batch_processing"
    REPORT_GENERATION = "report_generation"
    DATA_DELETION = "data_deletion"
    OBJECTIVE_IMPORT = "objective_import"


class LockRegistry:
    """Boolean locks stored in the volatile store.

    Acquisition never waits: a held lock makes ``try_acquire`` return False
    and ``hold`` raise ``LockAlreadyHeld``. ``conflicts`` lists other names
    that must be free too; they are checked, not taken.
    """

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    def try_acquire(self, name: LockName | str, conflicts: Iterable[LockName | str] = ()) -> bool:
        key = _lock_name(name)
        if self.is_held(key):
            return False
        if self.busy_conflict(conflicts) is not None:
            return False
        self._store.set(LOCK_KEY_PREFIX + key, True)
        logger.debug("Lock %s acquired", key)
        return True

    def release(self, name: LockName | str) -> None:
        key = _lock_name(name)
        self._store.remove(LOCK_KEY_PREFIX + key)
        logger.debug("Lock %s released", key)

    def is_held(self, name: LockName | str) -> bool:
        return bool(self._store.get(LOCK_KEY_PREFIX + _lock_name(name), False))

    def busy_conflict(self, conflicts: Iterable[LockName | str]) -> str | None:
        """Return the first held name among ``conflicts``."""

        for other in conflicts:
            if self.is_held(other):
                return _lock_name(other)
        return None

    def held_names(self) -> list[str]:
        return [name.value for name in LockName if self.is_held(name)]

    def reset(self) -> None:
        """Clear every lock; called once at host start."""

        for name in LockName:
            self._store.remove(LOCK_KEY_PREFIX + name.value)

    @contextmanager
    def hold(
        self,
        name: LockName | str,
        conflicts: Iterable[LockName | str] = (),
    ) -> Iterator[None]:
        """Hold ``name`` for the duration of the block; released even on error."""

        key = _lock_name(name)
        conflicts = tuple(conflicts)
        if not self.try_acquire(key, conflicts):
            holder = key if self.is_held(key) else self.busy_conflict(conflicts)
            raise LockAlreadyHeld(key, holder)
        try:
            yield
        finally:
            self.release(key)


def _lock_name(name: LockName | str) -> str:
    return name.value if isinstance(name, LockName) else str(name)
