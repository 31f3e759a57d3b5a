"""Per-person daily record counts extracted by batch runs."""

from __future__ import annotations

import calendar
import logging
import math
from collections.abc import Iterable, Mapping
from typing import Any

from ecm_harvest.storage.base import KeyValueStore

logger = logging.getLogger(__name__)

RECORD_COUNTS_KEY = "record_counts"


class RecordCountsStore:
    """Stores ``{person: {date: count}}`` payloads as
    ``persons[person][year][month][folder][date]``.

    Dates later in the run year than the run month are moved to the run
    month's last day. Persisting the same folder and month again replaces
    the earlier counts.
    """

    def __init__(self, store: KeyValueStore, *, key: str = RECORD_COUNTS_KEY) -> None:
        self._store = store
        self._key = key

    def persist(self, payload: Any, label: str, year: int, month: int) -> None:
        if not isinstance(payload, Mapping):
            raise ValueError(f"Record payload must be a mapping, got {type(payload).__name__}")
        if not label.strip():
            raise ValueError("Record payload needs a non-empty folder label")

        coerced = coerce_to_run_month(payload, year=year, month=month)
        records = self.snapshot()
        for person, counts in coerced.items():
            months = records.setdefault(person, {}).setdefault(str(year), {})
            months.setdefault(str(month), {})[label] = counts
        self._store.set(self._key, records)
        logger.debug(
            "Stored record counts for %s people under %s (%s-%02d)",
            len(coerced),
            label,
            year,
            month,
        )

    def snapshot(self) -> dict[str, Any]:
        records = self._store.get(self._key, {})
        return records if isinstance(records, dict) else {}

    def delete(
        self,
        year: int,
        month: int,
        persons: Iterable[str] | None = None,
        folders: Iterable[str] | None = None,
    ) -> int:
        """Remove one month's matching folder entries; return the dated counts removed."""

        person_filter = set(persons) if persons else None
        folder_filter = set(folders) if folders else None
        records = self.snapshot()
        removed = 0
        modified = False

        for person in list(records):
            if person_filter is not None and person not in person_filter:
                continue
            years = records[person]
            if not isinstance(years, dict) or not isinstance(years.get(str(year)), dict):
                continue
            folders_by_label = years[str(year)].get(str(month))
            if not isinstance(folders_by_label, dict):
                continue
            for label in list(folders_by_label):
                if folder_filter is None or label in folder_filter:
                    counts = folders_by_label.pop(label)
                    removed += len(counts) if isinstance(counts, dict) else 0
                    modified = True
            if not folders_by_label:
                del years[str(year)][str(month)]
            if not years[str(year)]:
                del years[str(year)]
            if not years:
                del records[person]

        if modified:
            self._store.set(self._key, records)
        logger.info("Deleted %s record entries for %s-%02d", removed, year, month)
        return removed


def coerce_to_run_month(
    payload: Mapping[str, Any],
    *,
    year: int,
    month: int,
) -> dict[str, dict[str, int]]:
    last_day = calendar.monthrange(year, month)[1]
    canonical = f"{year:04d}-{month:02d}-{last_day:02d}"
    fixed: dict[str, dict[str, int]] = {}

    for person, dates in payload.items():
        counts = fixed.setdefault(str(person), {})
        if not isinstance(dates, Mapping):
            logger.warning("Ignoring non-mapping counts for %s", person)
            continue
        for date_key, count in dates.items():
            target = str(date_key)
            if _is_later_in_year(target, year=year, month=month):
                target = canonical
            counts[target] = counts.get(target, 0) + _as_count(count)
    return fixed


def _is_later_in_year(date_key: str, *, year: int, month: int) -> bool:
    parts = date_key.split("-")
    if len(parts) < 2:
        return False
    try:
        entry_year, entry_month = int(parts[0]), int(parts[1])
    except ValueError:
        return False
    return entry_year == year and entry_month > month


def _as_count(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float) and math.isfinite(value):
        return int(value)
    return 0
