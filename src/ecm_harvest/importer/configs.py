"""Durable folder configurations generated by the import workflow."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlparse

from ecm_harvest.storage.base import KeyValueStore

logger = logging.getLogger(__name__)

FOLDER_CONFIGS_KEY = "ecm_folders"
SUPPORTED_SCRIPTS = ("A", "B")
MONTH_NAMES_SHORT = (
    "Jan",
    "Feb",
    "Mar",
    "Apr",
    "May",
    "Jun",
    "Jul",
    "Aug",
    "Sep",
    "Oct",
    "Nov",
    "Dec",
)


@dataclass(slots=True)
class FolderConfig:
    """One runnable configuration: a folder's URLs for one month."""

    name: str
    script: str
    year: int
    month: int
    urls: list[str] = field(default_factory=list)

    @property
    def key(self) -> tuple[str, int, int]:
        return (self.name, self.year, self.month)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "urls": list(self.urls),
            "script": self.script,
            "year": self.year,
            "month": self.month,
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> FolderConfig:
        errors = validate_folder_config(raw)
        if errors:
            raise ValueError("; ".join(errors))
        return cls(
            name=str(raw["name"]).strip(),
            script=str(raw["script"]),
            year=int(raw["year"]),
            month=int(raw["month"]),
            urls=[str(url).strip() for url in raw["urls"]],
        )


def validate_folder_config(raw: Any) -> list[str]:
    """Return human-readable problems with a stored folder config; empty when valid."""

    if not isinstance(raw, Mapping):
        return ["Invalid configuration: input must be a mapping."]

    errors: list[str] = []
    name = raw.get("name")
    if not isinstance(name, str) or not name.strip():
        errors.append("Folder name is required and must be a non-empty string.")
    if raw.get("script") not in SUPPORTED_SCRIPTS:
        errors.append('Script type is required and must be either "A" or "B".')
    year = raw.get("year")
    if isinstance(year, bool) or not isinstance(year, int) or not 2000 <= year <= 2100:
        errors.append("Year is required and must be an integer between 2000 and 2100.")
    month = raw.get("month")
    if isinstance(month, bool) or not isinstance(month, int) or not 1 <= month <= 12:
        errors.append("Month is required and must be an integer between 1 and 12.")

    urls = raw.get("urls")
    if not isinstance(urls, list) or not urls:
        errors.append("At least one URL is required in the urls list.")
        return errors
    for index, url in enumerate(urls):
        if not isinstance(url, str) or not url.strip():
            errors.append(f"URL at index {index} must be a non-empty string.")
            continue
        parsed = urlparse(url.strip())
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            errors.append(f"URL at index {index} is not an absolute http(s) URL: {url!r}")
    return errors


def month_label(month: int) -> str:
    if 1 <= month <= 12:
        return MONTH_NAMES_SHORT[month - 1]
    logger.warning("Unknown month number %s; using generic label", month)
    return f"M{month}"


def config_name(parent_label: str, year: int, month: int) -> str:
    return f"{parent_label} - {month_label(month)} {year}"


def expand_monthly_links(
    monthly_results: Mapping[str, Iterable[Mapping[str, Any]]],
    *,
    script: str,
) -> list[FolderConfig]:
    """Turn each parent's discovered month links into one config per month."""

    configs: list[FolderConfig] = []
    for parent_label, links in monthly_results.items():
        for link in links:
            year = int(link["year"])
            month = int(link["month"])
            configs.append(
                FolderConfig(
                    name=config_name(parent_label, year, month),
                    script=script,
                    year=year,
                    month=month,
                    urls=[str(link["url"])],
                ),
            )
    return configs


class FolderConfigRepository:
    """Folder config list stored under one durable key."""

    def __init__(self, store: KeyValueStore, *, key: str = FOLDER_CONFIGS_KEY) -> None:
        self._store = store
        self._key = key

    def list_raw(self) -> list[Any]:
        raw = self._store.get(self._key, [])
        if not isinstance(raw, list):
            logger.warning("Stored folder configs under %r are not a list; ignoring", self._key)
            return []
        return raw

    def list_valid(self) -> list[FolderConfig]:
        """Stored configs that pass validation; invalid ones are logged and skipped."""

        configs: list[FolderConfig] = []
        for index, raw in enumerate(self.list_raw()):
            try:
                configs.append(FolderConfig.from_dict(raw))
            except ValueError as error:
                logger.warning("Skipping invalid folder config #%s: %s", index, error)
        return configs

    def merge(self, candidates: Iterable[FolderConfig]) -> list[FolderConfig]:
        """Append configs whose ``(name, year, month)`` is not stored yet; return the added ones."""

        stored = self.list_raw()
        seen = {
            (item.get("name"), item.get("year"), item.get("month"))
            for item in stored
            if isinstance(item, Mapping)
        }
        added: list[FolderConfig] = []
        for config in candidates:
            if config.key in seen:
                continue
            seen.add(config.key)
            added.append(config)
        if added:
            self._store.set(self._key, [*stored, *(config.to_dict() for config in added)])
        return added
