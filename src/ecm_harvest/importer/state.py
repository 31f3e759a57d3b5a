"""Persisted state of one import run."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from ecm_harvest.importer.configs import FolderConfig
from ecm_harvest.storage.common import from_iso, utc_now

IMPORT_STATE_KEY = "import_state"


class ImportStage(str, Enum):
    """Import stages in the only order they may advance."""

    SCANNING_TYPES = "scanning_types"
    AWAITING_SELECTION = "awaiting_selection"
    PROCESSING_MONTHLY = "processing_monthly"
    GENERATING_CONFIGS = "generating_configs"
    DONE = "done"


@dataclass(slots=True, frozen=True)
class FoundFolder:
    name: str
    url: str

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "url": self.url}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> FoundFolder:
        name = raw.get("name")
        url = raw.get("url")
        if not isinstance(name, str) or not name.strip():
            raise ValueError("found folder needs a non-empty 'name'")
        if not isinstance(url, str) or not url.strip():
            raise ValueError("found folder needs a non-empty 'url'")
        return cls(name=name.strip(), url=url.strip())


@dataclass(slots=True, frozen=True)
class MonthlyLink:
    year: int
    month: int
    url: str

    def to_dict(self) -> dict[str, Any]:
        return {"year": self.year, "month": self.month, "url": self.url}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> MonthlyLink:
        year = raw.get("year")
        month = raw.get("month")
        url = raw.get("url")
        if isinstance(year, bool) or not isinstance(year, int):
            raise ValueError("monthly link needs an integer 'year'")
        if isinstance(month, bool) or not isinstance(month, int):
            raise ValueError("monthly link needs an integer 'month'")
        if not isinstance(url, str) or not url.strip():
            raise ValueError("monthly link needs a non-empty 'url'")
        return cls(year=year, month=month, url=url.strip())


@dataclass(slots=True)
class ImportState:
    """Everything needed to continue an import after the driver loop restarts."""

    stage: ImportStage
    scan_targets: list[str]
    cursor: int = 0
    found_items: list[FoundFolder] = field(default_factory=list)
    selected_subset: list[FoundFolder] = field(default_factory=list)
    monthly_results: dict[str, list[MonthlyLink]] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    processed_count: int = 0
    total_to_process: int = 0
    originator_ref: str | None = None
    started_at: datetime = field(default_factory=utc_now)
    success: bool = True
    generated_configs: list[FolderConfig] = field(default_factory=list)

    @classmethod
    def initial(cls, scan_targets: list[str], originator_ref: str | None = None) -> ImportState:
        return cls(
            stage=ImportStage.SCANNING_TYPES,
            scan_targets=list(scan_targets),
            originator_ref=originator_ref,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage.value,
            "scan_targets": list(self.scan_targets),
            "cursor": self.cursor,
            "found_items": [folder.to_dict() for folder in self.found_items],
            "selected_subset": [folder.to_dict() for folder in self.selected_subset],
            "monthly_results": {
                parent: [link.to_dict() for link in links]
                for parent, links in self.monthly_results.items()
            },
            "errors": list(self.errors),
            "processed_count": self.processed_count,
            "total_to_process": self.total_to_process,
            "originator_ref": self.originator_ref,
            "started_at": self.started_at.isoformat(),
            "success": self.success,
            "generated_configs": [config.to_dict() for config in self.generated_configs],
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ImportState:
        return cls(
            stage=ImportStage(raw["stage"]),
            scan_targets=[str(target) for target in raw.get("scan_targets", [])],
            cursor=int(raw.get("cursor", 0)),
            found_items=[FoundFolder.from_dict(item) for item in raw.get("found_items", [])],
            selected_subset=[
                FoundFolder.from_dict(item) for item in raw.get("selected_subset", [])
            ],
            monthly_results={
                str(parent): [MonthlyLink.from_dict(link) for link in links]
                for parent, links in raw.get("monthly_results", {}).items()
            },
            errors=[str(error) for error in raw.get("errors", [])],
            processed_count=int(raw.get("processed_count", 0)),
            total_to_process=int(raw.get("total_to_process", 0)),
            originator_ref=raw.get("originator_ref"),
            started_at=from_iso(raw["started_at"]) if raw.get("started_at") else utc_now(),
            success=bool(raw.get("success", True)),
            generated_configs=[
                _stored_config(item) for item in raw.get("generated_configs", [])
            ],
        )


def _stored_config(raw: dict[str, Any]) -> FolderConfig:
    # Generated configs may carry a month outside 1-12; keep them as produced.
    return FolderConfig(
        name=str(raw["name"]),
        script=str(raw["script"]),
        year=int(raw["year"]),
        month=int(raw["month"]),
        urls=[str(url) for url in raw.get("urls", [])],
    )
