"""Progress and completion events, notification sink and originator channel."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

from ecm_harvest.error_log import Severity

if TYPE_CHECKING:
    from ecm_harvest.dispatch.models import RunSummary
    from ecm_harvest.importer.configs import FolderConfig
    from ecm_harvest.importer.state import FoundFolder

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ItemProgressEvent:
    """Emitted after every processed batch item."""

    index: int
    total: int
    successful_count: int
    label: str
    status: str


@dataclass(slots=True, frozen=True)
class RunCompletedEvent:
    """Terminal batch event."""

    summary: RunSummary


@dataclass(slots=True, frozen=True)
class SelectionNeededEvent:
    """Import is suspended until a folder selection is submitted."""

    found_items: list[FoundFolder]
    errors: list[str]


@dataclass(slots=True, frozen=True)
class ImportCompletedEvent:
    """Import reached its terminal stage."""

    success: bool
    configs: list[FolderConfig] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_message(self) -> dict[str, Any]:
        return {
            "action": "import_complete",
            "success": self.success,
            "folders": [config.to_dict() for config in self.configs],
            "errors": list(self.errors),
            "error": "; ".join(self.errors) if self.errors else None,
        }


HarvestEvent = ItemProgressEvent | RunCompletedEvent | SelectionNeededEvent | ImportCompletedEvent
EventCallback = Callable[[HarvestEvent], None]


def emit_event(callback: EventCallback | None, event: HarvestEvent) -> None:
    """Fire-and-forget delivery; sink failures are logged and dropped."""

    if callback is None:
        return
    try:
        callback(event)
    except Exception:  # noqa: BLE001
        logger.debug("Event sink failed for %s", type(event).__name__, exc_info=True)


class Notifier(Protocol):
    """System notification sink."""

    def notify(self, title: str, message: str, severity: Severity) -> None: ...


class LoggingNotifier:
    """Default notifier that surfaces notifications through the log."""

    def notify(self, title: str, message: str, severity: Severity) -> None:
        level = logging.WARNING if severity in {Severity.WARNING, Severity.ERROR} else logging.INFO
        if severity == Severity.CRITICAL:
            level = logging.CRITICAL
        logger.log(level, "%s: %s", title, message)


class OriginatorChannel(Protocol):
    """Addressable endpoint of whoever started a workflow."""

    async def send(self, originator_ref: str, message: dict[str, Any]) -> None:
        """Deliver ``message``; raise ``OriginatorUnreachable`` if the endpoint is gone."""
