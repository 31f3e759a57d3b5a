"""Controllers for ecm-harvest CLI commands."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date
from pathlib import Path

from ecm_harvest.config import Settings
from ecm_harvest.dispatch.models import RunSummary, TaskFailure, WorkItem
from ecm_harvest.events import EventCallback, HarvestEvent, ItemProgressEvent
from ecm_harvest.importer.state import FoundFolder, ImportStage, ImportState
from ecm_harvest.services import HarvestService
from ecm_harvest.storage.repository import SQLiteStore

FolderSelector = Callable[[list[FoundFolder], list[str]], list[FoundFolder]]
ProgressPrinter = Callable[[str], None]


@dataclass(slots=True)
class BatchRunCommand:
    """CLI input for a batch run from a JSON items file."""

    db_path: Path | None
    items_file: Path


@dataclass(slots=True)
class BatchDailyCommand:
    """CLI input for the current-month fetch of stored folder configs."""

    db_path: Path | None
    year: int | None = None
    month: int | None = None


@dataclass(slots=True)
class BatchCheckCommand:
    db_path: Path | None


@dataclass(slots=True)
class ImportRunCommand:
    db_path: Path | None
    originator_ref: str | None = None


@dataclass(slots=True)
class ConfigsListCommand:
    db_path: Path | None
    year: int | None = None
    month: int | None = None


@dataclass(slots=True)
class LogsCommand:
    db_path: Path | None
    limit: int
    severity: str | None = None


@dataclass(slots=True)
class DataDeleteCommand:
    """CLI input for deleting stored record counts of one month."""

    db_path: Path | None
    year: int
    month: int
    persons: tuple[str, ...] = ()
    folders: tuple[str, ...] = ()


class HarvestCliController:
    """Coordinates batch, import, config and log CLI operations."""

    def run_batch(
        self,
        command: BatchRunCommand,
        progress: ProgressPrinter | None = None,
    ) -> list[str]:
        items = load_work_items(command.items_file)
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_dispatch()
        with _store(settings) as store:
            service = HarvestService.from_settings(settings, store=store)
            summary = asyncio.run(service.run_batch(items, on_event=_progress_sink(progress)))
        return _summary_lines("Batch run", summary)

    def run_daily(
        self,
        command: BatchDailyCommand,
        progress: ProgressPrinter | None = None,
    ) -> list[str]:
        today = date.today()
        year = command.year or today.year
        month = command.month or today.month
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_dispatch()
        with _store(settings) as store:
            service = HarvestService.from_settings(settings, store=store)
            summary = asyncio.run(
                service.run_daily_fetch(
                    today=date(year, month, 1),
                    on_event=_progress_sink(progress),
                ),
            )
        return _summary_lines(f"Daily fetch {year}-{month:02d}", summary)

    def check_daily(self, command: BatchCheckCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            service = HarvestService.from_settings(settings, store=store)
            missed = service.on_host_start()
        if missed:
            return ["Daily fetch has not run today."]
        return ["Daily fetch already ran today."]

    def run_import(self, command: ImportRunCommand, select: FolderSelector) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_dispatch()
        settings.validate_for_import()
        with _store(settings) as store:
            service = HarvestService.from_settings(settings, store=store)
            state = asyncio.run(_drive_import(service, command.originator_ref, select))

        lines = [
            f"Import finished: success={state.success} "
            f"added={len(state.generated_configs)} errors={len(state.errors)}",
        ]
        lines.extend(f"  + {config.name} ({config.urls[0]})" for config in state.generated_configs)
        lines.extend(f"  ! {error}" for error in state.errors)
        return lines

    def list_configs(self, command: ConfigsListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            service = HarvestService.from_settings(settings, store=store)
            configs = service.configs.list_valid()

        configs = [
            config
            for config in configs
            if (command.year is None or config.year == command.year)
            and (command.month is None or config.month == command.month)
        ]
        if not configs:
            return ["No folder configurations."]
        lines = [f"Folder configurations: {len(configs)}"]
        for config in sorted(configs, key=lambda item: (item.year, item.month, item.name)):
            lines.append(
                f"{config.year}-{config.month:02d} script={config.script} "
                f"urls={len(config.urls)} {config.name}",
            )
        return lines

    def show_logs(self, command: LogsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            logs = store.list_execution_logs(limit=command.limit)
        if not logs:
            return ["No execution logs."]
        return [
            f"{entry.created_at.isoformat()} {entry.folder} [{entry.script}] {entry.status}"
            for entry in logs
        ]

    def show_errors(self, command: LogsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            errors = store.list_error_logs(limit=command.limit, severity=command.severity)
        if not errors:
            return ["No error logs."]
        lines: list[str] = []
        for entry in errors:
            lines.append(
                f"{entry.created_at.isoformat()} {entry.severity.upper()} "
                f"[{entry.category}] {entry.message}",
            )
            if entry.details:
                lines.append(f"  details={json.dumps(entry.details, sort_keys=True, default=str)}")
        return lines

    def delete_data(self, command: DataDeleteCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            service = HarvestService.from_settings(settings, store=store)
            removed = service.delete_records(
                command.year,
                command.month,
                persons=command.persons or None,
                folders=command.folders or None,
            )
        return [f"Deleted {removed} dated entries for {command.year}-{command.month:02d}."]


def load_work_items(path: Path) -> list[WorkItem]:
    """Parse a JSON list of work item objects."""

    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, list):
        raise ValueError(f"Expected a JSON list of work items in {path}")
    items: list[WorkItem] = []
    for index, raw in enumerate(payload):
        if not isinstance(raw, dict):
            raise ValueError(f"Work item #{index} in {path} is not an object")
        try:
            items.append(WorkItem.from_dict(raw))
        except ValueError as error:
            raise ValueError(f"Work item #{index} in {path}: {error}") from error
    return items


async def _drive_import(
    service: HarvestService,
    originator_ref: str | None,
    select: FolderSelector,
) -> ImportState:
    state = await service.start_import(originator_ref)
    if state.stage is ImportStage.AWAITING_SELECTION:
        chosen = select(list(state.found_items), list(state.errors))
        state = await service.submit_selection(chosen)
    return state


def _progress_sink(progress: ProgressPrinter | None) -> EventCallback | None:
    if progress is None:
        return None

    def on_event(event: HarvestEvent) -> None:
        if isinstance(event, ItemProgressEvent):
            progress(
                f"[{event.index + 1}/{event.total}] {event.status}: {event.label} "
                f"(ok={event.successful_count})",
            )

    return on_event


def _summary_lines(title: str, summary: RunSummary) -> list[str]:
    lines = [
        f"{title}: total={summary.total} processed={len(summary.per_item)} "
        f"succeeded={summary.successful_count} failed={summary.failed_count}"
        + (" cancelled" if summary.cancelled else ""),
    ]
    for outcome in summary.per_item:
        if isinstance(outcome.result, TaskFailure):
            lines.append(
                f"  ! {outcome.item.label} ({outcome.item.target}): "
                f"{outcome.result.failure_code}: {outcome.result.reason}",
            )
    return lines


@contextmanager
def _store(settings: Settings) -> Iterator[SQLiteStore]:
    store = SQLiteStore(
        settings.db_path,
        max_execution_logs=settings.logs.max_execution_logs,
        max_error_logs=settings.logs.max_error_logs,
    )
    store.init_schema()
    try:
        yield store
    finally:
        store.close()
