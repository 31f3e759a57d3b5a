"""Resumable folder import workflow.

The workflow is an explicit transition function ``_step`` driven by ``run``.
Every transition is written to the volatile store before the next one starts,
so calling ``run`` again (for example from a new ``ImportWorkflow`` over the
same store) continues from the last committed cursor instead of rescanning.

``run`` halts in two places: ``awaiting_selection``, until
``submit_selection`` supplies the folders to expand, and ``done``, after the
completion message has been delivered.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from ecm_harvest.batch.runner import ExecutionLogSink
from ecm_harvest.config import ImportSettings
from ecm_harvest.dispatch.context_manager import ContextManager
from ecm_harvest.dispatch.models import (
    TASK_DISCOVER,
    TASK_DISCOVER_CHILDREN,
    TaskFailure,
    TaskResult,
    WorkItem,
)
from ecm_harvest.dispatch.routing import AgentCatalog
from ecm_harvest.error_log import Category, ErrorRecorder, Severity
from ecm_harvest.errors import (
    LockAlreadyHeld,
    OriginatorUnreachable,
    PersistenceWriteFailure,
    ProtocolViolation,
)
from ecm_harvest.events import (
    EventCallback,
    ImportCompletedEvent,
    LoggingNotifier,
    Notifier,
    OriginatorChannel,
    SelectionNeededEvent,
    emit_event,
)
from ecm_harvest.importer.configs import FolderConfigRepository, expand_monthly_links
from ecm_harvest.importer.state import (
    IMPORT_STATE_KEY,
    FoundFolder,
    ImportStage,
    ImportState,
    MonthlyLink,
)
from ecm_harvest.locks import LockName, LockRegistry
from ecm_harvest.storage.base import KeyValueStore

logger = logging.getLogger(__name__)

NOTIFICATION_TITLE = "Objective Import"
_HALTING_STAGES = (ImportStage.AWAITING_SELECTION, ImportStage.DONE)


class ImportWorkflow:
    """Scan folder types, wait for a selection, expand months, store configs."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        volatile: KeyValueStore,
        locks: LockRegistry,
        context_manager: ContextManager,
        agents: AgentCatalog,
        configs: FolderConfigRepository,
        settings: ImportSettings,
        execution_log: ExecutionLogSink | None = None,
        errors: ErrorRecorder | None = None,
        notifier: Notifier | None = None,
        originator: OriginatorChannel | None = None,
        on_event: EventCallback | None = None,
    ) -> None:
        self.volatile = volatile
        self.locks = locks
        self.context_manager = context_manager
        self.agents = agents
        self.configs = configs
        self.settings = settings
        self.execution_log = execution_log
        self.errors = errors or ErrorRecorder()
        self.notifier = notifier or LoggingNotifier()
        self.originator = originator
        self.on_event = on_event
        self._running = False

    # -- external commands ----------------------------------------------------

    def load_state(self) -> ImportState | None:
        raw = self.volatile.get(IMPORT_STATE_KEY)
        if raw is None:
            return None
        return ImportState.from_dict(raw)

    @property
    def running(self) -> bool:
        return self._running

    async def start(self, originator_ref: str | None = None) -> ImportState:
        """Begin a new import; raises ``LockAlreadyHeld`` without touching state."""

        self._acquire_lock()
        state = ImportState.initial(list(self.settings.scan_targets), originator_ref)
        logger.info("Import started with %s scan targets", len(state.scan_targets))
        self._save(state)
        return await self._drive(state)

    async def resume(self) -> ImportState | None:
        """Continue a persisted import after a restart.

        The import lock is taken again when it is free. A held lock belongs to
        the persisted import only while no driver loop is running it.
        """

        state = self.load_state()
        if state is None:
            return None
        if self._running:
            raise LockAlreadyHeld(LockName.OBJECTIVE_IMPORT.value)
        if not self.locks.is_held(LockName.OBJECTIVE_IMPORT):
            self._acquire_lock()
        logger.info("Resuming import in stage %s", state.stage.value)
        return await self._drive(state)

    async def submit_selection(
        self,
        subset: Iterable[FoundFolder | Mapping[str, Any]],
    ) -> ImportState:
        """Accept the folders to expand and continue the workflow."""

        state = self.load_state()
        if state is None or state.stage is not ImportStage.AWAITING_SELECTION:
            stage = state.stage.value if state is not None else "idle"
            logger.warning("Rejected folder selection in stage %s", stage)
            raise ProtocolViolation(f"Folder selection is not expected in stage {stage!r}")

        known = {folder.url: folder for folder in state.found_items}
        selected: list[FoundFolder] = []
        seen: set[str] = set()
        for raw in subset:
            try:
                folder = raw if isinstance(raw, FoundFolder) else FoundFolder.from_dict(dict(raw))
            except (TypeError, ValueError) as error:
                logger.warning("Rejected malformed folder selection: %s", error)
                raise ProtocolViolation(f"Malformed folder selection: {error}") from error
            if folder.url not in known:
                logger.warning("Rejected selection of unknown folder %s", folder.url)
                raise ProtocolViolation(f"Folder {folder.url!r} was not found by the scan")
            if folder.url in seen:
                continue
            seen.add(folder.url)
            selected.append(known[folder.url])

        state.selected_subset = selected
        state.cursor = 0
        state.processed_count = 0
        state.total_to_process = len(selected)
        state.monthly_results = {}
        state.stage = ImportStage.PROCESSING_MONTHLY
        logger.info("Selection received: %s folders", len(selected))
        self._save(state)
        return await self._drive(state)

    # -- driver loop ------------------------------------------------------------

    async def run(self) -> ImportState | None:
        """Continue from the persisted state until the workflow halts."""

        state = self.load_state()
        if state is None:
            return None
        return await self._drive(state)

    async def _drive(self, state: ImportState) -> ImportState:
        if self._running:
            raise LockAlreadyHeld(LockName.OBJECTIVE_IMPORT.value)
        self._running = True
        try:
            return await self._run_until_halt(state)
        finally:
            self._running = False

    async def _run_until_halt(self, state: ImportState) -> ImportState:
        try:
            while state.stage not in _HALTING_STAGES:
                state = await self._step(state)
                self._save(state)
        except Exception as error:  # noqa: BLE001
            logger.exception("Import step failed in stage %s", state.stage.value)
            state.errors.append(f"Internal error during {state.stage.value}: {error}")
            state.success = False
            state.stage = ImportStage.DONE
            self._save(state)

        if state.stage is ImportStage.AWAITING_SELECTION:
            emit_event(
                self.on_event,
                SelectionNeededEvent(
                    found_items=list(state.found_items),
                    errors=list(state.errors),
                ),
            )
            return state

        await self._finish(state)
        return state

    async def _step(self, state: ImportState) -> ImportState:
        if state.stage is ImportStage.SCANNING_TYPES:
            return await self._scan_next_target(state)
        if state.stage is ImportStage.PROCESSING_MONTHLY:
            return await self._expand_next_parent(state)
        if state.stage is ImportStage.GENERATING_CONFIGS:
            return self._generate_configs(state)
        return state

    # -- stages -------------------------------------------------------------------

    async def _scan_next_target(self, state: ImportState) -> ImportState:
        if state.cursor < len(state.scan_targets):
            target = state.scan_targets[state.cursor]
            logger.info(
                "Scanning folder types %s/%s: %s",
                state.cursor + 1,
                len(state.scan_targets),
                target,
            )
            result = await self._dispatch(
                WorkItem(target=target, label=target, task_type=TASK_DISCOVER),
            )
            try:
                if isinstance(result, TaskFailure):
                    raise ValueError(result.reason)
                _merge_found(state.found_items, _parse_folders(result.payload))
            except ValueError as error:
                state.errors.append(f"Error scanning {target}: {error}")
            state.cursor += 1

        if state.cursor >= len(state.scan_targets):
            logger.info("Scan complete: %s folder types found", len(state.found_items))
            state.stage = ImportStage.AWAITING_SELECTION
        return state

    async def _expand_next_parent(self, state: ImportState) -> ImportState:
        if state.processed_count < state.total_to_process:
            parent = state.selected_subset[state.cursor]
            logger.info(
                "Expanding monthly folders %s/%s: %s",
                state.cursor + 1,
                state.total_to_process,
                parent.name,
            )
            result = await self._dispatch(
                WorkItem(
                    target=parent.url,
                    label=parent.name,
                    task_type=TASK_DISCOVER_CHILDREN,
                    parent_label=parent.name,
                ),
            )
            try:
                if isinstance(result, TaskFailure):
                    raise ValueError(result.reason)
                links = state.monthly_results.setdefault(parent.name, [])
                _merge_monthly(links, _parse_monthly(result.payload))
            except ValueError as error:
                state.errors.append(f"Error scanning monthly links for {parent.name}: {error}")
            state.cursor += 1
            state.processed_count += 1

        if state.processed_count >= state.total_to_process:
            state.stage = ImportStage.GENERATING_CONFIGS
        return state

    def _generate_configs(self, state: ImportState) -> ImportState:
        candidates = expand_monthly_links(
            {
                parent: [link.to_dict() for link in links]
                for parent, links in state.monthly_results.items()
            },
            script=self.settings.default_script,
        )
        try:
            state.generated_configs = self.configs.merge(candidates)
        except Exception as error:  # noqa: BLE001
            state.errors.append(f"Error saving configs: {error}")
            state.success = False
            self.errors.record(
                "Objective import failed to save configurations",
                details={"error": str(error)},
                severity=Severity.ERROR,
                category=Category.STORAGE,
            )
        else:
            logger.info(
                "Saved %s new configurations (%s candidates)",
                len(state.generated_configs),
                len(candidates),
            )
        state.stage = ImportStage.DONE
        return state

    async def _finish(self, state: ImportState) -> None:
        self._clear()
        self.locks.release(LockName.OBJECTIVE_IMPORT)
        self._log_execution(state)

        event = ImportCompletedEvent(
            success=state.success,
            configs=list(state.generated_configs),
            errors=list(state.errors),
        )
        emit_event(self.on_event, event)
        if state.errors:
            self.errors.record(
                "Objective import finished with errors",
                details={"errors": list(state.errors)},
                severity=Severity.WARNING if state.success else Severity.ERROR,
                category=Category.IMPORT,
            )
        await self._deliver_completion(state, event)
        logger.info("Import finished: success=%s", state.success)

    # -- helpers --------------------------------------------------------------------

    def _acquire_lock(self) -> None:
        lock = LockName.OBJECTIVE_IMPORT
        conflicts = (LockName.BATCH_PROCESSING,)
        if not self.locks.try_acquire(lock, conflicts):
            holder = lock.value if self.locks.is_held(lock) else self.locks.busy_conflict(conflicts)
            raise LockAlreadyHeld(lock.value, holder)

    async def _dispatch(self, item: WorkItem) -> TaskResult:
        try:
            agent = self.agents.resolve(item.task_type)
        except ValueError as error:
            return TaskFailure(reason=str(error), failure_code="agent_unavailable")
        try:
            return await self.context_manager.dispatch(item, agent)
        except Exception as error:  # noqa: BLE001
            logger.exception("Unexpected error while dispatching %s", item.target)
            return TaskFailure(reason=str(error) or type(error).__name__, failure_code="unexpected")

    async def _deliver_completion(self, state: ImportState, event: ImportCompletedEvent) -> None:
        if state.originator_ref is not None and self.originator is not None:
            try:
                await self.originator.send(state.originator_ref, event.to_message())
                return
            except OriginatorUnreachable as error:
                logger.warning("Import originator %s unreachable: %s", state.originator_ref, error)
            except Exception:  # noqa: BLE001
                logger.warning(
                    "Failed to deliver import completion to %s",
                    state.originator_ref,
                    exc_info=True,
                )
        else:
            logger.warning("No import originator to notify; using system notification")

        try:
            self.notifier.notify(
                NOTIFICATION_TITLE,
                _notification_message(event),
                _notification_severity(event),
            )
        except Exception:  # noqa: BLE001
            logger.warning("Import completion notification failed", exc_info=True)

    def _save(self, state: ImportState) -> None:
        try:
            self.volatile.set(IMPORT_STATE_KEY, state.to_dict())
        except Exception as error:  # noqa: BLE001
            failure = PersistenceWriteFailure(f"Cannot persist import state: {error}")
            self.errors.record(
                str(failure),
                details={"stage": state.stage.value, "code": failure.code},
                severity=Severity.CRITICAL,
                category=Category.STORAGE,
            )

    def _clear(self) -> None:
        try:
            self.volatile.remove(IMPORT_STATE_KEY)
        except Exception:  # noqa: BLE001
            logger.warning("Failed to clear import state", exc_info=True)

    def _log_execution(self, state: ImportState) -> None:
        if self.execution_log is None:
            return
        try:
            self.execution_log.add_execution_log(
                folder="SYSTEM",
                script=NOTIFICATION_TITLE,
                status=(
                    f"Finished. Added: {len(state.generated_configs)}. "
                    f"Errors: {len(state.errors)}."
                ),
            )
        except Exception:  # noqa: BLE001
            logger.warning("Failed to write import execution log", exc_info=True)


def _parse_folders(payload: Any) -> list[FoundFolder]:
    raw = payload.get("folders") if isinstance(payload, Mapping) else payload
    if not isinstance(raw, list):
        raise ValueError("discovery reply carries no folder list")
    folders: list[FoundFolder] = []
    for entry in raw:
        if not isinstance(entry, Mapping):
            raise ValueError("discovery reply folder entries must be objects")
        folders.append(FoundFolder.from_dict(dict(entry)))
    return folders


def _parse_monthly(payload: Any) -> list[MonthlyLink]:
    raw = payload.get("monthly") if isinstance(payload, Mapping) else payload
    if not isinstance(raw, list):
        raise ValueError("monthly discovery reply carries no link list")
    links: list[MonthlyLink] = []
    for entry in raw:
        if not isinstance(entry, Mapping):
            raise ValueError("monthly link entries must be objects")
        links.append(MonthlyLink.from_dict(dict(entry)))
    return links


def _merge_found(found: list[FoundFolder], discovered: Iterable[FoundFolder]) -> None:
    known = {folder.url for folder in found}
    for folder in discovered:
        if folder.url in known:
            continue
        known.add(folder.url)
        found.append(folder)


def _merge_monthly(links: list[MonthlyLink], discovered: Iterable[MonthlyLink]) -> None:
    known = {(link.year, link.month) for link in links}
    for link in discovered:
        if (link.year, link.month) in known:
            continue
        known.add((link.year, link.month))
        links.append(link)


def _notification_message(event: ImportCompletedEvent) -> str:
    if not event.success:
        message = "Objective import failed."
        if event.errors:
            message += f" Errors: {'; '.join(event.errors)}"
        return message
    message = f"Objective import complete. Added {len(event.configs)} configurations."
    if event.errors:
        message += f" {len(event.errors)} errors."
    return message


def _notification_severity(event: ImportCompletedEvent) -> Severity:
    if not event.success:
        return Severity.ERROR
    return Severity.WARNING if event.errors else Severity.INFO
