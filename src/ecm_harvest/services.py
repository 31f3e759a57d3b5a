"""Use-case facade wiring stores, locks, dispatch, batch runs and import."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Mapping, Sequence
from datetime import date
from typing import Any

from ecm_harvest.batch.daily import (
    LAST_AUTO_FETCH_KEY,
    MISSED_FETCH_NOTICE_KEY,
    build_items_for_month,
)
from ecm_harvest.batch.payloads import RecordCountsStore
from ecm_harvest.batch.runner import ExecutionLogSink, PayloadConsumer, WorkQueueRunner
from ecm_harvest.config import Settings
from ecm_harvest.dispatch.completion import CompletionRouter
from ecm_harvest.dispatch.context_manager import ContextManager
from ecm_harvest.dispatch.driver import ContextDriver, SubprocessContextDriver
from ecm_harvest.dispatch.models import RunSummary, WorkItem
from ecm_harvest.dispatch.routing import AgentCatalog
from ecm_harvest.error_log import Category, ErrorRecorder, ErrorSink, Severity
from ecm_harvest.events import EventCallback, LoggingNotifier, Notifier, OriginatorChannel
from ecm_harvest.importer.configs import FolderConfigRepository
from ecm_harvest.importer.state import FoundFolder, ImportState
from ecm_harvest.importer.workflow import ImportWorkflow
from ecm_harvest.locks import LockName, LockRegistry
from ecm_harvest.storage.base import KeyValueStore
from ecm_harvest.storage.common import from_iso, utc_now
from ecm_harvest.storage.repository import SQLiteStore
from ecm_harvest.storage.volatile import MemoryStore

logger = logging.getLogger(__name__)

DAILY_FETCH_TITLE = "Automatic Daily Fetch Complete"
MISSED_FETCH_TITLE = "Daily Fetch May Have Been Missed"
MISSED_FETCH_MESSAGE = (
    "The automatic daily data fetch might not have run. Check the logs or run it manually."
)


class HarvestService:
    """Entry point for batch runs, daily fetches, folder import and data deletion."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        settings: Settings,
        durable: KeyValueStore,
        volatile: KeyValueStore | None = None,
        driver: ContextDriver | None = None,
        router: CompletionRouter | None = None,
        consumer: PayloadConsumer | None = None,
        execution_log: ExecutionLogSink | None = None,
        error_sink: ErrorSink | None = None,
        notifier: Notifier | None = None,
        originator: OriginatorChannel | None = None,
        on_event: EventCallback | None = None,
    ) -> None:
        self.settings = settings
        self.durable = durable
        self.volatile = volatile if volatile is not None else MemoryStore()
        self.router = router or CompletionRouter()
        self.driver = driver or SubprocessContextDriver(
            router=self.router,
            workdir_root=settings.dispatch.workdir_root,
            keep_workdirs=settings.dispatch.keep_workdirs,
            terminate_grace_seconds=settings.dispatch.terminate_grace_seconds,
        )
        self.notifier = notifier or LoggingNotifier()
        self.execution_log = execution_log
        self.errors = ErrorRecorder(error_sink)
        self.locks = LockRegistry(self.volatile)
        self.records = RecordCountsStore(durable)
        self.configs = FolderConfigRepository(durable)
        self.agents = AgentCatalog.from_settings(settings.dispatch)
        self.context_manager = ContextManager(
            driver=self.driver,
            router=self.router,
            ready_timeout_seconds=settings.dispatch.ready_timeout_seconds,
            poll_interval_seconds=settings.dispatch.poll_interval_seconds,
            response_timeout_seconds=settings.dispatch.response_timeout_seconds,
        )
        self.runner = WorkQueueRunner(
            context_manager=self.context_manager,
            agents=self.agents,
            consumer=consumer or self.records,
            execution_log=execution_log,
            errors=self.errors,
        )
        self.workflow = ImportWorkflow(
            volatile=self.volatile,
            locks=self.locks,
            context_manager=self.context_manager,
            agents=self.agents,
            configs=self.configs,
            settings=settings.importer,
            execution_log=execution_log,
            errors=self.errors,
            notifier=self.notifier,
            originator=originator,
            on_event=on_event,
        )
        self.on_event = on_event
        self._cancel = asyncio.Event()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        store: SQLiteStore,
        **overrides: Any,
    ) -> HarvestService:
        """Wire the durable SQLite store as config, record, execution and error log storage."""

        return cls(
            settings=settings,
            durable=store,
            execution_log=store,
            error_sink=store,
            **overrides,
        )

    def on_host_start(self, today: date | None = None) -> bool:
        """Clear locks left by a previous host and check for a missed daily fetch.

        Call once per process, before any workflow runs. Services sharing a
        volatile store must not call it while another of them is working.
        """

        self.locks.reset()
        logger.info("Host start: locks cleared")
        return self.check_missed_fetch(today)

    def check_missed_fetch(self, today: date | None = None) -> bool:
        """Return True when no daily fetch has finished on ``today``.

        The first miss in a session is announced through the notifier and
        the execution log; later checks in the same session stay quiet.
        """

        today = today or date.today()
        try:
            raw = self.durable.get(LAST_AUTO_FETCH_KEY)
            last_run = from_iso(raw).astimezone().date() if raw else None
        except Exception as error:  # noqa: BLE001
            self.errors.record(
                "Missed fetch check failed",
                details={"error": str(error)},
                severity=Severity.WARNING,
                category=Category.SYSTEM,
            )
            return False

        if last_run == today:
            logger.info("Daily fetch already ran on %s", today.isoformat())
            return False

        logger.warning("Daily fetch may have been missed on %s", today.isoformat())
        if self.volatile.get(MISSED_FETCH_NOTICE_KEY):
            logger.info("Missed daily fetch already announced in this session")
            return True
        self._notify(MISSED_FETCH_TITLE, MISSED_FETCH_MESSAGE, Severity.WARNING)
        self.volatile.set(MISSED_FETCH_NOTICE_KEY, True)
        self._log_execution(
            "SYSTEM",
            "Auto-Fetch",
            "Missed fetch detected on startup - notification shown.",
        )
        return True

    # -- batch ------------------------------------------------------------------

    async def run_batch(
        self,
        items: Sequence[WorkItem],
        on_event: EventCallback | None = None,
    ) -> RunSummary:
        """Run ``items`` in order under the batch lock."""

        with self.locks.hold(
            LockName.BATCH_PROCESSING,
            conflicts=(LockName.OBJECTIVE_IMPORT, LockName.DATA_DELETION),
        ):
            self._cancel.clear()
            return await self.runner.run(items, self._cancel, on_event or self.on_event)

    def cancel(self) -> None:
        """Ask the running batch to stop before its next item."""

        logger.info("Batch cancellation requested")
        self._cancel.set()

    async def run_daily_fetch(
        self,
        today: date | None = None,
        on_event: EventCallback | None = None,
    ) -> RunSummary:
        today = today or date.today()
        items = build_items_for_month(self.configs.list_valid(), today.year, today.month)
        self._log_execution("SYSTEM", "Auto-Fetch", "Starting daily fetch check...")
        try:
            summary = await self.run_batch(items, on_event=on_event)
        except Exception as error:
            self.errors.record(
                "Daily fetch failed",
                details={"error": str(error)},
                severity=Severity.ERROR,
                category=Category.PROCESSING,
            )
            self._log_execution("SYSTEM", "Auto-Fetch", f"Failed: {error}")
            raise

        self._log_execution(
            "SYSTEM",
            "Auto-Fetch",
            f"Finished {today.year}-{today.month}. "
            f"Success: {summary.successful_count}/{summary.total}.",
        )
        self.durable.set(LAST_AUTO_FETCH_KEY, utc_now().isoformat())
        self._notify(
            DAILY_FETCH_TITLE,
            f"Successfully processed {summary.successful_count} of {summary.total} "
            "configured folders for the current month.",
            Severity.INFO if summary.failed_count == 0 else Severity.WARNING,
        )
        return summary

    def delete_records(
        self,
        year: int,
        month: int,
        persons: Iterable[str] | None = None,
        folders: Iterable[str] | None = None,
    ) -> int:
        if not 2000 <= year <= 2100 or not 1 <= month <= 12:
            raise ValueError(f"Invalid deletion period: {year}-{month}")
        with self.locks.hold(
            LockName.DATA_DELETION,
            conflicts=(LockName.BATCH_PROCESSING, LockName.OBJECTIVE_IMPORT),
        ):
            try:
                return self.records.delete(year, month, persons=persons, folders=folders)
            except Exception as error:
                self.errors.record(
                    "Data deletion failed",
                    details={"year": year, "month": month, "error": str(error)},
                    severity=Severity.ERROR,
                    category=Category.STORAGE,
                )
                raise

    # -- import -------------------------------------------------------------------

    async def start_import(self, originator_ref: str | None = None) -> ImportState:
        return await self.workflow.start(originator_ref)

    async def resume_import(self) -> ImportState | None:
        """Continue a persisted import from its last committed step."""

        return await self.workflow.resume()

    async def submit_selection(
        self,
        subset: Iterable[FoundFolder | Mapping[str, Any]],
    ) -> ImportState:
        return await self.workflow.submit_selection(subset)

    def import_state(self) -> ImportState | None:
        return self.workflow.load_state()

    # -- helpers --------------------------------------------------------------------

    def _log_execution(self, folder: str, script: str, status: str) -> None:
        if self.execution_log is None:
            return
        try:
            self.execution_log.add_execution_log(folder=folder, script=script, status=status)
        except Exception:  # noqa: BLE001
            logger.warning("Failed to write execution log for %s", folder, exc_info=True)

    def _notify(self, title: str, message: str, severity: Severity) -> None:
        try:
            self.notifier.notify(title, message, severity)
        except Exception:  # noqa: BLE001
            logger.warning("Notification %r failed", title, exc_info=True)
