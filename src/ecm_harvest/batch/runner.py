"""Sequential work-queue runner over the per-item context manager."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any, Protocol

from ecm_harvest.dispatch.context_manager import ContextManager
from ecm_harvest.dispatch.models import (
    ItemOutcome,
    RunSummary,
    TaskFailure,
    TaskResult,
    TaskSuccess,
    WorkItem,
)
from ecm_harvest.dispatch.routing import AgentCatalog
from ecm_harvest.error_log import Category, ErrorRecorder, Severity
from ecm_harvest.events import EventCallback, ItemProgressEvent, RunCompletedEvent, emit_event

logger = logging.getLogger(__name__)

STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"


class PayloadConsumer(Protocol):
    def persist(self, payload: Any, label: str, year: int, month: int) -> None: ...


class ExecutionLogSink(Protocol):
    def add_execution_log(self, *, folder: str, script: str, status: str) -> None: ...


class CancelFlag(Protocol):
    def is_set(self) -> bool: ...


class WorkQueueRunner:
    """Runs work items one after another; one item's failure never stops the run."""

    def __init__(
        self,
        *,
        context_manager: ContextManager,
        agents: AgentCatalog,
        consumer: PayloadConsumer,
        execution_log: ExecutionLogSink | None = None,
        errors: ErrorRecorder | None = None,
    ) -> None:
        self.context_manager = context_manager
        self.agents = agents
        self.consumer = consumer
        self.execution_log = execution_log
        self.errors = errors or ErrorRecorder()

    async def run(
        self,
        items: Sequence[WorkItem],
        cancel_flag: CancelFlag | None = None,
        on_event: EventCallback | None = None,
    ) -> RunSummary:
        summary = RunSummary(total=len(items))
        logger.info("Batch run started with %s items", summary.total)

        for index, item in enumerate(items):
            if cancel_flag is not None and cancel_flag.is_set():
                summary.cancelled = True
                logger.info("Batch run cancelled before item %s/%s", index + 1, summary.total)
                break

            result = await self._process(item)
            status = STATUS_SUCCESS if result.succeeded else STATUS_FAILED
            if result.succeeded:
                summary.successful_count += 1
            summary.per_item.append(
                ItemOutcome(index=index, item=item, result=result, status=status),
            )
            self._record_outcome(item, result, status)
            emit_event(
                on_event,
                ItemProgressEvent(
                    index=index,
                    total=summary.total,
                    successful_count=summary.successful_count,
                    label=item.label,
                    status=status,
                ),
            )

        logger.info(
            "Batch run finished: %s/%s succeeded, %s failed%s",
            summary.successful_count,
            summary.total,
            summary.failed_count,
            " (cancelled)" if summary.cancelled else "",
        )
        emit_event(on_event, RunCompletedEvent(summary=summary))
        return summary

    async def _process(self, item: WorkItem) -> TaskResult:
        year, month = item.year, item.month
        if year is None or month is None or not item.has_valid_period():
            return TaskFailure(
                reason=f"Invalid year/month for {item.label}: {item.year}-{item.month}",
                failure_code="invalid_context",
            )
        try:
            agent = self.agents.resolve(item.task_type)
        except ValueError as error:
            return TaskFailure(reason=str(error), failure_code="agent_unavailable")

        try:
            result = await self.context_manager.dispatch(item, agent)
        except Exception as error:  # noqa: BLE001
            logger.exception("Unexpected error while dispatching %s", item.label)
            return TaskFailure(reason=str(error) or type(error).__name__, failure_code="unexpected")

        if not isinstance(result, TaskSuccess):
            return result
        try:
            self.consumer.persist(result.payload, item.label, year, month)
        except Exception as error:  # noqa: BLE001
            return TaskFailure(
                reason=f"Failed to store payload: {error}",
                failure_code="persist_failed",
            )
        return result

    def _record_outcome(self, item: WorkItem, result: TaskResult, status: str) -> None:
        if isinstance(result, TaskFailure):
            self.errors.record(
                f"Item failed: {item.label}",
                details={
                    "target": item.target,
                    "reason": result.reason,
                    "failure_code": result.failure_code,
                },
                severity=Severity.WARNING,
                category=Category.PROCESSING,
            )
        if self.execution_log is None:
            return
        try:
            self.execution_log.add_execution_log(
                folder=item.label,
                script=item.task_type,
                status=status,
            )
        except Exception:  # noqa: BLE001
            logger.warning("Failed to write execution log for %s", item.label, exc_info=True)
