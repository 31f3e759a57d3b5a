"""Domain models for per-item dispatch and batch runs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

TASK_DISCOVER = "discover"
TASK_DISCOVER_CHILDREN = "discover-children"


@dataclass(slots=True, frozen=True)
class WorkItem:
    """One schedulable unit of work."""

    target: str
    label: str
    task_type: str
    year: int | None = None
    month: int | None = None
    ack_required: bool = False
    parent_label: str | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> WorkItem:
        target = raw.get("target") or raw.get("url")
        if not isinstance(target, str) or not target.strip():
            raise ValueError("work item target must be a non-empty string")
        task_type = raw.get("task_type") or raw.get("script")
        if not isinstance(task_type, str) or not task_type.strip():
            raise ValueError("work item task_type must be a non-empty string")
        label = raw.get("label") or raw.get("name") or target
        return cls(
            target=target.strip(),
            label=str(label),
            task_type=task_type.strip(),
            year=_optional_int(raw.get("year"), "year"),
            month=_optional_int(raw.get("month"), "month"),
            ack_required=bool(raw.get("ack_required", False)),
            parent_label=raw.get("parent_label"),
        )

    def has_valid_period(self) -> bool:
        return (
            self.year is not None
            and self.month is not None
            and 2000 <= self.year <= 2100
            and 1 <= self.month <= 12
        )


@dataclass(slots=True)
class ExecutionContext:
    """Opaque handle to one ephemeral sandbox created by a driver."""

    context_id: str
    target: str
    created_at: datetime
    agent_injected: bool = False


@dataclass(slots=True, frozen=True)
class AgentDescriptor:
    """How to launch the extraction agent for a task type."""

    name: str
    command_template: str


@dataclass(slots=True, frozen=True)
class TaskDescriptor:
    """Task message sent into a context."""

    context_id: str
    task: str
    target: str
    label: str
    parent_label: str | None = None
    year: int | None = None
    month: int | None = None
    ack_required: bool = False

    @classmethod
    def for_item(cls, item: WorkItem, *, context_id: str) -> TaskDescriptor:
        return cls(
            context_id=context_id,
            task=item.task_type,
            target=item.target,
            label=item.label,
            parent_label=item.parent_label,
            year=item.year,
            month=item.month,
            ack_required=item.ack_required,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "context_id": self.context_id,
            "task": self.task,
            "target": self.target,
            "label": self.label,
            "parent_label": self.parent_label,
            "year": self.year,
            "month": self.month,
            "ack_required": self.ack_required,
        }


@dataclass(slots=True, frozen=True)
class AgentReply:
    """The single message an agent posts back to its context."""

    success: bool
    payload: Any = None
    error: str | None = None
    label: str | None = None

    @classmethod
    def from_message(cls, message: dict[str, Any]) -> AgentReply:
        if not isinstance(message, dict):
            raise TypeError("agent reply must be a JSON object")
        success = message.get("success")
        if not isinstance(success, bool):
            raise ValueError("agent reply must carry a boolean 'success'")
        error = message.get("error")
        label = message.get("label") or message.get("folder_name")
        return cls(
            success=success,
            payload=message.get("payload"),
            error=str(error) if error is not None else None,
            label=str(label) if label else None,
        )

    @classmethod
    def failure(cls, error: str) -> AgentReply:
        return cls(success=False, error=error)


@dataclass(slots=True, frozen=True)
class TaskSuccess:
    payload: Any
    source_label: str

    @property
    def succeeded(self) -> bool:
        return True


@dataclass(slots=True, frozen=True)
class TaskFailure:
    reason: str
    failure_code: str = "dispatch_error"

    @property
    def succeeded(self) -> bool:
        return False


TaskResult = TaskSuccess | TaskFailure


@dataclass(slots=True, frozen=True)
class ItemOutcome:
    """Per-item entry of a run summary."""

    index: int
    item: WorkItem
    result: TaskResult
    status: str


@dataclass(slots=True)
class RunSummary:
    """Aggregate counters for one batch run."""

    total: int
    successful_count: int = 0
    per_item: list[ItemOutcome] = field(default_factory=list)
    cancelled: bool = False

    @property
    def failed_count(self) -> int:
        return len(self.per_item) - self.successful_count


def _optional_int(value: Any, name: str) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"work item {name} must be an integer")
    return value
