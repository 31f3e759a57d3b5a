"""Shared test fixtures."""

from __future__ import annotations

import sys
from collections.abc import Callable
from itertools import count
from typing import Any

import pytest

from ecm_harvest.config import DispatchSettings, ImportSettings, Settings
from ecm_harvest.dispatch.completion import CompletionRouter
from ecm_harvest.dispatch.context_manager import ContextManager
from ecm_harvest.dispatch.models import (
    AgentDescriptor,
    ExecutionContext,
    TaskDescriptor,
)
from ecm_harvest.errors import ContextUnavailable, DriverError
from ecm_harvest.storage.common import utc_now

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m ecm_harvest.dispatch.driver.echo_agent "
    "--task-file {task_file} --reply-file {reply_file}"
)

SCAN_TARGETS = (
    "https://ecm.example.com/documents/types-a",
    "https://ecm.example.com/documents/types-b",
    "https://ecm.example.com/documents/types-c",
)

Reply = dict[str, Any] | Callable[[TaskDescriptor], dict[str, Any] | None] | None


class FakeDriver:
    """In-process context driver answering from a reply table keyed by target.

    A reply of ``None`` means the agent never answers. Replies are delivered
    synchronously inside ``send_task``, before ``dispatch`` starts waiting.
    """

    def __init__(
        self,
        router: CompletionRouter,
        replies: dict[str, Reply] | None = None,
        *,
        default_reply: Reply = None,
        never_ready: tuple[str, ...] = (),
        vanishing: tuple[str, ...] = (),
        failing_open: tuple[str, ...] = (),
        failing_close: bool = False,
    ) -> None:
        self.router = router
        self.replies = dict(replies or {})
        self.default_reply = default_reply
        self.never_ready = never_ready
        self.vanishing = vanishing
        self.failing_open = failing_open
        self.failing_close = failing_close
        self.opened: list[ExecutionContext] = []
        self.closed: list[str] = []
        self.injected: list[AgentDescriptor] = []
        self.sent: list[TaskDescriptor] = []
        self._ids = count(1)

    @property
    def open_context_ids(self) -> set[str]:
        return {context.context_id for context in self.opened} - set(self.closed)

    @property
    def targets_sent(self) -> list[str]:
        return [descriptor.target for descriptor in self.sent]

    async def open(self, target: str) -> ExecutionContext:
        if target in self.failing_open:
            raise DriverError(f"cannot open {target}")
        context = ExecutionContext(
            context_id=f"ctx-{next(self._ids)}",
            target=target,
            created_at=utc_now(),
        )
        self.opened.append(context)
        return context

    async def is_ready(self, context: ExecutionContext) -> bool:
        if context.target in self.vanishing:
            raise ContextUnavailable(f"context {context.context_id} closed while loading")
        return context.target not in self.never_ready

    async def inject_agent(self, context: ExecutionContext, agent: AgentDescriptor) -> None:
        self.injected.append(agent)

    async def send_task(self, context: ExecutionContext, descriptor: TaskDescriptor) -> None:
        self.sent.append(descriptor)
        reply = self.replies.get(descriptor.target, self.default_reply)
        if callable(reply):
            reply = reply(descriptor)
        if reply is None:
            return
        self.router.deliver(context.context_id, reply)

    async def close(self, context: ExecutionContext) -> None:
        self.closed.append(context.context_id)
        if self.failing_close:
            raise RuntimeError("close failed")


def ok(payload: Any = None, label: str | None = None) -> dict[str, Any]:
    reply: dict[str, Any] = {"success": True, "payload": payload}
    if label is not None:
        reply["label"] = label
    return reply


def failed(error: str) -> dict[str, Any]:
    return {"success": False, "error": error}


def build_manager(driver: FakeDriver, **overrides: Any) -> ContextManager:
    options: dict[str, Any] = {
        "ready_timeout_seconds": 0.2,
        "poll_interval_seconds": 0.01,
        "response_timeout_seconds": 0.5,
    }
    options.update(overrides)
    return ContextManager(driver=driver, router=driver.router, **options)


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return Settings(
        db_path=tmp_path / "harvest.db",
        dispatch=DispatchSettings(
            ready_timeout_seconds=0.2,
            poll_interval_seconds=0.01,
            response_timeout_seconds=0.5,
            workdir_root=tmp_path / "contexts",
            agent_command_template="agent --task {task_file}",
        ),
        importer=ImportSettings(scan_targets=SCAN_TARGETS),
    )
