"""Driver interface for ephemeral execution contexts."""

from __future__ import annotations

from typing import Protocol

from ecm_harvest.dispatch.models import AgentDescriptor, ExecutionContext, TaskDescriptor


class ContextDriver(Protocol):
    """Capability that creates, feeds and destroys execution contexts.

    A driver posts the agent's single reply to the ``CompletionRouter`` it
    was built with, addressed by ``context.context_id``.
    """

    async def open(self, target: str) -> ExecutionContext:
        """Create a context that starts loading ``target``."""

    async def is_ready(self, context: ExecutionContext) -> bool:
        """Report readiness; raise ``ContextUnavailable`` if the context is gone."""

    async def inject_agent(self, context: ExecutionContext, agent: AgentDescriptor) -> None:
        """Install the extraction agent into the context."""

    async def send_task(self, context: ExecutionContext, descriptor: TaskDescriptor) -> None:
        """Hand the task descriptor to the injected agent."""

    async def close(self, context: ExecutionContext) -> None:
        """Destroy the context and everything running inside it."""
