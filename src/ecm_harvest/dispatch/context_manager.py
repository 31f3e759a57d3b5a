"""Open, dispatch, await and close one execution context per work item."""

from __future__ import annotations

import asyncio
import logging

from ecm_harvest.dispatch.completion import CompletionRouter
from ecm_harvest.dispatch.driver.base import ContextDriver
from ecm_harvest.dispatch.models import (
    AgentDescriptor,
    AgentReply,
    ExecutionContext,
    TaskDescriptor,
    TaskFailure,
    TaskResult,
    TaskSuccess,
    WorkItem,
)
from ecm_harvest.errors import (
    AgentReportedFailure,
    ContextLoadTimeout,
    DispatchError,
    ResponseTimeout,
)

logger = logging.getLogger(__name__)


class ContextManager:
    """Runs one work item inside a freshly opened context and always closes it.

    Every call creates exactly one context and registers exactly one
    completion handle; both are gone when ``dispatch`` returns or raises.
    """

    def __init__(
        self,
        *,
        driver: ContextDriver,
        router: CompletionRouter,
        ready_timeout_seconds: float = 60.0,
        poll_interval_seconds: float = 0.5,
        response_timeout_seconds: float | None = 300.0,
    ) -> None:
        self.driver = driver
        self.router = router
        self.ready_timeout_seconds = ready_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.response_timeout_seconds = response_timeout_seconds or None

    async def dispatch(
        self,
        item: WorkItem,
        agent: AgentDescriptor,
        ready_timeout: float | None = None,
    ) -> TaskResult:
        """Execute ``item`` with ``agent`` and return its single result."""

        context: ExecutionContext | None = None
        try:
            context = await self.driver.open(item.target)
            logger.debug("Context %s opened for %s", context.context_id, item.target)
            await self._wait_until_ready(
                context,
                ready_timeout if ready_timeout is not None else self.ready_timeout_seconds,
            )
            completion = self.router.register(context.context_id)
            await self.driver.inject_agent(context, agent)
            context.agent_injected = True
            await self.driver.send_task(
                context,
                TaskDescriptor.for_item(item, context_id=context.context_id),
            )
            reply = await self._await_reply(context, completion)
            return _reply_to_result(reply, item=item)
        except DispatchError as error:
            logger.warning("Dispatch failed for %s (%s): %s", item.label, item.target, error)
            return TaskFailure(reason=str(error), failure_code=error.code)
        finally:
            if context is not None:
                self.router.discard(context.context_id)
                await self._close_quietly(context)

    async def _wait_until_ready(self, context: ExecutionContext, timeout: float) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            if await self.driver.is_ready(context):
                return
            if loop.time() >= deadline:
                raise ContextLoadTimeout(
                    f"Context {context.context_id} timed out loading {context.target}",
                )
            await asyncio.sleep(self.poll_interval_seconds)

    async def _await_reply(
        self,
        context: ExecutionContext,
        completion: asyncio.Future[AgentReply],
    ) -> AgentReply:
        if self.response_timeout_seconds is None:
            return await completion
        try:
            return await asyncio.wait_for(completion, timeout=self.response_timeout_seconds)
        except TimeoutError as error:
            raise ResponseTimeout(
                f"No reply from agent in context {context.context_id} "
                f"after {self.response_timeout_seconds:g}s",
            ) from error

    async def _close_quietly(self, context: ExecutionContext) -> None:
        try:
            await self.driver.close(context)
            logger.debug("Context %s closed", context.context_id)
        except Exception:  # noqa: BLE001
            logger.warning("Failed to close context %s", context.context_id, exc_info=True)


def _reply_to_result(reply: AgentReply, *, item: WorkItem) -> TaskResult:
    if not reply.success:
        raise AgentReportedFailure(reply.error or "Agent reported failure without details")
    return TaskSuccess(payload=reply.payload, source_label=reply.label or item.label)
