"""Single-shot completion handles keyed by execution context id."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from ecm_harvest.dispatch.models import AgentReply

logger = logging.getLogger(__name__)


class CompletionRouter:
    """Routes the one reply an agent posts to the dispatcher awaiting it.

    Replies for unknown or already-settled contexts are dropped with a
    warning; the first reply wins.
    """

    def __init__(self) -> None:
        self._pending: dict[str, asyncio.Future[AgentReply]] = {}

    def register(self, context_id: str) -> asyncio.Future[AgentReply]:
        if context_id in self._pending:
            raise RuntimeError(f"Completion already registered for context {context_id}")
        future: asyncio.Future[AgentReply] = asyncio.get_running_loop().create_future()
        self._pending[context_id] = future
        return future

    def deliver(self, context_id: str, message: AgentReply | dict[str, Any]) -> bool:
        """Settle the pending completion for ``context_id``; False if nothing was waiting."""

        future = self._pending.get(context_id)
        if future is None or future.done():
            logger.warning("Dropping reply for context %s: no pending completion", context_id)
            return False
        try:
            reply = message if isinstance(message, AgentReply) else AgentReply.from_message(message)
        except (TypeError, ValueError) as error:
            reply = AgentReply.failure(f"Malformed agent reply: {error}")
        future.set_result(reply)
        return True

    def discard(self, context_id: str) -> None:
        future = self._pending.pop(context_id, None)
        if future is not None and not future.done():
            future.cancel()

    def is_pending(self, context_id: str) -> bool:
        future = self._pending.get(context_id)
        return future is not None and not future.done()

    def __len__(self) -> int:
        return len(self._pending)
