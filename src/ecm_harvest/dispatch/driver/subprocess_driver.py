"""Context driver that runs the extraction agent as a child process."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import shlex
import uuid
from dataclasses import dataclass
from pathlib import Path

from ecm_harvest.dispatch.completion import CompletionRouter
from ecm_harvest.dispatch.contracts import ContextManifest, load_json, write_task
from ecm_harvest.dispatch.models import AgentDescriptor, ExecutionContext, TaskDescriptor
from ecm_harvest.dispatch.sanitization import sanitize_preview
from ecm_harvest.dispatch.workdir import ContextWorkdirManager
from ecm_harvest.errors import ContextUnavailable, DriverError
from ecm_harvest.storage.common import utc_now

logger = logging.getLogger(__name__)

_PLACEHOLDERS = ("target", "task_type", "task_file", "reply_file")


@dataclass(slots=True)
class _ContextRuntime:
    manifest: ContextManifest
    agent: AgentDescriptor | None = None
    process: asyncio.subprocess.Process | None = None
    watcher: asyncio.Task[None] | None = None


class SubprocessContextDriver:
    """A context is a workdir; the agent is a child process launched per task.

    The child reads ``{task_file}`` and writes its single reply to
    ``{reply_file}``. When it exits, the reply (or a failure carrying the exit
    code) is posted to the router.
    """

    def __init__(
        self,
        *,
        router: CompletionRouter,
        workdir_root: Path,
        keep_workdirs: bool = False,
        terminate_grace_seconds: float = 2.0,
    ) -> None:
        self.router = router
        self.workdirs = ContextWorkdirManager(workdir_root, keep=keep_workdirs)
        self.terminate_grace_seconds = terminate_grace_seconds
        self._contexts: dict[str, _ContextRuntime] = {}

    async def open(self, target: str) -> ExecutionContext:
        context_id = uuid.uuid4().hex
        try:
            manifest = self.workdirs.materialize(context_id=context_id, target=target)
        except OSError as error:
            raise DriverError(f"Cannot create context workdir: {error}", transient=True) from error
        self._contexts[context_id] = _ContextRuntime(manifest=manifest)
        return ExecutionContext(context_id=context_id, target=target, created_at=utc_now())

    async def is_ready(self, context: ExecutionContext) -> bool:
        if context.context_id not in self._contexts or not self.workdirs.exists(
            context.context_id,
        ):
            raise ContextUnavailable(f"Context {context.context_id} is gone")
        return True

    async def inject_agent(self, context: ExecutionContext, agent: AgentDescriptor) -> None:
        runtime = self._runtime(context)
        if not agent.command_template.strip():
            raise DriverError(f"Agent {agent.name!r} has an empty command template")
        runtime.agent = agent

    async def send_task(self, context: ExecutionContext, descriptor: TaskDescriptor) -> None:
        runtime = self._runtime(context)
        if runtime.agent is None:
            raise DriverError(f"No agent injected into context {context.context_id}")
        manifest = runtime.manifest
        try:
            write_task(Path(manifest.task_path), descriptor)
        except OSError as error:
            raise DriverError(f"Cannot write task file: {error}", transient=True) from error
        argv = build_run_args(
            command_template=runtime.agent.command_template,
            target=descriptor.target,
            task_type=descriptor.task,
            task_file=Path(manifest.task_path),
            reply_file=Path(manifest.reply_path),
        )

        env = os.environ.copy()
        env["ECM_HARVEST_CONTEXT_ID"] = context.context_id
        env["ECM_HARVEST_TARGET"] = descriptor.target

        try:
            with (
                Path(manifest.stdout_path).open("wb") as stdout_handle,
                Path(manifest.stderr_path).open("wb") as stderr_handle,
            ):
                process = await asyncio.create_subprocess_exec(
                    *argv,
                    env=env,
                    cwd=manifest.workdir,
                    stdout=stdout_handle,
                    stderr=stderr_handle,
                )
        except FileNotFoundError as error:
            raise DriverError(f"Agent command not found: {argv[0]}") from error
        except OSError as error:
            raise DriverError(f"Agent failed to start: {error}", transient=True) from error

        runtime.process = process
        runtime.watcher = asyncio.create_task(
            self._watch(context.context_id, runtime.manifest, process),
        )

    async def close(self, context: ExecutionContext) -> None:
        runtime = self._contexts.pop(context.context_id, None)
        if runtime is None:
            return
        try:
            if runtime.process is not None and runtime.process.returncode is None:
                await _terminate_process(runtime.process, self.terminate_grace_seconds)
            if runtime.watcher is not None and not runtime.watcher.done():
                runtime.watcher.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await runtime.watcher
        finally:
            self.workdirs.remove(context.context_id)

    def _runtime(self, context: ExecutionContext) -> _ContextRuntime:
        runtime = self._contexts.get(context.context_id)
        if runtime is None:
            raise ContextUnavailable(f"Context {context.context_id} is gone")
        return runtime

    async def _watch(
        self,
        context_id: str,
        manifest: ContextManifest,
        process: asyncio.subprocess.Process,
    ) -> None:
        returncode = await process.wait()
        reply_path = Path(manifest.reply_path)
        if reply_path.exists():
            try:
                message = load_json(reply_path)
            except (OSError, TypeError, json.JSONDecodeError) as error:
                message = {"success": False, "error": f"Unreadable agent reply: {error}"}
            self.router.deliver(context_id, message)
            return

        try:
            stderr_preview = sanitize_preview(_read_text(Path(manifest.stderr_path)))
        except OSError as read_error:
            logger.warning("Context %s: cannot read agent stderr: %s", context_id, read_error)
            stderr_preview = ""
        error = f"Agent exited with code {returncode} without a reply"
        if stderr_preview:
            error = f"{error}: {stderr_preview}"
        logger.debug("Context %s: %s", context_id, error)
        self.router.deliver(context_id, {"success": False, "error": error})


def build_run_args(
    *,
    command_template: str,
    target: str,
    task_type: str,
    task_file: Path,
    reply_file: Path,
) -> list[str]:
    """Render a command template into argv with shell-quoted placeholder values."""

    stripped = command_template.strip()
    if not stripped:
        raise DriverError("Agent command template is empty.")
    if "{task_file}" not in stripped:
        raise DriverError("Agent command template must include {task_file}.")
    try:
        rendered = stripped.format(
            target=shlex.quote(target),
            task_type=shlex.quote(task_type),
            task_file=shlex.quote(str(task_file)),
            reply_file=shlex.quote(str(reply_file)),
        )
    except (KeyError, IndexError) as error:
        raise DriverError(
            f"Unsupported command template placeholder: {error}. "
            f"Use {', '.join('{' + name + '}' for name in _PLACEHOLDERS)}.",
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise DriverError("Agent command template rendered empty command.")
    return argv


async def _terminate_process(process: asyncio.subprocess.Process, grace_seconds: float) -> None:
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=grace_seconds)
    except TimeoutError:
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()


def _read_text(path: Path) -> str:
    if not path.exists():
        return ""
    return path.read_text("utf-8", errors="replace")
