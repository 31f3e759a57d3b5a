"""File-based contracts exchanged with agents running in a context workdir."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from ecm_harvest.dispatch.models import TaskDescriptor

CONTRACT_VERSION = 1


@dataclass(slots=True)
class ContextManifest:
    """Layout of one context workdir, written to ``meta/context.json``."""

    contract_version: int
    context_id: str
    target: str
    workdir: str
    task_path: str
    reply_path: str
    stdout_path: str
    stderr_path: str


def write_json(path: Path, payload: dict[str, Any]) -> None:
    """Persist JSON payload using deterministic formatting."""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True), "utf-8")


def load_json(path: Path) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return payload


def write_manifest(path: Path, manifest: ContextManifest) -> None:
    write_json(path, asdict(manifest))


def read_manifest(path: Path) -> ContextManifest:
    payload = load_json(path)
    return ContextManifest(
        contract_version=int(payload["contract_version"]),
        context_id=str(payload["context_id"]),
        target=str(payload["target"]),
        workdir=str(payload["workdir"]),
        task_path=str(payload["task_path"]),
        reply_path=str(payload["reply_path"]),
        stdout_path=str(payload["stdout_path"]),
        stderr_path=str(payload["stderr_path"]),
    )


def write_task(path: Path, descriptor: TaskDescriptor) -> None:
    write_json(path, descriptor.to_dict())


def read_task(path: Path) -> dict[str, Any]:
    """Load a task descriptor written by ``write_task``."""

    payload = load_json(path)
    for key in ("context_id", "task", "target"):
        if not isinstance(payload.get(key), str):
            raise ValueError(f"Task file {path} is missing string field {key!r}")
    return payload


def write_reply(path: Path, reply: dict[str, Any]) -> None:
    """Write the single agent reply; the file must not exist yet."""

    if path.exists():
        raise FileExistsError(f"Agent reply already written: {path}")
    write_json(path, reply)
