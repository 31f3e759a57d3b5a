"""Workdir materialization for subprocess-backed execution contexts."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from ecm_harvest.dispatch.contracts import CONTRACT_VERSION, ContextManifest, write_manifest

logger = logging.getLogger(__name__)


class ContextWorkdirManager:
    """Creates and removes the deterministic per-context directory layout."""

    def __init__(self, root_dir: Path, *, keep: bool = False) -> None:
        self.root_dir = root_dir.resolve()
        self.keep = keep

    def manifest_path(self, context_id: str) -> Path:
        return self.root_dir / context_id / "meta" / "context.json"

    def materialize(self, *, context_id: str, target: str) -> ContextManifest:
        base_dir = self.root_dir / context_id
        input_dir = base_dir / "input"
        output_dir = base_dir / "output"
        meta_dir = base_dir / "meta"
        input_dir.mkdir(parents=True, exist_ok=True)
        output_dir.mkdir(parents=True, exist_ok=True)
        meta_dir.mkdir(parents=True, exist_ok=True)

        manifest = ContextManifest(
            contract_version=CONTRACT_VERSION,
            context_id=context_id,
            target=target,
            workdir=str(base_dir),
            task_path=str(input_dir / "task.json"),
            reply_path=str(output_dir / "agent_reply.json"),
            stdout_path=str(output_dir / "agent_stdout.log"),
            stderr_path=str(output_dir / "agent_stderr.log"),
        )
        write_manifest(meta_dir / "context.json", manifest)
        return manifest

    def exists(self, context_id: str) -> bool:
        return self.manifest_path(context_id).exists()

    def remove(self, context_id: str) -> None:
        if self.keep:
            logger.debug("Keeping workdir for context %s", context_id)
            return
        shutil.rmtree(self.root_dir / context_id, ignore_errors=True)
