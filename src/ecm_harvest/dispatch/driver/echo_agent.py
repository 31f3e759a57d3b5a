"""Local demo agent for subprocess driver integration tests.

Replies from a JSON fixtures file (``ECM_HARVEST_ECHO_FIXTURES``) keyed by
target. A fixture entry is written verbatim as the reply; an entry with
``"exit_code"`` makes the agent exit with that code without replying, and
``"delay_seconds"`` sleeps first. Targets without a fixture get a success
reply echoing the task.
"""

from __future__ import annotations

import argparse
import os
import sys
import time
from pathlib import Path
from typing import Any

from ecm_harvest.dispatch.contracts import load_json, read_task, write_reply


def main(argv: list[str] | None = None) -> int:
    """Answer one task deterministically."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--task-file", required=True)
    parser.add_argument("--reply-file", required=True)
    args = parser.parse_args(argv)

    task = read_task(Path(args.task_file))
    fixture = _load_fixtures().get(task["target"])

    if fixture is None:
        write_reply(Path(args.reply_file), _default_reply(task))
        return 0

    fixture = dict(fixture)
    delay = float(fixture.pop("delay_seconds", 0) or 0)
    if delay > 0:
        time.sleep(delay)
    exit_code = fixture.pop("exit_code", None)
    if exit_code is not None:
        sys.stderr.write(f"echo_agent: forced exit {exit_code} for {task['target']}\n")
        return int(exit_code)
    write_reply(Path(args.reply_file), fixture)
    return 0


def _load_fixtures() -> dict[str, Any]:
    raw_path = os.getenv("ECM_HARVEST_ECHO_FIXTURES", "").strip()
    if not raw_path:
        return {}
    return load_json(Path(raw_path))


def _default_reply(task: dict[str, Any]) -> dict[str, Any]:
    return {
        "success": True,
        "label": task.get("label"),
        "payload": {
            "task": task["task"],
            "target": task["target"],
            "parent_label": task.get("parent_label"),
        },
    }


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
