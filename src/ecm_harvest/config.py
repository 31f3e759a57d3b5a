"""Runtime configuration for dispatch, batch runs and folder import."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

DEFAULT_SCAN_TARGETS: tuple[str, ...] = (
    "https://objective.transport.nsw.gov.au:8443/documents/fA13326375",
    "https://objective.transport.nsw.gov.au:8443/documents/fA13363616",
)

_TEMPLATE_ENV_PREFIX = "ECM_HARVEST_AGENT_COMMAND_TEMPLATE_"
_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(slots=True)
class DispatchSettings:
    """Execution context and agent settings."""

    ready_timeout_seconds: float = 60.0
    poll_interval_seconds: float = 0.5
    response_timeout_seconds: float = 300.0
    terminate_grace_seconds: float = 2.0
    workdir_root: Path = Path(".ecm_harvest_contexts")
    keep_workdirs: bool = False
    agent_command_template: str = ""
    agent_command_templates: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class ImportSettings:
    """Folder import workflow settings."""

    scan_targets: tuple[str, ...] = DEFAULT_SCAN_TARGETS
    default_script: str = "A"


@dataclass(slots=True)
class LogSettings:
    """Logging and audit trail settings."""

    level: str = "WARNING"
    max_execution_logs: int = 500
    max_error_logs: int = 1000


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".ecm_harvest.db")
    dispatch: DispatchSettings = field(default_factory=DispatchSettings)
    importer: ImportSettings = field(default_factory=ImportSettings)
    logs: LogSettings = field(default_factory=LogSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults for local runs."""

        return cls(
            db_path=db_path or Path(os.getenv("ECM_HARVEST_DB_PATH", ".ecm_harvest.db")),
            dispatch=DispatchSettings(
                ready_timeout_seconds=float(
                    os.getenv("ECM_HARVEST_READY_TIMEOUT_SECONDS", "60"),
                ),
                poll_interval_seconds=float(
                    os.getenv("ECM_HARVEST_POLL_INTERVAL_SECONDS", "0.5"),
                ),
                response_timeout_seconds=float(
                    os.getenv("ECM_HARVEST_RESPONSE_TIMEOUT_SECONDS", "300"),
                ),
                terminate_grace_seconds=float(
                    os.getenv("ECM_HARVEST_TERMINATE_GRACE_SECONDS", "2"),
                ),
                workdir_root=Path(
                    os.getenv("ECM_HARVEST_WORKDIR_ROOT", ".ecm_harvest_contexts"),
                ),
                keep_workdirs=_env_bool("ECM_HARVEST_KEEP_WORKDIRS", default=False),
                agent_command_template=os.getenv("ECM_HARVEST_AGENT_COMMAND_TEMPLATE", ""),
                agent_command_templates=_collect_command_templates(),
            ),
            importer=ImportSettings(
                scan_targets=_collect_scan_targets(),
                default_script=os.getenv("ECM_HARVEST_IMPORT_DEFAULT_SCRIPT", "A").strip(),
            ),
            logs=LogSettings(
                level=os.getenv("ECM_HARVEST_LOG_LEVEL", "WARNING").strip().upper(),
                max_execution_logs=int(os.getenv("ECM_HARVEST_MAX_EXECUTION_LOGS", "500")),
                max_error_logs=int(os.getenv("ECM_HARVEST_MAX_ERROR_LOGS", "1000")),
            ),
        )

    def validate_for_dispatch(self) -> None:
        """Raise configuration error if context timing or agent templates are invalid."""

        if self.dispatch.ready_timeout_seconds <= 0:
            raise ValueError("ECM_HARVEST_READY_TIMEOUT_SECONDS must be > 0.")
        if self.dispatch.poll_interval_seconds <= 0:
            raise ValueError("ECM_HARVEST_POLL_INTERVAL_SECONDS must be > 0.")
        if self.dispatch.response_timeout_seconds < 0:
            raise ValueError("ECM_HARVEST_RESPONSE_TIMEOUT_SECONDS must be >= 0.")
        if not self.dispatch.agent_command_template.strip() and not (
            self.dispatch.agent_command_templates
        ):
            raise ValueError(
                "An agent command template is required. "
                "Set ECM_HARVEST_AGENT_COMMAND_TEMPLATE.",
            )
        if self.logs.level not in _LOG_LEVELS:
            raise ValueError(f"Invalid ECM_HARVEST_LOG_LEVEL: {self.logs.level!r}")

    def validate_for_import(self) -> None:
        """Raise configuration error if scan targets are missing or invalid."""

        if not self.importer.scan_targets:
            raise ValueError(
                "At least one scan target is required. Set ECM_HARVEST_IMPORT_SCAN_TARGETS.",
            )
        for target in self.importer.scan_targets:
            _validate_target_url(target)
        if not self.importer.default_script:
            raise ValueError("ECM_HARVEST_IMPORT_DEFAULT_SCRIPT must not be empty.")


def _collect_scan_targets() -> tuple[str, ...]:
    raw = os.getenv("ECM_HARVEST_IMPORT_SCAN_TARGETS")
    if raw is None:
        return DEFAULT_SCAN_TARGETS
    values: list[str] = []
    seen: set[str] = set()
    for part in raw.split(","):
        normalized = part.strip()
        if not normalized or normalized in seen:
            continue
        seen.add(normalized)
        values.append(normalized)
    return tuple(values)


def _collect_command_templates() -> dict[str, str]:
    templates: dict[str, str] = {}
    for name, value in os.environ.items():
        if not name.startswith(_TEMPLATE_ENV_PREFIX) or not value.strip():
            continue
        task_type = name.removeprefix(_TEMPLATE_ENV_PREFIX)
        templates[task_type_env_key(task_type)] = value.strip()
    return templates


def task_type_env_key(task_type: str) -> str:
    """Normalize a task type the way it appears in env variable suffixes."""

    return re.sub(r"[^A-Z0-9]+", "_", task_type.strip().upper())


def _validate_target_url(value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            "Invalid scan target URL: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
