"""Severity-tagged error recording mirrored to logging and the durable store."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class Severity(str, Enum):
    """Error severity levels."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class Category(str, Enum):
    """Error categories used to group the audit trail."""

    SYSTEM = "system"
    PROCESSING = "processing"
    STORAGE = "storage"
    IMPORT = "import"


_LOG_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.ERROR: logging.ERROR,
    Severity.CRITICAL: logging.CRITICAL,
}


class ErrorSink(Protocol):
    def add_error_log(
        self,
        *,
        message: str,
        severity: str,
        category: str,
        details: dict[str, Any] | None = None,
    ) -> None: ...


class ErrorRecorder:
    """Logs every error and appends it to the audit table when a sink is attached."""

    def __init__(self, sink: ErrorSink | None = None) -> None:
        self._sink = sink

    def record(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        severity: Severity = Severity.ERROR,
        category: Category = Category.SYSTEM,
    ) -> None:
        details = details or {}
        logger.log(
            _LOG_LEVELS[severity],
            "[%s] [%s] %s %s",
            severity.value.upper(),
            category.value,
            message,
            details,
            extra={"severity": severity.value, "category": category.value},
        )
        if self._sink is None:
            return
        try:
            self._sink.add_error_log(
                message=message,
                severity=severity.value,
                category=category.value,
                details=details,
            )
        except Exception:  # noqa: BLE001
            logger.warning("Failed to persist error record: %s", message, exc_info=True)
