"""Durable key-value store with execution and error audit trails."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from sqlalchemy import delete as sa_delete
from sqlmodel import Session, col, select

from ecm_harvest.storage.alembic_runner import upgrade_head
from ecm_harvest.storage.common import build_sqlite_engine, utc_now
from ecm_harvest.storage.sqlmodel_models import ErrorLogEntry, ExecutionLogEntry, KvEntry


@dataclass(slots=True)
class ExecutionLogView:
    """One execution log line: which folder ran, with which script, and how it ended."""

    log_id: int
    folder: str
    script: str
    status: str
    created_at: datetime


@dataclass(slots=True)
class ErrorLogView:
    """Stored error record with severity tag."""

    log_id: int
    message: str
    severity: str
    category: str
    details: dict[str, Any]
    created_at: datetime


class SQLiteStore:
    """Durable store facade backed by SQLModel + SQLite."""

    def __init__(
        self,
        db_path: Path,
        *,
        sqlite_busy_timeout_ms: int = 5_000,
        max_execution_logs: int = 500,
        max_error_logs: int = 1000,
    ) -> None:
        self.db_path = db_path
        self.max_execution_logs = max_execution_logs
        self.max_error_logs = max_error_logs
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # -- key-value ------------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        with Session(self.engine) as session:
            row = session.get(KvEntry, key)
            if row is None:
                return default
            return json.loads(row.value_json)

    def set(self, key: str, value: Any) -> None:
        encoded = json.dumps(value, ensure_ascii=False, sort_keys=True)
        with Session(self.engine) as session:
            row = session.get(KvEntry, key)
            if row is None:
                session.add(KvEntry(key=key, value_json=encoded, updated_at=utc_now()))
            else:
                row.value_json = encoded
                row.updated_at = utc_now()
                session.add(row)
            session.commit()

    def remove(self, key: str) -> None:
        with Session(self.engine) as session:
            session.exec(sa_delete(KvEntry).where(col(KvEntry.key) == key))
            session.commit()

    # -- execution log --------------------------------------------------------

    def add_execution_log(self, *, folder: str, script: str, status: str) -> None:
        """Append one execution log line and prune the oldest beyond the cap."""

        with Session(self.engine) as session:
            session.add(
                ExecutionLogEntry(
                    folder=folder,
                    script=script,
                    status=status,
                    created_at=utc_now(),
                ),
            )
            session.commit()
            _prune_oldest(session, ExecutionLogEntry, keep=self.max_execution_logs)

    def list_execution_logs(self, *, limit: int = 50) -> list[ExecutionLogView]:
        """Newest first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(ExecutionLogEntry)
                .order_by(col(ExecutionLogEntry.id).desc())
                .limit(limit),
            ).all()
            return [
                ExecutionLogView(
                    log_id=row.id or 0,
                    folder=row.folder,
                    script=row.script,
                    status=row.status,
                    created_at=row.created_at,
                )
                for row in rows
            ]

    # -- error log ------------------------------------------------------------

    def add_error_log(
        self,
        *,
        message: str,
        severity: str,
        category: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        with Session(self.engine) as session:
            session.add(
                ErrorLogEntry(
                    message=message,
                    severity=severity,
                    category=category,
                    details_json=json.dumps(details or {}, ensure_ascii=False, default=str),
                    created_at=utc_now(),
                ),
            )
            session.commit()
            _prune_oldest(session, ErrorLogEntry, keep=self.max_error_logs)

    def list_error_logs(
        self,
        *,
        limit: int = 50,
        severity: str | None = None,
    ) -> list[ErrorLogView]:
        with Session(self.engine) as session:
            query = select(ErrorLogEntry)
            if severity is not None:
                query = query.where(ErrorLogEntry.severity == severity)
            rows = session.exec(query.order_by(col(ErrorLogEntry.id).desc()).limit(limit)).all()
            return [
                ErrorLogView(
                    log_id=row.id or 0,
                    message=row.message,
                    severity=row.severity,
                    category=row.category,
                    details=json.loads(row.details_json or "{}"),
                    created_at=row.created_at,
                )
                for row in rows
            ]


def _prune_oldest(
    session: Session,
    model: type[ExecutionLogEntry] | type[ErrorLogEntry],
    *,
    keep: int,
) -> None:
    if keep <= 0:
        return
    cutoff = session.exec(
        select(model.id).order_by(col(model.id).desc()).offset(keep - 1).limit(1),
    ).first()
    if cutoff is None:
        return
    session.exec(sa_delete(model).where(col(model.id) < cutoff))
    session.commit()
