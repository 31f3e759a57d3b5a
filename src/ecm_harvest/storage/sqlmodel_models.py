"""SQLModel ORM tables for the durable store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Text
from sqlmodel import Field, SQLModel


class KvEntry(SQLModel, table=True):
    __tablename__ = "kv_entries"  # type: ignore[bad-override]

    key: str = Field(primary_key=True)
    value_json: str = Field(sa_column=Column(Text, nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ExecutionLogEntry(SQLModel, table=True):
    __tablename__ = "execution_logs"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    folder: str = Field(index=True)
    script: str
    status: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )


class ErrorLogEntry(SQLModel, table=True):
    __tablename__ = "error_logs"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    message: str = Field(sa_column=Column(Text, nullable=False))
    severity: str = Field(index=True)
    category: str = Field(index=True)
    details_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )
