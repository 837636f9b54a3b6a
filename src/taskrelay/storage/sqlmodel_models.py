"""SQLModel ORM tables for session state storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Text
from sqlmodel import Field, SQLModel


class SessionRecordRow(SQLModel, table=True):
    __tablename__ = "session_records"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_session_records_heartbeat", "last_heartbeat"),)

    session_id: str = Field(primary_key=True)
    record_json: str = Field(sa_column=Column(Text, nullable=False))
    active_task_id: str | None = Field(default=None, index=True)
    last_heartbeat: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    version: int = Field(default=1)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
