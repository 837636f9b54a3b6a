"""Persistence backends for session records."""

from __future__ import annotations

import copy
import json
import threading
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, col, select

from taskrelay.orchestrator.errors import StateBackendError
from taskrelay.storage.alembic_runner import upgrade_head
from taskrelay.storage.common import (
    build_sqlite_engine,
    from_iso,
    to_db_datetime,
    utc_now,
)
from taskrelay.storage.sqlmodel_models import SessionRecordRow

SessionRecord = dict[str, Any]
RecordMutator = Callable[[SessionRecord | None], SessionRecord | None]

_MAX_UPDATE_RETRIES = 20


class StateBackend(Protocol):
    """Durable key-value storage for session records."""

    def load(self, session_id: str) -> SessionRecord | None:
        """Return the stored record or None when the session does not exist."""

    def save(self, session_id: str, record: SessionRecord) -> None:
        """Store the full record, replacing any previous version."""

    def update(self, session_id: str, mutate: RecordMutator) -> SessionRecord | None:
        """Atomically read, mutate and write one record.

        ``mutate`` receives the current record (or None) and returns the new
        record, or None to delete it. The stored result is returned.
        """

    def delete(self, session_id: str) -> None:
        """Remove the record if it exists."""

    def list_session_ids(self) -> list[str]:
        """Return ids of all stored sessions."""


class InMemoryStateBackend:
    """Process-local backend used for tests and degraded runs."""

    def __init__(self) -> None:
        self._records: dict[str, SessionRecord] = {}
        self._lock = threading.Lock()

    def load(self, session_id: str) -> SessionRecord | None:
        with self._lock:
            record = self._records.get(session_id)
            return copy.deepcopy(record) if record is not None else None

    def save(self, session_id: str, record: SessionRecord) -> None:
        with self._lock:
            self._records[session_id] = copy.deepcopy(record)

    def update(self, session_id: str, mutate: RecordMutator) -> SessionRecord | None:
        with self._lock:
            current = self._records.get(session_id)
            updated = mutate(copy.deepcopy(current) if current is not None else None)
            if updated is None:
                self._records.pop(session_id, None)
                return None
            self._records[session_id] = copy.deepcopy(updated)
            return copy.deepcopy(updated)

    def delete(self, session_id: str) -> None:
        with self._lock:
            self._records.pop(session_id, None)

    def list_session_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._records)


class SqliteStateBackend:
    """Session record persistence backed by SQLModel + SQLite.

    Each session is one row holding the JSON record plus a ``version`` used for
    optimistic read-modify-write. Readers never observe a partially written
    record because every write replaces the row inside one transaction.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        try:
            upgrade_head(self.db_path)
        except (SQLAlchemyError, OSError) as error:
            raise StateBackendError(f"Failed to initialize state schema: {error}") from error

    def load(self, session_id: str) -> SessionRecord | None:
        try:
            with Session(self.engine) as session:
                row = session.exec(
                    select(SessionRecordRow).where(SessionRecordRow.session_id == session_id),
                ).one_or_none()
                if row is None:
                    return None
                return _decode(row.record_json, session_id=session_id)
        except SQLAlchemyError as error:
            raise StateBackendError(f"Failed to load session {session_id}: {error}") from error

    def save(self, session_id: str, record: SessionRecord) -> None:
        self.update(session_id, lambda _current: record)

    def update(self, session_id: str, mutate: RecordMutator) -> SessionRecord | None:
        try:
            for _ in range(_MAX_UPDATE_RETRIES):
                with Session(self.engine) as session:
                    row = session.exec(
                        select(SessionRecordRow).where(SessionRecordRow.session_id == session_id),
                    ).one_or_none()
                    current = (
                        _decode(row.record_json, session_id=session_id) if row is not None else None
                    )
                    updated = mutate(current)
                    if self._write(session, row=row, session_id=session_id, record=updated):
                        session.commit()
                        return updated
                    session.rollback()
        except SQLAlchemyError as error:
            raise StateBackendError(f"Failed to save session {session_id}: {error}") from error
        raise StateBackendError(
            f"Session {session_id} changed concurrently {_MAX_UPDATE_RETRIES} times; giving up.",
        )

    def delete(self, session_id: str) -> None:
        try:
            with Session(self.engine) as session:
                session.exec(
                    sa_delete(SessionRecordRow).where(
                        col(SessionRecordRow.session_id) == session_id,
                    ),
                )
                session.commit()
        except SQLAlchemyError as error:
            raise StateBackendError(f"Failed to delete session {session_id}: {error}") from error

    def list_session_ids(self) -> list[str]:
        try:
            with Session(self.engine) as session:
                rows = session.exec(
                    select(SessionRecordRow.session_id).order_by(
                        col(SessionRecordRow.created_at).asc(),
                    ),
                ).all()
        except SQLAlchemyError as error:
            raise StateBackendError(f"Failed to list sessions: {error}") from error
        return [str(row) for row in rows]

    def _write(
        self,
        session: Session,
        *,
        row: SessionRecordRow | None,
        session_id: str,
        record: SessionRecord | None,
    ) -> bool:
        now = to_db_datetime(utc_now())
        if record is None:
            if row is None:
                return True
            result = session.exec(
                sa_delete(SessionRecordRow).where(
                    col(SessionRecordRow.session_id) == session_id,
                    col(SessionRecordRow.version) == row.version,
                ),
            )
            return result.rowcount == 1

        payload = json.dumps(record, ensure_ascii=False, sort_keys=True)
        heartbeat = to_db_datetime(_record_heartbeat(record) or utc_now())
        active_task_id = _record_active_task_id(record)
        if row is None:
            session.add(
                SessionRecordRow(
                    session_id=session_id,
                    record_json=payload,
                    active_task_id=active_task_id,
                    last_heartbeat=heartbeat,
                    version=1,
                    created_at=now,
                    updated_at=now,
                ),
            )
            try:
                session.flush()
            except IntegrityError:
                return False
            return True

        result = session.exec(
            sa_update(SessionRecordRow)
            .where(
                col(SessionRecordRow.session_id) == session_id,
                col(SessionRecordRow.version) == row.version,
            )
            .values(
                record_json=payload,
                active_task_id=active_task_id,
                last_heartbeat=heartbeat,
                version=row.version + 1,
                updated_at=now,
            ),
        )
        return result.rowcount == 1


def _decode(payload: str, *, session_id: str) -> SessionRecord:
    try:
        parsed = json.loads(payload)
    except json.JSONDecodeError as error:
        raise StateBackendError(f"Session {session_id} record is not valid JSON") from error
    if not isinstance(parsed, dict):
        raise StateBackendError(f"Session {session_id} record is not a JSON object")
    return parsed


def _record_heartbeat(record: SessionRecord) -> datetime | None:
    raw = record.get("last_heartbeat")
    if isinstance(raw, str) and raw.strip():
        try:
            return from_iso(raw)
        except ValueError:
            return None
    return None


def _record_active_task_id(record: SessionRecord) -> str | None:
    active = record.get("active_task")
    if not isinstance(active, dict):
        return None
    task = active.get("task")
    if not isinstance(task, dict):
        return None
    task_id = task.get("task_id")
    return task_id if isinstance(task_id, str) else None
