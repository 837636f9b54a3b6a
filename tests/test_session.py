from __future__ import annotations

from datetime import timedelta

import allure
import pytest

from conftest import FakeClock
from taskrelay.orchestrator.checkpoint import CheckpointManager
from taskrelay.orchestrator.contracts import generate_contract
from taskrelay.orchestrator.errors import (
    SessionConflictError,
    StateBackendError,
    TaskAlreadyActiveError,
)
from taskrelay.orchestrator.models import ResumeChoice, TaskStatus, WorkItem
from taskrelay.orchestrator.repository import InMemoryStateBackend
from taskrelay.orchestrator.session import SessionStateManager

pytestmark = [
    allure.epic("Orchestration"),
    allure.feature("Session State"),
]


def _task(task_id: str = "t1") -> WorkItem:
    return WorkItem(
        task_id=task_id,
        description="Add retry helper",
        expected_artifacts=("src/retry.py",),
        steps=("write helper", "add tests"),
    )


def _activate(sessions: SessionStateManager, task: WorkItem | None = None):
    session = sessions.start_session().session
    item = task or _task()
    sessions.activate_task(session, item, generate_contract(item.description, item.expected_artifacts))
    return session


def _manager(backend, clock: FakeClock, session_id: str = "s1") -> SessionStateManager:
    return SessionStateManager(
        backend,
        session_id=session_id,
        timeout_minutes=30,
        checkpoints=CheckpointManager(clock=clock),
        clock=clock,
    )


class FailingBackend(InMemoryStateBackend):
    def __init__(self) -> None:
        super().__init__()
        self.fail_saves = False
        self.fail_loads = False

    def save(self, session_id, record) -> None:
        if self.fail_saves:
            raise StateBackendError("disk full")
        super().save(session_id, record)

    def load(self, session_id):
        if self.fail_loads:
            raise StateBackendError("database is locked")
        return super().load(session_id)


def test_start_session_creates_and_persists_new_session(sessions, backend) -> None:
    start = sessions.start_session()

    assert not start.resumed
    assert not start.stale
    assert backend.load("s1") is not None
    assert sessions.resume_decision(start.session) is None


def test_restart_resumes_persisted_session(backend, clock) -> None:
    first = _manager(backend, clock)
    _activate(first)

    start = _manager(backend, clock).start_session()

    assert start.resumed
    assert start.session.active_task is not None
    assert start.session.active_task.task.task_id == "t1"


def test_session_is_stale_after_timeout(backend, clock) -> None:
    _manager(backend, clock).start_session()
    clock.advance(timedelta(minutes=31))

    start = _manager(backend, clock).start_session()

    assert start.stale


def test_heartbeat_never_moves_backwards(sessions, clock) -> None:
    session = sessions.start_session().session
    sessions.touch(session)
    latest = session.last_heartbeat

    clock.advance(timedelta(hours=-2))
    sessions.touch(session)

    assert session.last_heartbeat == latest


def test_second_task_cannot_be_activated(sessions) -> None:
    session = _activate(sessions)

    with pytest.raises(TaskAlreadyActiveError):
        sessions.activate_task(session, _task("t2"), generate_contract("x", []))


def test_resume_decision_describes_active_task(sessions) -> None:
    session = _activate(sessions)

    prompt = sessions.resume_decision(session)

    assert prompt is not None
    assert prompt.task_id == "t1"
    assert prompt.pending_steps == 2
    assert [option.value for option in prompt.options] == [
        "resume",
        "restart",
        "switch_task",
        "abandon",
    ]


def test_resume_keeps_checkpoint(sessions) -> None:
    session = _activate(sessions)
    checkpoint = session.active_task.checkpoint
    sessions.checkpoints.record_step_complete(checkpoint, "write helper")

    active = sessions.apply_resume_choice(session, ResumeChoice.RESUME)

    assert active is not None
    assert [step.step for step in active.checkpoint.completed_steps] == ["write helper"]


def test_restart_discards_checkpoint_but_keeps_history(sessions) -> None:
    session = _activate(sessions)
    sessions.checkpoints.record_step_complete(session.active_task.checkpoint, "write helper")

    active = sessions.apply_resume_choice(session, ResumeChoice.RESTART)

    assert active is not None
    assert active.checkpoint.completed_steps == []
    assert active.checkpoint.pending_steps == ["write helper", "add tests"]
    assert session.history[-1].reason == "restarted"
    assert session.history[-1].checkpoint.completed_steps[0].step == "write helper"


def test_switch_task_defers_and_can_resume_later(sessions) -> None:
    session = _activate(sessions)
    sessions.checkpoints.record_step_complete(session.active_task.checkpoint, "write helper")

    assert sessions.apply_resume_choice(session, ResumeChoice.SWITCH_TASK) is None
    assert session.active_task is None
    assert session.deferred_tasks[0].task.status == TaskStatus.PENDING

    active = sessions.resume_deferred(session, "t1")

    assert session.deferred_tasks == []
    assert active.task.status == TaskStatus.IN_PROGRESS
    assert active.checkpoint.completed_steps[0].step == "write helper"


def test_abandon_records_failed_history(sessions) -> None:
    session = _activate(sessions)

    assert sessions.apply_resume_choice(session, ResumeChoice.ABANDON) is None

    assert session.active_task is None
    assert session.history[-1].status == TaskStatus.FAILED
    assert session.history[-1].reason == "abandoned"


def test_clear_session_deletes_record(sessions, backend) -> None:
    sessions.start_session()

    sessions.clear_session()

    assert backend.load("s1") is None


def test_write_failure_degrades_to_memory_with_warning(clock, caplog) -> None:
    backend = FailingBackend()
    sessions = _manager(backend, clock)
    session = _activate(sessions)
    backend.fail_saves = True

    sessions.touch(session)

    assert sessions.degraded
    assert "disk full" in sessions.warnings[-1]
    assert session.active_task is not None

    backend.fail_saves = False
    sessions.touch(session)
    assert not sessions.degraded


def test_read_failure_starts_fresh_session(clock) -> None:
    backend = FailingBackend()
    _activate(_manager(backend, clock))
    backend.fail_loads = True

    sessions = _manager(backend, clock)
    start = sessions.start_session()

    assert not start.resumed
    assert start.session.active_task is None
    assert "database is locked" in sessions.warnings[0]


def test_read_failure_never_overwrites_stored_task(clock) -> None:
    backend = FailingBackend()
    _activate(_manager(backend, clock))
    backend.fail_loads = True

    sessions = _manager(backend, clock)
    start = sessions.start_session()
    sessions.touch(start.session)
    backend.fail_loads = False

    stored = _manager(backend, clock).start_session().session
    assert start.degraded
    assert stored.active_task is not None
    assert stored.active_task.task.task_id == "t1"
    assert any("leaving it untouched" in warning for warning in sessions.warnings)


def test_read_failure_persists_once_no_record_exists(clock) -> None:
    backend = FailingBackend()
    backend.fail_loads = True

    sessions = _manager(backend, clock)
    start = sessions.start_session()
    backend.fail_loads = False

    assert not start.degraded
    assert backend.load("s1") is not None
    sessions.touch(start.session)
    assert backend.load("s1")["last_heartbeat"] == start.session.last_heartbeat.isoformat()


def test_corrupt_record_starts_fresh_session(backend, clock) -> None:
    backend.save("s1", {"schema_version": 99})

    sessions = _manager(backend, clock)
    start = sessions.start_session()

    assert not start.resumed
    assert "unreadable" in sessions.warnings[0]


def test_take_over_stale_session_moves_task_and_attempts(backend, clock) -> None:
    other = _manager(backend, clock, session_id="old")
    _activate(other)
    clock.advance(timedelta(hours=1))

    sessions = _manager(backend, clock, session_id="new")
    assert [item.session_id for item in sessions.takeover_candidates()] == ["old"]
    session = sessions.start_session().session

    active = sessions.take_over(session, "old")

    assert active.task.task_id == "t1"
    assert session.active_task is active
    released = sessions.load_session("old")
    assert released is not None
    assert released.active_task is None


def test_take_over_live_session_is_refused(backend, clock) -> None:
    _activate(_manager(backend, clock, session_id="old"))
    sessions = _manager(backend, clock, session_id="new")
    session = sessions.start_session().session

    with pytest.raises(SessionConflictError, match="still alive"):
        sessions.take_over(session, "old")

    assert session.active_task is None
    assert sessions.load_session("old").active_task is not None


def test_take_over_missing_session_is_refused(sessions) -> None:
    session = sessions.start_session().session

    with pytest.raises(SessionConflictError, match="does not exist"):
        sessions.take_over(session, "ghost")
