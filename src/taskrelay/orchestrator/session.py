"""Session state manager: liveness, persistence and the resume decision.

The session record is the single source of truth for an orchestration run. All
mutations go through :meth:`SessionStateManager.touch`, which advances the
heartbeat and persists the whole record. Persistence failures never block work:
reads degrade to a fresh in-memory session that never overwrites the record it
could not read, and writes degrade to in-memory operation with a warning.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta

from taskrelay.orchestrator.checkpoint import CheckpointManager
from taskrelay.orchestrator.errors import (
    SessionConflictError,
    StateBackendError,
    TaskAlreadyActiveError,
    TaskRelayError,
)
from taskrelay.orchestrator.models import (
    ActiveTask,
    Checkpoint,
    DeferredTask,
    ReassignmentAttempt,
    ResumeChoice,
    Session,
    TaskHistoryEntry,
    TaskStatus,
    VerificationContract,
    WorkItem,
)
from taskrelay.orchestrator.records import session_from_record
from taskrelay.orchestrator.repository import SessionRecord, StateBackend
from taskrelay.storage.common import utc_now

logger = logging.getLogger(__name__)

RESUME_CHOICES = (
    ResumeChoice.RESUME,
    ResumeChoice.RESTART,
    ResumeChoice.SWITCH_TASK,
    ResumeChoice.ABANDON,
)


@dataclass(slots=True)
class SessionStart:
    """Result of loading or creating the session at startup."""

    session: Session
    stale: bool
    resumed: bool
    degraded: bool = False


@dataclass(slots=True)
class ResumePrompt:
    """Explicit choice presented when a previous run left an active task."""

    session_id: str
    task_id: str
    description: str
    phase: str
    completed_steps: int
    pending_steps: int
    last_decision: str | None
    attempts: list[ReassignmentAttempt]
    stale: bool
    options: tuple[ResumeChoice, ...] = RESUME_CHOICES


@dataclass(slots=True)
class _TakeoverCapture:
    active_task: ActiveTask | None = None
    attempts: list[ReassignmentAttempt] = field(default_factory=list)


class SessionStateManager:
    """Owns one persisted session record and its lifecycle."""

    def __init__(  # noqa: PLR0913
        self,
        backend: StateBackend,
        *,
        session_id: str,
        timeout_minutes: int = 30,
        checkpoints: CheckpointManager | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.backend = backend
        self.session_id = session_id
        self.timeout = timedelta(minutes=timeout_minutes)
        self.checkpoints = checkpoints or CheckpointManager(clock=clock)
        self.degraded = False
        self.warnings: list[str] = []
        self._clock = clock
        # Sessions whose stored record could not be read; never overwrite it blindly.
        self._unread: set[str] = set()

    def start_session(self) -> SessionStart:
        """Load the persisted session or create a fresh one."""

        session = self._load(self.session_id)
        if session is None:
            now = self._clock()
            session = Session(session_id=self.session_id, created_at=now, last_heartbeat=now)
            self.touch(session)
            return SessionStart(session=session, stale=False, resumed=False, degraded=self.degraded)

        stale = self.is_stale(session)
        if stale:
            logger.warning(
                "Session %s is stale (last heartbeat %s)",
                session.session_id,
                session.last_heartbeat.isoformat(),
            )
        self.touch(session)
        return SessionStart(session=session, stale=stale, resumed=True, degraded=self.degraded)

    def is_stale(self, session: Session, *, now: datetime | None = None) -> bool:
        return (now or self._clock()) - session.last_heartbeat > self.timeout

    def touch(self, session: Session) -> None:
        """Advance the heartbeat and persist the session record."""

        now = self._clock()
        if now > session.last_heartbeat:
            session.last_heartbeat = now
        try:
            if session.session_id in self._unread:
                self._save_if_absent(session)
            else:
                self.backend.save(session.session_id, session.to_record())
        except (StateBackendError, OSError) as error:
            message = f"Session {session.session_id} not persisted; continuing in memory: {error}"
            logger.warning(message)
            self.degraded = True
            self.warnings.append(message)
            return
        if self.degraded:
            logger.info("Session %s persisted again after degraded writes", session.session_id)
            self.degraded = False

    def resume_decision(self, session: Session) -> ResumePrompt | None:
        """Describe the explicit resume choice for an active task, if any."""

        active = session.active_task
        if active is None:
            return None
        checkpoint = active.checkpoint
        return ResumePrompt(
            session_id=session.session_id,
            task_id=active.task.task_id,
            description=active.task.description,
            phase=checkpoint.phase,
            completed_steps=len(checkpoint.completed_steps),
            pending_steps=len(checkpoint.pending_steps),
            last_decision=checkpoint.decisions[-1].decision if checkpoint.decisions else None,
            attempts=session.attempts_for(active.task.task_id),
            stale=self.is_stale(session),
        )

    def apply_resume_choice(self, session: Session, choice: ResumeChoice) -> ActiveTask | None:
        """Carry out the operator's resume decision.

        Returns the active task that should run next, or None when the session
        no longer has one.
        """

        active = session.active_task
        if active is None:
            return None
        session.pending_escalation = None
        if choice == ResumeChoice.RESUME:
            logger.info("Resuming task %s from checkpoint", active.task.task_id)
            self.touch(session)
            return active
        if choice == ResumeChoice.RESTART:
            session.history.append(
                TaskHistoryEntry(
                    task=replace(active.task),
                    status=active.task.status,
                    reason="restarted",
                    finished_at=self._clock(),
                    checkpoint=active.checkpoint,
                    verification_result=active.verification_result,
                ),
            )
            active.checkpoint = self.checkpoints.create_checkpoint(active.task)
            active.verification_results = []
            logger.info("Restarting task %s with a fresh checkpoint", active.task.task_id)
            self.touch(session)
            return active
        if choice == ResumeChoice.SWITCH_TASK:
            self.defer_active_task(session)
            return None
        self.finish_task(session, status=TaskStatus.FAILED, reason="abandoned")
        return None

    def activate_task(
        self,
        session: Session,
        task: WorkItem,
        contract: VerificationContract,
        checkpoint: Checkpoint | None = None,
    ) -> ActiveTask:
        """Make ``task`` the session's single in-progress task."""

        if session.active_task is not None:
            raise TaskAlreadyActiveError(
                f"Session {session.session_id} already has task "
                f"{session.active_task.task.task_id} in progress.",
            )
        task.status = TaskStatus.IN_PROGRESS
        active = ActiveTask(
            task=task,
            checkpoint=checkpoint or self.checkpoints.create_checkpoint(task),
            contract=contract,
        )
        session.active_task = active
        self.touch(session)
        return active

    def finish_task(
        self,
        session: Session,
        *,
        status: TaskStatus,
        reason: str,
        review_required: bool = False,
    ) -> TaskHistoryEntry:
        """Move the active task into history with a terminal status."""

        active = session.active_task
        if active is None:
            raise TaskRelayError(f"Session {session.session_id} has no active task to finish.")
        active.task.status = status
        entry = TaskHistoryEntry(
            task=active.task,
            status=status,
            reason=reason,
            finished_at=self._clock(),
            checkpoint=active.checkpoint,
            verification_result=active.verification_result,
            review_required=review_required,
        )
        session.history.append(entry)
        session.active_task = None
        if (
            session.pending_escalation is not None
            and session.pending_escalation.task_id == active.task.task_id
        ):
            session.pending_escalation = None
        logger.info("Task %s finished: %s (%s)", active.task.task_id, status.value, reason)
        self.touch(session)
        return entry

    def defer_active_task(self, session: Session) -> DeferredTask:
        """Park the active task with its checkpoint so another one can run."""

        active = session.active_task
        if active is None:
            raise TaskRelayError(f"Session {session.session_id} has no active task to defer.")
        active.task.status = TaskStatus.PENDING
        deferred = DeferredTask(
            task=active.task,
            checkpoint=active.checkpoint,
            contract=active.contract,
            deferred_at=self._clock(),
        )
        session.deferred_tasks.append(deferred)
        session.active_task = None
        logger.info("Task %s deferred", active.task.task_id)
        self.touch(session)
        return deferred

    def resume_deferred(self, session: Session, task_id: str) -> ActiveTask:
        """Reactivate a deferred task with the checkpoint it was parked with."""

        for index, deferred in enumerate(session.deferred_tasks):
            if deferred.task.task_id == task_id:
                break
        else:
            raise TaskRelayError(f"Task {task_id} is not deferred in session {session.session_id}.")
        active = self.activate_task(
            session,
            deferred.task,
            deferred.contract,
            checkpoint=deferred.checkpoint,
        )
        session.deferred_tasks.pop(index)
        self.touch(session)
        return active

    def clear_session(self, session_id: str | None = None) -> None:
        """Delete a session record at the operator's request."""

        self.backend.delete(session_id or self.session_id)

    def load_session(self, session_id: str) -> Session | None:
        return self._load(session_id)

    def list_sessions(self) -> list[Session]:
        sessions: list[Session] = []
        for session_id in self.backend.list_session_ids():
            session = self._load(session_id)
            if session is not None:
                sessions.append(session)
        return sessions

    def takeover_candidates(self) -> list[Session]:
        """Stale sessions other than this one that still claim a task."""

        now = self._clock()
        return [
            session
            for session in self.list_sessions()
            if session.session_id != self.session_id
            and session.active_task is not None
            and self.is_stale(session, now=now)
        ]

    def take_over(self, session: Session, other_session_id: str) -> ActiveTask:
        """Move a stale session's active task into ``session``.

        The other record is released in one atomic backend update. If the other
        session is alive again the claim is refused with ``SessionConflictError``.
        """

        if session.active_task is not None:
            raise TaskAlreadyActiveError(
                f"Session {session.session_id} already has a task in progress.",
            )
        if other_session_id == session.session_id:
            raise SessionConflictError("A session cannot take over its own task.")

        capture = _TakeoverCapture()

        def release(current: SessionRecord | None) -> SessionRecord | None:
            if current is None:
                raise SessionConflictError(f"Session {other_session_id} does not exist.")
            other = session_from_record(current)
            if other.active_task is None:
                raise SessionConflictError(f"Session {other_session_id} has no active task.")
            if not self.is_stale(other):
                raise SessionConflictError(
                    f"Session {other_session_id} is still alive "
                    f"(last heartbeat {other.last_heartbeat.isoformat()}); resolve the claim manually.",
                )
            task_id = other.active_task.task.task_id
            capture.active_task = other.active_task
            capture.attempts = other.attempts_for(task_id)
            other.active_task = None
            other.attempts_log = [
                attempt for attempt in other.attempts_log if attempt.task_id != task_id
            ]
            if other.pending_escalation is not None and other.pending_escalation.task_id == task_id:
                other.pending_escalation = None
            return other.to_record()

        try:
            self.backend.update(other_session_id, release)
        except (ValueError, TypeError) as error:
            raise SessionConflictError(
                f"Session {other_session_id} record is unreadable: {error}",
            ) from error
        if capture.active_task is None:
            raise SessionConflictError(f"Session {other_session_id} released no task.")

        session.active_task = capture.active_task
        session.attempts_log.extend(capture.attempts)
        logger.info(
            "Session %s took over task %s from %s",
            session.session_id,
            capture.active_task.task.task_id,
            other_session_id,
        )
        self.touch(session)
        return capture.active_task

    def set_fallback_override(
        self,
        session: Session,
        category: str,
        override: dict[str, object],
    ) -> None:
        session.fallback_chain_overrides[category] = override
        self.touch(session)

    def _save_if_absent(self, session: Session) -> None:
        """Persist ``session`` only if no record exists; a record we failed to read wins."""

        record = session.to_record()
        kept_existing = False

        def mutate(current: SessionRecord | None) -> SessionRecord:
            nonlocal kept_existing
            if current is not None:
                kept_existing = True
                return current
            return record

        self.backend.update(session.session_id, mutate)
        if kept_existing:
            raise StateBackendError(
                f"stored record for session {session.session_id} exists but could not be "
                "read earlier; leaving it untouched",
            )
        self._unread.discard(session.session_id)

    def _load(self, session_id: str) -> Session | None:
        try:
            record = self.backend.load(session_id)
        except (StateBackendError, OSError) as error:
            message = f"Session {session_id} could not be read; starting fresh: {error}"
            logger.warning(message)
            self.warnings.append(message)
            self._unread.add(session_id)
            return None
        if record is None:
            return None
        try:
            return session_from_record(record)
        except (ValueError, TypeError) as error:
            message = f"Session {session_id} record is unreadable; starting fresh: {error}"
            logger.warning(message)
            self.warnings.append(message)
            return None
