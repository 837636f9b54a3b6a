"""Domain models for sessions, checkpoints, contracts and reassignment attempts."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

SESSION_RECORD_SCHEMA_VERSION = 1


class TaskStatus(str, Enum):
    """Work item lifecycle states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_TASK_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.SKIPPED})


class ContractType(str, Enum):
    """How strictly a task is gated by automated checks."""

    VERIFIABLE = "verifiable"
    ADVISORY = "advisory"
    SKIP = "skip"


class CheckActivity(str, Enum):
    """Quality checker activities a contract criterion can name."""

    TYPECHECK = "typecheck"
    LINT = "lint"
    UNIT_TEST = "unit-test"
    END_TO_END_TEST = "end-to-end-test"


class CheckStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"


class AttemptOutcome(str, Enum):
    """Closed outcome of one executor attempt."""

    SUCCESS = "success"
    VERIFICATION_FAILED = "verification_failed"
    RATE_LIMITED = "rate_limited"
    CONTEXT_OVERFLOW = "context_overflow"
    CRASHED = "crashed"


class InterruptReason(str, Enum):
    """Why a checkpoint snapshot was taken."""

    RATE_LIMIT = "rate_limit"
    CONTEXT_OVERFLOW = "context_overflow"
    CRASH = "crash"
    REASSIGNMENT = "reassignment"
    VERIFICATION_FAILED = "verification_failed"
    CANCELLED = "cancelled"


class TaskCategory(str, Enum):
    """Task type classes used to pick a fallback chain."""

    FRONTEND = "frontend"
    BACKEND = "backend"
    INFRASTRUCTURE = "infrastructure"
    GENERAL = "general"


class ResumeChoice(str, Enum):
    """Operator choices when a previous session left an active task."""

    RESUME = "resume"
    RESTART = "restart"
    SWITCH_TASK = "switch_task"
    ABANDON = "abandon"


class RecoveryOption(str, Enum):
    """Operator choices presented on escalation."""

    RETRY_DIFFERENT_APPROACH = "retry_different_approach"
    MANUAL_TAKEOVER = "manual_takeover"
    SKIP_TASK = "skip_task"
    ABANDON_BATCH = "abandon_batch"


@dataclass(slots=True)
class WorkItem:
    """A unit of delegated work."""

    task_id: str
    description: str
    expected_artifacts: tuple[str, ...] = ()
    steps: tuple[str, ...] = ()
    status: TaskStatus = TaskStatus.PENDING

    def to_record(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "description": self.description,
            "expected_artifacts": list(self.expected_artifacts),
            "steps": list(self.steps),
            "status": self.status.value,
        }


@dataclass(frozen=True, slots=True)
class Criterion:
    """One checkable contract criterion: an activity plus its descriptor."""

    activity: CheckActivity
    descriptor: tuple[tuple[str, str], ...] = ()

    @property
    def descriptor_map(self) -> dict[str, str]:
        return dict(self.descriptor)

    def label(self) -> str:
        if not self.descriptor:
            return self.activity.value
        params = ", ".join(f"{key}={value}" for key, value in self.descriptor)
        return f"{self.activity.value}({params})"

    def to_record(self) -> dict[str, Any]:
        return {"activity": self.activity.value, "descriptor": self.descriptor_map}


@dataclass(slots=True)
class VerificationContract:
    """Deterministic list of criteria attached to a task at delegation time."""

    contract_type: ContractType
    criteria: tuple[Criterion, ...]
    generated_from: str
    generated_at: datetime = field(compare=False)

    def to_record(self) -> dict[str, Any]:
        return {
            "type": self.contract_type.value,
            "criteria": [criterion.to_record() for criterion in self.criteria],
            "generated_from": self.generated_from,
            "generated_at": self.generated_at.isoformat(),
        }


@dataclass(slots=True)
class CriterionResult:
    activity: CheckActivity
    status: CheckStatus
    attempts: int
    error: str | None = None
    descriptor: tuple[tuple[str, str], ...] = ()

    def to_record(self) -> dict[str, Any]:
        return {
            "activity": self.activity.value,
            "descriptor": dict(self.descriptor),
            "status": self.status.value,
            "attempts": self.attempts,
            "error": self.error,
        }


@dataclass(slots=True)
class VerificationResult:
    """Outcome of running one contract after one execution attempt."""

    overall: CheckStatus
    criteria: list[CriterionResult]
    completed_at: datetime
    attempt_no: int | None = None

    @property
    def passed(self) -> bool:
        return self.overall == CheckStatus.PASS

    def failed_criteria(self) -> list[CriterionResult]:
        return [item for item in self.criteria if item.status == CheckStatus.FAIL]

    def to_record(self) -> dict[str, Any]:
        return {
            "overall": self.overall.value,
            "criteria": [item.to_record() for item in self.criteria],
            "completed_at": self.completed_at.isoformat(),
            "attempt_no": self.attempt_no,
        }


@dataclass(slots=True)
class CompletedStep:
    step: str
    files_touched: tuple[str, ...]
    timestamp: datetime

    def to_record(self) -> dict[str, Any]:
        return {
            "step": self.step,
            "files_touched": list(self.files_touched),
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(slots=True)
class CurrentStep:
    description: str
    started_at: datetime
    partial_work: str | None = None

    def to_record(self) -> dict[str, Any]:
        return {
            "description": self.description,
            "started_at": self.started_at.isoformat(),
            "partial_work": self.partial_work,
        }


@dataclass(slots=True)
class Decision:
    decision: str
    rationale: str
    timestamp: datetime

    def to_record(self) -> dict[str, Any]:
        return {
            "decision": self.decision,
            "rationale": self.rationale,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(slots=True)
class CheckpointMetadata:
    created_by: str
    last_updated_at: datetime
    reason: str | None = None
    previous_executors: list[str] = field(default_factory=list)

    def to_record(self) -> dict[str, Any]:
        return {
            "created_by": self.created_by,
            "last_updated_at": self.last_updated_at.isoformat(),
            "reason": self.reason,
            "previous_executors": list(self.previous_executors),
        }


@dataclass(slots=True)
class Checkpoint:
    """Bounded working memory of an in-progress task."""

    task_id: str
    phase: str
    metadata: CheckpointMetadata
    completed_steps: list[CompletedStep] = field(default_factory=list)
    pending_steps: list[str] = field(default_factory=list)
    current_step: CurrentStep | None = None
    decisions: list[Decision] = field(default_factory=list)
    blockers: list[str] = field(default_factory=list)

    def to_record(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "phase": self.phase,
            "completed_steps": [step.to_record() for step in self.completed_steps],
            "pending_steps": list(self.pending_steps),
            "current_step": (
                self.current_step.to_record() if self.current_step is not None else None
            ),
            "decisions": [decision.to_record() for decision in self.decisions],
            "blockers": list(self.blockers),
            "metadata": self.metadata.to_record(),
        }


@dataclass(slots=True)
class ResumeContext:
    """Handoff bundle for the next executor invocation."""

    task_id: str
    description: str
    phase: str
    completed_steps: list[CompletedStep]
    pending_steps: list[str]
    settled_decisions: list[Decision]
    current_step: CurrentStep | None
    files_to_reverify: list[str]
    blockers: list[str]
    previous_executors: list[str]
    stale: bool = False

    def to_record(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "description": self.description,
            "phase": self.phase,
            "completed_steps": [step.to_record() for step in self.completed_steps],
            "pending_steps": list(self.pending_steps),
            "settled_decisions": [decision.to_record() for decision in self.settled_decisions],
            "current_step": (
                self.current_step.to_record() if self.current_step is not None else None
            ),
            "files_to_reverify": list(self.files_to_reverify),
            "blockers": list(self.blockers),
            "previous_executors": list(self.previous_executors),
            "stale": self.stale,
        }

    def render(self) -> str:
        """Render the context as plain text for an executor prompt."""

        lines = [f"Resuming task {self.task_id} (phase: {self.phase}).", ""]
        if self.completed_steps:
            lines.append("Already completed (do not redo):")
            lines.extend(
                f"- {step.step}"
                + (f" [files: {', '.join(step.files_touched)}]" if step.files_touched else "")
                for step in self.completed_steps
            )
            lines.append("")
        if self.settled_decisions:
            lines.append("Settled decisions (do not revisit):")
            lines.extend(
                f"- {decision.decision} ({decision.rationale})"
                for decision in self.settled_decisions
            )
            lines.append("")
        if self.current_step is not None:
            lines.append(f"Interrupted step: {self.current_step.description}")
            if self.current_step.partial_work:
                lines.append(f"Partial work: {self.current_step.partial_work}")
            lines.append("")
        if self.pending_steps:
            lines.append("Remaining steps:")
            lines.extend(f"- {step}" for step in self.pending_steps)
            lines.append("")
        if self.blockers:
            lines.append("Known blockers:")
            lines.extend(f"- {blocker}" for blocker in self.blockers)
            lines.append("")
        if self.files_to_reverify:
            lines.append("Files changed since the checkpoint; re-read before continuing:")
            lines.extend(f"- {path}" for path in self.files_to_reverify)
            lines.append("")
        if self.previous_executors:
            lines.append(f"Previously attempted by: {', '.join(self.previous_executors)}")
        return "\n".join(lines).rstrip() + "\n"


@dataclass(frozen=True, slots=True)
class FallbackChain:
    """Ordered executors for one task category."""

    category: TaskCategory
    executors: tuple[str, ...]


@dataclass(slots=True)
class ReassignmentAttempt:
    """One closed executor try for a task."""

    attempt_no: int
    task_id: str
    executor: str
    started_at: datetime
    ended_at: datetime
    outcome: AttemptOutcome
    error: str | None
    retry_count: int
    fresh_context: bool = False

    def to_record(self) -> dict[str, Any]:
        return {
            "attempt_no": self.attempt_no,
            "task_id": self.task_id,
            "executor": self.executor,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat(),
            "outcome": self.outcome.value,
            "error": self.error,
            "retry_count": self.retry_count,
            "fresh_context": self.fresh_context,
        }


@dataclass(slots=True)
class ActiveTask:
    """The single in-progress task owned by a session."""

    task: WorkItem
    checkpoint: Checkpoint
    contract: VerificationContract
    verification_results: list[VerificationResult] = field(default_factory=list)

    @property
    def verification_result(self) -> VerificationResult | None:
        return self.verification_results[-1] if self.verification_results else None

    def to_record(self) -> dict[str, Any]:
        return {
            "task": self.task.to_record(),
            "checkpoint": self.checkpoint.to_record(),
            "verification_contract": self.contract.to_record(),
            "verification_results": [result.to_record() for result in self.verification_results],
        }


@dataclass(slots=True)
class TaskHistoryEntry:
    """Immutable record of how a task left the session."""

    task: WorkItem
    status: TaskStatus
    reason: str
    finished_at: datetime
    checkpoint: Checkpoint | None
    verification_result: VerificationResult | None
    review_required: bool = False

    def to_record(self) -> dict[str, Any]:
        return {
            "task": self.task.to_record(),
            "status": self.status.value,
            "reason": self.reason,
            "finished_at": self.finished_at.isoformat(),
            "checkpoint": self.checkpoint.to_record() if self.checkpoint is not None else None,
            "verification_result": (
                self.verification_result.to_record()
                if self.verification_result is not None
                else None
            ),
            "review_required": self.review_required,
        }


@dataclass(slots=True)
class DeferredTask:
    """Task parked by a switch-task decision, resumable later."""

    task: WorkItem
    checkpoint: Checkpoint
    contract: VerificationContract
    deferred_at: datetime

    def to_record(self) -> dict[str, Any]:
        return {
            "task": self.task.to_record(),
            "checkpoint": self.checkpoint.to_record(),
            "verification_contract": self.contract.to_record(),
            "deferred_at": self.deferred_at.isoformat(),
        }


@dataclass(slots=True)
class PendingEscalation:
    """Escalation awaiting an operator decision, persisted with the session."""

    task_id: str
    reason: str
    hint: str | None
    raised_at: datetime

    def to_record(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "reason": self.reason,
            "hint": self.hint,
            "raised_at": self.raised_at.isoformat(),
        }


@dataclass(slots=True)
class Session:
    """One orchestration run and everything it owns."""

    session_id: str
    created_at: datetime
    last_heartbeat: datetime
    active_task: ActiveTask | None = None
    attempts_log: list[ReassignmentAttempt] = field(default_factory=list)
    history: list[TaskHistoryEntry] = field(default_factory=list)
    deferred_tasks: list[DeferredTask] = field(default_factory=list)
    fallback_chain_overrides: dict[str, dict[str, Any]] = field(default_factory=dict)
    pending_escalation: PendingEscalation | None = None

    def attempts_for(self, task_id: str) -> list[ReassignmentAttempt]:
        return [attempt for attempt in self.attempts_log if attempt.task_id == task_id]

    def to_record(self) -> dict[str, Any]:
        return {
            "schema_version": SESSION_RECORD_SCHEMA_VERSION,
            "session_id": self.session_id,
            "created_at": self.created_at.isoformat(),
            "last_heartbeat": self.last_heartbeat.isoformat(),
            "active_task": self.active_task.to_record() if self.active_task else None,
            "attempts_log": [attempt.to_record() for attempt in self.attempts_log],
            "history": [entry.to_record() for entry in self.history],
            "deferred_tasks": [item.to_record() for item in self.deferred_tasks],
            "fallback_chain_overrides": dict(self.fallback_chain_overrides),
            "pending_escalation": (
                self.pending_escalation.to_record() if self.pending_escalation else None
            ),
        }


