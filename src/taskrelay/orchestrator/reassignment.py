"""Reassignment controller: the failure-aware task state machine.

One attempt is one executor run followed, on success, by the contract's quality
checks. Every closed attempt maps to an :class:`AttemptOutcome`, and a single
transition table turns that outcome into the next :class:`Action`. When an
action's budget is spent it degrades along ``_ON_EXHAUSTED`` until it reaches
``escalate``. State is persisted before every suspension point: the executor
call, the quality checks and each backoff sleep.
"""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Callable, Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from taskrelay.config import Settings
from taskrelay.orchestrator.backend.base import (
    ExecutorRequest,
    ExecutorResult,
    QualityChecker,
    TaskExecutor,
)
from taskrelay.orchestrator.checkpoint import (
    PHASE_EXECUTING,
    PHASE_VERIFYING,
    CheckpointManager,
    referenced_files,
)
from taskrelay.orchestrator.contracts import generate_contract, run_contract
from taskrelay.orchestrator.errors import ExecutorRunError, TaskAlreadyActiveError
from taskrelay.orchestrator.escalation import (
    TASK_TOO_LARGE_HINT,
    CheckpointSummary,
    EscalationHandler,
    EscalationReport,
)
from taskrelay.orchestrator.failure_classifier import classify_executor_failure
from taskrelay.orchestrator.models import (
    ActiveTask,
    AttemptOutcome,
    ContractType,
    FallbackChain,
    InterruptReason,
    PendingEscalation,
    ReassignmentAttempt,
    RecoveryOption,
    ResumeContext,
    Session,
    TaskStatus,
    VerificationResult,
    WorkItem,
)
from taskrelay.orchestrator.routing import (
    FallbackChainDefaults,
    classify_task_category,
    resolve_fallback_chain,
)
from taskrelay.orchestrator.session import SessionStateManager
from taskrelay.storage.common import utc_now

logger = logging.getLogger(__name__)


class Action(str, Enum):
    DONE = "done"
    RETRY_SAME = "retry_same"
    FRESH_CONTEXT = "fresh_context"
    SWITCH = "switch"
    ESCALATE = "escalate"


TRANSITIONS: dict[AttemptOutcome, Action] = {
    AttemptOutcome.SUCCESS: Action.DONE,
    AttemptOutcome.RATE_LIMITED: Action.RETRY_SAME,
    AttemptOutcome.CONTEXT_OVERFLOW: Action.FRESH_CONTEXT,
    AttemptOutcome.VERIFICATION_FAILED: Action.SWITCH,
    AttemptOutcome.CRASHED: Action.SWITCH,
}
_ON_EXHAUSTED: dict[Action, Action] = {
    Action.RETRY_SAME: Action.SWITCH,
    Action.FRESH_CONTEXT: Action.ESCALATE,
    Action.SWITCH: Action.ESCALATE,
}
_INTERRUPT_REASONS: dict[AttemptOutcome, InterruptReason] = {
    AttemptOutcome.RATE_LIMITED: InterruptReason.RATE_LIMIT,
    AttemptOutcome.CONTEXT_OVERFLOW: InterruptReason.CONTEXT_OVERFLOW,
    AttemptOutcome.VERIFICATION_FAILED: InterruptReason.VERIFICATION_FAILED,
    AttemptOutcome.CRASHED: InterruptReason.CRASH,
}


def next_action(outcome: AttemptOutcome, *, budget_left: Callable[[Action], bool]) -> Action:
    """Look up the action for ``outcome``, degrading it while its budget is spent."""

    action = TRANSITIONS[outcome]
    while action in _ON_EXHAUSTED and not budget_left(action):
        action = _ON_EXHAUSTED[action]
    return action


@dataclass(slots=True)
class ReassignmentPolicy:
    """Retry budgets for one pass over a fallback chain."""

    backoff_seconds: tuple[float, ...] = (30.0, 60.0, 120.0)
    max_fresh_context_attempts: int = 1
    check_attempts: int = 1

    @property
    def max_rate_limit_retries(self) -> int:
        return len(self.backoff_seconds)

    @classmethod
    def from_settings(cls, settings: Settings) -> ReassignmentPolicy:
        return cls(
            backoff_seconds=settings.reassignment.rate_limit_backoff_seconds,
            max_fresh_context_attempts=settings.reassignment.max_fresh_context_attempts,
            check_attempts=settings.quality.check_attempts,
        )


@dataclass(slots=True)
class TaskRunOutcome:
    """How one task left the controller."""

    task_id: str
    status: TaskStatus
    reason: str
    attempts: list[ReassignmentAttempt]
    verification_result: VerificationResult | None = None
    escalation: EscalationReport | None = None
    stop_batch: bool = False

    @property
    def pending_operator(self) -> bool:
        return self.status == TaskStatus.IN_PROGRESS


@dataclass(slots=True)
class BatchRunSummary:
    outcomes: list[TaskRunOutcome] = field(default_factory=list)
    stopped: bool = False

    def count(self, status: TaskStatus) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == status)


@dataclass(slots=True)
class _ChainCursor:
    """Position within one pass over a fallback chain."""

    executor_index: int = 0
    retry_count: int = 0
    fresh_used: int = 0
    fresh_context: bool = False


@dataclass(slots=True)
class _AttemptReport:
    attempt: ReassignmentAttempt
    result: ExecutorResult


class ReassignmentController:
    """Delegates tasks, classifies failures and walks fallback chains."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        sessions: SessionStateManager,
        executor: TaskExecutor,
        checker: QualityChecker,
        fallback_defaults: FallbackChainDefaults,
        policy: ReassignmentPolicy | None = None,
        escalation_handler: EscalationHandler | None = None,
        sleep: Callable[[float], None] | None = None,
        file_timestamps: Callable[[list[str]], Mapping[str, datetime]] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.sessions = sessions
        self.checkpoints: CheckpointManager = sessions.checkpoints
        self.executor = executor
        self.checker = checker
        self.fallback_defaults = fallback_defaults
        self.policy = policy or ReassignmentPolicy()
        self.escalation_handler = escalation_handler
        self._sleep = sleep or self._sleep_with_stop
        self._file_timestamps = file_timestamps
        self._clock = clock
        self._cancel_requested = False

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    def cancel(self) -> None:
        """Request cancellation; honoured at the next suspension point."""

        self._cancel_requested = True

    def resolve_chain(self, session: Session, task: WorkItem) -> FallbackChain:
        return resolve_fallback_chain(
            defaults=self.fallback_defaults,
            category=classify_task_category(task.expected_artifacts),
            session_overrides=session.fallback_chain_overrides,
        )

    def run_task(self, session: Session, task: WorkItem) -> TaskRunOutcome:
        """Run one task to a terminal state or an operator escalation.

        If ``task`` is already the session's active task, or was deferred, it
        continues from the stored checkpoint instead of starting over.
        """

        active = session.active_task
        if active is not None and active.task.task_id != task.task_id:
            raise TaskAlreadyActiveError(
                f"Task {active.task.task_id} is in progress; resolve it before starting "
                f"{task.task_id}.",
            )
        if active is None and any(
            deferred.task.task_id == task.task_id for deferred in session.deferred_tasks
        ):
            active = self.sessions.resume_deferred(session, task.task_id)
        if active is None:
            contract = generate_contract(task.description, task.expected_artifacts)
            logger.info(
                "Task %s classified as %s with %d criteria",
                task.task_id,
                contract.contract_type.value,
                len(contract.criteria),
            )
            active = self.sessions.activate_task(session, task, contract)
        return self._drive(session, active)

    def resume_active(self, session: Session) -> TaskRunOutcome | None:
        """Continue the session's active task, if any."""

        active = session.active_task
        if active is None:
            return None
        return self._drive(session, active)

    def run_batch(self, session: Session, tasks: Iterable[WorkItem]) -> BatchRunSummary:
        """Run tasks one at a time, stopping when the operator must step in."""

        summary = BatchRunSummary()
        finished = {
            entry.task.task_id
            for entry in session.history
            if entry.status in {TaskStatus.COMPLETED, TaskStatus.SKIPPED, TaskStatus.FAILED}
        }
        for task in tasks:
            if task.task_id in finished:
                logger.info("Task %s already finished in this session; skipping", task.task_id)
                continue
            if self._cancel_requested:
                summary.stopped = True
                break
            outcome = self.run_task(session, task)
            summary.outcomes.append(outcome)
            if outcome.stop_batch or outcome.pending_operator:
                summary.stopped = True
                break
        return summary

    def _drive(self, session: Session, active: ActiveTask) -> TaskRunOutcome:
        session.pending_escalation = None
        chain = self.resolve_chain(session, active.task)
        logger.info(
            "Task %s uses %s chain: %s",
            active.task.task_id,
            chain.category.value,
            ", ".join(chain.executors),
        )
        while True:
            outcome = self._run_chain(session, active, chain)
            if outcome is not None:
                return outcome
            # The operator asked for another pass over the chain.

    def _run_chain(  # noqa: C901, PLR0911
        self,
        session: Session,
        active: ActiveTask,
        chain: FallbackChain,
    ) -> TaskRunOutcome | None:
        cursor = _ChainCursor()
        while True:
            if self._cancel_requested:
                return self._cancel(session, active)
            executor = chain.executors[cursor.executor_index]
            report = self._attempt(session, active, executor=executor, cursor=cursor)
            attempt = report.attempt
            if self._cancel_requested:
                return self._cancel(session, active)

            def budget_left(action: Action) -> bool:
                if action == Action.RETRY_SAME:
                    return cursor.retry_count < self.policy.max_rate_limit_retries
                if action == Action.FRESH_CONTEXT:
                    return cursor.fresh_used < self.policy.max_fresh_context_attempts
                return cursor.executor_index + 1 < len(chain.executors)

            action = next_action(attempt.outcome, budget_left=budget_left)
            logger.info(
                "Task %s attempt %d on %s: %s -> %s",
                active.task.task_id,
                attempt.attempt_no,
                executor,
                attempt.outcome.value,
                action.value,
            )

            if action == Action.DONE:
                return self._complete(session, active)

            if action == Action.RETRY_SAME:
                delay = self.policy.backoff_seconds[cursor.retry_count]
                cursor.retry_count += 1
                self.sessions.touch(session)
                logger.info("Backing off %.1fs before retrying %s", delay, executor)
                self._sleep(delay)
                continue

            self._snapshot(active, attempt, report.result)
            if action == Action.FRESH_CONTEXT:
                cursor.fresh_used += 1
                cursor.fresh_context = True
                cursor.retry_count = 0
                self.sessions.touch(session)
                continue

            if action == Action.SWITCH:
                cursor.executor_index += 1
                cursor.retry_count = 0
                cursor.fresh_used = 0
                cursor.fresh_context = False
                self.sessions.touch(session)
                logger.info(
                    "Switching task %s to executor %s",
                    active.task.task_id,
                    chain.executors[cursor.executor_index],
                )
                continue

            hint = TASK_TOO_LARGE_HINT if attempt.outcome == AttemptOutcome.CONTEXT_OVERFLOW else None
            return self._escalate(session, active, reason=attempt.outcome.value, hint=hint)

    def _attempt(
        self,
        session: Session,
        active: ActiveTask,
        *,
        executor: str,
        cursor: _ChainCursor,
    ) -> _AttemptReport:
        task = active.task
        checkpoint = active.checkpoint
        attempt_no = len(session.attempts_for(task.task_id)) + 1
        resume_context = None
        if cursor.fresh_context or attempt_no > 1 or checkpoint.completed_steps:
            resume_context = self.build_resume_context(active)
        if checkpoint.phase != PHASE_EXECUTING:
            self.checkpoints.set_phase(checkpoint, PHASE_EXECUTING)
        self.sessions.touch(session)

        started_at = self._clock()
        transient = False
        try:
            result = self.executor.run(
                ExecutorRequest(
                    task_id=task.task_id,
                    task_description=task.description,
                    executor=executor,
                    attempt_no=attempt_no,
                    resume_context=resume_context,
                    fresh_context=cursor.fresh_context,
                    shutdown_requested=lambda: self._cancel_requested,
                ),
            )
        except ExecutorRunError as error:
            logger.warning("Executor %s failed for task %s: %s", executor, task.task_id, error)
            result = ExecutorResult(status="failure", error=str(error))
            transient = error.transient
        except Exception as error:  # noqa: BLE001
            logger.exception("Executor %s raised for task %s", executor, task.task_id)
            result = ExecutorResult(status="failure", error=f"{type(error).__name__}: {error}")

        if result.succeeded:
            self._fold_progress(active, result)
            self.checkpoints.set_phase(checkpoint, PHASE_VERIFYING)
            self.sessions.touch(session)
            if self._cancel_requested:
                outcome, error_text = AttemptOutcome.CRASHED, "cancelled before verification"
            else:
                verification = run_contract(
                    active.contract,
                    self.checker,
                    check_attempts=self.policy.check_attempts,
                    attempt_no=attempt_no,
                    now=self._clock,
                )
                active.verification_results.append(verification)
                if verification.passed:
                    outcome, error_text = AttemptOutcome.SUCCESS, None
                else:
                    outcome = AttemptOutcome.VERIFICATION_FAILED
                    error_text = _summarize_failures(verification)
        else:
            classification = classify_executor_failure(
                executor=executor,
                error=result.error,
                context_exhausted=result.context_exhausted,
                transient=transient,
            )
            logger.info(
                "Task %s attempt %d failure classified (%s): %s",
                task.task_id,
                attempt_no,
                "transient" if classification.transient else "permanent",
                classification.to_event_details(executor=executor),
            )
            outcome, error_text = classification.outcome, result.error or classification.reason_code

        attempt = ReassignmentAttempt(
            attempt_no=attempt_no,
            task_id=task.task_id,
            executor=executor,
            started_at=started_at,
            ended_at=self._clock(),
            outcome=outcome,
            error=error_text,
            retry_count=cursor.retry_count,
            fresh_context=cursor.fresh_context,
        )
        session.attempts_log.append(attempt)
        self.sessions.touch(session)
        return _AttemptReport(attempt=attempt, result=result)

    def build_resume_context(self, active: ActiveTask) -> ResumeContext:
        timestamps = None
        if self._file_timestamps is not None:
            timestamps = self._file_timestamps(referenced_files(active.checkpoint))
        return self.checkpoints.build_resume_context(active.checkpoint, active.task, timestamps)

    def _fold_progress(self, active: ActiveTask, result: ExecutorResult) -> None:
        checkpoint = active.checkpoint
        steps = result.completed_steps or [active.task.description or active.task.task_id]
        for step in steps:
            self.checkpoints.record_step_complete(checkpoint, step, result.files_changed)
        for decision, rationale in result.decisions:
            self.checkpoints.record_decision(checkpoint, decision, rationale)

    def _snapshot(
        self,
        active: ActiveTask,
        attempt: ReassignmentAttempt,
        result: ExecutorResult,
    ) -> None:
        partial_work = result.partial_work
        if partial_work is None and attempt.error:
            partial_work = f"{attempt.executor}: {attempt.error}"
        if attempt.outcome == AttemptOutcome.VERIFICATION_FAILED and attempt.error:
            self.checkpoints.record_blocker(
                active.checkpoint,
                f"{attempt.executor}: {attempt.error}",
            )
        self.checkpoints.snapshot_on_interrupt(
            active.checkpoint,
            _INTERRUPT_REASONS[attempt.outcome],
            partial_work=partial_work,
            executor=attempt.executor,
        )

    def _complete(self, session: Session, active: ActiveTask) -> TaskRunOutcome:
        task_id = active.task.task_id
        advisory = active.contract.contract_type == ContractType.ADVISORY
        if advisory:
            logger.warning("Task %s is advisory; output logged for human review", task_id)
        entry = self.sessions.finish_task(
            session,
            status=TaskStatus.COMPLETED,
            reason="advisory" if advisory else "verified",
            review_required=advisory,
        )
        return TaskRunOutcome(
            task_id=task_id,
            status=TaskStatus.COMPLETED,
            reason=entry.reason,
            attempts=session.attempts_for(task_id),
            verification_result=entry.verification_result,
        )

    def _cancel(self, session: Session, active: ActiveTask) -> TaskRunOutcome:
        task_id = active.task.task_id
        self.checkpoints.snapshot_on_interrupt(active.checkpoint, InterruptReason.CANCELLED)
        entry = self.sessions.finish_task(session, status=TaskStatus.SKIPPED, reason="cancelled")
        return TaskRunOutcome(
            task_id=task_id,
            status=TaskStatus.SKIPPED,
            reason="cancelled",
            attempts=session.attempts_for(task_id),
            verification_result=entry.verification_result,
            stop_batch=True,
        )

    def _escalate(
        self,
        session: Session,
        active: ActiveTask,
        *,
        reason: str,
        hint: str | None,
    ) -> TaskRunOutcome | None:
        task_id = active.task.task_id
        report = EscalationReport(
            task_id=task_id,
            description=active.task.description,
            reason=reason,
            hint=hint,
            attempts=session.attempts_for(task_id),
            checkpoint_summary=CheckpointSummary.from_checkpoint(active.checkpoint),
            resume_context=self.build_resume_context(active),
        )
        logger.warning("Escalating task %s: %s", task_id, reason)
        if self.escalation_handler is None:
            session.pending_escalation = PendingEscalation(
                task_id=task_id,
                reason=reason,
                hint=hint,
                raised_at=self._clock(),
            )
            self.sessions.touch(session)
            return TaskRunOutcome(
                task_id=task_id,
                status=TaskStatus.IN_PROGRESS,
                reason="escalated",
                attempts=report.attempts,
                verification_result=active.verification_result,
                escalation=report,
            )

        option = self.escalation_handler.choose(report)
        logger.info("Operator chose %s for task %s", option.value, task_id)
        if option == RecoveryOption.RETRY_DIFFERENT_APPROACH:
            self.checkpoints.record_blocker(
                active.checkpoint,
                f"escalated after {reason}; operator requested a different approach",
            )
            self.sessions.touch(session)
            return None

        status, final_reason, stop_batch = {
            RecoveryOption.MANUAL_TAKEOVER: (TaskStatus.FAILED, "manual_takeover", False),
            RecoveryOption.SKIP_TASK: (TaskStatus.SKIPPED, "skipped_by_operator", False),
            RecoveryOption.ABANDON_BATCH: (TaskStatus.FAILED, "abandoned", True),
        }[option]
        entry = self.sessions.finish_task(session, status=status, reason=final_reason)
        return TaskRunOutcome(
            task_id=task_id,
            status=status,
            reason=final_reason,
            attempts=report.attempts,
            verification_result=entry.verification_result,
            escalation=report,
            stop_batch=stop_batch,
        )

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._cancel_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def cancel_on_signals(self) -> Iterator[None]:
        """Turn SIGINT and SIGTERM into a cancellation request while active."""

        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.warning("Received %s; cancelling at the next suspension point", name)
            self.cancel()

        installed = False
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            pass
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)


def _summarize_failures(result: VerificationResult) -> str:
    parts = []
    for item in result.failed_criteria():
        label = item.activity.value
        if item.descriptor:
            label += "(" + ", ".join(f"{key}={value}" for key, value in item.descriptor) + ")"
        parts.append(f"{label}: {item.error}" if item.error else label)
    return "; ".join(parts) or "verification failed"
