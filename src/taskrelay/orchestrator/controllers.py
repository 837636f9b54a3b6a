"""Controllers for taskrelay CLI commands."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from taskrelay.config import Settings
from taskrelay.orchestrator.backend import CliTaskExecutor, CommandQualityChecker
from taskrelay.orchestrator.checkpoint import (
    CheckpointManager,
    checkpoint_size_bytes,
    collect_file_timestamps,
    referenced_files,
)
from taskrelay.orchestrator.contracts import classify_description, generate_contract
from taskrelay.orchestrator.errors import StateBackendError, TaskRelayError
from taskrelay.orchestrator.escalation import (
    EscalationHandler,
    render_attempt_lines,
)
from taskrelay.orchestrator.models import (
    Checkpoint,
    ResumeChoice,
    Session,
    TaskCategory,
    TaskStatus,
    WorkItem,
)
from taskrelay.orchestrator.reassignment import (
    ReassignmentController,
    ReassignmentPolicy,
    TaskRunOutcome,
)
from taskrelay.orchestrator.repository import (
    InMemoryStateBackend,
    SqliteStateBackend,
    StateBackend,
)
from taskrelay.orchestrator.routing import (
    FallbackChainDefaults,
    classify_task_category,
    resolve_fallback_chain,
    session_override_metadata,
)
from taskrelay.orchestrator.session import ResumePrompt, SessionStateManager
from taskrelay.orchestrator.workdir import ExecutorWorkdirManager

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ContractCommand:
    """CLI input for contract preview."""

    description: str
    artifacts: tuple[str, ...]
    output_format: str = "table"


@dataclass(slots=True)
class RunCommand:
    """CLI input for running a batch of tasks."""

    db_path: Path | None
    session_id: str | None
    tasks_file: Path | None
    task_id: str | None
    description: str | None
    artifacts: tuple[str, ...]
    steps: tuple[str, ...]
    resume_choice: Callable[[ResumePrompt], ResumeChoice]
    escalation_handler: EscalationHandler | None = None


@dataclass(slots=True)
class RunResult:
    lines: list[str]
    success: bool


@dataclass(slots=True)
class SessionCommand:
    """CLI input for commands that address one session."""

    db_path: Path | None
    session_id: str | None
    task_id: str | None = None
    output_format: str = "table"


@dataclass(slots=True)
class SessionTakeoverCommand:
    db_path: Path | None
    session_id: str | None
    from_session_id: str


@dataclass(slots=True)
class SessionChainCommand:
    """CLI input for a per-session fallback chain override."""

    db_path: Path | None
    session_id: str | None
    category: str
    mode: str
    executors: tuple[str, ...] = field(default_factory=tuple)


class TaskRelayCliController:
    """Coordinates session, contract and run CLI operations."""

    def contract(self, command: ContractCommand) -> list[str]:
        contract = generate_contract(command.description, command.artifacts)
        classification = classify_description(command.description)
        category = classify_task_category(command.artifacts)
        if command.output_format == "json":
            payload = contract.to_record()
            payload["category"] = category.value
            return [json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True)]
        lines = [
            f"Contract: type={contract.contract_type.value} category={category.value}",
            f"fingerprint: {contract.generated_from}",
        ]
        keyword = getattr(classification, "keyword", None)
        if keyword:
            lines.append(f"matched keyword: {keyword}")
        if not contract.criteria:
            lines.append("criteria: none (output is logged for human review)")
        lines.extend(f"- {criterion.label()}" for criterion in contract.criteria)
        return lines

    def run(self, command: RunCommand) -> RunResult:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        tasks = _load_tasks(command)
        defaults = FallbackChainDefaults.from_settings(settings)
        settings.validate_executors(_configured_executors(defaults))

        lines: list[str] = []
        with _state_backend(settings, allow_degraded=True) as backend:
            sessions = _session_manager(settings, backend, session_id=command.session_id)
            start = sessions.start_session()
            session = start.session
            lines.append(
                f"Session {session.session_id}: {'resumed' if start.resumed else 'new'}"
                + (" (stale)" if start.stale else ""),
            )
            controller = ReassignmentController(
                sessions=sessions,
                executor=CliTaskExecutor(
                    commands=settings.executors.commands,
                    workdir_manager=ExecutorWorkdirManager(settings.executors.workdir_root),
                    timeout_seconds=settings.executors.timeout_seconds,
                    keep_workdirs=settings.executors.keep_workdirs,
                ),
                checker=CommandQualityChecker(settings.quality),
                fallback_defaults=defaults,
                policy=ReassignmentPolicy.from_settings(settings),
                escalation_handler=command.escalation_handler,
                file_timestamps=lambda paths: collect_file_timestamps(
                    paths,
                    root=settings.quality.workspace_root,
                ),
            )

            outcomes: list[TaskRunOutcome] = []
            stopped = False
            with controller.cancel_on_signals():
                prompt = sessions.resume_decision(session)
                if prompt is not None:
                    choice = command.resume_choice(prompt)
                    lines.append(f"Resume choice for {prompt.task_id}: {choice.value}")
                    if sessions.apply_resume_choice(session, choice) is not None:
                        outcome = controller.resume_active(session)
                        if outcome is not None:
                            outcomes.append(outcome)
                            stopped = outcome.stop_batch or outcome.pending_operator
                if not stopped:
                    summary = controller.run_batch(session, tasks)
                    outcomes.extend(summary.outcomes)
                    stopped = summary.stopped

            for outcome in outcomes:
                lines.extend(_outcome_lines(outcome))
            lines.append(
                "Batch summary: "
                f"completed={_count(outcomes, TaskStatus.COMPLETED)} "
                f"failed={_count(outcomes, TaskStatus.FAILED)} "
                f"skipped={_count(outcomes, TaskStatus.SKIPPED)} "
                f"escalated={_count(outcomes, TaskStatus.IN_PROGRESS)} "
                f"stopped={'yes' if stopped else 'no'}",
            )
            lines.extend(f"warning: {warning}" for warning in sessions.warnings)

        success = not stopped and all(
            outcome.status == TaskStatus.COMPLETED for outcome in outcomes
        )
        return RunResult(lines=lines, success=success)

    def session_status(self, command: SessionCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _state_backend(settings) as backend:
            sessions = _session_manager(settings, backend, session_id=command.session_id)
            session = sessions.load_session(sessions.session_id)
            if session is None:
                return [f"No session {sessions.session_id}."]
            stale = sessions.is_stale(session)

        lines = [
            f"Session: {session.session_id}",
            f"created_at: {session.created_at.isoformat()}",
            f"last_heartbeat: {session.last_heartbeat.isoformat()}" + (" (stale)" if stale else ""),
        ]
        active = session.active_task
        if active is None:
            lines.append("active_task: -")
        else:
            checkpoint = active.checkpoint
            lines.append(
                f"active_task: {active.task.task_id} status={active.task.status.value} "
                f"contract={active.contract.contract_type.value}",
            )
            lines.extend(_checkpoint_summary_lines(checkpoint))
            result = active.verification_result
            if result is not None:
                lines.append(f"last verification: {result.overall.value}")
        if session.pending_escalation is not None:
            escalation = session.pending_escalation
            lines.append(
                f"pending escalation: task={escalation.task_id} reason={escalation.reason}"
                + (f" hint={escalation.hint}" if escalation.hint else ""),
            )
        lines.append(f"deferred: {', '.join(item.task.task_id for item in session.deferred_tasks) or '-'}")
        lines.append(f"history: {len(session.history)} attempts: {len(session.attempts_log)}")
        for category, override in sorted(session.fallback_chain_overrides.items()):
            lines.append(f"chain override {category}: {override.get('mode')} {override.get('executors')}")
        return lines

    def session_list(self, command: SessionCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _state_backend(settings) as backend:
            sessions = _session_manager(settings, backend, session_id=command.session_id)
            listed = sessions.list_sessions()
            rows = [
                (session, sessions.is_stale(session)) for session in listed
            ]
        if not rows:
            return ["No sessions."]
        return [
            f"{session.session_id} heartbeat={session.last_heartbeat.isoformat()} "
            f"stale={'yes' if stale else 'no'} "
            f"active={session.active_task.task.task_id if session.active_task else '-'}"
            for session, stale in rows
        ]

    def session_clear(self, command: SessionCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _state_backend(settings) as backend:
            sessions = _session_manager(settings, backend, session_id=command.session_id)
            sessions.clear_session()
        return [f"Session {sessions.session_id} cleared."]

    def session_takeover(self, command: SessionTakeoverCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _state_backend(settings) as backend:
            sessions = _session_manager(settings, backend, session_id=command.session_id)
            session = sessions.start_session().session
            active = sessions.take_over(session, command.from_session_id)
        return [
            f"Session {session.session_id} took over task {active.task.task_id} "
            f"from {command.from_session_id}.",
            *_checkpoint_summary_lines(active.checkpoint),
        ]

    def session_chain(self, command: SessionChainCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        defaults = FallbackChainDefaults.from_settings(settings)
        category = _category(command.category)
        override = session_override_metadata(mode=command.mode, executors=command.executors)
        with _state_backend(settings) as backend:
            sessions = _session_manager(settings, backend, session_id=command.session_id)
            session = sessions.start_session().session
            sessions.set_fallback_override(session, category.value, override)
            chain = resolve_fallback_chain(
                defaults=defaults,
                category=category,
                session_overrides=session.fallback_chain_overrides,
            )
        return [
            f"Session {session.session_id} chain for {category.value}: "
            + " -> ".join(chain.executors),
        ]

    def checkpoint_show(self, command: SessionCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _state_backend(settings) as backend:
            sessions = _session_manager(settings, backend, session_id=command.session_id)
            session = _require_session(sessions)
        checkpoint = _find_checkpoint(session, command.task_id)
        if command.output_format == "json":
            return [json.dumps(checkpoint.to_record(), ensure_ascii=False, indent=2, sort_keys=True)]
        lines = [f"Checkpoint for {checkpoint.task_id} ({checkpoint_size_bytes(checkpoint)} bytes)"]
        lines.extend(_checkpoint_summary_lines(checkpoint))
        lines.extend(
            f"  done: {step.step}" + (f" [{', '.join(step.files_touched)}]" if step.files_touched else "")
            for step in checkpoint.completed_steps
        )
        lines.extend(f"  todo: {step}" for step in checkpoint.pending_steps)
        lines.extend(
            f"  decision: {decision.decision} ({decision.rationale})"
            for decision in checkpoint.decisions
        )
        lines.extend(f"  blocker: {blocker}" for blocker in checkpoint.blockers)
        return lines

    def resume_context(self, command: SessionCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _state_backend(settings) as backend:
            sessions = _session_manager(settings, backend, session_id=command.session_id)
            session = _require_session(sessions)
        active = session.active_task
        if active is None or (command.task_id and active.task.task_id != command.task_id):
            raise TaskRelayError("Resume context is only available for the active task.")
        checkpoint = active.checkpoint
        context = CheckpointManager().build_resume_context(
            checkpoint,
            active.task,
            collect_file_timestamps(
                referenced_files(checkpoint),
                root=settings.quality.workspace_root,
            ),
        )
        if command.output_format == "json":
            return [json.dumps(context.to_record(), ensure_ascii=False, indent=2, sort_keys=True)]
        return context.render().rstrip("\n").splitlines()

    def attempts(self, command: SessionCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _state_backend(settings) as backend:
            sessions = _session_manager(settings, backend, session_id=command.session_id)
            session = _require_session(sessions)
        attempts = (
            session.attempts_for(command.task_id) if command.task_id else list(session.attempts_log)
        )
        if not attempts:
            return ["No attempts."]
        if command.output_format == "json":
            return [
                json.dumps(
                    [attempt.to_record() for attempt in attempts],
                    ensure_ascii=False,
                    indent=2,
                ),
            ]
        lines: list[str] = []
        for task_id in dict.fromkeys(attempt.task_id for attempt in attempts):
            lines.append(f"Task {task_id}:")
            lines.extend(
                render_attempt_lines([attempt for attempt in attempts if attempt.task_id == task_id]),
            )
        return lines


@contextmanager
def _state_backend(
    settings: Settings,
    *,
    allow_degraded: bool = False,
) -> Iterator[StateBackend]:
    backend = SqliteStateBackend(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.session.sqlite_busy_timeout_ms,
    )
    try:
        backend.init_schema()
    except StateBackendError as error:
        backend.close()
        if not allow_degraded:
            raise
        logger.warning("State database unavailable; running without persistence: %s", error)
        yield InMemoryStateBackend()
        return
    try:
        yield backend
    finally:
        backend.close()


def _session_manager(
    settings: Settings,
    backend: StateBackend,
    *,
    session_id: str | None,
) -> SessionStateManager:
    return SessionStateManager(
        backend,
        session_id=session_id or settings.session.session_id,
        timeout_minutes=settings.session.timeout_minutes,
    )


def _require_session(sessions: SessionStateManager) -> Session:
    session = sessions.load_session(sessions.session_id)
    if session is None:
        raise TaskRelayError(f"No session {sessions.session_id}.")
    return session


def _find_checkpoint(session: Session, task_id: str | None) -> Checkpoint:
    active = session.active_task
    if active is not None and (task_id is None or active.task.task_id == task_id):
        return active.checkpoint
    if task_id is not None:
        for deferred in session.deferred_tasks:
            if deferred.task.task_id == task_id:
                return deferred.checkpoint
        for entry in reversed(session.history):
            if entry.task.task_id == task_id and entry.checkpoint is not None:
                return entry.checkpoint
    raise TaskRelayError(
        f"No checkpoint for {task_id!r} in session {session.session_id}."
        if task_id
        else f"Session {session.session_id} has no active task.",
    )


def _checkpoint_summary_lines(checkpoint: Checkpoint) -> list[str]:
    last_decision = checkpoint.decisions[-1].decision if checkpoint.decisions else "-"
    return [
        f"  phase={checkpoint.phase} completed={len(checkpoint.completed_steps)} "
        f"pending={len(checkpoint.pending_steps)} reason={checkpoint.metadata.reason or '-'}",
        f"  last decision: {last_decision}",
        f"  previous executors: {', '.join(checkpoint.metadata.previous_executors) or '-'}",
    ]


def _outcome_lines(outcome: TaskRunOutcome) -> list[str]:
    lines = [
        f"Task {outcome.task_id}: {outcome.status.value} ({outcome.reason}) "
        f"attempts={len(outcome.attempts)}",
    ]
    if outcome.escalation is not None:
        lines.extend(f"  {line}" for line in outcome.escalation.render_lines())
        if outcome.reason == "manual_takeover":
            lines.append("  Resume context for manual takeover:")
            lines.extend(
                f"    {line}" for line in outcome.escalation.resume_context.render().splitlines()
            )
    return lines


def _load_tasks(command: RunCommand) -> list[WorkItem]:
    tasks: list[WorkItem] = []
    if command.tasks_file is not None:
        try:
            raw = json.loads(command.tasks_file.read_text("utf-8"))
        except (OSError, json.JSONDecodeError) as error:
            raise ValueError(f"Cannot read tasks file {command.tasks_file}: {error}") from error
        if not isinstance(raw, list):
            raise ValueError(f"Tasks file {command.tasks_file} must contain a JSON array.")
        for index, item in enumerate(raw, start=1):
            tasks.append(_task_from_json(item, index=index))
    if command.description is not None:
        tasks.append(
            WorkItem(
                task_id=command.task_id or f"task-{len(tasks) + 1}",
                description=command.description,
                expected_artifacts=command.artifacts,
                steps=command.steps,
            ),
        )
    task_ids = [task.task_id for task in tasks]
    duplicates = sorted({task_id for task_id in task_ids if task_ids.count(task_id) > 1})
    if duplicates:
        raise ValueError(f"Duplicate task ids: {', '.join(duplicates)}")
    return tasks


def _task_from_json(item: object, *, index: int) -> WorkItem:
    if not isinstance(item, dict):
        raise ValueError(f"Task #{index} must be a JSON object.")
    description = item.get("description", "")
    artifacts = item.get("expected_artifacts", [])
    steps = item.get("steps", [])
    if not isinstance(description, str):
        raise ValueError(f"Task #{index} description must be a string.")
    for name, values in (("expected_artifacts", artifacts), ("steps", steps)):
        if not isinstance(values, list) or not all(isinstance(value, str) for value in values):
            raise ValueError(f"Task #{index} {name} must be a list of strings.")
    task_id = item.get("task_id") or f"task-{index}"
    return WorkItem(
        task_id=str(task_id),
        description=description,
        expected_artifacts=tuple(artifacts),
        steps=tuple(steps),
    )


def _configured_executors(defaults: FallbackChainDefaults) -> tuple[str, ...]:
    names: list[str] = []
    for executors in defaults.chains.values():
        names.extend(executors)
    for override in defaults.overrides:
        names.extend(override.executors)
    return tuple(dict.fromkeys(names))


def _category(value: str) -> TaskCategory:
    try:
        return TaskCategory(value.strip().lower())
    except ValueError as error:
        allowed = ", ".join(category.value for category in TaskCategory)
        raise ValueError(f"Unknown task category {value!r}. Use one of: {allowed}.") from error


def _count(outcomes: list[TaskRunOutcome], status: TaskStatus) -> int:
    return sum(1 for outcome in outcomes if outcome.status == status)
