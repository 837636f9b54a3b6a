"""Escalation reports and operator-facing prompts."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from taskrelay.orchestrator.models import (
    Checkpoint,
    RecoveryOption,
    ReassignmentAttempt,
    ResumeContext,
)
from taskrelay.orchestrator.session import ResumePrompt

RECOVERY_OPTIONS = (
    RecoveryOption.RETRY_DIFFERENT_APPROACH,
    RecoveryOption.MANUAL_TAKEOVER,
    RecoveryOption.SKIP_TASK,
    RecoveryOption.ABANDON_BATCH,
)
TASK_TOO_LARGE_HINT = "task too large, recommend decomposition"

_OPTION_LABELS = {
    RecoveryOption.RETRY_DIFFERENT_APPROACH: "retry the fallback chain with a different approach",
    RecoveryOption.MANUAL_TAKEOVER: "take over manually (dump the full resume context)",
    RecoveryOption.SKIP_TASK: "skip this task",
    RecoveryOption.ABANDON_BATCH: "abandon the whole batch",
}


@dataclass(slots=True)
class CheckpointSummary:
    phase: str
    completed_steps: int
    pending_steps: int
    last_decision: str | None
    reason: str | None
    previous_executors: list[str]

    @classmethod
    def from_checkpoint(cls, checkpoint: Checkpoint) -> CheckpointSummary:
        return cls(
            phase=checkpoint.phase,
            completed_steps=len(checkpoint.completed_steps),
            pending_steps=len(checkpoint.pending_steps),
            last_decision=checkpoint.decisions[-1].decision if checkpoint.decisions else None,
            reason=checkpoint.metadata.reason,
            previous_executors=list(checkpoint.metadata.previous_executors),
        )


@dataclass(slots=True)
class EscalationReport:
    """Everything an operator needs to decide how to recover a task."""

    task_id: str
    description: str
    reason: str
    hint: str | None
    attempts: list[ReassignmentAttempt]
    checkpoint_summary: CheckpointSummary
    resume_context: ResumeContext
    options: tuple[RecoveryOption, ...] = RECOVERY_OPTIONS

    def render_lines(self) -> list[str]:
        lines = [
            f"Task {self.task_id} needs attention: {self.reason}",
            f"description: {self.description}",
        ]
        if self.hint:
            lines.append(f"hint: {self.hint}")
        lines.append(f"attempts: {len(self.attempts)}")
        lines.extend(render_attempt_lines(self.attempts))
        summary = self.checkpoint_summary
        lines.append(
            f"checkpoint: phase={summary.phase} completed={summary.completed_steps} "
            f"pending={summary.pending_steps} reason={summary.reason or '-'}",
        )
        lines.append(f"last decision: {summary.last_decision or '-'}")
        lines.append("options:")
        lines.extend(
            f"  {option.value}: {_OPTION_LABELS[option]}" for option in self.options
        )
        return lines


class EscalationHandler(Protocol):
    """Operator surface that picks a recovery option for an escalated task."""

    def choose(self, report: EscalationReport) -> RecoveryOption:
        """Return the operator's recovery choice."""


class StaticEscalationHandler:
    """Answers every escalation with one preconfigured option."""

    def __init__(self, option: RecoveryOption) -> None:
        self.option = option
        self.reports: list[EscalationReport] = []

    def choose(self, report: EscalationReport) -> RecoveryOption:
        self.reports.append(report)
        return self.option


def render_attempt_lines(attempts: list[ReassignmentAttempt]) -> list[str]:
    return [
        (
            f"  #{attempt.attempt_no} executor={attempt.executor} outcome={attempt.outcome.value} "
            f"retry={attempt.retry_count}"
            + (" fresh_context=yes" if attempt.fresh_context else "")
            + (f" error={_one_line(attempt.error)}" if attempt.error else "")
        )
        for attempt in attempts
    ]


def render_resume_prompt_lines(prompt: ResumePrompt) -> list[str]:
    """Lines shown before asking the operator how to continue a previous task."""

    lines = [
        f"Session {prompt.session_id} has task {prompt.task_id} in progress"
        + (" (session was stale)" if prompt.stale else ""),
        f"description: {prompt.description}",
        f"checkpoint: phase={prompt.phase} completed={prompt.completed_steps} "
        f"pending={prompt.pending_steps}",
        f"last decision: {prompt.last_decision or '-'}",
        f"attempts: {len(prompt.attempts)}",
    ]
    lines.extend(render_attempt_lines(prompt.attempts))
    lines.append("choices: " + ", ".join(option.value for option in prompt.options))
    return lines


def _one_line(text: str, limit: int = 160) -> str:
    flattened = " ".join(text.split())
    if len(flattened) <= limit:
        return flattened
    return flattened[: limit - 3] + "..."
