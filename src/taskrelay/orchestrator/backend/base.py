"""Collaborator interfaces consumed by the orchestration core."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol

from taskrelay.orchestrator.models import CheckActivity, CheckStatus, ResumeContext


@dataclass(slots=True)
class ExecutorRequest:
    """Inputs required to execute one task attempt."""

    task_id: str
    task_description: str
    executor: str
    attempt_no: int
    resume_context: ResumeContext | None = None
    fresh_context: bool = False
    shutdown_requested: Callable[[], bool] | None = None


@dataclass(slots=True)
class ExecutorResult:
    """Execution outcome reported by an executor.

    ``completed_steps`` and ``decisions`` are optional progress reports the
    orchestration core folds into the checkpoint; executors never write state.
    """

    status: str
    files_changed: list[str] = field(default_factory=list)
    error: str | None = None
    completed_steps: list[str] = field(default_factory=list)
    decisions: list[tuple[str, str]] = field(default_factory=list)
    partial_work: str | None = None
    context_exhausted: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status == "success"


class TaskExecutor(Protocol):
    """Protocol implemented by executor runners."""

    def run(self, request: ExecutorRequest) -> ExecutorResult:
        """Run a task attempt and return its outcome."""


@dataclass(slots=True)
class CheckRequest:
    activity: CheckActivity
    descriptor: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class CheckResult:
    status: CheckStatus
    detail: str | None = None


class QualityChecker(Protocol):
    """Protocol implemented by quality check runners."""

    def check(self, request: CheckRequest) -> CheckResult:
        """Run one verification activity and report pass or fail."""
