"""Executor and quality checker implementations."""

from taskrelay.orchestrator.backend.base import (
    CheckRequest,
    CheckResult,
    ExecutorRequest,
    ExecutorResult,
    QualityChecker,
    TaskExecutor,
)
from taskrelay.orchestrator.backend.cli_backend import CliTaskExecutor, CommandQualityChecker

__all__ = [
    "CheckRequest",
    "CheckResult",
    "CliTaskExecutor",
    "CommandQualityChecker",
    "ExecutorRequest",
    "ExecutorResult",
    "QualityChecker",
    "TaskExecutor",
]
