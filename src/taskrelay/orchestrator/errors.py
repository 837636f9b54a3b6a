"""Shared error types for the orchestrator package."""

from __future__ import annotations


class TaskRelayError(Exception):
    """Base exception for orchestration errors.

    Use this for user-facing errors that should have actionable messages.
    """


class StateBackendError(TaskRelayError):
    """Raised when the persistence backend cannot load or save a record."""


class SessionConflictError(TaskRelayError):
    """Raised when two sessions claim the same task and a human must decide."""


class TaskAlreadyActiveError(TaskRelayError):
    """Raised when a second task is activated while another is in progress."""


class UnknownExecutorError(TaskRelayError):
    """Raised when a fallback chain names an executor that is not registered."""


class ExecutorRunError(TaskRelayError):
    """Executor execution error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient
