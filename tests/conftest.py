"""Shared test fixtures."""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta

import pytest

from taskrelay.config import FallbackSettings, Settings
from taskrelay.orchestrator.backend.base import (
    CheckRequest,
    CheckResult,
    ExecutorRequest,
    ExecutorResult,
)
from taskrelay.orchestrator.checkpoint import CheckpointManager
from taskrelay.orchestrator.models import CheckActivity, CheckStatus
from taskrelay.orchestrator.reassignment import ReassignmentController, ReassignmentPolicy
from taskrelay.orchestrator.repository import InMemoryStateBackend
from taskrelay.orchestrator.routing import FallbackChainDefaults
from taskrelay.orchestrator.session import SessionStateManager

START = datetime(2026, 10, 19, 9, 0, tzinfo=UTC)


class FakeClock:
    """Deterministic clock that advances one second per reading."""

    def __init__(self, start: datetime = START, step: timedelta = timedelta(seconds=1)) -> None:
        self.now = start
        self.step = step

    def __call__(self) -> datetime:
        value = self.now
        self.now = self.now + self.step
        return value

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta


class FakeExecutor:
    """Returns scripted results per executor; the last result repeats."""

    def __init__(self, script: dict[str, list[ExecutorResult]] | None = None) -> None:
        self.script = {name: list(results) for name, results in (script or {}).items()}
        self.requests: list[ExecutorRequest] = []
        self.on_run: Callable[[ExecutorRequest], None] | None = None

    def run(self, request: ExecutorRequest) -> ExecutorResult:
        self.requests.append(request)
        if self.on_run is not None:
            self.on_run(request)
        results = self.script.get(request.executor) or [ExecutorResult(status="success")]
        if len(results) > 1:
            return results.pop(0)
        return results[0]

    def executors_called(self) -> list[str]:
        return [request.executor for request in self.requests]


class FakeChecker:
    """Quality checker with per-activity scripted statuses."""

    def __init__(self, failing: Iterable[CheckActivity] = ()) -> None:
        self.failing = set(failing)
        self.requests: list[CheckRequest] = []
        self.calls: dict[CheckActivity, int] = defaultdict(int)

    def check(self, request: CheckRequest) -> CheckResult:
        self.requests.append(request)
        self.calls[request.activity] += 1
        if request.activity in self.failing:
            return CheckResult(status=CheckStatus.FAIL, detail=f"{request.activity.value} failed")
        return CheckResult(status=CheckStatus.PASS)


class SleepRecorder:
    """Zero-delay sleep that records requested backoff durations."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def fallback_defaults(*executors: str, **per_category: tuple[str, ...]) -> FallbackChainDefaults:
    chains = {"general": executors or ("alpha",)}
    chains.update(per_category)
    return FallbackChainDefaults.from_settings(Settings(fallback=FallbackSettings(chains=chains)))


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def backend() -> InMemoryStateBackend:
    return InMemoryStateBackend()


@pytest.fixture()
def sessions(backend: InMemoryStateBackend, clock: FakeClock) -> SessionStateManager:
    return SessionStateManager(
        backend,
        session_id="s1",
        timeout_minutes=30,
        checkpoints=CheckpointManager(clock=clock),
        clock=clock,
    )


@pytest.fixture()
def sleep() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture()
def make_controller(
    sessions: SessionStateManager,
    sleep: SleepRecorder,
    clock: FakeClock,
) -> Callable[..., ReassignmentController]:
    def _make(  # noqa: PLR0913
        *,
        executor: FakeExecutor,
        checker: FakeChecker | None = None,
        chain: tuple[str, ...] = ("alpha", "beta"),
        policy: ReassignmentPolicy | None = None,
        escalation_handler=None,
        file_timestamps=None,
    ) -> ReassignmentController:
        return ReassignmentController(
            sessions=sessions,
            executor=executor,
            checker=checker or FakeChecker(),
            fallback_defaults=fallback_defaults(*chain),
            policy=policy or ReassignmentPolicy(backoff_seconds=(30.0, 60.0, 120.0)),
            escalation_handler=escalation_handler,
            sleep=sleep,
            file_timestamps=file_timestamps,
            clock=clock,
        )

    return _make
