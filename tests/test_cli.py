from __future__ import annotations

import json
import os
from datetime import timedelta
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from taskrelay.main import taskrelay
from taskrelay.orchestrator.contracts import generate_contract
from taskrelay.orchestrator.models import WorkItem
from taskrelay.orchestrator.repository import SqliteStateBackend
from taskrelay.orchestrator.session import SessionStateManager
from taskrelay.storage.common import utc_now

pytestmark = [
    allure.epic("CLI"),
    allure.feature("Task Runs and Session Ops"),
]

SRC_DIR = Path(__file__).resolve().parents[1] / "src"


@pytest.fixture()
def cli_env(tmp_path: Path, monkeypatch) -> Path:
    existing = os.environ.get("PYTHONPATH")
    monkeypatch.setenv("PYTHONPATH", os.pathsep.join(filter(None, [str(SRC_DIR), existing])))
    monkeypatch.setenv("COLUMNS", "200")
    monkeypatch.setenv("TASKRELAY_WORKDIR_ROOT", str(tmp_path / "work"))
    monkeypatch.setenv("TASKRELAY_WORKSPACE_ROOT", str(tmp_path))
    for name in (
        "TASKRELAY_EXECUTOR_COMMANDS",
        "TASKRELAY_FALLBACK_CHAINS",
        "TASKRELAY_FALLBACK_CHAIN_OVERRIDES",
        "TASKRELAY_TYPECHECK_COMMAND",
        "TASKRELAY_LINT_COMMAND",
        "TASKRELAY_UNIT_TEST_COMMAND",
        "TASKRELAY_E2E_TEST_COMMAND",
        "TASKRELAY_ECHO_OUTCOME",
        "TASKRELAY_SESSION_ID",
    ):
        monkeypatch.delenv(name, raising=False)
    return tmp_path / "state.db"


def _run(db_path: Path, *args: str, input: str | None = None):
    return CliRunner().invoke(
        taskrelay,
        [args[0], *args[1:2], "--db-path", str(db_path), *args[2:]]
        if args[0] in {"session", "checkpoint"}
        else [args[0], "--db-path", str(db_path), *args[1:]],
        input=input,
    )


def test_contract_preview_lists_criteria() -> None:
    result = CliRunner().invoke(
        taskrelay,
        ["contract", "--description", "Add login form", "--artifact", "src/pages/Login.tsx"],
    )

    assert result.exit_code == 0, result.output
    assert "Contract: type=verifiable category=frontend" in result.output
    assert "- unit-test(pattern=Login)" in result.output
    assert "- end-to-end-test(timing=immediate)" in result.output


def test_contract_preview_json() -> None:
    result = CliRunner().invoke(
        taskrelay,
        ["contract", "--description", "Investigate slow builds", "--format", "json"],
    )

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["type"] == "advisory"
    assert payload["criteria"] == []
    assert payload["category"] == "general"


def test_run_single_task_with_echo_executor(cli_env: Path) -> None:
    result = _run(cli_env, "run", "--session-id", "s1", "--description", "Fix typo in README")

    assert result.exit_code == 0, result.output
    assert "Session s1: new" in result.output
    assert "Task task-1: completed (verified) attempts=1" in result.output
    assert "Batch summary: completed=1 failed=0 skipped=0 escalated=0 stopped=no" in result.output

    attempts = _run(cli_env, "attempts", "--session-id", "s1")
    assert attempts.exit_code == 0, attempts.output
    assert "executor=echo outcome=success" in attempts.output

    checkpoint = _run(cli_env, "checkpoint", "show", "--session-id", "s1", "--task-id", "task-1")
    assert checkpoint.exit_code == 0, checkpoint.output
    assert "done: echo: Fix typo in README" in checkpoint.output
    assert "decision: echo prompt verbatim (demo executor)" in checkpoint.output


def test_run_tasks_file(cli_env: Path, tmp_path: Path) -> None:
    tasks_file = tmp_path / "tasks.json"
    tasks_file.write_text(
        json.dumps(
            [
                {"task_id": "a", "description": "Fix typo in banner"},
                {"task_id": "b", "description": "Research cache eviction"},
            ],
        ),
        "utf-8",
    )

    result = _run(cli_env, "run", "--session-id", "s1", "--tasks-file", str(tasks_file))

    assert result.exit_code == 0, result.output
    assert "Task a: completed (verified)" in result.output
    assert "Task b: completed (advisory)" in result.output


def test_invalid_tasks_file_is_reported(cli_env: Path, tmp_path: Path) -> None:
    tasks_file = tmp_path / "tasks.json"
    tasks_file.write_text(json.dumps({"task_id": "a"}), "utf-8")

    result = _run(cli_env, "run", "--tasks-file", str(tasks_file))

    assert result.exit_code != 0
    assert "must contain a JSON array" in result.output


def test_deferred_escalation_then_resume(cli_env: Path, monkeypatch) -> None:
    monkeypatch.setenv("TASKRELAY_ECHO_OUTCOME", "crash")

    first = _run(
        cli_env,
        "run",
        "--session-id",
        "s1",
        "--task-id",
        "t1",
        "--description",
        "Fix typo in README",
        "--on-escalation",
        "defer",
    )

    assert first.exit_code == 1
    assert "Task t1: in_progress (escalated) attempts=1" in first.output
    assert "Task t1 needs attention: crashed" in first.output

    status = _run(cli_env, "session", "status", "--session-id", "s1")
    assert status.exit_code == 0, status.output
    assert "active_task: t1 status=in_progress contract=skip" in status.output
    assert "pending escalation: task=t1 reason=crashed" in status.output

    context = _run(cli_env, "checkpoint", "resume-context", "--session-id", "s1")
    assert context.exit_code == 0, context.output
    assert "Previously attempted by: echo" in context.output

    monkeypatch.setenv("TASKRELAY_ECHO_OUTCOME", "success")
    second = _run(
        cli_env,
        "run",
        "--session-id",
        "s1",
        "--task-id",
        "t1",
        "--description",
        "Fix typo in README",
        "--on-active",
        "resume",
    )

    assert second.exit_code == 0, second.output
    assert "Resume choice for t1: resume" in second.output
    assert "Task t1: completed (verified) attempts=2" in second.output


def test_prompted_escalation_skip(cli_env: Path, monkeypatch) -> None:
    monkeypatch.setenv("TASKRELAY_ECHO_OUTCOME", "rate_limit")
    monkeypatch.setenv("TASKRELAY_RATE_LIMIT_BACKOFF_SECONDS", "0")

    result = _run(
        cli_env,
        "run",
        "--session-id",
        "s1",
        "--description",
        "Fix typo in README",
        input="skip_task\n",
    )

    assert result.exit_code == 1
    assert "Task task-1 needs attention: rate_limited" in result.output
    assert "retry_different_approach: retry the fallback chain" in result.output
    assert "Task task-1: skipped (skipped_by_operator) attempts=2" in result.output


def test_session_chain_and_list(cli_env: Path) -> None:
    chain = _run(
        cli_env,
        "session",
        "chain",
        "--session-id",
        "s1",
        "--category",
        "backend",
        "--mode",
        "prepend",
        "--executor",
        "codex",
    )

    assert chain.exit_code == 0, chain.output
    assert "Session s1 chain for backend: codex -> echo" in chain.output

    listed = _run(cli_env, "session", "list")
    assert listed.exit_code == 0, listed.output
    assert listed.output.startswith("s1 heartbeat=")


def test_session_clear(cli_env: Path) -> None:
    _run(cli_env, "run", "--session-id", "s1", "--description", "Fix typo in README")

    cleared = _run(cli_env, "session", "clear", "--session-id", "s1", "--yes")
    status = _run(cli_env, "session", "status", "--session-id", "s1")

    assert cleared.exit_code == 0, cleared.output
    assert "No session s1." in status.output


def test_session_takeover_of_stale_session(cli_env: Path) -> None:
    backend = SqliteStateBackend(cli_env)
    backend.init_schema()
    try:
        old = SessionStateManager(
            backend,
            session_id="old",
            clock=lambda: utc_now() - timedelta(hours=2),
        )
        session = old.start_session().session
        task = WorkItem(task_id="t9", description="Add queue", steps=("wire consumer",))
        old.activate_task(session, task, generate_contract(task.description, task.expected_artifacts))
    finally:
        backend.close()

    result = _run(cli_env, "session", "takeover", "--session-id", "new", "--from-session", "old")

    assert result.exit_code == 0, result.output
    assert "Session new took over task t9 from old." in result.output
    status = _run(cli_env, "session", "status", "--session-id", "old")
    assert "active_task: -" in status.output


def test_takeover_without_active_task_is_refused(cli_env: Path) -> None:
    _run(
        cli_env,
        "run",
        "--session-id",
        "old",
        "--description",
        "Fix typo in README",
    )

    result = _run(cli_env, "session", "takeover", "--session-id", "new", "--from-session", "old")

    assert result.exit_code == 1
    assert "has no active task" in result.output


def test_run_rejects_executor_without_command_template(cli_env: Path, monkeypatch) -> None:
    monkeypatch.setenv("TASKRELAY_FALLBACK_CHAINS", "general|override|codex")

    result = _run(cli_env, "run", "--description", "Add helper")

    assert result.exit_code == 1
    assert "No command template for executor(s): codex" in result.output


def test_run_without_tasks_is_usage_error(cli_env: Path) -> None:
    result = _run(cli_env, "run")

    assert result.exit_code == 2


def test_session_chain_normalizes_category_case(cli_env: Path) -> None:
    chain = _run(
        cli_env,
        "session",
        "chain",
        "--session-id",
        "s1",
        "--category",
        "Frontend",
        "--executor",
        "codex",
    )
    status = _run(cli_env, "session", "status", "--session-id", "s1")

    assert chain.exit_code == 0, chain.output
    assert "Session s1 chain for frontend: codex" in chain.output
    assert "chain override frontend: override ['codex']" in status.output


def test_session_chain_rejects_unknown_category_without_storing(cli_env: Path) -> None:
    result = _run(
        cli_env,
        "session",
        "chain",
        "--session-id",
        "s1",
        "--category",
        "bogus",
        "--executor",
        "codex",
    )
    status = _run(cli_env, "session", "status", "--session-id", "s1")

    assert result.exit_code == 1
    assert "Unknown task category 'bogus'" in result.output
    assert "No session s1." in status.output
