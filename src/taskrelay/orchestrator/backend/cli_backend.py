"""Subprocess-based executor and quality checker for CLI tools."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import sys
import time
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import IO

from taskrelay.config import QualitySettings
from taskrelay.orchestrator.backend.base import (
    CheckRequest,
    CheckResult,
    ExecutorRequest,
    ExecutorResult,
)
from taskrelay.orchestrator.errors import ExecutorRunError, UnknownExecutorError
from taskrelay.orchestrator.models import CheckActivity, CheckStatus
from taskrelay.orchestrator.workdir import ExecutorWorkdirManager, read_executor_result

logger = logging.getLogger(__name__)

ECHO_EXECUTOR_TEMPLATE = (
    f"{shlex.quote(sys.executable)} -m taskrelay.orchestrator.backend.echo_agent "
    "--manifest {manifest}"
)
_EXECUTOR_PLACEHOLDERS = ("prompt", "prompt_file", "manifest")
_ERROR_TAIL_CHARS = 2_000


class CliTaskExecutor:
    """Execute per-executor CLI command templates in a materialized workdir."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        commands: Mapping[str, str],
        workdir_manager: ExecutorWorkdirManager,
        timeout_seconds: int,
        graceful_shutdown_seconds: int = 5,
        keep_workdirs: bool = True,
    ) -> None:
        self.commands = {"echo": ECHO_EXECUTOR_TEMPLATE, **commands}
        self.workdir_manager = workdir_manager
        self.timeout_seconds = timeout_seconds
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self.keep_workdirs = keep_workdirs

    def run(self, request: ExecutorRequest) -> ExecutorResult:
        template = self.commands.get(request.executor)
        if template is None:
            raise UnknownExecutorError(
                f"No command template for executor {request.executor!r}. "
                "Set TASKRELAY_EXECUTOR_COMMANDS.",
            )
        materialized = self.workdir_manager.materialize(request)
        manifest = materialized.manifest
        stdout_path = Path(manifest.output_stdout_path)
        stderr_path = Path(manifest.output_stderr_path)

        run_args, command_head = _build_run_args(
            command_template=template,
            prompt=materialized.prompt,
            prompt_file=Path(manifest.prompt_path),
            manifest_path=materialized.manifest_path,
        )

        env = os.environ.copy()
        env["TASKRELAY_TASK_ID"] = request.task_id
        env["TASKRELAY_EXECUTOR"] = request.executor
        env["TASKRELAY_ATTEMPT_NO"] = str(request.attempt_no)
        env["TASKRELAY_FRESH_CONTEXT"] = "1" if request.fresh_context else "0"

        logger.info(
            "Running executor %s for task %s (attempt %d)",
            request.executor,
            request.task_id,
            request.attempt_no,
        )
        try:
            with (
                stdout_path.open("w", encoding="utf-8") as stdout_handle,
                stderr_path.open("w", encoding="utf-8") as stderr_handle,
            ):
                exit_code, timed_out = _run_subprocess_with_shutdown(
                    run_args=run_args,
                    env=env,
                    cwd=Path(manifest.workdir),
                    timeout_seconds=self.timeout_seconds,
                    stdout_handle=stdout_handle,
                    stderr_handle=stderr_handle,
                    shutdown_requested=request.shutdown_requested,
                    graceful_shutdown_seconds=self.graceful_shutdown_seconds,
                )
        except FileNotFoundError as error:
            raise ExecutorRunError(
                f"Executor command not found: {command_head}",
                transient=False,
            ) from error
        except OSError as error:
            raise ExecutorRunError(f"Executor failed to start: {error}", transient=True) from error

        result = self._collect_result(
            result_path=Path(manifest.output_result_path),
            stderr_path=stderr_path,
            exit_code=exit_code,
            timed_out=timed_out,
        )
        if result.succeeded and not self.keep_workdirs:
            self.workdir_manager.discard(materialized)
        return result

    def _collect_result(
        self,
        *,
        result_path: Path,
        stderr_path: Path,
        exit_code: int,
        timed_out: bool,
    ) -> ExecutorResult:
        if timed_out:
            return ExecutorResult(
                status="failure",
                error=f"Executor timed out after {self.timeout_seconds}s",
            )
        if result_path.exists():
            return read_executor_result(result_path)
        if exit_code == 0:
            return ExecutorResult(status="success")
        return ExecutorResult(
            status="failure",
            error=_tail(stderr_path) or f"Executor exited with code {exit_code}",
        )


class CommandQualityChecker:
    """Run configured shell commands as quality checker activities."""

    def __init__(
        self,
        settings: QualitySettings,
        *,
        runner: Callable[..., subprocess.CompletedProcess[str]] = subprocess.run,
    ) -> None:
        self.settings = settings
        self._runner = runner
        self._templates = {
            CheckActivity.TYPECHECK: settings.typecheck_command,
            CheckActivity.LINT: settings.lint_command,
            CheckActivity.UNIT_TEST: settings.unit_test_command,
            CheckActivity.END_TO_END_TEST: settings.e2e_test_command,
        }

    def check(self, request: CheckRequest) -> CheckResult:
        template = self._templates[request.activity].strip()
        if not template:
            logger.warning(
                "No command configured for %s; treating the check as passed",
                request.activity.value,
            )
            return CheckResult(status=CheckStatus.PASS, detail="not configured")
        try:
            rendered = template.format(
                **{key: shlex.quote(value) for key, value in request.descriptor.items()},
            )
        except KeyError as error:
            return CheckResult(
                status=CheckStatus.FAIL,
                detail=f"Unsupported check command placeholder: {error}",
            )
        argv = shlex.split(rendered)
        try:
            completed = self._runner(
                argv,
                cwd=self.settings.workspace_root,
                capture_output=True,
                text=True,
                timeout=self.settings.timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired:
            return CheckResult(
                status=CheckStatus.FAIL,
                detail=f"{request.activity.value} timed out after {self.settings.timeout_seconds}s",
            )
        except OSError as error:
            return CheckResult(status=CheckStatus.FAIL, detail=f"{argv[0]}: {error}")
        if completed.returncode == 0:
            return CheckResult(status=CheckStatus.PASS)
        output = (completed.stderr or completed.stdout or "").strip()
        return CheckResult(
            status=CheckStatus.FAIL,
            detail=output[-_ERROR_TAIL_CHARS:] or f"exit code {completed.returncode}",
        )


def _build_run_args(
    *,
    command_template: str,
    prompt: str,
    prompt_file: Path,
    manifest_path: Path,
) -> tuple[list[str], str]:
    stripped = command_template.strip()
    if not stripped:
        raise ExecutorRunError("Executor command template is empty.", transient=False)
    if not any(f"{{{name}}}" in stripped for name in _EXECUTOR_PLACEHOLDERS):
        raise ExecutorRunError(
            "Executor command template must include {prompt}, {prompt_file} or {manifest}.",
            transient=False,
        )
    try:
        rendered = stripped.format(
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
            manifest=shlex.quote(str(manifest_path)),
            workdir=shlex.quote(str(manifest_path.parent.parent)),
        )
    except KeyError as error:
        raise ExecutorRunError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise ExecutorRunError("Executor command template rendered empty command.", transient=False)
    return argv, argv[0]


def _run_subprocess_with_shutdown(  # noqa: PLR0913
    *,
    run_args: list[str],
    env: dict[str, str],
    cwd: Path,
    timeout_seconds: int,
    stdout_handle: IO[str],
    stderr_handle: IO[str],
    shutdown_requested: Callable[[], bool] | None,
    graceful_shutdown_seconds: int,
) -> tuple[int, bool]:
    """Run the executor, returning ``(exit_code, timed_out)``."""

    process = subprocess.Popen(  # noqa: S603
        run_args,
        env=env,
        cwd=cwd,
        stdout=stdout_handle,
        stderr=stderr_handle,
        text=True,
    )
    start_monotonic = time.monotonic()
    shutdown_deadline: float | None = None

    while True:
        returncode = process.poll()
        if returncode is not None:
            return returncode, False

        now = time.monotonic()
        if now - start_monotonic >= timeout_seconds:
            _terminate_process(process)
            return 124, True

        if shutdown_requested is not None and shutdown_requested():
            if shutdown_deadline is None:
                shutdown_deadline = now + max(0, graceful_shutdown_seconds)
            if now >= shutdown_deadline:
                _terminate_process(process)
                return 130, False

        time.sleep(0.1)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)


def _tail(path: Path) -> str:
    try:
        text = path.read_text("utf-8", errors="replace").strip()
    except OSError:
        return ""
    return text[-_ERROR_TAIL_CHARS:]
