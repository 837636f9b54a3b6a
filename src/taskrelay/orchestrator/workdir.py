"""Workdir materialization and handoff files for CLI executors."""

from __future__ import annotations

import json
import shutil
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from taskrelay.orchestrator.backend.base import ExecutorRequest, ExecutorResult
from taskrelay.orchestrator.errors import ExecutorRunError

ATTEMPT_MANIFEST_VERSION = 1


@dataclass(slots=True)
class AttemptManifest:
    """Paths and identity of one executor attempt, stored in the workdir."""

    contract_version: int
    task_id: str
    executor: str
    attempt_no: int
    fresh_context: bool
    workdir: str
    prompt_path: str
    output_result_path: str
    output_stdout_path: str
    output_stderr_path: str
    resume_context_path: str | None = None


@dataclass(slots=True)
class MaterializedAttempt:
    manifest_path: Path
    manifest: AttemptManifest
    prompt: str


class ExecutorWorkdirManager:
    """Creates deterministic per-attempt directory layout."""

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = root_dir

    def attempt_dir(self, *, task_id: str, attempt_no: int) -> Path:
        return self.root_dir / _safe_name(task_id) / f"attempt-{attempt_no:03d}"

    def materialize(self, request: ExecutorRequest) -> MaterializedAttempt:
        base_dir = self.attempt_dir(task_id=request.task_id, attempt_no=request.attempt_no)
        input_dir = base_dir / "input"
        output_dir = base_dir / "output"
        meta_dir = base_dir / "meta"
        input_dir.mkdir(parents=True, exist_ok=True)
        output_dir.mkdir(parents=True, exist_ok=True)
        meta_dir.mkdir(parents=True, exist_ok=True)

        prompt_path = input_dir / "task_prompt.txt"
        output_result_path = output_dir / "executor_result.json"
        manifest_path = meta_dir / "attempt_manifest.json"
        resume_context_path: Path | None = None

        # A stale result from an earlier run of the same attempt number must not leak in.
        output_result_path.unlink(missing_ok=True)

        prompt = build_prompt(request)
        prompt_path.write_text(prompt, "utf-8")
        if request.resume_context is not None:
            resume_context_path = input_dir / "resume_context.json"
            write_json(resume_context_path, request.resume_context.to_record())

        manifest = AttemptManifest(
            contract_version=ATTEMPT_MANIFEST_VERSION,
            task_id=request.task_id,
            executor=request.executor,
            attempt_no=request.attempt_no,
            fresh_context=request.fresh_context,
            workdir=str(base_dir),
            prompt_path=str(prompt_path),
            output_result_path=str(output_result_path),
            output_stdout_path=str(output_dir / "executor_stdout.log"),
            output_stderr_path=str(output_dir / "executor_stderr.log"),
            resume_context_path=(
                str(resume_context_path) if resume_context_path is not None else None
            ),
        )
        write_json(manifest_path, asdict(manifest))
        return MaterializedAttempt(manifest_path=manifest_path, manifest=manifest, prompt=prompt)

    def discard(self, materialized: MaterializedAttempt) -> None:
        shutil.rmtree(materialized.manifest.workdir, ignore_errors=True)


def build_prompt(request: ExecutorRequest) -> str:
    """Compose the executor prompt: task description plus resume context."""

    parts = [request.task_description.strip() or f"Task {request.task_id}"]
    if request.resume_context is not None:
        parts.append(request.resume_context.render())
    parts.append(
        "When finished, write executor_result.json to the output directory named in the "
        "attempt manifest with status, files_changed, completed_steps and decisions.",
    )
    return "\n\n".join(parts) + "\n"


def write_json(path: Path, payload: dict[str, Any]) -> None:
    """Persist JSON payload using deterministic formatting."""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True), "utf-8")


def load_json(path: Path) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return payload


def read_manifest(path: Path) -> AttemptManifest:
    return AttemptManifest(**load_json(path))


def write_executor_result(path: Path, result: ExecutorResult) -> None:
    payload = asdict(result)
    payload["decisions"] = [
        {"decision": decision, "rationale": rationale} for decision, rationale in result.decisions
    ]
    write_json(path, payload)


def read_executor_result(path: Path) -> ExecutorResult:
    """Parse ``executor_result.json`` written by a CLI executor."""

    try:
        raw = load_json(path)
    except (OSError, ValueError, TypeError) as error:
        raise ExecutorRunError(f"Unreadable executor result {path}: {error}", transient=False) from error

    status = raw.get("status")
    if status not in {"success", "failure"}:
        raise ExecutorRunError(
            f"Executor result status must be 'success' or 'failure', got {status!r}",
            transient=False,
        )
    decisions: list[tuple[str, str]] = []
    for item in _list_field(raw, "decisions"):
        if not isinstance(item, dict) or not isinstance(item.get("decision"), str):
            raise ExecutorRunError("Executor result decisions must be objects", transient=False)
        decisions.append((item["decision"], str(item.get("rationale") or "")))
    error = raw.get("error")
    partial_work = raw.get("partial_work")
    return ExecutorResult(
        status=status,
        files_changed=[str(item) for item in _list_field(raw, "files_changed")],
        error=str(error) if error is not None else None,
        completed_steps=[str(item) for item in _list_field(raw, "completed_steps")],
        decisions=decisions,
        partial_work=str(partial_work) if partial_work is not None else None,
        context_exhausted=bool(raw.get("context_exhausted", False)),
    )


def _list_field(raw: dict[str, Any], key: str) -> list[Any]:
    value = raw.get(key) or []
    if not isinstance(value, list):
        raise ExecutorRunError(f"Executor result {key} must be an array", transient=False)
    return value


def _safe_name(value: str) -> str:
    cleaned = "".join(char if char.isalnum() or char in "-_." else "_" for char in value.strip())
    return cleaned.strip(".") or "task"
