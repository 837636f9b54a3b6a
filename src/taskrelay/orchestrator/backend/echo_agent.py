"""Local demo executor for CLI backend integration tests.

The outcome can be forced through ``TASKRELAY_ECHO_OUTCOME`` (``success``,
``rate_limit``, ``context_overflow`` or ``crash``) to exercise recovery paths.
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

from taskrelay.orchestrator.backend.base import ExecutorResult
from taskrelay.orchestrator.workdir import read_manifest, write_executor_result

_FAILURES = {
    "rate_limit": ExecutorResult(status="failure", error="429 Too Many Requests: rate limit hit"),
    "context_overflow": ExecutorResult(
        status="failure",
        error="context window exhausted",
        context_exhausted=True,
    ),
    "crash": ExecutorResult(status="failure", error="echo agent crashed", partial_work="echoed"),
}


def main(argv: list[str] | None = None) -> int:
    """Run local deterministic demo execution."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--manifest", required=True)
    args = parser.parse_args(argv)

    manifest = read_manifest(Path(args.manifest))
    prompt = Path(manifest.prompt_path).read_text("utf-8")
    outcome = os.getenv("TASKRELAY_ECHO_OUTCOME", "success").strip().lower()

    failure = _FAILURES.get(outcome)
    if failure is not None:
        write_executor_result(Path(manifest.output_result_path), failure)
        return 1

    first_line = prompt.strip().splitlines()[0] if prompt.strip() else manifest.task_id
    echo_path = Path(manifest.workdir) / "output" / "echo.txt"
    echo_path.write_text(prompt, "utf-8")
    write_executor_result(
        Path(manifest.output_result_path),
        ExecutorResult(
            status="success",
            files_changed=[str(echo_path)],
            completed_steps=[f"echo: {first_line}"],
            decisions=[("echo prompt verbatim", "demo executor")],
        ),
    )
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
