"""Checkpoint manager: bounded working memory for resumable tasks.

A checkpoint records what a task has already done so that a different
execution context can pick it up without replaying finished work. Its size is
bounded structurally: list retention windows and per-field truncation keep the
serialized form under the 2KB target no matter how long a task runs. When
the windows alone are not enough, the oldest detail is shed first: file lists
of older steps, then older decisions, completed steps, pending steps and
blockers, always keeping the most recent entry of each.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable, Mapping
from datetime import UTC, datetime
from pathlib import Path

from taskrelay.orchestrator.models import (
    Checkpoint,
    CheckpointMetadata,
    CompletedStep,
    CurrentStep,
    Decision,
    InterruptReason,
    ResumeContext,
    WorkItem,
)
from taskrelay.storage.common import utc_now

logger = logging.getLogger(__name__)

MAX_COMPLETED_STEPS = 10
MAX_PENDING_STEPS = 10
MAX_DECISIONS = 5
MAX_BLOCKERS = 3
MAX_FILES_PER_STEP = 3
MAX_PATH_CHARS = 60
MAX_STEP_CHARS = 80
MAX_RATIONALE_CHARS = 100
MAX_PARTIAL_WORK_CHARS = 200
CHECKPOINT_TARGET_BYTES = 2048

PHASE_PLANNED = "planned"
PHASE_EXECUTING = "executing"
PHASE_VERIFYING = "verifying"
PHASE_INTERRUPTED = "interrupted"

_PARTIAL_WORK_REASONS = frozenset({InterruptReason.RATE_LIMIT, InterruptReason.CRASH})


def truncate(value: str, limit: int) -> str:
    """Cut text to ``limit`` characters, marking the cut with an ellipsis."""

    text = value.strip()
    if len(text) <= limit:
        return text
    if limit <= 3:
        return text[:limit]
    return text[: limit - 3].rstrip() + "..."


def shorten_path(path: str, limit: int = MAX_PATH_CHARS) -> str:
    """Keep the tail of a long path, where the file name is."""

    if len(path) <= limit:
        return path
    return "..." + path[-(limit - 3) :]


class CheckpointManager:
    """Creates and mutates checkpoints while keeping them within budget."""

    def __init__(self, *, clock: Callable[[], datetime] = utc_now) -> None:
        self._clock = clock

    def create_checkpoint(self, task: WorkItem, *, created_by: str = "orchestrator") -> Checkpoint:
        now = self._clock()
        return Checkpoint(
            task_id=task.task_id,
            phase=PHASE_PLANNED,
            metadata=CheckpointMetadata(created_by=created_by, last_updated_at=now),
            pending_steps=[
                truncate(step, MAX_STEP_CHARS) for step in task.steps if step.strip()
            ][:MAX_PENDING_STEPS],
        )

    def start_step(self, checkpoint: Checkpoint, description: str) -> None:
        """Mark a step as in flight."""

        checkpoint.current_step = CurrentStep(
            description=truncate(description, MAX_STEP_CHARS),
            started_at=self._clock(),
        )
        checkpoint.phase = PHASE_EXECUTING
        self._touch(checkpoint)

    def set_phase(self, checkpoint: Checkpoint, phase: str) -> None:
        checkpoint.phase = phase
        self._touch(checkpoint)

    def record_step_complete(
        self,
        checkpoint: Checkpoint,
        step: str,
        files_touched: Iterable[str] = (),
    ) -> None:
        """Append a finished step, keeping only the most recent ones."""

        label = truncate(step, MAX_STEP_CHARS)
        files = tuple(
            dict.fromkeys(shorten_path(path.strip()) for path in files_touched if path.strip()),
        )
        checkpoint.completed_steps.append(
            CompletedStep(
                step=label,
                files_touched=files[:MAX_FILES_PER_STEP],
                timestamp=self._clock(),
            ),
        )
        del checkpoint.completed_steps[:-MAX_COMPLETED_STEPS]
        if label in checkpoint.pending_steps:
            checkpoint.pending_steps.remove(label)
        checkpoint.current_step = None
        self._touch(checkpoint)

    def record_decision(self, checkpoint: Checkpoint, decision: str, rationale: str) -> None:
        checkpoint.decisions.append(
            Decision(
                decision=truncate(decision, MAX_STEP_CHARS),
                rationale=truncate(rationale, MAX_RATIONALE_CHARS),
                timestamp=self._clock(),
            ),
        )
        del checkpoint.decisions[:-MAX_DECISIONS]
        self._touch(checkpoint)

    def record_blocker(self, checkpoint: Checkpoint, blocker: str) -> None:
        text = truncate(blocker, MAX_STEP_CHARS)
        if text and text not in checkpoint.blockers:
            checkpoint.blockers.append(text)
            del checkpoint.blockers[:-MAX_BLOCKERS]
        self._touch(checkpoint)

    def snapshot_on_interrupt(
        self,
        checkpoint: Checkpoint,
        reason: InterruptReason,
        *,
        partial_work: str | None = None,
        executor: str | None = None,
    ) -> None:
        """Record why work stopped; rate limits and crashes keep partial progress."""

        checkpoint.metadata.reason = reason.value
        checkpoint.phase = PHASE_INTERRUPTED
        if executor and executor not in checkpoint.metadata.previous_executors:
            checkpoint.metadata.previous_executors.append(executor)
        if reason in _PARTIAL_WORK_REASONS:
            summary = truncate(partial_work or f"interrupted by {reason.value}", MAX_PARTIAL_WORK_CHARS)
            if checkpoint.current_step is None:
                checkpoint.current_step = CurrentStep(
                    description=f"interrupted by {reason.value}",
                    started_at=self._clock(),
                    partial_work=summary,
                )
            else:
                checkpoint.current_step.partial_work = summary
        self._touch(checkpoint)

    def detect_staleness(
        self,
        checkpoint: Checkpoint,
        file_timestamps: Mapping[str, datetime],
    ) -> bool:
        """Return True if any file from a completed step changed after the checkpoint."""

        return bool(self.stale_files(checkpoint, file_timestamps))

    def stale_files(
        self,
        checkpoint: Checkpoint,
        file_timestamps: Mapping[str, datetime],
    ) -> list[str]:
        last_update = _aware(checkpoint.metadata.last_updated_at)
        stale: list[str] = []
        for path in _referenced_files(checkpoint):
            modified = file_timestamps.get(path)
            if modified is not None and _aware(modified) > last_update:
                stale.append(path)
        return stale

    def build_resume_context(
        self,
        checkpoint: Checkpoint,
        task: WorkItem,
        file_timestamps: Mapping[str, datetime] | None = None,
    ) -> ResumeContext:
        """Bundle the checkpoint for handoff to the next executor invocation."""

        files_to_reverify = (
            self.stale_files(checkpoint, file_timestamps) if file_timestamps is not None else []
        )
        return ResumeContext(
            task_id=task.task_id,
            description=task.description,
            phase=checkpoint.phase,
            completed_steps=list(checkpoint.completed_steps),
            pending_steps=list(checkpoint.pending_steps),
            settled_decisions=list(checkpoint.decisions),
            current_step=checkpoint.current_step,
            files_to_reverify=files_to_reverify,
            blockers=list(checkpoint.blockers),
            previous_executors=list(checkpoint.metadata.previous_executors),
            stale=bool(files_to_reverify),
        )

    def _touch(self, checkpoint: Checkpoint) -> None:
        now = self._clock()
        if now > checkpoint.metadata.last_updated_at:
            checkpoint.metadata.last_updated_at = now
        fit_to_budget(checkpoint)


def fit_to_budget(checkpoint: Checkpoint, target: int = CHECKPOINT_TARGET_BYTES) -> None:
    """Shed the oldest checkpoint detail until the serialized form fits ``target``."""

    size = checkpoint_size_bytes(checkpoint)
    if size <= target:
        return
    for step in checkpoint.completed_steps[:-1]:
        if step.files_touched:
            step.files_touched = ()
            size = checkpoint_size_bytes(checkpoint)
            if size <= target:
                return
    for items in (
        checkpoint.decisions,
        checkpoint.completed_steps,
        checkpoint.pending_steps,
        checkpoint.blockers,
    ):
        while len(items) > 1 and size > target:
            # Pending steps are dropped from the end; the rest lose their oldest entry.
            items.pop(-1 if items is checkpoint.pending_steps else 0)
            size = checkpoint_size_bytes(checkpoint)
        if size <= target:
            return
    logger.warning(
        "Checkpoint for task %s is %d bytes after compaction (target %d)",
        checkpoint.task_id,
        size,
        target,
    )


def checkpoint_size_bytes(checkpoint: Checkpoint) -> int:
    """Serialized size of a checkpoint in compact JSON."""

    payload = json.dumps(checkpoint.to_record(), ensure_ascii=False, separators=(",", ":"))
    return len(payload.encode("utf-8"))


def collect_file_timestamps(paths: Iterable[str], *, root: Path) -> dict[str, datetime]:
    """Read modification times for files that still exist under ``root``."""

    timestamps: dict[str, datetime] = {}
    for path in paths:
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = root / candidate
        try:
            stat = candidate.stat()
        except OSError:
            continue
        timestamps[path] = datetime.fromtimestamp(stat.st_mtime, tz=UTC)
    return timestamps


def referenced_files(checkpoint: Checkpoint) -> list[str]:
    return _referenced_files(checkpoint)


def _referenced_files(checkpoint: Checkpoint) -> list[str]:
    seen: dict[str, None] = {}
    for step in checkpoint.completed_steps:
        for path in step.files_touched:
            seen.setdefault(path, None)
    return list(seen)


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value
