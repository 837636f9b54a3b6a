"""Parsing of persisted session records back into domain models.

Records are plain JSON-compatible dicts produced by the ``to_record`` methods in
:mod:`taskrelay.orchestrator.models`. Parsing is strict: any malformed field
raises ``ValueError`` so callers can decide whether to treat the record as lost.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from taskrelay.orchestrator.models import (
    SESSION_RECORD_SCHEMA_VERSION,
    ActiveTask,
    AttemptOutcome,
    CheckActivity,
    Checkpoint,
    CheckpointMetadata,
    CheckStatus,
    CompletedStep,
    ContractType,
    Criterion,
    CriterionResult,
    CurrentStep,
    Decision,
    DeferredTask,
    PendingEscalation,
    ReassignmentAttempt,
    Session,
    TaskHistoryEntry,
    TaskStatus,
    VerificationContract,
    VerificationResult,
    WorkItem,
)
from taskrelay.storage.common import from_iso


def session_from_record(raw: dict[str, Any]) -> Session:
    """Rebuild a session from its persisted record."""

    schema_version = raw.get("schema_version")
    if schema_version != SESSION_RECORD_SCHEMA_VERSION:
        raise ValueError(f"Unsupported session record schema_version={schema_version!r}")
    active_raw = raw.get("active_task")
    escalation_raw = raw.get("pending_escalation")
    overrides = raw.get("fallback_chain_overrides", {})
    if not isinstance(overrides, dict):
        raise TypeError("session.fallback_chain_overrides must be an object")
    return Session(
        session_id=_str(raw, "session_id"),
        created_at=_datetime(raw, "created_at"),
        last_heartbeat=_datetime(raw, "last_heartbeat"),
        active_task=_active_task(_dict(active_raw)) if active_raw is not None else None,
        attempts_log=[attempt_from_record(_dict(item)) for item in _list(raw, "attempts_log")],
        history=[_history_entry(_dict(item)) for item in _list(raw, "history")],
        deferred_tasks=[_deferred_task(_dict(item)) for item in _list(raw, "deferred_tasks")],
        fallback_chain_overrides=overrides,
        pending_escalation=(
            _pending_escalation(_dict(escalation_raw)) if escalation_raw is not None else None
        ),
    )


def work_item_from_record(raw: dict[str, Any]) -> WorkItem:
    return WorkItem(
        task_id=_str(raw, "task_id"),
        description=_str(raw, "description", allow_empty=True),
        expected_artifacts=tuple(_str_list(raw, "expected_artifacts")),
        steps=tuple(_str_list(raw, "steps")),
        status=TaskStatus(_str(raw, "status")),
    )


def checkpoint_from_record(raw: dict[str, Any]) -> Checkpoint:
    current_raw = raw.get("current_step")
    metadata_raw = _dict(raw.get("metadata"))
    return Checkpoint(
        task_id=_str(raw, "task_id"),
        phase=_str(raw, "phase"),
        metadata=CheckpointMetadata(
            created_by=_str(metadata_raw, "created_by"),
            last_updated_at=_datetime(metadata_raw, "last_updated_at"),
            reason=_optional_str(metadata_raw, "reason"),
            previous_executors=_str_list(metadata_raw, "previous_executors"),
        ),
        completed_steps=[
            CompletedStep(
                step=_str(item, "step"),
                files_touched=tuple(_str_list(item, "files_touched")),
                timestamp=_datetime(item, "timestamp"),
            )
            for item in (_dict(entry) for entry in _list(raw, "completed_steps"))
        ],
        pending_steps=_str_list(raw, "pending_steps"),
        current_step=(
            CurrentStep(
                description=_str(_dict(current_raw), "description"),
                started_at=_datetime(_dict(current_raw), "started_at"),
                partial_work=_optional_str(_dict(current_raw), "partial_work"),
            )
            if current_raw is not None
            else None
        ),
        decisions=[
            Decision(
                decision=_str(item, "decision"),
                rationale=_str(item, "rationale", allow_empty=True),
                timestamp=_datetime(item, "timestamp"),
            )
            for item in (_dict(entry) for entry in _list(raw, "decisions"))
        ],
        blockers=_str_list(raw, "blockers"),
    )


def contract_from_record(raw: dict[str, Any]) -> VerificationContract:
    return VerificationContract(
        contract_type=ContractType(_str(raw, "type")),
        criteria=tuple(
            Criterion(
                activity=CheckActivity(_str(item, "activity")),
                descriptor=_descriptor(item.get("descriptor", {})),
            )
            for item in (_dict(entry) for entry in _list(raw, "criteria"))
        ),
        generated_from=_str(raw, "generated_from"),
        generated_at=_datetime(raw, "generated_at"),
    )


def verification_result_from_record(raw: dict[str, Any]) -> VerificationResult:
    attempt_no = raw.get("attempt_no")
    if attempt_no is not None and not isinstance(attempt_no, int):
        raise TypeError("verification_result.attempt_no must be an integer when provided")
    return VerificationResult(
        overall=CheckStatus(_str(raw, "overall")),
        criteria=[
            CriterionResult(
                activity=CheckActivity(_str(item, "activity")),
                status=CheckStatus(_str(item, "status")),
                attempts=_int(item, "attempts"),
                error=_optional_str(item, "error"),
                descriptor=_descriptor(item.get("descriptor", {})),
            )
            for item in (_dict(entry) for entry in _list(raw, "criteria"))
        ],
        completed_at=_datetime(raw, "completed_at"),
        attempt_no=attempt_no,
    )


def attempt_from_record(raw: dict[str, Any]) -> ReassignmentAttempt:
    fresh_context = raw.get("fresh_context", False)
    if not isinstance(fresh_context, bool):
        raise TypeError("attempt.fresh_context must be a boolean")
    return ReassignmentAttempt(
        attempt_no=_int(raw, "attempt_no"),
        task_id=_str(raw, "task_id"),
        executor=_str(raw, "executor"),
        started_at=_datetime(raw, "started_at"),
        ended_at=_datetime(raw, "ended_at"),
        outcome=AttemptOutcome(_str(raw, "outcome")),
        error=_optional_str(raw, "error"),
        retry_count=_int(raw, "retry_count"),
        fresh_context=fresh_context,
    )


def _active_task(raw: dict[str, Any]) -> ActiveTask:
    return ActiveTask(
        task=work_item_from_record(_dict(raw.get("task"))),
        checkpoint=checkpoint_from_record(_dict(raw.get("checkpoint"))),
        contract=contract_from_record(_dict(raw.get("verification_contract"))),
        verification_results=[
            verification_result_from_record(_dict(item))
            for item in _list(raw, "verification_results")
        ],
    )


def _history_entry(raw: dict[str, Any]) -> TaskHistoryEntry:
    checkpoint_raw = raw.get("checkpoint")
    result_raw = raw.get("verification_result")
    review_required = raw.get("review_required", False)
    if not isinstance(review_required, bool):
        raise TypeError("history.review_required must be a boolean")
    return TaskHistoryEntry(
        task=work_item_from_record(_dict(raw.get("task"))),
        status=TaskStatus(_str(raw, "status")),
        reason=_str(raw, "reason"),
        finished_at=_datetime(raw, "finished_at"),
        checkpoint=(
            checkpoint_from_record(_dict(checkpoint_raw)) if checkpoint_raw is not None else None
        ),
        verification_result=(
            verification_result_from_record(_dict(result_raw)) if result_raw is not None else None
        ),
        review_required=review_required,
    )


def _deferred_task(raw: dict[str, Any]) -> DeferredTask:
    return DeferredTask(
        task=work_item_from_record(_dict(raw.get("task"))),
        checkpoint=checkpoint_from_record(_dict(raw.get("checkpoint"))),
        contract=contract_from_record(_dict(raw.get("verification_contract"))),
        deferred_at=_datetime(raw, "deferred_at"),
    )


def _pending_escalation(raw: dict[str, Any]) -> PendingEscalation:
    return PendingEscalation(
        task_id=_str(raw, "task_id"),
        reason=_str(raw, "reason"),
        hint=_optional_str(raw, "hint"),
        raised_at=_datetime(raw, "raised_at"),
    )


def _descriptor(value: object) -> tuple[tuple[str, str], ...]:
    if not isinstance(value, dict):
        raise TypeError("criterion.descriptor must be an object")
    return tuple((str(key), str(item)) for key, item in value.items())


def _dict(value: object) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise TypeError(f"Expected object in session record, got {type(value).__name__}")
    return value


def _list(raw: dict[str, Any], key: str) -> list[Any]:
    value = raw.get(key, [])
    if not isinstance(value, list):
        raise TypeError(f"{key} must be an array")
    return value


def _str(raw: dict[str, Any], key: str, *, allow_empty: bool = False) -> str:
    value = raw.get(key)
    if not isinstance(value, str) or (not allow_empty and not value.strip()):
        raise ValueError(f"{key} must be a non-empty string")
    return value


def _optional_str(raw: dict[str, Any], key: str) -> str | None:
    value = raw.get(key)
    if value is not None and not isinstance(value, str):
        raise ValueError(f"{key} must be a string when provided")
    return value


def _str_list(raw: dict[str, Any], key: str) -> list[str]:
    values = _list(raw, key)
    if not all(isinstance(item, str) for item in values):
        raise TypeError(f"{key} must contain only strings")
    return list(values)


def _int(raw: dict[str, Any], key: str) -> int:
    value = raw.get(key)
    if not isinstance(value, int) or isinstance(value, bool):
        raise TypeError(f"{key} must be an integer")
    return value


def _datetime(raw: dict[str, Any], key: str) -> datetime:
    return from_iso(_str(raw, key))
