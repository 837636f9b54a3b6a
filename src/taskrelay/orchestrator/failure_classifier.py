"""Deterministic executor failure classification for the reassignment policy."""

from __future__ import annotations

import re
from dataclasses import dataclass

from taskrelay.orchestrator.models import AttemptOutcome

EXECUTOR_FAILURE_CLASSIFIER_VERSION = 2

_RATE_LIMIT_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern)
    for pattern in (
        r"rate[ _-]?limit",
        r"too many requests",
        r"\b429\b",
        r"usage limit",
        r"quota exceeded",
        r"overloaded",
        r"try again later",
        r"please retry",
    )
)
_CONTEXT_OVERFLOW_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern)
    for pattern in (
        r"context window",
        r"context length",
        r"context_length_exceeded",
        r"maximum context",
        r"context exhausted",
        r"context overflow",
        r"prompt is too long",
        r"too many tokens",
        r"token limit",
    )
)


@dataclass(slots=True)
class ExecutorFailureClassification:
    """Normalized failure classification result."""

    outcome: AttemptOutcome
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    @property
    def transient(self) -> bool:
        return self.outcome == AttemptOutcome.RATE_LIMITED

    def to_event_details(self, *, executor: str) -> dict[str, object]:
        """Serialize classifier diagnostics for attempt logging."""

        return {
            "classifier_version": EXECUTOR_FAILURE_CLASSIFIER_VERSION,
            "executor": executor,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_executor_failure(
    *,
    executor: str,
    error: str | None,
    context_exhausted: bool = False,
    transient: bool = False,
) -> ExecutorFailureClassification:
    """Classify a failed executor run into rate limit, context overflow or crash.

    An explicit ``context_exhausted`` report wins over error text. A failure the
    executor backend flagged as ``transient`` (the process could not be started)
    is retried like a rate limit when its text matches no other signature. Any
    other unmatched error is treated as a crash.
    """

    if context_exhausted:
        return ExecutorFailureClassification(
            outcome=AttemptOutcome.CONTEXT_OVERFLOW,
            reason_code=f"{executor}_context_overflow",
            matched_rule="reported_context_exhausted",
            matched_pattern=None,
        )

    haystack = _normalize_text(error)

    matched = _first_match(haystack, _RATE_LIMIT_PATTERNS)
    if matched is not None:
        return ExecutorFailureClassification(
            outcome=AttemptOutcome.RATE_LIMITED,
            reason_code=f"{executor}_rate_limited",
            matched_rule="rate_limit",
            matched_pattern=matched,
        )

    matched = _first_match(haystack, _CONTEXT_OVERFLOW_PATTERNS)
    if matched is not None:
        return ExecutorFailureClassification(
            outcome=AttemptOutcome.CONTEXT_OVERFLOW,
            reason_code=f"{executor}_context_overflow",
            matched_rule="context_overflow",
            matched_pattern=matched,
        )

    if transient:
        return ExecutorFailureClassification(
            outcome=AttemptOutcome.RATE_LIMITED,
            reason_code=f"{executor}_transient_failure",
            matched_rule="transient_executor_error",
            matched_pattern=None,
        )

    return ExecutorFailureClassification(
        outcome=AttemptOutcome.CRASHED,
        reason_code=f"{executor}_crashed",
        matched_rule="fallback_crash",
        matched_pattern=None,
    )


def _normalize_text(error: str | None) -> str:
    return (error or "").lower()


def _first_match(haystack: str, patterns: tuple[re.Pattern[str], ...]) -> str | None:
    """Return the text matched by the first matching pattern."""

    for pattern in patterns:
        match = pattern.search(haystack)
        if match is not None:
            return match.group(0)
    return None
