"""Verification contract engine: classification, generation and evaluation.

Contracts are a pure function of ``(description, expected_artifacts)``. Artifacts
are treated as a set, so the order they arrive in never changes the result.
"""

from __future__ import annotations

import hashlib
import logging
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from pathlib import PurePosixPath

from taskrelay.orchestrator.backend.base import CheckRequest, QualityChecker
from taskrelay.orchestrator.models import (
    CheckActivity,
    CheckStatus,
    ContractType,
    Criterion,
    CriterionResult,
    VerificationContract,
    VerificationResult,
)
from taskrelay.orchestrator.routing import is_interactive_surface, is_logic_module
from taskrelay.storage.common import utc_now

logger = logging.getLogger(__name__)

CONTRACT_FINGERPRINT_VERSION = 1

_ADVISORY_PATTERN = re.compile(
    r"\b(?:investigat\w*|research\w*|explor\w*|plan|plans|planning|design|designs|designing"
    r"|audit\w*|review\w*|analy[sz]\w*)\b",
    re.IGNORECASE,
)
_SKIP_PATTERN = re.compile(
    r"\b(?:document\w*|readme\w*|comment\w*|typo\w*|spelling)\b",
    re.IGNORECASE,
)
_TEST_NAME_SUFFIXES = ("_test", "_spec")


@dataclass(frozen=True, slots=True)
class Advisory:
    """Exploratory work with no automatable success criteria."""

    keyword: str

    contract_type = ContractType.ADVISORY


@dataclass(frozen=True, slots=True)
class Skip:
    """Trivial change gated by static analysis only."""

    keyword: str

    contract_type = ContractType.SKIP


@dataclass(frozen=True, slots=True)
class Verifiable:
    """Default classification: full automated gating."""

    contract_type = ContractType.VERIFIABLE


Classification = Advisory | Skip | Verifiable
_Rule = tuple[Callable[[str], str | None], Callable[[str], Classification]]


def _matcher(pattern: re.Pattern[str]) -> Callable[[str], str | None]:
    def match(description: str) -> str | None:
        found = pattern.search(description)
        return found.group(0).lower() if found else None

    return match


# Evaluated top-down; advisory framing wins over trivial-change keywords.
_CLASSIFICATION_RULES: tuple[_Rule, ...] = (
    (_matcher(_ADVISORY_PATTERN), Advisory),
    (_matcher(_SKIP_PATTERN), Skip),
)


def classify_description(description: str) -> Classification:
    """Classify free-text task description into a contract variant."""

    for predicate, build in _CLASSIFICATION_RULES:
        keyword = predicate(description or "")
        if keyword is not None:
            return build(keyword)
    return Verifiable()


def generate_contract(
    description: str,
    expected_artifacts: Iterable[str] = (),
    *,
    now: datetime | None = None,
) -> VerificationContract:
    """Build the deterministic verification contract for one task."""

    artifacts = sorted({item.strip() for item in expected_artifacts if item.strip()})
    classification = classify_description(description)
    if isinstance(classification, Advisory):
        criteria: tuple[Criterion, ...] = ()
    elif isinstance(classification, Skip):
        criteria = _static_analysis_criteria()
    else:
        criteria = _verifiable_criteria(artifacts)
    return VerificationContract(
        contract_type=classification.contract_type,
        criteria=criteria,
        generated_from=contract_fingerprint(description, artifacts),
        generated_at=now or utc_now(),
    )


def contract_fingerprint(description: str, artifacts: Iterable[str]) -> str:
    """Stable digest of contract inputs."""

    payload = "\n".join(
        [
            f"v{CONTRACT_FINGERPRINT_VERSION}",
            (description or "").strip(),
            *sorted({item.strip() for item in artifacts if item.strip()}),
        ],
    )
    return "sha256:" + hashlib.sha256(payload.encode("utf-8")).hexdigest()


def derive_test_pattern(path: str) -> str:
    """Derive the unit-test name pattern from an artifact path hint."""

    name = PurePosixPath(path.replace("\\", "/")).name
    stem = name.split(".", 1)[0].removeprefix("test_")
    for suffix in _TEST_NAME_SUFFIXES:
        stem = stem.removesuffix(suffix)
    return stem or name


def run_contract(
    contract: VerificationContract,
    checker: QualityChecker,
    *,
    check_attempts: int = 1,
    attempt_no: int | None = None,
    now: Callable[[], datetime] = utc_now,
) -> VerificationResult:
    """Run every criterion through the quality checker.

    Overall status passes only when every criterion passes. An advisory contract
    passes immediately and its output is flagged for human review.
    """

    if contract.contract_type == ContractType.ADVISORY:
        logger.warning("Advisory task output is not gated; queued for human review")
        return VerificationResult(
            overall=CheckStatus.PASS,
            criteria=[],
            completed_at=now(),
            attempt_no=attempt_no,
        )

    results = [
        _run_criterion(criterion, checker, max_attempts=max(1, check_attempts))
        for criterion in contract.criteria
    ]
    overall = (
        CheckStatus.PASS
        if all(item.status == CheckStatus.PASS for item in results)
        else CheckStatus.FAIL
    )
    return VerificationResult(
        overall=overall,
        criteria=results,
        completed_at=now(),
        attempt_no=attempt_no,
    )


def _run_criterion(
    criterion: Criterion,
    checker: QualityChecker,
    *,
    max_attempts: int,
) -> CriterionResult:
    attempts = 0
    error: str | None = None
    while attempts < max_attempts:
        attempts += 1
        try:
            result = checker.check(
                CheckRequest(activity=criterion.activity, descriptor=criterion.descriptor_map),
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("Quality check %s raised", criterion.label())
            error = f"{type(exc).__name__}: {exc}"
            continue
        if result.status == CheckStatus.PASS:
            return CriterionResult(
                activity=criterion.activity,
                status=CheckStatus.PASS,
                attempts=attempts,
                descriptor=criterion.descriptor,
            )
        error = result.detail or f"{criterion.label()} failed"
    return CriterionResult(
        activity=criterion.activity,
        status=CheckStatus.FAIL,
        attempts=attempts,
        error=error,
        descriptor=criterion.descriptor,
    )


def _static_analysis_criteria() -> tuple[Criterion, ...]:
    return (Criterion(CheckActivity.TYPECHECK), Criterion(CheckActivity.LINT))


def _verifiable_criteria(artifacts: list[str]) -> tuple[Criterion, ...]:
    criteria: list[Criterion] = list(_static_analysis_criteria())
    has_interactive_surface = False
    for artifact in artifacts:
        interactive = is_interactive_surface(artifact)
        has_interactive_surface = has_interactive_surface or interactive
        if interactive or is_logic_module(artifact):
            criteria.append(
                Criterion(
                    CheckActivity.UNIT_TEST,
                    (("pattern", derive_test_pattern(artifact)),),
                ),
            )
    if has_interactive_surface:
        criteria.append(Criterion(CheckActivity.END_TO_END_TEST, (("timing", "immediate"),)))
    return tuple(dict.fromkeys(criteria))
