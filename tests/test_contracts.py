from __future__ import annotations

from datetime import UTC, datetime

import allure
import pytest

from conftest import FakeChecker
from taskrelay.orchestrator.backend.base import CheckRequest, CheckResult
from taskrelay.orchestrator.contracts import (
    Advisory,
    Skip,
    Verifiable,
    classify_description,
    contract_fingerprint,
    derive_test_pattern,
    generate_contract,
    run_contract,
)
from taskrelay.orchestrator.models import (
    CheckActivity,
    CheckStatus,
    ContractType,
    Criterion,
)

pytestmark = [
    allure.epic("Orchestration"),
    allure.feature("Verification Contracts"),
]

FIXED = datetime(2026, 10, 19, 9, 0, tzinfo=UTC)


@pytest.mark.parametrize(
    ("description", "expected"),
    [
        ("Investigate flaky login test", Advisory("investigate")),
        ("Research caching options", Advisory("research")),
        ("Plan the migration to Postgres", Advisory("plan")),
        ("Design review for the payments API", Advisory("design")),
        ("Update the README with install steps", Skip("readme")),
        ("Fix typo in error message", Skip("typo")),
        ("Document the retry policy", Skip("document")),
        ("Add rate limiting to the API gateway", Verifiable()),
    ],
)
def test_classify_description(description: str, expected) -> None:
    assert classify_description(description) == expected


def test_advisory_keyword_wins_over_skip_keyword() -> None:
    assert isinstance(classify_description("Investigate why the docs build fails"), Advisory)


def test_keywords_match_whole_words_only() -> None:
    assert isinstance(classify_description("Add an explanation field"), Verifiable)
    assert isinstance(classify_description("Refactor the planner module"), Verifiable)


def test_advisory_contract_has_no_criteria() -> None:
    contract = generate_contract("Explore alternatives for the queue", ["src/queue.py"], now=FIXED)

    assert contract.contract_type == ContractType.ADVISORY
    assert contract.criteria == ()


def test_skip_contract_runs_static_analysis_only() -> None:
    contract = generate_contract("Fix spelling in comments", ["src/app.py"], now=FIXED)

    assert contract.contract_type == ContractType.SKIP
    assert [criterion.activity for criterion in contract.criteria] == [
        CheckActivity.TYPECHECK,
        CheckActivity.LINT,
    ]


def test_verifiable_contract_adds_unit_and_e2e_criteria() -> None:
    contract = generate_contract(
        "Add a login form",
        ["src/components/LoginForm.tsx", "src/auth/session.py", "infra/main.tf"],
        now=FIXED,
    )

    assert contract.contract_type == ContractType.VERIFIABLE
    assert [criterion.label() for criterion in contract.criteria] == [
        "typecheck",
        "lint",
        "unit-test(pattern=session)",
        "unit-test(pattern=LoginForm)",
        "end-to-end-test(timing=immediate)",
    ]


def test_verifiable_contract_without_ui_has_no_e2e() -> None:
    contract = generate_contract("Add retry helper", ["src/retry.py"], now=FIXED)

    assert Criterion(CheckActivity.END_TO_END_TEST, (("timing", "immediate"),)) not in contract.criteria
    assert contract.criteria[-1] == Criterion(CheckActivity.UNIT_TEST, (("pattern", "retry"),))


def test_contract_is_deterministic_for_artifact_order_and_duplicates() -> None:
    first = generate_contract("Add a login form", ["b/views/x.vue", "a/y.py"], now=FIXED)
    second = generate_contract(
        "Add a login form",
        ["a/y.py", "b/views/x.vue", "a/y.py"],
        now=datetime(2027, 1, 1, tzinfo=UTC),
    )

    assert first == second
    assert first.generated_from == second.generated_from


def test_duplicate_test_patterns_collapse_to_one_criterion() -> None:
    contract = generate_contract("Add parser", ["src/parser.py", "tests/test_parser.py"], now=FIXED)

    unit_tests = [c for c in contract.criteria if c.activity == CheckActivity.UNIT_TEST]
    assert unit_tests == [Criterion(CheckActivity.UNIT_TEST, (("pattern", "parser"),))]


def test_fingerprint_changes_with_description() -> None:
    assert contract_fingerprint("a", ["x.py"]) != contract_fingerprint("b", ["x.py"])
    assert contract_fingerprint("a", ["x.py"]).startswith("sha256:")


@pytest.mark.parametrize(
    ("path", "pattern"),
    [
        ("src/auth/session.py", "session"),
        ("tests/test_session.py", "session"),
        ("web/LoginForm.test.tsx", "LoginForm"),
        ("pkg/handler_test.go", "handler"),
        ("spec/user_spec.rb", "user"),
        ("src\\win\\path.ts", "path"),
    ],
)
def test_derive_test_pattern(path: str, pattern: str) -> None:
    assert derive_test_pattern(path) == pattern


def test_run_contract_passes_when_all_criteria_pass() -> None:
    contract = generate_contract("Add retry helper", ["src/retry.py"], now=FIXED)
    checker = FakeChecker()

    result = run_contract(contract, checker, attempt_no=2, now=lambda: FIXED)

    assert result.passed
    assert result.attempt_no == 2
    assert [item.activity for item in result.criteria] == [
        CheckActivity.TYPECHECK,
        CheckActivity.LINT,
        CheckActivity.UNIT_TEST,
    ]
    assert checker.requests[-1].descriptor == {"pattern": "retry"}


def test_run_contract_fails_when_any_criterion_fails() -> None:
    contract = generate_contract("Add retry helper", ["src/retry.py"], now=FIXED)

    result = run_contract(contract, FakeChecker(failing=[CheckActivity.LINT]), now=lambda: FIXED)

    assert result.overall == CheckStatus.FAIL
    assert [item.activity for item in result.failed_criteria()] == [CheckActivity.LINT]
    assert result.failed_criteria()[0].error == "lint failed"


def test_run_contract_retries_criterion_up_to_check_attempts() -> None:
    contract = generate_contract("Fix typo in banner", [], now=FIXED)
    checker = FakeChecker(failing=[CheckActivity.TYPECHECK])

    result = run_contract(contract, checker, check_attempts=3, now=lambda: FIXED)

    assert checker.calls[CheckActivity.TYPECHECK] == 3
    assert result.criteria[0].attempts == 3


def test_run_contract_treats_checker_exception_as_failure() -> None:
    class ExplodingChecker:
        def check(self, request: CheckRequest) -> CheckResult:
            raise RuntimeError("checker offline")

    contract = generate_contract("Fix typo in banner", [], now=FIXED)

    result = run_contract(contract, ExplodingChecker(), now=lambda: FIXED)

    assert not result.passed
    assert result.criteria[0].error == "RuntimeError: checker offline"


def test_advisory_contract_passes_without_calling_checker() -> None:
    contract = generate_contract("Investigate memory growth", [], now=FIXED)
    checker = FakeChecker(failing=list(CheckActivity))

    result = run_contract(contract, checker, now=lambda: FIXED)

    assert result.passed
    assert result.criteria == []
    assert checker.requests == []


def test_signup_form_contract_gates_on_static_unit_and_e2e_checks() -> None:
    contract = generate_contract("Add input validation to signup form", ["SignupForm.ui"], now=FIXED)
    checker = FakeChecker()

    result = run_contract(contract, checker, now=lambda: FIXED)

    assert contract.contract_type == ContractType.VERIFIABLE
    assert [criterion.label() for criterion in contract.criteria] == [
        "typecheck",
        "lint",
        "unit-test(pattern=SignupForm)",
        "end-to-end-test(timing=immediate)",
    ]
    assert result.overall == CheckStatus.PASS
    assert [item.status for item in result.criteria] == [CheckStatus.PASS] * 4
    assert [request.activity for request in checker.requests] == [
        CheckActivity.TYPECHECK,
        CheckActivity.LINT,
        CheckActivity.UNIT_TEST,
        CheckActivity.END_TO_END_TEST,
    ]
