from __future__ import annotations

import allure
import pytest

from taskrelay.config import FallbackOverride, FallbackSettings, Settings
from taskrelay.orchestrator.models import TaskCategory
from taskrelay.orchestrator.routing import (
    FallbackChainDefaults,
    classify_task_category,
    resolve_fallback_chain,
    session_override_metadata,
)

pytestmark = [
    allure.epic("Orchestration"),
    allure.feature("Fallback Chains"),
]


def _defaults(overrides: tuple[FallbackOverride, ...] = ()) -> FallbackChainDefaults:
    return FallbackChainDefaults.from_settings(
        Settings(
            fallback=FallbackSettings(
                chains={
                    "frontend": ("claude", "gemini"),
                    "backend": ("codex", "claude"),
                    "general": ("claude",),
                },
                overrides=overrides,
            ),
        ),
    )


@pytest.mark.parametrize(
    ("artifacts", "category"),
    [
        (["src/components/Button.tsx", "src/api/client.py"], TaskCategory.FRONTEND),
        (["deploy/values.yaml", "src/api/client.py"], TaskCategory.INFRASTRUCTURE),
        (["Dockerfile"], TaskCategory.INFRASTRUCTURE),
        (["src/api/client.py"], TaskCategory.BACKEND),
        (["docs/guide.md"], TaskCategory.GENERAL),
        ([], TaskCategory.GENERAL),
    ],
)
def test_classify_task_category(artifacts: list[str], category: TaskCategory) -> None:
    assert classify_task_category(artifacts) == category


def test_missing_category_falls_back_to_general_chain() -> None:
    chain = resolve_fallback_chain(defaults=_defaults(), category=TaskCategory.INFRASTRUCTURE)

    assert chain.executors == ("claude",)


@pytest.mark.parametrize(
    ("mode", "expected"),
    [
        ("prepend", ("gemini", "codex", "claude")),
        ("append", ("codex", "claude", "gemini")),
        ("override", ("gemini",)),
    ],
)
def test_project_override_modes(mode: str, expected: tuple[str, ...]) -> None:
    defaults = _defaults((FallbackOverride(category="backend", mode=mode, executors=("gemini",)),))

    chain = resolve_fallback_chain(defaults=defaults, category=TaskCategory.BACKEND)

    assert chain.executors == expected


def test_duplicates_keep_first_position() -> None:
    defaults = _defaults((FallbackOverride(category="backend", mode="append", executors=("codex",)),))

    chain = resolve_fallback_chain(defaults=defaults, category=TaskCategory.BACKEND)

    assert chain.executors == ("codex", "claude")


def test_session_override_applies_after_project_override() -> None:
    defaults = _defaults((FallbackOverride(category="backend", mode="append", executors=("gemini",)),))

    chain = resolve_fallback_chain(
        defaults=defaults,
        category=TaskCategory.BACKEND,
        session_overrides={
            "backend": session_override_metadata(mode="prepend", executors=["gemini", "local"]),
        },
    )

    assert chain.executors == ("gemini", "local", "codex", "claude")


def test_malformed_session_override_is_ignored() -> None:
    chain = resolve_fallback_chain(
        defaults=_defaults(),
        category=TaskCategory.BACKEND,
        session_overrides={"backend": {"schema_version": 1, "mode": "bogus", "executors": ["x"]}},
    )

    assert chain.executors == ("codex", "claude")


def test_session_override_metadata_validates_input() -> None:
    with pytest.raises(ValueError, match="Unsupported fallback merge mode"):
        session_override_metadata(mode="replace", executors=["codex"])
    with pytest.raises(ValueError, match="at least one executor"):
        session_override_metadata(mode="append", executors=[" "])


def test_defaults_require_general_chain() -> None:
    with pytest.raises(ValueError, match="No fallback chain"):
        FallbackChainDefaults.from_settings(
            Settings(fallback=FallbackSettings(chains={"backend": ("codex",)})),
        )
