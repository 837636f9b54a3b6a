from __future__ import annotations

from pathlib import Path

import allure
import pytest

from taskrelay.config import FallbackOverride, Settings

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Settings"),
]


def test_defaults_use_builtin_echo_chain(monkeypatch) -> None:
    for name in ("TASKRELAY_FALLBACK_CHAINS", "TASKRELAY_EXECUTOR_COMMANDS", "TASKRELAY_DB_PATH"):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()
    settings.validate()

    assert settings.db_path == Path(".taskrelay.db")
    assert settings.session.timeout_minutes == 30
    assert settings.reassignment.rate_limit_backoff_seconds == (30.0, 60.0, 120.0)
    assert settings.reassignment.max_fresh_context_attempts == 1
    assert settings.fallback.chains["general"] == ("echo",)
    settings.validate_executors(("echo",))


def test_explicit_db_path_wins_over_env(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TASKRELAY_DB_PATH", str(tmp_path / "env.db"))

    assert Settings.from_env(db_path=tmp_path / "cli.db").db_path == tmp_path / "cli.db"


def test_parses_executor_commands_and_chains(monkeypatch) -> None:
    monkeypatch.setenv(
        "TASKRELAY_EXECUTOR_COMMANDS",
        "codex|codex exec {prompt}; claude|claude -p {prompt_file}",
    )
    monkeypatch.setenv("TASKRELAY_FALLBACK_CHAINS", "backend|override|codex+claude,general|override|claude")
    monkeypatch.setenv("TASKRELAY_FALLBACK_CHAIN_OVERRIDES", "frontend|prepend|claude")
    monkeypatch.setenv("TASKRELAY_RATE_LIMIT_BACKOFF_SECONDS", "5, 10")

    settings = Settings.from_env()

    assert settings.executors.commands == {
        "codex": "codex exec {prompt}",
        "claude": "claude -p {prompt_file}",
    }
    assert settings.fallback.chains == {"backend": ("codex", "claude"), "general": ("claude",)}
    assert settings.fallback.overrides == (
        FallbackOverride(category="frontend", mode="prepend", executors=("claude",)),
    )
    assert settings.reassignment.rate_limit_backoff_seconds == (5.0, 10.0)
    settings.validate_executors(("codex", "claude", "echo"))


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("TASKRELAY_EXECUTOR_COMMANDS", "codex codex exec", "Expected format"),
        ("TASKRELAY_FALLBACK_CHAINS", "backend|codex", "Expected format"),
        ("TASKRELAY_FALLBACK_CHAINS", "mobile|override|codex", "category"),
        ("TASKRELAY_FALLBACK_CHAIN_OVERRIDES", "backend|replace|codex", "mode"),
        ("TASKRELAY_RATE_LIMIT_BACKOFF_SECONDS", "30,soon", "soon"),
        ("TASKRELAY_KEEP_WORKDIRS", "maybe", "Invalid boolean"),
    ],
)
def test_invalid_env_values_raise(monkeypatch, name: str, value: str, message: str) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError, match=message):
        Settings.from_env()


def test_validate_rejects_out_of_range_values(monkeypatch) -> None:
    monkeypatch.setenv("TASKRELAY_SESSION_TIMEOUT_MINUTES", "0")

    with pytest.raises(ValueError, match="TASKRELAY_SESSION_TIMEOUT_MINUTES"):
        Settings.from_env().validate()


def test_validate_executors_names_missing_templates() -> None:
    with pytest.raises(ValueError, match="codex"):
        Settings().validate_executors(("echo", "codex"))
