"""Runtime configuration for sessions, reassignment, executors and quality checks."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

FALLBACK_MERGE_MODES = ("prepend", "append", "override")
FALLBACK_CATEGORIES = ("frontend", "backend", "infrastructure", "general")
BUILTIN_EXECUTORS = frozenset({"echo"})

_DEFAULT_FALLBACK_CHAINS = (
    "frontend|override|echo,"
    "backend|override|echo,"
    "infrastructure|override|echo,"
    "general|override|echo"
)


@dataclass(slots=True)
class SessionSettings:
    """Session liveness settings."""

    session_id: str = "default"
    timeout_minutes: int = 30
    sqlite_busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class ReassignmentSettings:
    """Retry, fresh-context and backoff policy."""

    rate_limit_backoff_seconds: tuple[float, ...] = (30.0, 60.0, 120.0)
    max_fresh_context_attempts: int = 1


@dataclass(slots=True)
class ExecutorSettings:
    """CLI executor settings."""

    commands: dict[str, str] = field(default_factory=dict)
    workdir_root: Path = Path(".taskrelay/workdirs")
    timeout_seconds: int = 600
    keep_workdirs: bool = True


@dataclass(slots=True)
class FallbackOverride:
    """One project-level fallback chain override entry."""

    category: str
    mode: str
    executors: tuple[str, ...]


@dataclass(slots=True)
class FallbackSettings:
    """Default fallback chains per category plus project overrides."""

    chains: dict[str, tuple[str, ...]] = field(default_factory=dict)
    overrides: tuple[FallbackOverride, ...] = ()


@dataclass(slots=True)
class QualitySettings:
    """Commands used by the quality checker, one per activity."""

    typecheck_command: str = ""
    lint_command: str = ""
    unit_test_command: str = ""
    e2e_test_command: str = ""
    timeout_seconds: int = 600
    check_attempts: int = 1
    workspace_root: Path = Path(".")


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".taskrelay.db")
    session: SessionSettings = field(default_factory=SessionSettings)
    reassignment: ReassignmentSettings = field(default_factory=ReassignmentSettings)
    executors: ExecutorSettings = field(default_factory=ExecutorSettings)
    fallback: FallbackSettings = field(default_factory=FallbackSettings)
    quality: QualitySettings = field(default_factory=QualitySettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("TASKRELAY_DB_PATH", ".taskrelay.db")),
            session=SessionSettings(
                session_id=os.getenv("TASKRELAY_SESSION_ID", "default").strip() or "default",
                timeout_minutes=int(os.getenv("TASKRELAY_SESSION_TIMEOUT_MINUTES", "30")),
                sqlite_busy_timeout_ms=int(
                    os.getenv("TASKRELAY_SQLITE_BUSY_TIMEOUT_MS", "5000"),
                ),
            ),
            reassignment=ReassignmentSettings(
                rate_limit_backoff_seconds=_parse_backoff(
                    os.getenv("TASKRELAY_RATE_LIMIT_BACKOFF_SECONDS", "30,60,120"),
                ),
                max_fresh_context_attempts=int(
                    os.getenv("TASKRELAY_MAX_FRESH_CONTEXT_ATTEMPTS", "1"),
                ),
            ),
            executors=ExecutorSettings(
                commands=_collect_executor_commands(),
                workdir_root=Path(
                    os.getenv("TASKRELAY_WORKDIR_ROOT", ".taskrelay/workdirs"),
                ),
                timeout_seconds=int(os.getenv("TASKRELAY_EXECUTOR_TIMEOUT_SECONDS", "600")),
                keep_workdirs=_env_bool("TASKRELAY_KEEP_WORKDIRS", default=True),
            ),
            fallback=FallbackSettings(
                chains=_collect_fallback_chains(),
                overrides=_collect_fallback_overrides("TASKRELAY_FALLBACK_CHAIN_OVERRIDES"),
            ),
            quality=QualitySettings(
                typecheck_command=os.getenv("TASKRELAY_TYPECHECK_COMMAND", "").strip(),
                lint_command=os.getenv("TASKRELAY_LINT_COMMAND", "").strip(),
                unit_test_command=os.getenv("TASKRELAY_UNIT_TEST_COMMAND", "").strip(),
                e2e_test_command=os.getenv("TASKRELAY_E2E_TEST_COMMAND", "").strip(),
                timeout_seconds=int(os.getenv("TASKRELAY_CHECK_TIMEOUT_SECONDS", "600")),
                check_attempts=int(os.getenv("TASKRELAY_CHECK_ATTEMPTS", "1")),
                workspace_root=Path(os.getenv("TASKRELAY_WORKSPACE_ROOT", ".")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if any value is out of range."""

        if self.session.timeout_minutes <= 0:
            raise ValueError("TASKRELAY_SESSION_TIMEOUT_MINUTES must be > 0.")
        if self.session.sqlite_busy_timeout_ms < 0:
            raise ValueError("TASKRELAY_SQLITE_BUSY_TIMEOUT_MS must be >= 0.")
        if any(delay < 0 for delay in self.reassignment.rate_limit_backoff_seconds):
            raise ValueError("TASKRELAY_RATE_LIMIT_BACKOFF_SECONDS values must be >= 0.")
        if self.reassignment.max_fresh_context_attempts < 0:
            raise ValueError("TASKRELAY_MAX_FRESH_CONTEXT_ATTEMPTS must be >= 0.")
        if self.executors.timeout_seconds <= 0:
            raise ValueError("TASKRELAY_EXECUTOR_TIMEOUT_SECONDS must be > 0.")
        if self.quality.timeout_seconds <= 0:
            raise ValueError("TASKRELAY_CHECK_TIMEOUT_SECONDS must be > 0.")
        if self.quality.check_attempts <= 0:
            raise ValueError("TASKRELAY_CHECK_ATTEMPTS must be a positive integer.")
        for category, executors in self.fallback.chains.items():
            if not executors:
                raise ValueError(f"Fallback chain for {category!r} must name at least one executor.")

    def validate_executors(self, executors: tuple[str, ...]) -> None:
        """Raise configuration error if any executor has no command template."""

        missing = sorted(
            {
                name
                for name in executors
                if name not in self.executors.commands and name not in BUILTIN_EXECUTORS
            },
        )
        if missing:
            raise ValueError(
                "No command template for executor(s): "
                f"{', '.join(missing)}. Set TASKRELAY_EXECUTOR_COMMANDS.",
            )


def _parse_backoff(raw: str) -> tuple[float, ...]:
    values: list[float] = []
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        try:
            values.append(float(token))
        except ValueError as error:
            raise ValueError(
                f"Invalid TASKRELAY_RATE_LIMIT_BACKOFF_SECONDS entry: {token!r}",
            ) from error
    return tuple(values)


def _collect_executor_commands() -> dict[str, str]:
    raw = os.getenv("TASKRELAY_EXECUTOR_COMMANDS", "").strip()
    if not raw:
        return {}

    commands: dict[str, str] = {}
    for part in raw.split(";"):
        token = part.strip()
        if not token:
            continue
        if "|" not in token:
            raise ValueError(
                "Invalid TASKRELAY_EXECUTOR_COMMANDS entry: "
                f"{token!r}. Expected format '<executor>|<command template>'.",
            )
        name, template = token.split("|", 1)
        name = name.strip()
        template = template.strip()
        if not name or not template:
            raise ValueError(
                f"Invalid TASKRELAY_EXECUTOR_COMMANDS entry: {token!r} (empty executor or command).",
            )
        commands[name] = template
    return commands


def _collect_fallback_chains() -> dict[str, tuple[str, ...]]:
    raw = os.getenv("TASKRELAY_FALLBACK_CHAINS", "").strip() or _DEFAULT_FALLBACK_CHAINS
    chains: dict[str, tuple[str, ...]] = {}
    for entry in _parse_fallback_entries(raw, env_name="TASKRELAY_FALLBACK_CHAINS"):
        chains[entry.category] = entry.executors
    return chains


def _collect_fallback_overrides(env_name: str) -> tuple[FallbackOverride, ...]:
    raw = os.getenv(env_name, "").strip()
    if not raw:
        return ()
    return tuple(_parse_fallback_entries(raw, env_name=env_name))


def _parse_fallback_entries(raw: str, *, env_name: str) -> list[FallbackOverride]:
    entries: list[FallbackOverride] = []
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        pieces = [piece.strip() for piece in token.split("|")]
        if len(pieces) != 3:
            raise ValueError(
                f"Invalid {env_name} entry: {token!r}. "
                "Expected format '<category>|<mode>|<executor1>+<executor2>'.",
            )
        category, mode, executors_raw = pieces
        category = category.lower()
        mode = mode.lower()
        if category not in FALLBACK_CATEGORIES:
            raise ValueError(
                f"Invalid {env_name} category {category!r}. "
                f"Allowed: {', '.join(FALLBACK_CATEGORIES)}.",
            )
        if mode not in FALLBACK_MERGE_MODES:
            raise ValueError(
                f"Invalid {env_name} mode {mode!r}. Allowed: {', '.join(FALLBACK_MERGE_MODES)}.",
            )
        executors = tuple(name.strip() for name in executors_raw.split("+") if name.strip())
        if not executors:
            raise ValueError(f"Invalid {env_name} entry: {token!r} (no executors).")
        entries.append(FallbackOverride(category=category, mode=mode, executors=executors))
    return entries


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
