"""Fallback chain resolution: task category classification and override merge."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Any

from taskrelay.config import FALLBACK_MERGE_MODES, FallbackOverride, Settings
from taskrelay.orchestrator.models import FallbackChain, TaskCategory

FALLBACK_OVERRIDES_SCHEMA_VERSION = 1

INTERACTIVE_SURFACE_SUFFIXES = (
    ".ui",
    ".tsx",
    ".jsx",
    ".vue",
    ".svelte",
    ".html",
    ".css",
    ".scss",
)
INTERACTIVE_SURFACE_DIRS = ("components", "pages", "views", "screens")
INFRASTRUCTURE_SUFFIXES = (".tf", ".tfvars", ".yaml", ".yml", ".hcl", ".nix")
INFRASTRUCTURE_NAMES = ("dockerfile", "docker-compose.yml", "docker-compose.yaml", "makefile")
INFRASTRUCTURE_DIRS = ("k8s", "helm", "terraform", "deploy", "infra", ".github")
LOGIC_SUFFIXES = (
    ".py",
    ".go",
    ".rs",
    ".java",
    ".kt",
    ".rb",
    ".ts",
    ".js",
    ".sql",
    ".c",
    ".cpp",
    ".cs",
    ".swift",
)


@dataclass(slots=True)
class FallbackChainDefaults:
    """Settings snapshot of per-category chains and project overrides."""

    chains: dict[TaskCategory, tuple[str, ...]]
    overrides: tuple[FallbackOverride, ...]

    @classmethod
    def from_settings(cls, settings: Settings) -> FallbackChainDefaults:
        """Build validated defaults from fallback settings."""

        chains: dict[TaskCategory, tuple[str, ...]] = {}
        for category in TaskCategory:
            executors = _dedupe(settings.fallback.chains.get(category.value, ()))
            if not executors:
                executors = _dedupe(settings.fallback.chains.get(TaskCategory.GENERAL.value, ()))
            if not executors:
                raise ValueError(f"No fallback chain configured for category={category.value!r}")
            chains[category] = executors
        for override in settings.fallback.overrides:
            _validate_mode(override.mode)
        return cls(chains=chains, overrides=tuple(settings.fallback.overrides))


def is_interactive_surface(path: str) -> bool:
    """Return True for UI-facing artifacts (components, pages, markup, styles)."""

    posix = PurePosixPath(path.replace("\\", "/").lower())
    if posix.suffix in INTERACTIVE_SURFACE_SUFFIXES:
        return True
    return any(part in INTERACTIVE_SURFACE_DIRS for part in posix.parts[:-1])


def is_infrastructure(path: str) -> bool:
    posix = PurePosixPath(path.replace("\\", "/").lower())
    if posix.name in INFRASTRUCTURE_NAMES or posix.name.startswith("dockerfile"):
        return True
    if posix.suffix in INFRASTRUCTURE_SUFFIXES:
        return True
    return any(part in INFRASTRUCTURE_DIRS for part in posix.parts[:-1])


def is_logic_module(path: str) -> bool:
    posix = PurePosixPath(path.replace("\\", "/").lower())
    return posix.suffix in LOGIC_SUFFIXES and not is_interactive_surface(path)


def classify_task_category(expected_artifacts: Iterable[str]) -> TaskCategory:
    """Pick one category from artifact path hints.

    Priority is frontend, then infrastructure, then backend. Tasks without
    recognizable hints are ``general``.
    """

    artifacts = [item for item in expected_artifacts if item.strip()]
    if any(is_interactive_surface(item) for item in artifacts):
        return TaskCategory.FRONTEND
    if any(is_infrastructure(item) for item in artifacts):
        return TaskCategory.INFRASTRUCTURE
    if any(is_logic_module(item) for item in artifacts):
        return TaskCategory.BACKEND
    return TaskCategory.GENERAL


def resolve_fallback_chain(
    *,
    defaults: FallbackChainDefaults,
    category: TaskCategory,
    session_overrides: Mapping[str, Any] | None = None,
) -> FallbackChain:
    """Merge default chain with project overrides, then session overrides.

    ``prepend`` puts override entries first, ``append`` puts them last and
    ``override`` replaces the chain. Duplicate executors keep their first
    position.
    """

    executors = defaults.chains[category]
    for override in defaults.overrides:
        if override.category == category.value:
            executors = _merge(executors, override.executors, override.mode)
    session_override = _parse_session_override((session_overrides or {}).get(category.value))
    if session_override is not None:
        mode, extra = session_override
        executors = _merge(executors, extra, mode)
    if not executors:
        raise ValueError(f"Resolved fallback chain is empty for category={category.value!r}")
    return FallbackChain(category=category, executors=executors)


def session_override_metadata(*, mode: str, executors: Iterable[str]) -> dict[str, object]:
    """Serialize one per-session chain override for the session record."""

    _validate_mode(mode)
    names = _dedupe(executors)
    if not names:
        raise ValueError("Fallback chain override must name at least one executor.")
    return {
        "schema_version": FALLBACK_OVERRIDES_SCHEMA_VERSION,
        "mode": mode,
        "executors": list(names),
    }


def _parse_session_override(raw: object) -> tuple[str, tuple[str, ...]] | None:
    if not isinstance(raw, dict):
        return None
    if raw.get("schema_version") != FALLBACK_OVERRIDES_SCHEMA_VERSION:
        return None
    mode = raw.get("mode")
    executors = raw.get("executors")
    if not isinstance(mode, str) or mode not in FALLBACK_MERGE_MODES:
        return None
    if not isinstance(executors, list) or not all(isinstance(item, str) for item in executors):
        return None
    names = _dedupe(executors)
    if not names:
        return None
    return mode, names


def _merge(base: tuple[str, ...], extra: tuple[str, ...], mode: str) -> tuple[str, ...]:
    _validate_mode(mode)
    if mode == "override":
        return _dedupe(extra)
    if mode == "prepend":
        return _dedupe((*extra, *base))
    return _dedupe((*base, *extra))


def _dedupe(values: Iterable[str]) -> tuple[str, ...]:
    return tuple(dict.fromkeys(value.strip() for value in values if value.strip()))


def _validate_mode(mode: str) -> None:
    if mode not in FALLBACK_MERGE_MODES:
        raise ValueError(
            f"Unsupported fallback merge mode: {mode!r}. Use one of {FALLBACK_MERGE_MODES}.",
        )
