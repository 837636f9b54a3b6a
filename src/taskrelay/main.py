"""CLI entrypoint for taskrelay."""

import logging
from pathlib import Path

import rich_click as click

from taskrelay import __version__
from taskrelay.orchestrator.controllers import (
    ContractCommand,
    RunCommand,
    SessionChainCommand,
    SessionCommand,
    SessionTakeoverCommand,
    TaskRelayCliController,
)
from taskrelay.orchestrator.errors import TaskRelayError
from taskrelay.orchestrator.escalation import (
    EscalationHandler,
    EscalationReport,
    StaticEscalationHandler,
    render_resume_prompt_lines,
)
from taskrelay.orchestrator.models import RecoveryOption, ResumeChoice
from taskrelay.orchestrator.session import ResumePrompt

click.rich_click.USE_MARKDOWN = True
CONTROLLER = TaskRelayCliController()

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")
_FORMAT_CHOICE = click.Choice(["table", "json"], case_sensitive=False)
# A fixed retry answer would loop forever, so it is only offered interactively.
_STATIC_RECOVERY_OPTIONS = (
    RecoveryOption.MANUAL_TAKEOVER,
    RecoveryOption.SKIP_TASK,
    RecoveryOption.ABANDON_BATCH,
)


@click.group()
@click.version_option(version=__version__, prog_name="taskrelay")
@click.option(
    "--log-level",
    type=click.Choice(_LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for orchestration events.",
)
def taskrelay(log_level: str) -> None:
    """Resumable task orchestration across AI executors."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@taskrelay.command("contract")
@click.option("--description", required=True, help="Task description to classify.")
@click.option(
    "--artifact",
    "artifacts",
    multiple=True,
    help="Expected artifact path. Can be repeated.",
)
@click.option("--format", "output_format", type=_FORMAT_CHOICE, default="table", show_default=True)
def contract(description: str, artifacts: tuple[str, ...], output_format: str) -> None:
    """Preview the verification contract generated for a task."""

    _emit_lines(
        CONTROLLER.contract(
            ContractCommand(
                description=description,
                artifacts=artifacts,
                output_format=output_format.lower(),
            ),
        ),
    )


@taskrelay.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--session-id", default=None, help="Session id (default from TASKRELAY_SESSION_ID).")
@click.option(
    "--tasks-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="JSON array of tasks: `task_id`, `description`, `expected_artifacts`, `steps`.",
)
@click.option("--task-id", default=None, help="Id for the task given with --description.")
@click.option("--description", default=None, help="Run a single task with this description.")
@click.option(
    "--artifact",
    "artifacts",
    multiple=True,
    help="Expected artifact for --description. Can be repeated.",
)
@click.option("--step", "steps", multiple=True, help="Planned step for --description. Can be repeated.")
@click.option(
    "--on-active",
    type=click.Choice(["prompt", *(choice.value for choice in ResumeChoice)], case_sensitive=False),
    default="prompt",
    show_default=True,
    help="What to do with a task left in progress by a previous run.",
)
@click.option(
    "--on-escalation",
    type=click.Choice(
        ["prompt", "defer", *(option.value for option in _STATIC_RECOVERY_OPTIONS)],
        case_sensitive=False,
    ),
    default="prompt",
    show_default=True,
    help="How to answer escalations. `defer` leaves the task pending for a later run.",
)
def run(  # noqa: PLR0913
    db_path: Path | None,
    session_id: str | None,
    tasks_file: Path | None,
    task_id: str | None,
    description: str | None,
    artifacts: tuple[str, ...],
    steps: tuple[str, ...],
    on_active: str,
    on_escalation: str,
) -> None:
    """Run tasks through their executor fallback chains."""

    if tasks_file is None and description is None:
        raise click.UsageError("Pass --tasks-file or --description.")
    try:
        result = CONTROLLER.run(
            RunCommand(
                db_path=db_path,
                session_id=session_id,
                tasks_file=tasks_file,
                task_id=task_id,
                description=description,
                artifacts=artifacts,
                steps=steps,
                resume_choice=_resume_chooser(on_active.lower()),
                escalation_handler=_escalation_handler(on_escalation.lower()),
            ),
        )
    except (TaskRelayError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Batch did not complete.")


@taskrelay.group()
def session() -> None:
    """Session state commands."""


@session.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--session-id", default=None, help="Session id.")
def session_status(db_path: Path | None, session_id: str | None) -> None:
    """Show the session heartbeat, active task and pending escalation."""

    _run_lines(CONTROLLER.session_status, SessionCommand(db_path=db_path, session_id=session_id))


@session.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def session_list(db_path: Path | None) -> None:
    """List stored sessions."""

    _run_lines(CONTROLLER.session_list, SessionCommand(db_path=db_path, session_id=None))


@session.command("clear")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--session-id", default=None, help="Session id.")
@click.confirmation_option(prompt="Delete the session record?")
def session_clear(db_path: Path | None, session_id: str | None) -> None:
    """Delete a session record."""

    _run_lines(CONTROLLER.session_clear, SessionCommand(db_path=db_path, session_id=session_id))


@session.command("takeover")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--session-id", default=None, help="Session that takes the task.")
@click.option("--from-session", "from_session_id", required=True, help="Stale session to take from.")
def session_takeover(db_path: Path | None, session_id: str | None, from_session_id: str) -> None:
    """Claim the active task of a stale session."""

    _run_lines(
        CONTROLLER.session_takeover,
        SessionTakeoverCommand(
            db_path=db_path,
            session_id=session_id,
            from_session_id=from_session_id,
        ),
    )


@session.command("chain")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--session-id", default=None, help="Session id.")
@click.option("--category", required=True, help="frontend, backend, infrastructure or general.")
@click.option(
    "--mode",
    type=click.Choice(["prepend", "append", "override"], case_sensitive=False),
    default="override",
    show_default=True,
)
@click.option("--executor", "executors", multiple=True, required=True, help="Executor name. Can be repeated.")
def session_chain(  # noqa: PLR0913
    db_path: Path | None,
    session_id: str | None,
    category: str,
    mode: str,
    executors: tuple[str, ...],
) -> None:
    """Override the fallback chain of one category for this session."""

    _run_lines(
        CONTROLLER.session_chain,
        SessionChainCommand(
            db_path=db_path,
            session_id=session_id,
            category=category,
            mode=mode.lower(),
            executors=executors,
        ),
    )


@taskrelay.group()
def checkpoint() -> None:
    """Checkpoint inspection commands."""


@checkpoint.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--session-id", default=None, help="Session id.")
@click.option("--task-id", default=None, help="Task id (default: the active task).")
@click.option("--format", "output_format", type=_FORMAT_CHOICE, default="table", show_default=True)
def checkpoint_show(
    db_path: Path | None,
    session_id: str | None,
    task_id: str | None,
    output_format: str,
) -> None:
    """Show a task checkpoint."""

    _run_lines(
        CONTROLLER.checkpoint_show,
        SessionCommand(
            db_path=db_path,
            session_id=session_id,
            task_id=task_id,
            output_format=output_format.lower(),
        ),
    )


@checkpoint.command("resume-context")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--session-id", default=None, help="Session id.")
@click.option("--format", "output_format", type=_FORMAT_CHOICE, default="table", show_default=True)
def checkpoint_resume_context(db_path: Path | None, session_id: str | None, output_format: str) -> None:
    """Print the resume context an executor would receive for the active task."""

    _run_lines(
        CONTROLLER.resume_context,
        SessionCommand(db_path=db_path, session_id=session_id, output_format=output_format.lower()),
    )


@taskrelay.command("attempts")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--session-id", default=None, help="Session id.")
@click.option("--task-id", default=None, help="Only show attempts for this task.")
@click.option("--format", "output_format", type=_FORMAT_CHOICE, default="table", show_default=True)
def attempts(
    db_path: Path | None,
    session_id: str | None,
    task_id: str | None,
    output_format: str,
) -> None:
    """Show the reassignment attempt log."""

    _run_lines(
        CONTROLLER.attempts,
        SessionCommand(
            db_path=db_path,
            session_id=session_id,
            task_id=task_id,
            output_format=output_format.lower(),
        ),
    )


class PromptEscalationHandler:
    """Asks the operator on the terminal how to recover an escalated task."""

    def choose(self, report: EscalationReport) -> RecoveryOption:
        _emit_lines(report.render_lines())
        value = click.prompt(
            "Recovery option",
            type=click.Choice([option.value for option in report.options]),
            default=RecoveryOption.SKIP_TASK.value,
        )
        return RecoveryOption(value)


def _prompt_resume_choice(prompt: ResumePrompt) -> ResumeChoice:
    _emit_lines(render_resume_prompt_lines(prompt))
    value = click.prompt(
        "Resume choice",
        type=click.Choice([option.value for option in prompt.options]),
        default=ResumeChoice.RESUME.value,
    )
    return ResumeChoice(value)


def _resume_chooser(on_active: str):
    if on_active == "prompt":
        return _prompt_resume_choice
    choice = ResumeChoice(on_active)
    return lambda _prompt: choice


def _escalation_handler(on_escalation: str) -> EscalationHandler | None:
    if on_escalation == "prompt":
        return PromptEscalationHandler()
    if on_escalation == "defer":
        return None
    return StaticEscalationHandler(RecoveryOption(on_escalation))


def _run_lines(handler, command) -> None:
    try:
        lines = handler(command)
    except (TaskRelayError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    taskrelay()
