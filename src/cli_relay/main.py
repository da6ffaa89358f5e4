"""CLI entrypoint for cli-relay."""

import logging
import os
from collections.abc import Callable
from typing import TypeVar

import rich_click as click

from cli_relay import __version__
from cli_relay.orchestrator.controllers import (
    AskCommand,
    DetectCommand,
    JobCleanupCommand,
    JobListCommand,
    JobLookupCommand,
    JobWaitCommand,
    RelayCliController,
    RelayCommandResult,
)
from cli_relay.orchestrator.jobs import ALLOWED_SIGNALS, STATUS_FILTERS
from cli_relay.orchestrator.providers import CODEX, GEMINI, PROVIDER_SPECS

click.rich_click.USE_MARKDOWN = True
CONTROLLER = RelayCliController()
PROVIDER_CHOICE = click.Choice(list(PROVIDER_SPECS), case_sensitive=False)

T = TypeVar("T")


@click.group()
@click.version_option(version=__version__, prog_name="cli-relay")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=lambda: os.getenv("CLI_RELAY_LOG_LEVEL", "WARNING"),
    show_default="WARNING",
    help="Log level for diagnostics written to stderr.",
)
def cli_relay(log_level: str) -> None:
    """Run codex and gemini CLIs as foreground or background jobs."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli_relay.group()
def ask() -> None:
    """Send a prompt file to a provider CLI."""


def _ask_options(function: Callable[..., None]) -> Callable[..., None]:
    options = [
        click.option(
            "--agent-role",
            required=True,
            help="Role/perspective for the provider, for example architect.",
        ),
        click.option(
            "--prompt-file",
            required=True,
            help="File with the prompt text, relative to the working directory.",
        ),
        click.option(
            "--output-file",
            required=True,
            help="Where the response is written, relative to the working directory.",
        ),
        click.option(
            "--context-file",
            "context_files",
            multiple=True,
            help="File injected as untrusted context. Can be repeated.",
        ),
        click.option(
            "--model",
            default=None,
            help="Pin an exact model. Disables the fallback chain.",
        ),
        click.option(
            "--background/--foreground",
            default=False,
            show_default=True,
            help="Dispatch as a background job and return immediately.",
        ),
        click.option(
            "--working-directory",
            default=None,
            help="Directory the provider runs in. Defaults to the current directory.",
        ),
    ]
    for option in reversed(options):
        function = option(function)
    return function


@ask.command("codex")
@_ask_options
def ask_codex(  # noqa: PLR0913
    agent_role: str,
    prompt_file: str,
    output_file: str,
    context_files: tuple[str, ...],
    model: str | None,
    background: bool,
    working_directory: str | None,
) -> None:
    """Ask Codex. Roles: architect, planner, critic, analyst, code-reviewer, and more."""

    _run_ask(
        CODEX.name,
        agent_role,
        prompt_file,
        output_file,
        context_files,
        model,
        background,
        working_directory,
    )


@ask.command("gemini")
@_ask_options
def ask_gemini(  # noqa: PLR0913
    agent_role: str,
    prompt_file: str,
    output_file: str,
    context_files: tuple[str, ...],
    model: str | None,
    background: bool,
    working_directory: str | None,
) -> None:
    """Ask Gemini. Roles: designer, writer, vision."""

    _run_ask(
        GEMINI.name,
        agent_role,
        prompt_file,
        output_file,
        context_files,
        model,
        background,
        working_directory,
    )


@cli_relay.group()
def jobs() -> None:
    """Inspect and control background jobs."""


@jobs.command("wait")
@click.option("--provider", type=PROVIDER_CHOICE, required=True, help="Provider of the job.")
@click.option("--job-id", required=True, help="Job id returned by a background ask.")
@click.option(
    "--timeout-ms",
    type=click.IntRange(min=1),
    default=3_600_000,
    show_default=True,
    help="Maximum wait, clamped to [1000, 3600000].",
)
def jobs_wait(provider: str, job_id: str, timeout_ms: int) -> None:
    """Block until a job finishes or the timeout elapses."""

    _emit_result(
        _invoke(
            lambda: CONTROLLER.wait(
                JobWaitCommand(provider=provider.lower(), job_id=job_id, timeout_ms=timeout_ms),
            ),
        ),
    )


@jobs.command("status")
@click.option("--provider", type=PROVIDER_CHOICE, required=True, help="Provider of the job.")
@click.option("--job-id", required=True, help="Job id.")
def jobs_status(provider: str, job_id: str) -> None:
    """Show the current record of one job without waiting."""

    _emit_result(
        _invoke(
            lambda: CONTROLLER.status(JobLookupCommand(provider=provider.lower(), job_id=job_id)),
        ),
    )


@jobs.command("kill")
@click.option("--provider", type=PROVIDER_CHOICE, required=True, help="Provider of the job.")
@click.option("--job-id", required=True, help="Job id.")
@click.option(
    "--signal",
    "signal_name",
    type=click.Choice(list(ALLOWED_SIGNALS)),
    default="SIGTERM",
    show_default=True,
    help="Signal delivered to the job's process group.",
)
def jobs_kill(provider: str, job_id: str, signal_name: str) -> None:
    """Signal a running job started by this process."""

    _emit_result(
        _invoke(
            lambda: CONTROLLER.kill(
                JobLookupCommand(
                    provider=provider.lower(),
                    job_id=job_id,
                    signal_name=signal_name,
                ),
            ),
        ),
    )


@jobs.command("list")
@click.option("--provider", type=PROVIDER_CHOICE, required=True, help="Provider to list.")
@click.option(
    "--status",
    "status_filter",
    type=click.Choice(list(STATUS_FILTERS)),
    default="active",
    show_default=True,
    help="Status filter; failed includes timeouts.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Maximum jobs to show, newest first.",
)
def jobs_list(provider: str, status_filter: str, limit: int) -> None:
    """List jobs of one provider."""

    _emit_result(
        _invoke(
            lambda: CONTROLLER.list_jobs(
                JobListCommand(
                    provider=provider.lower(),
                    status_filter=status_filter,
                    limit=limit,
                ),
            ),
        ),
    )


@jobs.command("cleanup")
@click.option(
    "--max-age-hours",
    type=click.IntRange(min=0),
    default=None,
    help="Delete terminal jobs older than this. Defaults to CLI_RELAY_JOB_RETENTION_HOURS.",
)
@click.option(
    "--mark-stale-hours",
    type=click.IntRange(min=1),
    default=None,
    help="First mark active jobs older than this as timed out.",
)
def jobs_cleanup(max_age_hours: int | None, mark_stale_hours: int | None) -> None:
    """Remove old terminal jobs from status files and the database."""

    _emit_lines(
        _invoke(
            lambda: CONTROLLER.cleanup(
                JobCleanupCommand(
                    max_age_hours=max_age_hours,
                    mark_stale_hours=mark_stale_hours,
                ),
            ),
        ),
    )


@jobs.command("migrate")
def jobs_migrate() -> None:
    """Import existing status files into the job database."""

    _emit_result(_invoke(CONTROLLER.migrate))


@jobs.command("stats")
@click.option("--provider", type=PROVIDER_CHOICE, default=None, help="Optional provider filter.")
def jobs_stats(provider: str | None) -> None:
    """Show job counts for the current workspace."""

    _emit_lines(_invoke(lambda: CONTROLLER.stats(provider.lower() if provider else None)))


@jobs.command("supervise", hidden=True)
def jobs_supervise() -> None:
    """Own a background job handed over on stdin by `ask --background`."""

    payload = click.get_text_stream("stdin").read()
    _emit_result(_invoke(lambda: CONTROLLER.supervise(payload)))


@cli_relay.command("detect")
@click.option(
    "--provider",
    "providers",
    type=PROVIDER_CHOICE,
    multiple=True,
    help="Provider to check. Repeat for several; defaults to all.",
)
@click.option("--refresh", is_flag=True, default=False, help="Ignore cached results.")
def detect(providers: tuple[str, ...], refresh: bool) -> None:
    """Check which provider CLIs are installed."""

    _emit_result(
        CONTROLLER.detect(
            DetectCommand(
                providers=tuple(provider.lower() for provider in providers),
                refresh=refresh,
            ),
        ),
    )


def _run_ask(  # noqa: PLR0913
    provider: str,
    agent_role: str,
    prompt_file: str,
    output_file: str,
    context_files: tuple[str, ...],
    model: str | None,
    background: bool,
    working_directory: str | None,
) -> None:
    _emit_result(
        _invoke(
            lambda: CONTROLLER.ask(
                AskCommand(
                    provider=provider,
                    agent_role=agent_role,
                    prompt_file=prompt_file,
                    output_file=output_file,
                    context_files=context_files,
                    model=model,
                    background=background,
                    working_directory=working_directory,
                ),
            ),
        ),
    )


def _invoke(action: Callable[[], T]) -> T:
    try:
        return action()
    except ValueError as error:
        raise click.UsageError(str(error)) from error


def _emit_result(result: RelayCommandResult) -> None:
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Command failed.")


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    cli_relay()
