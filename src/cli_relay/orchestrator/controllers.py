"""Controllers for relay CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from cli_relay.config import RelaySettings
from cli_relay.orchestrator.detection import CliDetector
from cli_relay.orchestrator.jobs import ToolResult
from cli_relay.orchestrator.models import JobStatus
from cli_relay.orchestrator.providers import PROVIDER_SPECS
from cli_relay.orchestrator.services import AskRequest, RelayOrchestrator
from cli_relay.orchestrator.supervisor import DetachedJob


@dataclass(slots=True)
class AskCommand:
    """CLI input for one provider invocation."""

    provider: str
    agent_role: str
    prompt_file: str
    output_file: str
    context_files: tuple[str, ...]
    model: str | None
    background: bool
    working_directory: str | None


@dataclass(slots=True)
class JobWaitCommand:
    provider: str
    job_id: str
    timeout_ms: int


@dataclass(slots=True)
class JobLookupCommand:
    """CLI input for status and kill operations."""

    provider: str
    job_id: str
    signal_name: str = "SIGTERM"


@dataclass(slots=True)
class JobListCommand:
    provider: str
    status_filter: str
    limit: int


@dataclass(slots=True)
class JobCleanupCommand:
    """CLI input for retention cleanup."""

    max_age_hours: int | None
    mark_stale_hours: int | None


@dataclass(slots=True)
class DetectCommand:
    providers: tuple[str, ...]
    refresh: bool


@dataclass(slots=True)
class RelayCommandResult:
    """Lines to render in CLI and whether the command succeeded."""

    lines: list[str]
    success: bool


class RelayCliController:
    """Coordinates ask, job control and maintenance CLI operations."""

    def __init__(self, cwd: Path | None = None) -> None:
        self.cwd = cwd

    def ask(self, command: AskCommand) -> RelayCommandResult:
        with self._orchestrator(detach_background=True) as orchestrator:
            result = orchestrator.ask(
                AskRequest(
                    provider=command.provider,
                    agent_role=command.agent_role,
                    prompt_file=command.prompt_file,
                    output_file=command.output_file,
                    context_files=command.context_files,
                    model=command.model,
                    background=command.background,
                    working_directory=command.working_directory,
                ),
            )
        return _from_tool_result(result)

    def supervise(self, payload: str) -> RelayCommandResult:
        """Run a job handed over by a background ``ask`` until it is finalized."""

        job = DetachedJob.from_json(payload)
        with self._orchestrator(cwd=Path(job.cwd)) as orchestrator:
            record = orchestrator.run_detached(job)
        return RelayCommandResult(
            lines=[f"Job {record.job_id} finished: {record.status.value}"],
            success=record.status is JobStatus.COMPLETED,
        )

    def wait(self, command: JobWaitCommand) -> RelayCommandResult:
        with self._orchestrator() as orchestrator:
            result = orchestrator.jobs.wait_for_job(
                command.provider,
                command.job_id,
                command.timeout_ms,
            )
        return _from_tool_result(result)

    def status(self, command: JobLookupCommand) -> RelayCommandResult:
        with self._orchestrator() as orchestrator:
            result = orchestrator.jobs.check_job_status(command.provider, command.job_id)
        return _from_tool_result(result)

    def kill(self, command: JobLookupCommand) -> RelayCommandResult:
        with self._orchestrator() as orchestrator:
            result = orchestrator.jobs.kill_job(
                command.provider,
                command.job_id,
                command.signal_name,
            )
        return _from_tool_result(result)

    def list_jobs(self, command: JobListCommand) -> RelayCommandResult:
        with self._orchestrator() as orchestrator:
            result = orchestrator.jobs.list_jobs(
                command.provider,
                command.status_filter,
                command.limit,
            )
        return _from_tool_result(result)

    def cleanup(self, command: JobCleanupCommand) -> list[str]:
        settings = RelaySettings.from_env()
        max_age_hours = (
            command.max_age_hours
            if command.max_age_hours is not None
            else settings.jobs.retention_hours
        )
        with self._orchestrator(settings) as orchestrator:
            lines: list[str] = []
            if command.mark_stale_hours is not None:
                marked = orchestrator.store.mark_stale_jobs(
                    timedelta(hours=command.mark_stale_hours),
                )
                lines.append(f"Stale jobs marked as timeout: {marked}")
            removed = orchestrator.store.cleanup_older_than(timedelta(hours=max_age_hours))
        lines.append(f"Terminal jobs removed: {removed} (older than {max_age_hours}h)")
        return lines

    def migrate(self) -> RelayCommandResult:
        with self._orchestrator() as orchestrator:
            if not orchestrator.store.database_enabled:
                return RelayCommandResult(
                    lines=["Job database unavailable; status files remain the only store."],
                    success=False,
                )
            result = orchestrator.store.migrate_from_files()
        return RelayCommandResult(
            lines=[f"Migration complete: imported={result.imported} errors={result.errors}"],
            success=result.errors == 0,
        )

    def stats(self, provider: str | None) -> list[str]:
        with self._orchestrator() as orchestrator:
            stats = orchestrator.store.stats(provider)
            database_enabled = orchestrator.store.database_enabled
        scope = provider or "all providers"
        return [
            f"Workspace: {orchestrator.workspace_root}",
            f"Backend: {'sqlite + status files' if database_enabled else 'status files only'}",
            f"Jobs ({scope}): total={stats.total} active={stats.active} "
            f"completed={stats.completed} failed={stats.failed}",
        ]

    def detect(self, command: DetectCommand) -> RelayCommandResult:
        detector = CliDetector()
        providers = command.providers or tuple(PROVIDER_SPECS)
        lines: list[str] = []
        success = True
        for provider in providers:
            detection = detector.detect(provider, refresh=command.refresh)
            if detection.available:
                lines.append(
                    f"- {provider}: available path={detection.path} "
                    f"version={detection.version or 'unknown'}",
                )
                continue
            success = False
            lines.append(f"- {provider}: missing ({detection.error})")
            lines.append(f"    {detection.install_hint}")
        return RelayCommandResult(lines=lines, success=success)

    @contextmanager
    def _orchestrator(
        self,
        settings: RelaySettings | None = None,
        *,
        cwd: Path | None = None,
        detach_background: bool = False,
    ) -> Iterator[RelayOrchestrator]:
        orchestrator = RelayOrchestrator(
            settings or RelaySettings.from_env(),
            cwd=cwd or self.cwd,
            detach_background=detach_background,
        )
        try:
            yield orchestrator
        finally:
            orchestrator.close()


def _from_tool_result(result: ToolResult) -> RelayCommandResult:
    return RelayCommandResult(lines=result.text.splitlines(), success=not result.is_error)
