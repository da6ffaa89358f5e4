"""Application service: validate a request, run the provider and record the job."""

from __future__ import annotations

import logging
import os
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from cli_relay.config import RelaySettings
from cli_relay.orchestrator.audit import (
    PersistedPrompt,
    expected_response_path,
    persist_prompt,
    persist_response,
    status_file_path,
)
from cli_relay.orchestrator.backend import CliProviderBackend, ProcessHandle, ProviderBackend
from cli_relay.orchestrator.detection import CliDetector
from cli_relay.orchestrator.errors import RelayError, SpawnError, ValidationError
from cli_relay.orchestrator.fallback import (
    AttemptPlan,
    BackgroundFallbackRunner,
    build_model_chain,
    execute_with_fallback,
)
from cli_relay.orchestrator.jobs import JobControl, ToolResult
from cli_relay.orchestrator.models import JobRecord, JobStatus, transition
from cli_relay.orchestrator.prompting import (
    build_file_context,
    build_full_prompt,
    build_user_prompt,
    validate_agent_role,
)
from cli_relay.orchestrator.providers import ProviderSpec, get_provider, validate_model_name
from cli_relay.orchestrator.registry import SpawnedProcessRegistry
from cli_relay.orchestrator.security import (
    resolve_output_path,
    safe_write_output_file,
    validate_prompt_file,
    validate_working_directory,
)
from cli_relay.orchestrator.supervisor import (
    DetachedJob,
    await_provider_start,
    forward_termination_signals,
    launch_supervisor,
)
from cli_relay.orchestrator.workspace import resolve_workspace_root, state_dir
from cli_relay.storage.common import utc_now
from cli_relay.storage.job_store import JobStore

logger = logging.getLogger(__name__)

_SUPERVISOR_WAIT_SECONDS = 0.5


@dataclass(slots=True)
class AskRequest:
    """One ``ask`` invocation as received from the caller."""

    provider: str
    agent_role: str
    prompt_file: str
    output_file: str
    context_files: Sequence[str] = field(default_factory=tuple)
    model: str | None = None
    background: bool = False
    working_directory: str | None = None


@dataclass(slots=True)
class _PreparedRun:
    provider: ProviderSpec
    agent_role: str
    base_dir: Path
    output_target: Path
    full_prompt: str
    chain: list[str]
    pinned: bool
    persisted: PersistedPrompt
    response_path: Path


class RelayOrchestrator:
    """Entry point for provider invocations within one workspace.

    Owns the registry of spawned processes, the CLI detector cache and the job
    store for the workspace root enclosing ``cwd``. Job control requests are
    served from the same store and registry.

    With ``detach_background`` set, background jobs are handed to a detached
    supervisor process instead of running under this instance, so a short-lived
    caller such as the CLI can exit while the job keeps running.
    """

    def __init__(  # noqa: PLR0913
        self,
        settings: RelaySettings,
        *,
        cwd: Path | None = None,
        registry: SpawnedProcessRegistry | None = None,
        detector: CliDetector | None = None,
        backend: ProviderBackend | None = None,
        store: JobStore | None = None,
        detach_background: bool = False,
    ) -> None:
        self.settings = settings
        self.detach_background = detach_background
        self.cwd = Path(os.path.realpath(cwd or Path.cwd()))
        self.workspace_root = resolve_workspace_root(self.cwd)
        self.registry = registry or SpawnedProcessRegistry()
        self.detector = detector or CliDetector()
        self.backend = backend or CliProviderBackend(self.registry)
        self.store = store or JobStore(
            self.workspace_root,
            busy_timeout_ms=settings.jobs.sqlite_busy_timeout_ms,
        )
        self.jobs = JobControl(self.store, self.registry)
        self._runners: list[BackgroundFallbackRunner] = []

    def close(self) -> None:
        self.store.close()

    def ask(self, request: AskRequest) -> ToolResult:
        """Run or dispatch one prompt. Errors are returned, never raised."""

        try:
            prepared = self._prepare(request)
        except RelayError as error:
            return ToolResult(error.describe(), is_error=True)
        except OSError as error:
            return ToolResult(f"Failed to persist prompt: {error}", is_error=True)

        if request.background and self.detach_background:
            return self._dispatch_detached(request, prepared)
        if request.background:
            return self._dispatch_background(request, prepared)
        return self._run_foreground(request, prepared)

    def wait_background_jobs(self, timeout: float | None = None) -> bool:
        """Block until every job dispatched by this instance has been finalized."""

        return all(runner.wait(timeout) for runner in self._runners)

    def _prepare(self, request: AskRequest) -> _PreparedRun:
        provider = get_provider(request.provider)
        provider_settings = self.settings.provider(provider.name)
        base_dir = validate_working_directory(
            request.working_directory,
            cwd=self.cwd,
            workspace_root=self.workspace_root,
            allow_external=self.settings.paths.allow_external_workdir,
        )
        agent_role = validate_agent_role(request.agent_role, provider)
        if request.model:
            validate_model_name(request.model)

        prompt_path = validate_prompt_file(
            request.prompt_file,
            base_dir=base_dir,
            allow_external=self.settings.paths.allow_external_prompt,
        )
        try:
            prompt_text = prompt_path.read_text("utf-8")
        except (OSError, UnicodeDecodeError) as error:
            raise ValidationError(
                f"Failed to read prompt_file '{request.prompt_file}': {error}",
            ) from error
        if not prompt_text.strip():
            raise ValidationError(f"prompt_file '{request.prompt_file}' is empty.")

        output_target = resolve_output_path(
            request.output_file,
            base_dir=base_dir,
            policy=self.settings.paths.output_path_policy,
            redirect_dir=self.settings.paths.output_redirect_dir,
        )

        detection = self.detector.detect(provider.name)
        if not detection.available and provider_settings.command_template is None:
            raise SpawnError(
                f"{provider.display_name} CLI is not available: {detection.error}",
                install_hint=detection.install_hint,
            )

        user_prompt = build_user_prompt(prompt_text, output_path=output_target)
        file_context = build_file_context(request.context_files, base_dir=base_dir)
        full_prompt = build_full_prompt(
            provider=provider,
            agent_role=agent_role,
            user_prompt=user_prompt,
            file_context=file_context,
        )
        chain, pinned = build_model_chain(
            request.model,
            provider_settings.default_model,
            provider.fallback_chain,
        )
        persisted = persist_prompt(
            workspace_root=self.workspace_root,
            provider=provider.name,
            agent_role=agent_role,
            model=chain[0],
            user_prompt=prompt_text,
            full_prompt=full_prompt,
            files=request.context_files,
        )
        return _PreparedRun(
            provider=provider,
            agent_role=agent_role,
            base_dir=base_dir,
            output_target=output_target,
            full_prompt=full_prompt,
            chain=chain,
            pinned=pinned,
            persisted=persisted,
            response_path=expected_response_path(
                self.workspace_root,
                provider.name,
                persisted.slug,
                persisted.job_id,
            ),
        )

    def _plan(self, prepared: _PreparedRun) -> AttemptPlan:
        provider_settings = self.settings.provider(prepared.provider.name)
        return AttemptPlan(
            provider=prepared.provider,
            prompt=prepared.full_prompt,
            cwd=prepared.base_dir,
            timeout_seconds=provider_settings.timeout_seconds,
            max_stdout_bytes=self.settings.jobs.max_stdout_bytes,
            command_template=provider_settings.command_template,
        )

    def _run_foreground(self, request: AskRequest, prepared: _PreparedRun) -> ToolResult:
        params = [f"**Agent Role:** {prepared.agent_role}"]
        if request.context_files:
            params.append(f"**Files:** {', '.join(request.context_files)}")
        params.append(f"**Prompt File:** {prepared.persisted.path}")
        params.append(f"**Response File:** {prepared.response_path}")
        param_lines = "\n".join(params)

        plan = self._plan(prepared)
        mtime_before = _mtime(prepared.output_target)
        try:
            result = execute_with_fallback(
                attempt=lambda model, timeout: self.backend.execute(
                    plan.request_for(model, timeout),
                ),
                chain=prepared.chain,
                pinned=prepared.pinned,
                timeout_seconds=plan.timeout_seconds,
                budget_seconds=self.settings.jobs.fallback_budget_seconds,
            )
        except RelayError as error:
            logger.warning(
                "%s foreground run failed after %s: %s",
                prepared.provider.name,
                ", ".join(error.attempted_models) or "no attempts",
                error.error_token,
            )
            return ToolResult(
                f"{param_lines}\n\n---\n\n{prepared.provider.display_name} CLI error: "
                f"{error.describe()}",
                is_error=True,
            )

        persist_response(
            workspace_root=self.workspace_root,
            provider=prepared.provider.name,
            agent_role=prepared.agent_role,
            model=result.actual_model,
            job_id=prepared.persisted.job_id,
            slug=prepared.persisted.slug,
            response=result.response,
            used_fallback=result.used_fallback,
        )
        try:
            self._write_output(request.output_file, prepared, result.response, mtime_before)
        except ValidationError as error:
            return ToolResult(f"{param_lines}\n\n---\n\n{error.describe()}", is_error=True)
        return ToolResult(param_lines)

    def _dispatch_background(self, request: AskRequest, prepared: _PreparedRun) -> ToolResult:
        mtime_before = _mtime(prepared.output_target)
        try:
            runner, handle = self._start_runner(
                prepared,
                self._initial_record(prepared),
                output_file=request.output_file,
                mtime_before=mtime_before,
            )
        except RelayError as error:
            return ToolResult(
                f"Failed to spawn background job: {error.describe()}",
                is_error=True,
            )
        return ToolResult(self._background_reply(prepared, pid=handle.pid), job=runner.record)

    def _dispatch_detached(self, request: AskRequest, prepared: _PreparedRun) -> ToolResult:
        record = self._initial_record(prepared)
        self.store.write(record)
        job = DetachedJob(
            provider=prepared.provider.name,
            job_id=prepared.persisted.job_id,
            slug=prepared.persisted.slug,
            agent_role=prepared.agent_role,
            cwd=str(self.cwd),
            base_dir=str(prepared.base_dir),
            output_file=request.output_file,
            prompt_path=str(prepared.persisted.path),
            full_prompt=prepared.full_prompt,
            chain=list(prepared.chain),
            pinned=prepared.pinned,
            output_mtime=_mtime(prepared.output_target),
        )
        try:
            supervisor = launch_supervisor(
                job,
                log_path=state_dir(self.workspace_root) / "state" / "supervisor.log",
            )
        except RelayError as error:
            self.store.write(transition(record, JobStatus.FAILED, error=error.describe()))
            return ToolResult(
                f"Failed to spawn background job: {error.describe()}",
                is_error=True,
            )

        started = await_provider_start(self.store, record, supervisor)
        if started.pid is None and started.status is not JobStatus.COMPLETED and started.is_terminal:
            return ToolResult(
                f"Failed to spawn background job: {started.error}",
                is_error=True,
                job=started,
            )
        return ToolResult(
            self._background_reply(prepared, pid=started.pid, supervisor_pid=supervisor.pid),
            job=started,
        )

    def run_detached(self, job: DetachedJob) -> JobRecord:
        """Own a job dispatched by another process until it is finalized.

        SIGTERM and SIGINT received meanwhile are turned into a kill of the job,
        delivered through this instance's registry.
        """

        record = self.store.read(job.provider, job.job_id)
        if record is None:
            raise ValidationError(f"No job found with ID: {job.job_id}")
        if record.is_terminal:
            logger.info("Job %s is already %s, nothing to run", job.job_id, record.status.value)
            return record

        prepared = self._restore(job)
        requested_signals: list[str] = []

        with forward_termination_signals(requested_signals.append):
            try:
                runner, _handle = self._start_runner(
                    prepared,
                    record,
                    output_file=job.output_file,
                    mtime_before=job.output_mtime,
                )
            except RelayError as error:
                self.store.write(transition(record, JobStatus.FAILED, error=error.describe()))
                return self.store.read(job.provider, job.job_id) or record
            while True:
                if requested_signals:
                    signal_name = requested_signals[-1]
                    requested_signals.clear()
                    result = self.jobs.kill_job(job.provider, job.job_id, signal_name)
                    logger.info("%s for job %s: %s", signal_name, job.job_id, result.text)
                if runner.wait(_SUPERVISOR_WAIT_SECONDS):
                    break
        return self.store.read(job.provider, job.job_id) or runner.record

    def _restore(self, job: DetachedJob) -> _PreparedRun:
        provider = get_provider(job.provider)
        base_dir = Path(job.base_dir)
        return _PreparedRun(
            provider=provider,
            agent_role=job.agent_role,
            base_dir=base_dir,
            output_target=resolve_output_path(
                job.output_file,
                base_dir=base_dir,
                policy=self.settings.paths.output_path_policy,
                redirect_dir=self.settings.paths.output_redirect_dir,
            ),
            full_prompt=job.full_prompt,
            chain=list(job.chain),
            pinned=job.pinned,
            persisted=PersistedPrompt(path=Path(job.prompt_path), job_id=job.job_id, slug=job.slug),
            response_path=expected_response_path(
                self.workspace_root,
                provider.name,
                job.slug,
                job.job_id,
            ),
        )

    def _initial_record(self, prepared: _PreparedRun) -> JobRecord:
        return JobRecord(
            provider=prepared.provider.name,
            job_id=prepared.persisted.job_id,
            slug=prepared.persisted.slug,
            status=JobStatus.SPAWNED,
            prompt_file=str(prepared.persisted.path),
            response_file=str(prepared.response_path),
            model=prepared.chain[0],
            agent_role=prepared.agent_role,
            spawned_at=utc_now(),
        )

    def _start_runner(
        self,
        prepared: _PreparedRun,
        record: JobRecord,
        *,
        output_file: str,
        mtime_before: float | None,
    ) -> tuple[BackgroundFallbackRunner, ProcessHandle]:
        def on_success(completed: JobRecord, response: str) -> None:
            persist_response(
                workspace_root=self.workspace_root,
                provider=completed.provider,
                agent_role=completed.agent_role,
                model=completed.model,
                job_id=completed.job_id,
                slug=completed.slug,
                response=response,
                used_fallback=completed.used_fallback,
            )
            self._write_output(output_file, prepared, response, mtime_before)

        runner = BackgroundFallbackRunner(
            backend=self.backend,
            store=self.store,
            plan=self._plan(prepared),
            chain=prepared.chain,
            pinned=prepared.pinned,
            record=record,
            budget_seconds=self.settings.jobs.fallback_budget_seconds,
            on_success=on_success,
        )
        handle = runner.start()
        self._runners.append(runner)
        logger.info(
            "Dispatched %s job %s (pid %s, model %s)",
            prepared.provider.name,
            prepared.persisted.job_id,
            handle.pid,
            prepared.chain[0],
        )
        return runner, handle

    def _background_reply(
        self,
        prepared: _PreparedRun,
        *,
        pid: int | None,
        supervisor_pid: int | None = None,
    ) -> str:
        persisted = prepared.persisted
        lines = [
            "**Mode:** Background (non-blocking)",
            f"**Job ID:** {persisted.job_id}",
            f"**Agent Role:** {prepared.agent_role}",
            f"**Model:** {prepared.chain[0]}",
            f"**PID:** {pid if pid is not None else 'pending'}",
        ]
        if supervisor_pid is not None:
            lines.append(f"**Supervisor PID:** {supervisor_pid}")
        lines += [
            f"**Prompt File:** {persisted.path}",
            f"**Response File:** {prepared.response_path}",
            "**Status File:** "
            + str(
                status_file_path(
                    self.workspace_root,
                    prepared.provider.name,
                    persisted.slug,
                    persisted.job_id,
                ),
            ),
            "",
            "Job dispatched. Check response file existence or read status file for completion.",
        ]
        return "\n".join(lines)

    def _write_output(
        self,
        output_file: str,
        prepared: _PreparedRun,
        response: str,
        mtime_before: float | None,
    ) -> None:
        mtime_after = _mtime(prepared.output_target)
        if mtime_after is not None and (mtime_before is None or mtime_after > mtime_before):
            logger.info("Provider wrote %s itself, keeping its version", prepared.output_target)
            return
        written = safe_write_output_file(
            output_file,
            response,
            base_dir=prepared.base_dir,
            policy=self.settings.paths.output_path_policy,
            redirect_dir=self.settings.paths.output_redirect_dir,
        )
        logger.debug("Wrote response to %s", written)


def _mtime(path: Path) -> float | None:
    try:
        return path.stat().st_mtime
    except OSError:
        return None
