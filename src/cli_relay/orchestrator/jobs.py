"""Job control operations: wait, status, kill and list for background jobs."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from cli_relay.orchestrator.audit import read_completed_response
from cli_relay.orchestrator.models import (
    ACTIVE_STATUSES,
    JobRecord,
    JobStatus,
    transition,
)
from cli_relay.orchestrator.registry import SpawnedProcessRegistry
from cli_relay.storage.job_store import JobStore

logger = logging.getLogger(__name__)

MIN_WAIT_TIMEOUT_MS = 1_000
MAX_WAIT_TIMEOUT_MS = 3_600_000
MAX_PLAUSIBLE_PID = 4_194_304
PREVIEW_CHARS = 500

_POLL_INITIAL_SECONDS = 0.5
_POLL_FACTOR = 1.5
_POLL_MAX_SECONDS = 2.0
_REASSERT_ATTEMPTS = 3
_REASSERT_DELAY_SECONDS = 0.05

ALLOWED_SIGNALS: dict[str, signal.Signals] = {
    "SIGTERM": signal.SIGTERM,
    "SIGINT": signal.SIGINT,
}

STATUS_FILTERS: dict[str, frozenset[JobStatus]] = {
    "active": ACTIVE_STATUSES,
    "completed": frozenset({JobStatus.COMPLETED}),
    "failed": frozenset({JobStatus.FAILED, JobStatus.TIMEOUT}),
    "all": frozenset(JobStatus),
}


@dataclass(slots=True)
class ToolResult:
    """Text reply of one operation. ``is_error`` marks a refused or failed request."""

    text: str
    is_error: bool = False
    job: JobRecord | None = None


class JobControl:
    """Provider-scoped job management backed by one workspace's job store.

    Only processes found in ``registry`` can be signalled, so jobs started by
    another orchestrator instance are visible but never killable from here.
    """

    def __init__(
        self,
        store: JobStore,
        registry: SpawnedProcessRegistry,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.registry = registry
        self._sleep = sleep
        self._clock = clock

    def wait_for_job(
        self,
        provider: str,
        job_id: str,
        timeout_ms: int = MAX_WAIT_TIMEOUT_MS,
    ) -> ToolResult:
        """Poll with backoff until the job is terminal or ``timeout_ms`` elapses."""

        if not job_id:
            return ToolResult("job_id is required.", is_error=True)

        effective_ms = max(MIN_WAIT_TIMEOUT_MS, min(timeout_ms, MAX_WAIT_TIMEOUT_MS))
        deadline = self._clock() + effective_ms / 1000
        delay = _POLL_INITIAL_SECONDS

        while True:
            record = self.store.read(provider, job_id)
            if record is None:
                return ToolResult(f"No job found with ID: {job_id}", is_error=True)
            if record.is_terminal:
                return _terminal_result(record)

            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            self._sleep(min(delay, remaining))
            delay = min(delay * _POLL_FACTOR, _POLL_MAX_SECONDS)

        return ToolResult(
            f"Timed out waiting for job {job_id} after {effective_ms}ms. The job is still "
            "running; use check_job_status to poll later.",
            is_error=True,
        )

    def check_job_status(self, provider: str, job_id: str) -> ToolResult:
        if not job_id:
            return ToolResult("job_id is required.", is_error=True)
        record = self.store.read(provider, job_id)
        if record is None:
            return ToolResult(f"No job found with ID: {job_id}", is_error=True)

        lines = [
            f"**Job ID:** {record.job_id}",
            f"**Provider:** {record.provider}",
            f"**Status:** {record.status.value}",
            f"**Model:** {record.model}",
            f"**Agent Role:** {record.agent_role}",
            f"**Spawned At:** {record.spawned_at.isoformat()}",
        ]
        if record.completed_at is not None:
            lines.append(f"**Completed At:** {record.completed_at.isoformat()}")
        if record.pid:
            lines.append(f"**PID:** {record.pid}")
        lines.append(f"**Prompt File:** {record.prompt_file}")
        lines.append(f"**Response File:** {record.response_file}")
        if record.error:
            lines.append(f"**Error:** {record.error}")
        if record.used_fallback:
            lines.append(f"**Fallback Model:** {record.fallback_model}")
        if record.killed_by_user:
            lines.append("**Killed By User:** yes")
        return ToolResult("\n".join(lines), job=record)

    def kill_job(  # noqa: PLR0911
        self,
        provider: str,
        job_id: str,
        signal_name: str = "SIGTERM",
    ) -> ToolResult:
        """Signal the process group of an active job this instance spawned.

        The job is recorded as failed and killed before the signal is sent, and
        the record is re-asserted afterwards in case a completion handler raced
        the kill.
        """

        if not job_id:
            return ToolResult("job_id is required.", is_error=True)
        signum = ALLOWED_SIGNALS.get(signal_name)
        if signum is None:
            return ToolResult(
                f"Invalid signal: {signal_name}. Allowed signals: {', '.join(ALLOWED_SIGNALS)}",
                is_error=True,
            )

        record = self.store.read(provider, job_id)
        if record is None:
            return ToolResult(f"No job found with ID: {job_id}", is_error=True)
        if record.is_terminal:
            if record.killed_by_user:
                return ToolResult(f"Job {job_id} was already killed.", job=record)
            return ToolResult(
                f"Job {job_id} is already in terminal state: {record.status.value}. "
                "Cannot kill.",
                is_error=True,
                job=record,
            )
        if not record.pid:
            return ToolResult(
                f"Job {job_id} has no PID recorded. Cannot send signal.",
                is_error=True,
                job=record,
            )
        if not 0 < record.pid <= MAX_PLAUSIBLE_PID:
            return ToolResult(
                f"Job {job_id} has invalid PID: {record.pid}. Refusing to send signal.",
                is_error=True,
                job=record,
            )
        handle = self.registry.get(record.pid)
        if handle is None:
            return ToolResult(
                f"Job {job_id} PID {record.pid} was not spawned by this process. "
                "Refusing to send signal for safety.",
                is_error=True,
                job=record,
            )

        killed_error = f"Killed by user (signal: {signal_name})"
        killed = transition(record, JobStatus.FAILED, killed_by_user=True, error=killed_error)
        self.store.write(killed)

        try:
            handle.signal_group(signum)
        except ProcessLookupError:
            exited = transition(
                record,
                JobStatus.FAILED,
                killed_by_user=True,
                error=f"Killed by user (process already exited, signal: {signal_name})",
            )
            self.store.write(exited)
            logger.info("Kill %s/%s: pid %s already exited", provider, job_id, record.pid)
            return ToolResult(
                f"Process {record.pid} already exited. Job marked as failed.",
                job=exited,
            )
        except OSError as error:
            logger.warning("Kill %s/%s failed: %s", provider, job_id, error)
            return ToolResult(
                f"Failed to kill process {record.pid}: {error}",
                is_error=True,
                job=killed,
            )

        self._reassert_killed(killed)
        logger.info("Sent %s to %s job %s (pid %s)", signal_name, provider, job_id, record.pid)
        return ToolResult(
            f"Sent {signal_name} to job {job_id} (PID {record.pid}). Job marked as failed.",
            job=killed,
        )

    def list_jobs(
        self,
        provider: str,
        status_filter: str = "active",
        limit: int = 50,
    ) -> ToolResult:
        statuses = STATUS_FILTERS.get(status_filter)
        if statuses is None:
            return ToolResult(
                f"Invalid status_filter: {status_filter}. "
                f"Expected one of: {', '.join(STATUS_FILTERS)}",
                is_error=True,
            )

        records = self.store.list_by_status(statuses, provider=provider, limit=max(1, limit))
        if not records:
            if status_filter == "active":
                return ToolResult(f"No active {provider} jobs found.")
            suffix = f" with status={status_filter}" if status_filter != "all" else ""
            return ToolResult(f"No {provider} jobs found{suffix}.")

        entries = [
            _list_entry(record, detailed=status_filter != "active") for record in records
        ]
        if status_filter == "active":
            header = f"**{len(records)} active {provider} job(s):**"
        else:
            header = f"**{len(records)} {provider} job(s) found:**"
        return ToolResult(header + "\n\n" + "\n\n".join(entries))

    def _reassert_killed(self, killed: JobRecord) -> None:
        for _ in range(_REASSERT_ATTEMPTS):
            self._sleep(_REASSERT_DELAY_SECONDS)
            current = self.store.read(killed.provider, killed.job_id)
            if current is None or (current.killed_by_user and current.status is JobStatus.FAILED):
                return
            logger.debug("Re-asserting killed state for %s/%s", killed.provider, killed.job_id)
            self.store.write(killed)


def _terminal_result(record: JobRecord) -> ToolResult:
    if record.status is JobStatus.COMPLETED:
        lines = [
            f"**Job {record.job_id} completed.**",
            f"**Provider:** {record.provider}",
            f"**Model:** {record.model}",
            f"**Agent Role:** {record.agent_role}",
            f"**Response File:** {record.response_file}",
        ]
        if record.used_fallback:
            lines.append(f"**Fallback Model:** {record.fallback_model}")
        lines.extend(["", "**Response preview:**", _response_preview(record)])
        return ToolResult("\n".join(lines), job=record)

    lines = [
        f"**Job {record.job_id} {record.status.value}.**",
        f"**Provider:** {record.provider}",
        f"**Model:** {record.model}",
        f"**Agent Role:** {record.agent_role}",
    ]
    if record.error:
        lines.append(f"**Error:** {record.error}")
    return ToolResult("\n".join(lines), is_error=True, job=record)


def _response_preview(record: JobRecord) -> str:
    if not record.response_file:
        return "(no response file recorded)"
    response = read_completed_response(Path(record.response_file))
    if response is None:
        return "(response file not found)"
    if len(response) > PREVIEW_CHARS:
        return response[:PREVIEW_CHARS] + "..."
    return response


def _list_entry(record: JobRecord, *, detailed: bool) -> str:
    parts = [
        f"- **{record.job_id}** [{record.status.value}] "
        f"{record.provider}/{record.model} ({record.agent_role})",
        f"  Spawned: {record.spawned_at.isoformat()}",
    ]
    if detailed and record.completed_at is not None:
        parts.append(f"  Completed: {record.completed_at.isoformat()}")
    if detailed and record.error:
        parts.append(f"  Error: {record.error}")
    if record.pid:
        parts.append(f"  PID: {record.pid}")
    return "\n".join(parts)
