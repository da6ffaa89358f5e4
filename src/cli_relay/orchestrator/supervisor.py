"""Detached supervisor processes for background jobs started from the CLI.

A ``cli-relay ask --background`` invocation validates the request, records the
job as ``spawned`` and hands it to ``cli-relay jobs supervise`` running in its
own session. The supervisor owns the provider process, its registry entry and
the fallback chain, so the invoking command returns as soon as the provider
has started.
"""

from __future__ import annotations

import json
import logging
import os
import signal
import subprocess
import sys
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from cli_relay.orchestrator.errors import SpawnError, ValidationError
from cli_relay.orchestrator.jobs import ALLOWED_SIGNALS
from cli_relay.orchestrator.models import JobRecord, JobStatus, transition
from cli_relay.storage.job_store import JobStore

logger = logging.getLogger(__name__)

SUPERVISOR_MODULE = "cli_relay.main"
SUPERVISOR_START_SECONDS = 15.0
_START_POLL_SECONDS = 0.05


@dataclass(slots=True)
class DetachedJob:
    """A prepared background job as handed from the CLI to its supervisor."""

    provider: str
    job_id: str
    slug: str
    agent_role: str
    cwd: str
    base_dir: str
    output_file: str
    prompt_path: str
    full_prompt: str
    chain: list[str] = field(default_factory=list)
    pinned: bool = False
    output_mtime: float | None = None

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, payload: str) -> DetachedJob:
        try:
            data: dict[str, Any] = json.loads(payload)
            job = cls(**data)
        except (TypeError, ValueError) as error:
            raise ValidationError(f"Invalid supervisor payload: {error}") from error
        if not job.chain:
            raise ValidationError("Invalid supervisor payload: empty model chain")
        return job


def supervisor_command(log_level: str = "INFO") -> list[str]:
    return [sys.executable, "-m", SUPERVISOR_MODULE, "--log-level", log_level, "jobs", "supervise"]


def launch_supervisor(job: DetachedJob, *, log_path: Path) -> subprocess.Popen[str]:
    """Start ``cli-relay jobs supervise`` in a new session and feed it ``job`` on stdin.

    The supervisor's diagnostics are appended to ``log_path``.
    """

    log_path.parent.mkdir(parents=True, exist_ok=True)
    kwargs: dict[str, Any] = {
        "cwd": job.cwd,
        "stdin": subprocess.PIPE,
        "stdout": subprocess.DEVNULL,
        "text": True,
        "encoding": "utf-8",
        "close_fds": True,
    }
    if os.name == "nt":
        kwargs["creationflags"] = (
            subprocess.DETACHED_PROCESS | subprocess.CREATE_NEW_PROCESS_GROUP  # type: ignore[attr-defined]
        )
    else:
        kwargs["start_new_session"] = True

    with log_path.open("a", encoding="utf-8") as log_handle:
        try:
            process = subprocess.Popen(  # noqa: S603
                supervisor_command(),
                stderr=log_handle,
                **kwargs,
            )
        except OSError as error:
            raise SpawnError(f"Failed to start job supervisor: {error}") from error

    stdin = process.stdin
    if stdin is not None:
        try:
            stdin.write(job.to_json())
            stdin.close()
        except (BrokenPipeError, OSError) as error:
            logger.warning("Supervisor pid %s closed stdin early: %s", process.pid, error)
    logger.info("Started supervisor pid=%s for %s job %s", process.pid, job.provider, job.job_id)
    return process


def await_provider_start(
    store: JobStore,
    record: JobRecord,
    supervisor: subprocess.Popen[str],
    *,
    timeout_seconds: float = SUPERVISOR_START_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> JobRecord:
    """Poll the job until the supervisor has recorded a provider pid or a terminal state.

    A supervisor that exits before either happens leaves the job ``failed``.
    When ``timeout_seconds`` elapses first, the latest record is returned as is.
    """

    deadline = clock() + timeout_seconds
    current = record
    while True:
        current = store.read(record.provider, record.job_id) or current
        if current.pid is not None or current.is_terminal:
            return current

        exit_code = supervisor.poll()
        if exit_code is not None:
            current = store.read(record.provider, record.job_id) or current
            if current.pid is not None or current.is_terminal:
                return current
            failed = transition(
                current,
                JobStatus.FAILED,
                error=(
                    f"Job supervisor exited with code {exit_code} before starting the provider"
                ),
            )
            store.write(failed)
            return store.read(record.provider, record.job_id) or failed

        if clock() >= deadline:
            logger.warning(
                "Supervisor pid %s has not started job %s after %.0fs",
                supervisor.pid,
                record.job_id,
                timeout_seconds,
            )
            return current
        sleep(_START_POLL_SECONDS)


@contextmanager
def forward_termination_signals(handler: Callable[[str], None]) -> Iterator[None]:
    """Route SIGTERM and SIGINT received by this process to ``handler(signal_name)``."""

    originals = {signum: signal.getsignal(signum) for signum in ALLOWED_SIGNALS.values()}

    def _handler(signum: int, _: object | None) -> None:
        handler(signal.Signals(signum).name)

    installed: list[int] = []
    try:
        for signum in originals:
            signal.signal(signum, _handler)
            installed.append(signum)
    except ValueError:
        # Signal handlers can only be installed in main thread.
        logger.debug("Not forwarding termination signals outside the main thread")
    try:
        yield
    finally:
        for signum in installed:
            signal.signal(signum, originals[signum])
