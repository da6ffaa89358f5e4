"""Model fallback chain for foreground and background provider runs."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from cli_relay.orchestrator.backend.base import (
    ProcessHandle,
    ProviderBackend,
    ProviderRunRequest,
    ProviderRunResult,
)
from cli_relay.orchestrator.backend.cli_backend import interpret_result
from cli_relay.orchestrator.errors import (
    ExecutionTimeoutError,
    RelayError,
    SpawnError,
    is_recoverable,
)
from cli_relay.orchestrator.models import JobRecord, JobStatus, transition
from cli_relay.orchestrator.providers import ProviderSpec
from cli_relay.storage.job_store import JobStore

logger = logging.getLogger(__name__)


def build_model_chain(
    requested_model: str | None,
    default_model: str,
    chain: Sequence[str],
) -> tuple[list[str], bool]:
    """Ordered models to try and whether the model was pinned by the caller.

    A pinned model is tried alone. Otherwise the chain is rotated to start at
    the configured default, or prefixed with it when the default is not part of
    the chain.
    """

    if requested_model:
        return [requested_model], True

    if default_model in chain:
        start = list(chain).index(default_model)
        ordered = list(chain[start:]) + list(chain[:start])
    else:
        ordered = [default_model, *chain]

    deduped: list[str] = []
    for model in ordered:
        if model not in deduped:
            deduped.append(model)
    return deduped, False


@dataclass(slots=True)
class FallbackResult:
    response: str
    used_fallback: bool
    actual_model: str
    attempted_models: list[str] = field(default_factory=list)


def execute_with_fallback(  # noqa: PLR0913
    *,
    attempt: Callable[[str, float], str],
    chain: Sequence[str],
    pinned: bool,
    timeout_seconds: float,
    budget_seconds: float,
    clock: Callable[[], float] = time.monotonic,
) -> FallbackResult:
    """Walk ``chain`` until one attempt succeeds.

    ``attempt(model, timeout)`` returns the response text or raises a
    ``RelayError``. Recoverable errors advance to the next model unless the
    model is pinned. Every other error ends the walk immediately. The raised
    error carries the list of models attempted so far.
    """

    deadline = clock() + budget_seconds
    attempted: list[str] = []
    last_error: RelayError | None = None

    for model in chain:
        remaining = deadline - clock()
        if remaining <= 0:
            break
        attempted.append(model)
        try:
            response = attempt(model, min(timeout_seconds, remaining))
        except RelayError as error:
            if pinned or not is_recoverable(error):
                error.with_attempts(attempted)
                raise
            logger.info("Model %s failed (%s), trying next in chain", model, error.error_token)
            last_error = error
            continue
        return FallbackResult(
            response=response,
            used_fallback=model != chain[0],
            actual_model=model,
            attempted_models=attempted,
        )

    if last_error is not None and len(attempted) == len(chain):
        raise type(last_error)(
            f"All models in fallback chain failed. Last error: {last_error}",
        ).with_attempts(attempted)
    raise ExecutionTimeoutError(
        f"Fallback budget of {budget_seconds:.0f}s exhausted"
        + (f". Last error: {last_error}" if last_error is not None else ""),
    ).with_attempts(attempted)


@dataclass(slots=True)
class AttemptPlan:
    """Everything needed to build a run request for any model in the chain."""

    provider: ProviderSpec
    prompt: str
    cwd: Path
    timeout_seconds: float
    max_stdout_bytes: int
    command_template: str | None = None

    def request_for(self, model: str, timeout_seconds: float) -> ProviderRunRequest:
        return ProviderRunRequest(
            provider=self.provider.name,
            model=model,
            argv=self.provider.build_argv(model=model, command_template=self.command_template),
            prompt=self.prompt,
            cwd=self.cwd,
            timeout_seconds=timeout_seconds,
            max_stdout_bytes=self.max_stdout_bytes,
        )


class BackgroundFallbackRunner:
    """Drive one background job through the fallback chain via exit callbacks.

    The first attempt moves the job ``spawned -> running``. Retries write
    ``running`` directly with the new pid and model, so the status never moves
    backwards. Every write goes through the store's guard; once the user has
    killed the job, nothing else is recorded and newly spawned retries are
    terminated.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        backend: ProviderBackend,
        store: JobStore,
        plan: AttemptPlan,
        chain: Sequence[str],
        pinned: bool,
        record: JobRecord,
        budget_seconds: float,
        on_success: Callable[[JobRecord, str], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.backend = backend
        self.store = store
        self.plan = plan
        self.chain = list(chain)
        self.pinned = pinned
        self.record = record
        self.on_success = on_success
        self._clock = clock
        self._deadline = clock() + budget_seconds
        self._index = 0
        self._attempted: list[str] = []
        self._finished = threading.Event()

    @property
    def attempted_models(self) -> list[str]:
        return list(self._attempted)

    def start(self) -> ProcessHandle:
        """Spawn the first attempt. Spawn failures propagate to the caller."""

        model = self.chain[0]
        handle = self._spawn(model)
        spawned = transition(self.record, JobStatus.SPAWNED, pid=handle.pid, model=model)
        self.store.write(spawned)
        self.record = spawned
        handle.deliver_input()
        running = transition(spawned, JobStatus.RUNNING)
        if self.store.write(running):
            self.record = running
        handle.on_exit(self._handle_exit)
        return handle

    def wait(self, timeout: float | None = None) -> bool:
        return self._finished.wait(timeout)

    def _spawn(self, model: str) -> ProcessHandle:
        self._attempted.append(model)
        remaining = max(0.0, self._deadline - self._clock())
        timeout = min(self.plan.timeout_seconds, remaining)
        return self.backend.spawn(self.plan.request_for(model, timeout))

    def _handle_exit(self, result: ProviderRunResult) -> None:
        current = self.store.read(self.record.provider, self.record.job_id)
        if current is not None and current.killed_by_user:
            logger.info("Job %s was killed by user, ignoring exit", self.record.job_id)
            self._finished.set()
            return

        try:
            response = interpret_result(result)
        except RelayError as error:
            self._handle_failure(result.model, error)
            return

        self._complete(result.model, response)

    def _handle_failure(self, model: str, error: RelayError) -> None:
        can_retry = (
            not self.pinned
            and is_recoverable(error)
            and self._index + 1 < len(self.chain)
            and self._deadline - self._clock() > 0
        )
        if can_retry:
            self._index += 1
            next_model = self.chain[self._index]
            logger.info(
                "Job %s: model %s failed (%s), retrying with %s",
                self.record.job_id,
                model,
                error.error_token,
                next_model,
            )
            self._retry(next_model, error)
            return

        if self.pinned or not is_recoverable(error):
            message = str(error)
        else:
            message = f"All models in fallback chain failed. Last error: {error}"
        status = JobStatus.TIMEOUT if isinstance(error, ExecutionTimeoutError) else JobStatus.FAILED
        self._finish(transition(self.record, status, error=message))

    def _retry(self, model: str, previous: RelayError) -> None:
        try:
            handle = self._spawn(model)
        except SpawnError as error:
            self._finish(
                transition(
                    self.record,
                    JobStatus.FAILED,
                    error=(
                        f"Fallback to {model} failed to spawn: {error}. "
                        f"Previous error: {previous}"
                    ),
                ),
            )
            return

        running = transition(self.record, JobStatus.RUNNING, pid=handle.pid, model=model)
        if not self.store.write(running):
            logger.info(
                "Job %s was finalized during retry, stopping pid %s",
                self.record.job_id,
                handle.pid,
            )
            try:
                handle.signal_group(signal.SIGTERM)
            except ProcessLookupError:
                logger.debug("Retry pid %s already exited", handle.pid)
            self._finished.set()
            return
        self.record = running
        handle.deliver_input()
        handle.on_exit(self._handle_exit)

    def _complete(self, model: str, response: str) -> None:
        used_fallback = model != self.chain[0]
        completed = transition(
            self.record,
            JobStatus.COMPLETED,
            model=model,
            used_fallback=used_fallback,
            fallback_model=model if used_fallback else None,
        )
        if self.on_success is not None:
            try:
                self.on_success(completed, response)
            except RelayError as error:
                self._finish(transition(self.record, JobStatus.FAILED, error=error.describe()))
                return
        self._finish(completed)

    def _finish(self, record: JobRecord) -> None:
        if self.store.write(record):
            self.record = record
            logger.info(
                "Job %s finished: %s (model=%s)",
                record.job_id,
                record.status.value,
                record.model,
            )
        self._finished.set()
