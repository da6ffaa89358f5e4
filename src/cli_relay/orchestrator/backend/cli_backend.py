"""Subprocess-based backend for provider CLIs."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from collections.abc import Callable
from typing import IO

from cli_relay.orchestrator.backend.base import ProviderRunRequest, ProviderRunResult
from cli_relay.orchestrator.errors import (
    ExecutionTimeoutError,
    ProcessError,
    SpawnError,
)
from cli_relay.orchestrator.failure_classifier import classify_provider_output
from cli_relay.orchestrator.output_parser import BoundedOutputCollector, extract_response_text
from cli_relay.orchestrator.registry import SpawnedProcessRegistry

logger = logging.getLogger(__name__)

_POLL_INTERVAL_SECONDS = 0.05
_READER_JOIN_SECONDS = 5.0
_TERMINATE_GRACE_SECONDS = 2.0
_READ_CHUNK_CHARS = 65_536


class CliProcessHandle:
    """One provider process started in its own session (process group leader).

    A watcher thread enforces the timeout and fires exit callbacks, then
    ``on_finalized``. The thread is not a daemon, so a background job keeps the
    interpreter alive until the provider has finished and its state has been
    recorded.
    """

    def __init__(
        self,
        process: subprocess.Popen[str],
        request: ProviderRunRequest,
        *,
        on_finalized: Callable[[], None] | None = None,
    ) -> None:
        self._process = process
        self._request = request
        self._on_finalized = on_finalized
        self._stdout = BoundedOutputCollector(request.max_stdout_bytes)
        self._stderr = BoundedOutputCollector(request.max_stdout_bytes)
        self._callbacks: list[Callable[[ProviderRunResult], None]] = []
        self._result: ProviderRunResult | None = None
        self._done = threading.Event()
        self._lock = threading.Lock()
        self._started_monotonic = time.monotonic()
        self._readers = [
            threading.Thread(
                target=_pump,
                args=(process.stdout, self._stdout),
                name=f"relay-stdout-{process.pid}",
                daemon=True,
            ),
            threading.Thread(
                target=_pump,
                args=(process.stderr, self._stderr),
                name=f"relay-stderr-{process.pid}",
                daemon=True,
            ),
        ]
        self._watcher = threading.Thread(
            target=self._watch,
            name=f"relay-watch-{process.pid}",
            daemon=False,
        )

    @property
    def pid(self) -> int:
        return self._process.pid

    def start(self) -> None:
        for reader in self._readers:
            reader.start()
        self._watcher.start()

    def deliver_input(self) -> bool:
        stdin = self._process.stdin
        if stdin is None:
            return False
        try:
            stdin.write(self._request.prompt)
            stdin.close()
        except (BrokenPipeError, OSError) as error:
            logger.debug("stdin closed early for pid %s: %s", self.pid, error)
            return False
        return True

    def signal_group(self, signum: int) -> None:
        if os.name == "nt":
            self._process.send_signal(signum)
            return
        os.killpg(self.pid, signum)

    def on_exit(self, callback: Callable[[ProviderRunResult], None]) -> None:
        with self._lock:
            result = self._result
            if result is None:
                self._callbacks.append(callback)
                return
        _run_callback(callback, result, pid=self.pid)

    def wait(self) -> ProviderRunResult:
        self._done.wait()
        result = self._result
        if result is None:
            raise RuntimeError(f"pid {self.pid} finished without a recorded result")
        return result

    def _watch(self) -> None:
        timed_out = False
        while True:
            if self._process.poll() is not None:
                break
            if time.monotonic() - self._started_monotonic >= self._request.timeout_seconds:
                timed_out = True
                _terminate_process_group(self._process)
                break
            time.sleep(_POLL_INTERVAL_SECONDS)

        for reader in self._readers:
            reader.join(timeout=_READER_JOIN_SECONDS)
        result = ProviderRunResult(
            provider=self._request.provider,
            model=self._request.model,
            exit_code=self._process.returncode,
            timed_out=timed_out,
            stdout=self._stdout.text(),
            stderr=self._stderr.text(),
            stdout_truncated=self._stdout.truncated,
            timeout_seconds=self._request.timeout_seconds,
            duration_seconds=time.monotonic() - self._started_monotonic,
        )
        with self._lock:
            self._result = result
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for callback in callbacks:
            _run_callback(callback, result, pid=self.pid)
        if self._on_finalized is not None:
            self._on_finalized()
        self._done.set()


class CliProviderBackend:
    """Spawn provider CLIs and register every process with the owning orchestrator."""

    def __init__(self, registry: SpawnedProcessRegistry) -> None:
        self.registry = registry

    def spawn(self, request: ProviderRunRequest) -> CliProcessHandle:
        env = os.environ.copy()
        if request.env:
            env.update(request.env)
        try:
            process = subprocess.Popen(  # noqa: S603
                request.argv,
                cwd=request.cwd,
                env=env,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                start_new_session=os.name != "nt",
            )
        except FileNotFoundError as error:
            raise SpawnError(
                f"{request.provider} CLI command not found: {request.argv[0]}",
            ) from error
        except OSError as error:
            raise SpawnError(f"Failed to spawn {request.provider} CLI: {error}") from error

        # An active job keeps its handle registered until exit callbacks have run.
        handle = CliProcessHandle(
            process,
            request,
            on_finalized=lambda: self.registry.unregister(process.pid),
        )
        self.registry.register(handle)
        handle.start()
        logger.info(
            "Spawned %s pid=%s model=%s timeout=%.0fs",
            request.provider,
            handle.pid,
            request.model,
            request.timeout_seconds,
        )
        return handle

    def execute(self, request: ProviderRunRequest) -> str:
        """Run one attempt to completion and return the response text."""

        handle = self.spawn(request)
        handle.deliver_input()
        return interpret_result(handle.wait())


def interpret_result(result: ProviderRunResult) -> str:
    """Turn a finished attempt into response text or the matching error.

    Stdout is always scanned for recoverable signatures. Stderr is scanned only
    when the process failed, since providers log retried 429s there even on
    success.
    """

    if result.timed_out:
        raise ExecutionTimeoutError(
            f"{result.provider} timed out after {result.timeout_seconds:.0f}s "
            f"on model {result.model}",
        )

    failed = result.exit_code != 0
    failure = classify_provider_output(
        stdout=result.stdout,
        stderr=result.stderr if failed else "",
    )
    if failure is not None:
        raise failure.to_error(provider=result.provider, model=result.model)
    if failed:
        raise ProcessError(
            f"{result.provider} exited with code {result.exit_code}: "
            f"{result.stderr.strip() or 'No output'}",
        )

    response = extract_response_text(result.stdout)
    if not response.strip():
        raise ProcessError(f"{result.provider} produced no output on model {result.model}")
    if result.stdout_truncated:
        logger.warning("%s output exceeded the stdout cap and was truncated", result.provider)
    return response


def _pump(stream: IO[str] | None, collector: BoundedOutputCollector) -> None:
    if stream is None:
        return
    try:
        for chunk in iter(lambda: stream.read(_READ_CHUNK_CHARS), ""):
            collector.append(chunk)
    except (OSError, ValueError) as error:
        logger.debug("Output reader stopped: %s", error)
    finally:
        stream.close()


def _run_callback(
    callback: Callable[[ProviderRunResult], None],
    result: ProviderRunResult,
    *,
    pid: int,
) -> None:
    try:
        callback(result)
    except Exception:
        logger.exception("Exit callback failed for pid %s", pid)


def _terminate_process_group(process: subprocess.Popen[str]) -> None:
    try:
        if os.name == "nt":
            process.terminate()
        else:
            os.killpg(process.pid, signal.SIGTERM)
    except OSError as error:
        logger.debug("SIGTERM to pid %s failed: %s", process.pid, error)
        return
    try:
        process.wait(timeout=_TERMINATE_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        logger.warning("pid %s ignored SIGTERM, sending SIGKILL", process.pid)
        try:
            if os.name == "nt":
                process.kill()
            else:
                os.killpg(process.pid, signal.SIGKILL)
        except OSError as error:
            logger.debug("SIGKILL to pid %s failed: %s", process.pid, error)
            return
        process.wait(timeout=_TERMINATE_GRACE_SECONDS)
