"""Backend interface for provider process execution."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol


@dataclass(slots=True)
class ProviderRunRequest:
    """Inputs required to run one provider attempt."""

    provider: str
    model: str
    argv: list[str]
    prompt: str
    cwd: Path
    timeout_seconds: float
    max_stdout_bytes: int
    env: dict[str, str] | None = field(default=None)


@dataclass(slots=True)
class ProviderRunResult:
    """Execution outcome of one provider process."""

    provider: str
    model: str
    exit_code: int | None
    timed_out: bool
    stdout: str
    stderr: str
    stdout_truncated: bool
    timeout_seconds: float
    duration_seconds: float


class ProcessHandle(Protocol):
    """A spawned provider process, led by its own process group."""

    @property
    def pid(self) -> int:
        """OS process id of the group leader."""

    def signal_group(self, signum: int) -> None:
        """Deliver ``signum`` to the whole process group."""

    def on_exit(self, callback: Callable[[ProviderRunResult], None]) -> None:
        """Run ``callback`` once the process exits (immediately if it already has)."""

    def deliver_input(self) -> bool:
        """Write the prompt to stdin and close it. ``False`` if the pipe was closed early."""

    def wait(self) -> ProviderRunResult:
        """Block until the process exits or is terminated on timeout."""


class ProviderBackend(Protocol):
    """Protocol implemented by process backends."""

    def spawn(self, request: ProviderRunRequest) -> ProcessHandle:
        """Start the provider process and begin collecting its output."""

    def execute(self, request: ProviderRunRequest) -> str:
        """Run one attempt to completion and return the response text."""
