"""Shared test fixtures."""

from __future__ import annotations

import os
import shlex
import sys
import time
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from cli_relay.config import RelaySettings
from cli_relay.orchestrator.detection import CliDetector
from cli_relay.orchestrator.services import RelayOrchestrator

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{shlex.quote(sys.executable)} -m cli_relay.orchestrator.backend.echo_agent --model {{model}}"
)
SRC_DIR = Path(__file__).resolve().parents[1] / "src"


@pytest.fixture(autouse=True)
def _src_on_subprocess_path(monkeypatch) -> None:
    """Let spawned ``python -m cli_relay...`` processes import the package."""

    existing = os.environ.get("PYTHONPATH")
    monkeypatch.setenv(
        "PYTHONPATH",
        os.pathsep.join([str(SRC_DIR), existing]) if existing else str(SRC_DIR),
    )


@pytest.fixture()
def workspace(tmp_path: Path, monkeypatch) -> Path:
    """Empty workspace root used as the current directory."""

    root = tmp_path / "workspace"
    root.mkdir()
    monkeypatch.chdir(root)
    for name in (
        "CLI_RELAY_ECHO_FAIL_MODELS",
        "CLI_RELAY_ECHO_FAILURE",
        "CLI_RELAY_ECHO_SLEEP_SECONDS",
        "CLI_RELAY_ECHO_FAIL_EXIT_CODE",
        "CLI_RELAY_ECHO_CHILD_PID_FILE",
        "CLI_RELAY_CODEX_DEFAULT_MODEL",
        "CLI_RELAY_GEMINI_DEFAULT_MODEL",
        "CLI_RELAY_OUTPUT_PATH_POLICY",
        "CLI_RELAY_ALLOW_EXTERNAL_WORKDIR",
        "CLI_RELAY_ALLOW_EXTERNAL_PROMPT",
    ):
        monkeypatch.delenv(name, raising=False)
    return Path(root).resolve()


@pytest.fixture()
def echo_agent(monkeypatch) -> str:
    """Route both providers to the local echo agent."""

    monkeypatch.setenv("CLI_RELAY_CODEX_COMMAND", ECHO_AGENT_COMMAND_TEMPLATE)
    monkeypatch.setenv("CLI_RELAY_GEMINI_COMMAND", ECHO_AGENT_COMMAND_TEMPLATE)
    return ECHO_AGENT_COMMAND_TEMPLATE


@pytest.fixture()
def make_orchestrator(workspace: Path) -> Iterator[Callable[[], RelayOrchestrator]]:
    """Build orchestrators bound to ``workspace`` with settings read at call time."""

    created: list[RelayOrchestrator] = []

    def _make() -> RelayOrchestrator:
        orchestrator = RelayOrchestrator(
            RelaySettings.from_env(),
            cwd=workspace,
            detector=CliDetector(which=lambda _name: None),
        )
        created.append(orchestrator)
        return orchestrator

    yield _make
    for orchestrator in created:
        orchestrator.wait_background_jobs(timeout=30)
        orchestrator.close()



def _is_running(pid: int) -> bool:
    stat = Path(f"/proc/{pid}/stat")
    if stat.parent.parent.joinpath("self").exists():
        try:
            state = stat.read_text("utf-8").rsplit(")", 1)[1].split()[0]
        except OSError:
            return False
        return state != "Z"
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    return True


@pytest.fixture()
def wait_process_gone() -> Callable[[int, float], bool]:
    """Poll until ``pid`` has exited (zombies count as exited)."""

    def _wait(pid: int, timeout: float = 10.0) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if not _is_running(pid):
                return True
            time.sleep(0.05)
        return not _is_running(pid)

    return _wait


@pytest.fixture()
def read_pid_file() -> Callable[[Path, float], int]:
    """Wait for a pid written by the echo agent and return it."""

    def _read(path: Path, timeout: float = 10.0) -> int:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            text = path.read_text("utf-8").strip() if path.exists() else ""
            if text:
                return int(text)
            time.sleep(0.05)
        raise AssertionError(f"no pid written to {path}")

    return _read
