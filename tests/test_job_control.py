from __future__ import annotations

import os
import signal
from collections.abc import Callable
from datetime import timedelta
from pathlib import Path

import allure
import pytest

from cli_relay.orchestrator.jobs import PREVIEW_CHARS, JobControl
from cli_relay.orchestrator.models import JobRecord, JobStatus, transition
from cli_relay.orchestrator.registry import SpawnedProcessRegistry
from cli_relay.storage.common import utc_now
from cli_relay.storage.job_store import JobStore

pytestmark = [
    allure.epic("Provider Jobs"),
    allure.feature("Job Control"),
]


class _FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []
        self.on_sleep: Callable[[], None] | None = None

    def clock(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        if self.on_sleep is not None:
            self.on_sleep()


class _FakeHandle:
    def __init__(self, pid: int, on_signal: Callable[[int], None] | None = None) -> None:
        self.pid = pid
        self.signals: list[int] = []
        self._on_signal = on_signal

    def signal_group(self, signum: int) -> None:
        self.signals.append(signum)
        if self._on_signal is not None:
            self._on_signal(signum)


@pytest.fixture()
def fake_clock() -> _FakeClock:
    return _FakeClock()


@pytest.fixture()
def store(tmp_path: Path):
    job_store = JobStore(tmp_path, use_database=False)
    yield job_store
    job_store.close()


@pytest.fixture()
def registry() -> SpawnedProcessRegistry:
    return SpawnedProcessRegistry()


@pytest.fixture()
def control(store: JobStore, registry: SpawnedProcessRegistry, fake_clock: _FakeClock):
    return JobControl(store, registry, sleep=fake_clock.sleep, clock=fake_clock.clock)


def _record(tmp_path: Path, job_id: str = "c0ffee01", **changes) -> JobRecord:
    values = {
        "provider": "codex",
        "job_id": job_id,
        "slug": "review",
        "status": JobStatus.RUNNING,
        "prompt_file": str(tmp_path / f"codex-prompt-review-{job_id}.md"),
        "response_file": str(tmp_path / f"codex-response-review-{job_id}.md"),
        "model": "gpt-5.3-codex",
        "agent_role": "architect",
        "spawned_at": utc_now(),
        "pid": 4242,
    }
    values.update(changes)
    return JobRecord(**values)


def test_kill_refuses_pid_not_spawned_by_this_instance(
    control: JobControl,
    store: JobStore,
    tmp_path: Path,
    monkeypatch,
) -> None:
    def forbidden(*_args) -> None:
        raise AssertionError("signal must not be sent")

    monkeypatch.setattr(os, "killpg", forbidden)
    monkeypatch.setattr(os, "kill", forbidden)
    store.write(_record(tmp_path))

    result = control.kill_job("codex", "c0ffee01")

    assert result.is_error is True
    assert "was not spawned by this process" in result.text
    current = store.read("codex", "c0ffee01")
    assert current is not None
    assert current.status is JobStatus.RUNNING
    assert current.killed_by_user is False


def test_kill_marks_job_before_signalling_and_reports_success(
    control: JobControl,
    store: JobStore,
    registry: SpawnedProcessRegistry,
    fake_clock: _FakeClock,
    tmp_path: Path,
) -> None:
    seen_at_signal: list[JobRecord | None] = []
    handle = _FakeHandle(
        4242,
        on_signal=lambda _signum: seen_at_signal.append(store.read("codex", "c0ffee01")),
    )
    registry.register(handle)
    store.write(_record(tmp_path))

    result = control.kill_job("codex", "c0ffee01", "SIGINT")

    assert result.is_error is False
    assert result.text == "Sent SIGINT to job c0ffee01 (PID 4242). Job marked as failed."
    assert handle.signals == [signal.SIGINT]
    marked = seen_at_signal[0]
    assert marked is not None
    assert marked.killed_by_user is True
    current = store.read("codex", "c0ffee01")
    assert current is not None
    assert current.status is JobStatus.FAILED
    assert current.error == "Killed by user (signal: SIGINT)"
    assert current.completed_at is not None
    assert fake_clock.sleeps == [0.05]


def test_kill_reasserts_record_overwritten_during_signal(
    control: JobControl,
    store: JobStore,
    registry: SpawnedProcessRegistry,
    tmp_path: Path,
) -> None:
    running = _record(tmp_path)

    def completion_races_kill(_signum: int) -> None:
        store.files.write(transition(running, JobStatus.COMPLETED))

    registry.register(_FakeHandle(4242, on_signal=completion_races_kill))
    store.write(running)

    control.kill_job("codex", "c0ffee01")

    current = store.read("codex", "c0ffee01")
    assert current is not None
    assert current.status is JobStatus.FAILED
    assert current.killed_by_user is True


def test_second_kill_reports_already_killed(
    control: JobControl,
    store: JobStore,
    registry: SpawnedProcessRegistry,
    tmp_path: Path,
) -> None:
    handle = _FakeHandle(4242)
    registry.register(handle)
    store.write(_record(tmp_path))

    control.kill_job("codex", "c0ffee01")
    again = control.kill_job("codex", "c0ffee01")

    assert again.is_error is False
    assert again.text == "Job c0ffee01 was already killed."
    assert handle.signals == [signal.SIGTERM]


def test_kill_refuses_terminal_job(
    control: JobControl,
    store: JobStore,
    registry: SpawnedProcessRegistry,
    tmp_path: Path,
) -> None:
    registry.register(_FakeHandle(4242))
    store.write(transition(_record(tmp_path), JobStatus.COMPLETED))

    result = control.kill_job("codex", "c0ffee01")

    assert result.is_error is True
    assert result.text == "Job c0ffee01 is already in terminal state: completed. Cannot kill."


@pytest.mark.parametrize(
    ("pid", "expected"),
    [(None, "has no PID recorded"), (5_000_000, "has invalid PID: 5000000")],
)
def test_kill_validates_recorded_pid(
    control: JobControl,
    store: JobStore,
    tmp_path: Path,
    pid: int | None,
    expected: str,
) -> None:
    store.write(_record(tmp_path, pid=pid))

    result = control.kill_job("codex", "c0ffee01")

    assert result.is_error is True
    assert expected in result.text


def test_kill_rejects_signals_outside_allow_list(control: JobControl) -> None:
    result = control.kill_job("codex", "c0ffee01", "SIGKILL")

    assert result.is_error is True
    assert result.text == "Invalid signal: SIGKILL. Allowed signals: SIGTERM, SIGINT"


def test_kill_of_exited_process_still_marks_job(
    control: JobControl,
    store: JobStore,
    registry: SpawnedProcessRegistry,
    tmp_path: Path,
) -> None:
    def gone(_signum: int) -> None:
        raise ProcessLookupError

    registry.register(_FakeHandle(4242, on_signal=gone))
    store.write(_record(tmp_path))

    result = control.kill_job("codex", "c0ffee01")

    assert result.is_error is False
    assert result.text == "Process 4242 already exited. Job marked as failed."
    current = store.read("codex", "c0ffee01")
    assert current is not None
    assert current.killed_by_user is True
    assert current.error == "Killed by user (process already exited, signal: SIGTERM)"


def test_kill_unknown_job(control: JobControl) -> None:
    result = control.kill_job("codex", "deadbeef")

    assert result.is_error is True
    assert result.text == "No job found with ID: deadbeef"


def test_wait_backs_off_until_timeout(
    control: JobControl,
    store: JobStore,
    fake_clock: _FakeClock,
    tmp_path: Path,
) -> None:
    store.write(_record(tmp_path))

    result = control.wait_for_job("codex", "c0ffee01", timeout_ms=5_000)

    assert result.is_error is True
    assert result.text.startswith("Timed out waiting for job c0ffee01 after 5000ms.")
    assert fake_clock.sleeps == pytest.approx([0.5, 0.75, 1.125, 1.6875, 0.9375])
    current = store.read("codex", "c0ffee01")
    assert current is not None
    assert current.status is JobStatus.RUNNING


def test_wait_timeout_is_clamped_to_minimum(
    control: JobControl,
    store: JobStore,
    tmp_path: Path,
) -> None:
    store.write(_record(tmp_path))

    result = control.wait_for_job("codex", "c0ffee01", timeout_ms=10)

    assert "after 1000ms" in result.text


def test_wait_returns_completed_job_with_preview(
    control: JobControl,
    store: JobStore,
    fake_clock: _FakeClock,
    tmp_path: Path,
) -> None:
    running = _record(tmp_path)
    store.write(running)
    body = "x" * (PREVIEW_CHARS + 20)

    def finish_job() -> None:
        Path(running.response_file).write_text(
            '---\nprovider: "codex"\n---\n\n' + body,
            "utf-8",
        )
        store.write(transition(running, JobStatus.COMPLETED))

    fake_clock.on_sleep = finish_job

    result = control.wait_for_job("codex", "c0ffee01", timeout_ms=60_000)

    assert result.is_error is False
    assert result.text.startswith("**Job c0ffee01 completed.**")
    assert "**Response preview:**" in result.text
    assert result.text.endswith("x" * PREVIEW_CHARS + "...")
    assert fake_clock.sleeps == [0.5]


def test_wait_reports_missing_response_file(
    control: JobControl,
    store: JobStore,
    tmp_path: Path,
) -> None:
    store.write(transition(_record(tmp_path), JobStatus.COMPLETED))

    result = control.wait_for_job("codex", "c0ffee01")

    assert result.text.endswith("(response file not found)")


def test_wait_on_failed_job_is_error_with_reason(
    control: JobControl,
    store: JobStore,
    tmp_path: Path,
) -> None:
    store.write(transition(_record(tmp_path), JobStatus.TIMEOUT, error="codex timed out"))

    result = control.wait_for_job("codex", "c0ffee01")

    assert result.is_error is True
    assert "**Job c0ffee01 timeout.**" in result.text
    assert "**Error:** codex timed out" in result.text


def test_wait_unknown_job(control: JobControl) -> None:
    result = control.wait_for_job("gemini", "c0ffee01")

    assert result.is_error is True
    assert result.text == "No job found with ID: c0ffee01"


def test_status_lists_job_fields(control: JobControl, store: JobStore, tmp_path: Path) -> None:
    record = transition(
        _record(tmp_path),
        JobStatus.COMPLETED,
        model="gpt-5.3",
        used_fallback=True,
        fallback_model="gpt-5.3",
    )
    store.write(record)

    result = control.check_job_status("codex", "c0ffee01")

    assert result.is_error is False
    for expected in (
        "**Job ID:** c0ffee01",
        "**Provider:** codex",
        "**Status:** completed",
        "**Model:** gpt-5.3",
        "**PID:** 4242",
        "**Completed At:**",
        "**Fallback Model:** gpt-5.3",
    ):
        assert expected in result.text
    assert "Killed By User" not in result.text


def test_list_active_jobs_is_provider_scoped(
    control: JobControl,
    store: JobStore,
    tmp_path: Path,
) -> None:
    store.write(_record(tmp_path, "00000001", spawned_at=utc_now() - timedelta(minutes=1)))
    store.write(_record(tmp_path, "00000002"))
    store.write(_record(tmp_path, "00000003", provider="gemini", model="gemini-2.5-pro"))

    result = control.list_jobs("codex")

    assert result.text.startswith("**2 active codex job(s):**")
    assert result.text.index("00000002") < result.text.index("00000001")
    assert "00000003" not in result.text


def test_list_failed_includes_timeouts_with_details(
    control: JobControl,
    store: JobStore,
    tmp_path: Path,
) -> None:
    store.write(transition(_record(tmp_path, "00000001"), JobStatus.FAILED, error="crash"))
    store.write(transition(_record(tmp_path, "00000002"), JobStatus.TIMEOUT, error="slow"))
    store.write(transition(_record(tmp_path, "00000003"), JobStatus.COMPLETED))

    result = control.list_jobs("codex", "failed")

    assert result.text.startswith("**2 codex job(s) found:**")
    assert "Error: crash" in result.text
    assert "Error: slow" in result.text
    assert "Completed:" in result.text
    assert "00000003" not in result.text


def test_list_respects_limit(control: JobControl, store: JobStore, tmp_path: Path) -> None:
    for index in range(3):
        store.write(_record(tmp_path, f"0000000{index}"))

    result = control.list_jobs("codex", "all", limit=2)

    assert result.text.startswith("**2 codex job(s) found:**")


@pytest.mark.parametrize(
    ("status_filter", "expected"),
    [
        ("active", "No active codex jobs found."),
        ("completed", "No codex jobs found with status=completed."),
        ("all", "No codex jobs found."),
    ],
)
def test_list_empty_messages(control: JobControl, status_filter: str, expected: str) -> None:
    result = control.list_jobs("codex", status_filter)

    assert result.is_error is False
    assert result.text == expected


def test_list_rejects_unknown_filter(control: JobControl) -> None:
    result = control.list_jobs("codex", "stale")

    assert result.is_error is True
    assert result.text.startswith("Invalid status_filter: stale.")
