from __future__ import annotations

import json
from datetime import timedelta
from pathlib import Path

import allure
import pytest

from cli_relay.orchestrator.errors import StoreError
from cli_relay.orchestrator.models import JobRecord, JobStatus, transition
from cli_relay.orchestrator.workspace import database_path, prompts_dir
from cli_relay.storage.common import utc_now
from cli_relay.storage.db_store import DatabaseJobStore
from cli_relay.storage.job_store import STALE_JOB_ERROR, JobStore

pytestmark = [
    allure.epic("Provider Jobs"),
    allure.feature("Job State Storage"),
]


def _record(job_id: str = "a1b2c3d4", *, provider: str = "codex", **changes) -> JobRecord:
    values = {
        "provider": provider,
        "job_id": job_id,
        "slug": "review-the-design",
        "status": JobStatus.SPAWNED,
        "prompt_file": f"/ws/.cli_relay/prompts/{provider}-prompt-review-the-design-{job_id}.md",
        "response_file": (
            f"/ws/.cli_relay/prompts/{provider}-response-review-the-design-{job_id}.md"
        ),
        "model": "gpt-5.3-codex",
        "agent_role": "architect",
        "spawned_at": utc_now(),
        "pid": 4242,
    }
    values.update(changes)
    return JobRecord(**values)


@pytest.fixture()
def store(tmp_path: Path):
    job_store = JobStore(tmp_path)
    yield job_store
    job_store.close()


def test_write_lands_in_status_file_and_database(store: JobStore, tmp_path: Path) -> None:
    record = _record()

    assert store.write(record) is True

    status_file = prompts_dir(tmp_path) / "codex-status-review-the-design-a1b2c3d4.json"
    payload = json.loads(status_file.read_text("utf-8"))
    assert payload["jobId"] == "a1b2c3d4"
    assert payload["status"] == "spawned"
    assert payload["pid"] == 4242
    assert "completedAt" not in payload
    assert store.database_enabled is True
    assert database_path(tmp_path).exists()

    loaded = store.read("codex", "a1b2c3d4")
    assert loaded == record


def test_status_file_round_trips_optional_fields(store: JobStore) -> None:
    record = transition(
        _record(),
        JobStatus.COMPLETED,
        used_fallback=True,
        fallback_model="gpt-5.3",
        model="gpt-5.3",
    )
    store.write(record)

    loaded = store.files.find("codex", "a1b2c3d4")

    assert loaded is not None
    assert loaded.used_fallback is True
    assert loaded.fallback_model == "gpt-5.3"
    assert loaded.completed_at == record.completed_at


def test_guard_rejects_writes_after_kill_and_status_regression(store: JobStore) -> None:
    running = transition(_record(), JobStatus.RUNNING)
    assert store.write(running) is True
    assert store.write(_record()) is False

    killed = transition(running, JobStatus.FAILED, killed_by_user=True, error="Killed by user")
    assert store.write(killed) is True
    completion = transition(running, JobStatus.COMPLETED)
    assert store.write(completion) is False

    current = store.read("codex", "a1b2c3d4")
    assert current is not None
    assert current.status is JobStatus.FAILED
    assert current.killed_by_user is True
    assert store.write(killed) is True


def test_terminal_record_is_frozen(store: JobStore) -> None:
    store.write(transition(_record(), JobStatus.TIMEOUT, error="timed out"))

    assert store.write(transition(_record(), JobStatus.RUNNING)) is False
    assert store.write(transition(_record(), JobStatus.COMPLETED)) is False


def test_database_failure_degrades_to_status_files(
    store: JobStore,
    monkeypatch,
    caplog,
) -> None:
    store.write(_record("00000001"))

    def broken_upsert(self, record) -> None:
        raise StoreError("disk I/O error")

    monkeypatch.setattr(DatabaseJobStore, "upsert", broken_upsert)

    with caplog.at_level("WARNING"):
        assert store.write(_record("00000002")) is True

    assert store.database_enabled is False
    assert "continuing with status files only" in caplog.text
    assert store.read("codex", "00000002") is not None
    active_ids = {record.job_id for record in store.list_active("codex")}
    assert active_ids == {"00000001", "00000002"}


def test_file_only_store_serves_queries(tmp_path: Path) -> None:
    store = JobStore(tmp_path, use_database=False)
    older = _record("00000001", spawned_at=utc_now() - timedelta(minutes=5))
    newer = _record("00000002")
    done = transition(_record("00000003"), JobStatus.COMPLETED)
    for record in (older, newer, done):
        store.write(record)

    active = store.list_active()
    completed = store.list_by_status([JobStatus.COMPLETED])

    assert [record.job_id for record in active] == ["00000002", "00000001"]
    assert [record.job_id for record in completed] == ["00000003"]
    assert store.stats().total == 3
    assert not database_path(tmp_path).exists()


def test_workspaces_are_isolated(tmp_path: Path) -> None:
    first = JobStore(tmp_path / "worktree-a")
    second = JobStore(tmp_path / "worktree-b")
    try:
        first.write(_record())

        assert first.read("codex", "a1b2c3d4") is not None
        assert second.read("codex", "a1b2c3d4") is None
        assert second.list_active() == []
    finally:
        first.close()
        second.close()


def test_nested_workspaces_sharing_a_job_id_stay_apart(tmp_path: Path) -> None:
    outer = JobStore(tmp_path / "repo")
    inner = JobStore(tmp_path / "repo" / "vendor" / "worktree")
    try:
        outer.write(_record("feedc0de"))
        inner.write(_record("feedc0de", provider="gemini", model="gemini-3-pro-preview"))

        assert outer.database_enabled is True
        assert inner.database_enabled is True
        assert outer.read("gemini", "feedc0de") is None
        assert inner.read("codex", "feedc0de") is None
        assert [(job.provider, job.job_id) for job in outer.list_active()] == [
            ("codex", "feedc0de"),
        ]
        assert [(job.provider, job.job_id) for job in inner.list_active()] == [
            ("gemini", "feedc0de"),
        ]
        assert outer.list_by_status(frozenset(JobStatus), provider="gemini") == []
        assert inner.list_by_status(frozenset(JobStatus), provider="codex") == []
    finally:
        outer.close()
        inner.close()


def test_find_prefers_active_record(tmp_path: Path) -> None:
    store = JobStore(tmp_path, use_database=False)
    store.write(transition(_record(slug="old-run"), JobStatus.COMPLETED))
    store.write(_record(slug="new-run", spawned_at=utc_now() - timedelta(hours=1)))

    found = store.read("codex", "a1b2c3d4")

    assert found is not None
    assert found.slug == "new-run"
    assert found.is_active


def test_migrate_imports_files_and_counts_malformed(tmp_path: Path) -> None:
    seed = JobStore(tmp_path, use_database=False)
    seed.write(_record("00000001"))
    seed.write(_record("00000002", provider="gemini", model="gemini-3-pro-preview"))
    broken = prompts_dir(tmp_path) / "codex-status-broken-deadbeef.json"
    broken.write_text("{not json", "utf-8")

    store = JobStore(tmp_path)
    try:
        result = store.migrate_from_files()

        assert result.imported == 2
        assert result.errors == 1
        database = DatabaseJobStore(database_path(tmp_path))
        try:
            assert database.get("gemini", "00000002") is not None
        finally:
            database.close()
    finally:
        store.close()


def test_cleanup_removes_only_old_terminal_jobs(store: JobStore) -> None:
    old = utc_now() - timedelta(hours=48)
    store.write(transition(_record("00000001", spawned_at=old), JobStatus.COMPLETED))
    store.write(_record("00000002", spawned_at=old))
    store.write(transition(_record("00000003"), JobStatus.FAILED, error="boom"))

    removed = store.cleanup_older_than(timedelta(hours=24))

    assert removed == 1
    assert store.read("codex", "00000001") is None
    assert store.read("codex", "00000002") is not None
    assert store.read("codex", "00000003") is not None


def test_mark_stale_moves_old_active_jobs_to_timeout(store: JobStore) -> None:
    store.write(_record("00000001", spawned_at=utc_now() - timedelta(hours=3)))
    store.write(_record("00000002"))

    marked = store.mark_stale_jobs(timedelta(hours=1))

    assert marked == 1
    stale = store.read("codex", "00000001")
    assert stale is not None
    assert stale.status is JobStatus.TIMEOUT
    assert stale.error == STALE_JOB_ERROR
    assert stale.completed_at is not None


def test_stats_count_timeouts_as_failures(store: JobStore) -> None:
    store.write(_record("00000001"))
    store.write(transition(_record("00000002"), JobStatus.COMPLETED))
    store.write(transition(_record("00000003"), JobStatus.FAILED, error="x"))
    store.write(transition(_record("00000004"), JobStatus.TIMEOUT, error="y"))
    store.write(_record("00000005", provider="gemini", model="gemini-2.5-pro"))

    codex = store.stats("codex")
    overall = store.stats()

    assert (codex.total, codex.active, codex.completed, codex.failed) == (4, 1, 1, 2)
    assert overall.total == 5
    assert overall.active == 2
