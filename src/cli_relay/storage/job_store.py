"""Job store facade: status files are authoritative, the database is an accelerator."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import TypeVar

from cli_relay.orchestrator.errors import StoreError
from cli_relay.orchestrator.models import (
    ACTIVE_STATUSES,
    JobRecord,
    JobStatus,
    transition,
    transition_rejection,
)
from cli_relay.orchestrator.workspace import database_path, prompts_dir
from cli_relay.storage.common import utc_now
from cli_relay.storage.db_store import DatabaseJobStore
from cli_relay.storage.file_store import FileJobStore

logger = logging.getLogger(__name__)

T = TypeVar("T")
_UNAVAILABLE = object()

STALE_JOB_ERROR = "Job exceeded maximum age and was marked stale"


@dataclass(slots=True)
class MigrationResult:
    imported: int
    errors: int


@dataclass(slots=True)
class JobStats:
    """Job counts for one workspace. ``failed`` includes timeouts."""

    total: int
    active: int
    completed: int
    failed: int


class JobStore:
    """Per-workspace job state.

    Every write lands in the status file first and is then mirrored into
    SQLite. The first database failure is logged and the database is switched
    off for the lifetime of this instance; callers never see a ``StoreError``.
    """

    def __init__(
        self,
        workspace_root: Path,
        *,
        busy_timeout_ms: int = 5_000,
        use_database: bool = True,
    ) -> None:
        self.workspace_root = workspace_root
        self.files = FileJobStore(prompts_dir(workspace_root))
        self._busy_timeout_ms = busy_timeout_ms
        self._database: DatabaseJobStore | None = None
        self._database_disabled = not use_database
        self._lock = threading.RLock()

    @property
    def database_enabled(self) -> bool:
        return self._get_database() is not None

    def close(self) -> None:
        with self._lock:
            if self._database is not None:
                self._database.close()
                self._database = None

    def write(self, record: JobRecord) -> bool:
        """Persist ``record`` unless the guarded transition rejects it.

        Returns ``False`` when the write was rejected (for example, a completion
        arriving after the job was killed); neither backend is touched then.
        """

        with self._lock:
            current = self.files.read(record.provider, record.slug, record.job_id)
            reason = transition_rejection(current, record)
            if reason is not None:
                logger.debug(
                    "Rejected %s write for %s/%s: %s",
                    record.status.value,
                    record.provider,
                    record.job_id,
                    reason,
                )
                return False
            self.files.write(record)
            self._with_database(lambda database: database.upsert(record))
            return True

    def read(self, provider: str, job_id: str) -> JobRecord | None:
        found = self._with_database(lambda database: database.get(provider, job_id))
        if isinstance(found, JobRecord):
            return found
        return self.files.find(provider, job_id)

    def list_active(self, provider: str | None = None) -> list[JobRecord]:
        return self.list_by_status(ACTIVE_STATUSES, provider=provider)

    def list_by_status(
        self,
        statuses: Iterable[JobStatus],
        *,
        provider: str | None = None,
        limit: int | None = None,
    ) -> list[JobRecord]:
        """Jobs in ``statuses``, newest spawned first."""

        wanted = frozenset(statuses)
        rows = self._with_database(
            lambda database: database.list_by_status(wanted, provider=provider, limit=limit),
        )
        if rows is not _UNAVAILABLE:
            return rows  # type: ignore[return-value]
        records = [record for record in self.files.list_all(provider) if record.status in wanted]
        records.sort(key=lambda record: record.spawned_at, reverse=True)
        return records[:limit] if limit is not None else records

    def delete(self, provider: str, job_id: str) -> bool:
        with self._lock:
            file_deleted = self.files.delete(provider, job_id)
            db_deleted = self._with_database(lambda database: database.delete(provider, job_id))
            return file_deleted or db_deleted is True

    def migrate_from_files(self) -> MigrationResult:
        """Copy every status file into the database. Malformed files count as errors."""

        if self._get_database() is None:
            return MigrationResult(imported=0, errors=0)
        records, malformed = self.files.scan()
        imported = 0
        errors = len(malformed)
        for path in malformed:
            logger.warning("Cannot migrate malformed status file %s", path)
        for record in records:
            database = self._get_database()
            if database is None:
                errors += 1
                continue
            try:
                database.upsert(record)
            except StoreError as error:
                logger.warning("Failed to migrate %s/%s: %s", record.provider, record.job_id, error)
                errors += 1
                continue
            imported += 1
        logger.info("Migrated job status files: imported=%d errors=%d", imported, errors)
        return MigrationResult(imported=imported, errors=errors)

    def cleanup_older_than(self, max_age: timedelta) -> int:
        """Delete terminal jobs spawned before ``now - max_age``. Returns jobs removed."""

        cutoff = utc_now() - max_age
        with self._lock:
            removed = 0
            for record in self.files.list_all():
                if record.is_terminal and record.spawned_at < cutoff:
                    if self.files.delete(record.provider, record.job_id):
                        removed += 1
            db_removed = self._with_database(
                lambda database: database.delete_terminal_older_than(cutoff),
            )
            if isinstance(db_removed, int):
                removed = max(removed, db_removed)
        logger.info("Removed %d terminal jobs older than %s", removed, cutoff.isoformat())
        return removed

    def mark_stale_jobs(self, max_age: timedelta) -> int:
        """Move active jobs spawned before ``now - max_age`` to ``timeout``."""

        cutoff = utc_now() - max_age
        marked = 0
        for record in self.files.list_all():
            if not record.is_active or record.spawned_at >= cutoff:
                continue
            if self.write(transition(record, JobStatus.TIMEOUT, error=STALE_JOB_ERROR)):
                marked += 1
        return marked

    def stats(self, provider: str | None = None) -> JobStats:
        counts = self._with_database(lambda database: database.count_by_status(provider))
        if not isinstance(counts, dict):
            counts = {}
            for record in self.files.list_all(provider):
                counts[record.status.value] = counts.get(record.status.value, 0) + 1
        return JobStats(
            total=sum(counts.values()),
            active=counts.get(JobStatus.SPAWNED.value, 0) + counts.get(JobStatus.RUNNING.value, 0),
            completed=counts.get(JobStatus.COMPLETED.value, 0),
            failed=counts.get(JobStatus.FAILED.value, 0) + counts.get(JobStatus.TIMEOUT.value, 0),
        )

    def _get_database(self) -> DatabaseJobStore | None:
        with self._lock:
            if self._database_disabled:
                return None
            if self._database is None:
                try:
                    self._database = DatabaseJobStore(
                        database_path(self.workspace_root),
                        busy_timeout_ms=self._busy_timeout_ms,
                    )
                except StoreError as error:
                    self._disable_database(error)
                    return None
            return self._database

    def _with_database(self, operation: Callable[[DatabaseJobStore], T]) -> T | object:
        database = self._get_database()
        if database is None:
            return _UNAVAILABLE
        try:
            return operation(database)
        except StoreError as error:
            self._disable_database(error)
            return _UNAVAILABLE

    def _disable_database(self, error: StoreError) -> None:
        with self._lock:
            logger.warning(
                "Job database disabled for %s, continuing with status files only: %s",
                self.workspace_root,
                error,
            )
            self._database_disabled = True
            if self._database is not None:
                self._database.close()
                self._database = None
