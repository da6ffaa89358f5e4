"""SQLite mirror of job state, queryable without scanning status files."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from alembic.util import CommandError
from cli_relay.orchestrator.errors import StoreError
from cli_relay.orchestrator.models import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    JobRecord,
    JobStatus,
)
from cli_relay.storage.alembic_runner import upgrade_head
from cli_relay.storage.common import build_sqlite_engine
from cli_relay.storage.tables import RelayJob


class DatabaseJobStore:
    """Job rows keyed by ``(provider, job_id)`` in a per-workspace SQLite file."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        try:
            db_path.parent.mkdir(parents=True, exist_ok=True)
            upgrade_head(db_path)
            self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)
        except (OSError, SQLAlchemyError, CommandError) as error:
            raise StoreError(f"Job database unavailable at {db_path}: {error}") from error

    def close(self) -> None:
        self.engine.dispose()

    def upsert(self, record: JobRecord) -> None:
        with self._session() as session:
            row = session.get(RelayJob, (record.provider, record.job_id))
            if row is None:
                row = RelayJob(
                    provider=record.provider,
                    job_id=record.job_id,
                    slug=record.slug,
                    status=record.status.value,
                    prompt_file=record.prompt_file,
                    response_file=record.response_file,
                    model=record.model,
                    agent_role=record.agent_role,
                    spawned_at=_to_db_datetime(record.spawned_at),
                )
            row.slug = record.slug
            row.status = record.status.value
            row.pid = record.pid
            row.prompt_file = record.prompt_file
            row.response_file = record.response_file
            row.model = record.model
            row.agent_role = record.agent_role
            row.spawned_at = _to_db_datetime(record.spawned_at)
            row.completed_at = (
                _to_db_datetime(record.completed_at) if record.completed_at is not None else None
            )
            row.error = record.error
            row.used_fallback = record.used_fallback
            row.fallback_model = record.fallback_model
            row.killed_by_user = record.killed_by_user
            session.add(row)
            session.commit()

    def get(self, provider: str, job_id: str) -> JobRecord | None:
        with self._session() as session:
            row = session.get(RelayJob, (provider, job_id))
            return _to_record(row) if row is not None else None

    def find(self, job_id: str, providers: Iterable[str]) -> JobRecord | None:
        with self._session() as session:
            rows = session.exec(
                select(RelayJob).where(
                    RelayJob.job_id == job_id,
                    col(RelayJob.provider).in_(list(providers)),
                ),
            ).all()
        if not rows:
            return None
        records = [_to_record(row) for row in rows]
        active = [record for record in records if record.is_active]
        return max(active or records, key=lambda record: record.spawned_at)

    def list_by_status(
        self,
        statuses: Iterable[JobStatus],
        *,
        provider: str | None = None,
        limit: int | None = None,
    ) -> list[JobRecord]:
        statement = select(RelayJob).where(
            col(RelayJob.status).in_([status.value for status in statuses]),
        )
        if provider is not None:
            statement = statement.where(RelayJob.provider == provider)
        statement = statement.order_by(col(RelayJob.spawned_at).desc())
        if limit is not None:
            statement = statement.limit(limit)
        with self._session() as session:
            return [_to_record(row) for row in session.exec(statement).all()]

    def list_active(self, provider: str | None = None) -> list[JobRecord]:
        return self.list_by_status(ACTIVE_STATUSES, provider=provider)

    def delete(self, provider: str, job_id: str) -> bool:
        with self._session() as session:
            result = session.exec(
                sa_delete(RelayJob).where(
                    col(RelayJob.provider) == provider,
                    col(RelayJob.job_id) == job_id,
                ),
            )
            session.commit()
            return bool(result.rowcount)

    def delete_terminal_older_than(self, cutoff: datetime) -> int:
        with self._session() as session:
            result = session.exec(
                sa_delete(RelayJob).where(
                    col(RelayJob.status).in_([status.value for status in TERMINAL_STATUSES]),
                    col(RelayJob.spawned_at) < _to_db_datetime(cutoff),
                ),
            )
            session.commit()
            return int(result.rowcount or 0)

    def count_by_status(self, provider: str | None = None) -> dict[str, int]:
        statement = select(RelayJob.status, func.count()).group_by(RelayJob.status)
        if provider is not None:
            statement = statement.where(RelayJob.provider == provider)
        with self._session() as session:
            return {str(status): int(count) for status, count in session.exec(statement).all()}

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self.engine) as session:
                yield session
        except SQLAlchemyError as error:
            raise StoreError(f"Job database query failed: {error}") from error


def _to_db_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def _to_utc_aware_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _to_record(row: RelayJob) -> JobRecord:
    return JobRecord(
        provider=row.provider,
        job_id=row.job_id,
        slug=row.slug,
        status=JobStatus(row.status),
        prompt_file=row.prompt_file,
        response_file=row.response_file,
        model=row.model,
        agent_role=row.agent_role,
        spawned_at=_to_utc_aware_datetime(row.spawned_at),
        pid=row.pid,
        completed_at=(
            _to_utc_aware_datetime(row.completed_at) if row.completed_at is not None else None
        ),
        error=row.error,
        used_fallback=bool(row.used_fallback),
        fallback_model=row.fallback_model,
        killed_by_user=bool(row.killed_by_user),
    )
