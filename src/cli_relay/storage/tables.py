"""SQLModel ORM tables for job state."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index
from sqlmodel import Field, SQLModel


class RelayJob(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_jobs_provider_status", "provider", "status"),)

    provider: str = Field(primary_key=True, index=True)
    job_id: str = Field(primary_key=True)
    slug: str
    status: str = Field(index=True)
    pid: int | None = None
    prompt_file: str
    response_file: str
    model: str
    agent_role: str
    spawned_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    error: str | None = None
    used_fallback: bool = False
    fallback_model: str | None = None
    killed_by_user: bool = False
