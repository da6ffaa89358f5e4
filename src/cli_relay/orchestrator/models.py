"""Domain models for provider jobs."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any

from cli_relay.storage.common import from_iso, utc_now


class JobStatus(str, Enum):
    """Lifecycle states of one background job."""

    SPAWNED = "spawned"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"


ACTIVE_STATUSES = frozenset({JobStatus.SPAWNED, JobStatus.RUNNING})
TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.TIMEOUT})

_STATUS_RANK = {
    JobStatus.SPAWNED: 0,
    JobStatus.RUNNING: 1,
    JobStatus.COMPLETED: 2,
    JobStatus.FAILED: 2,
    JobStatus.TIMEOUT: 2,
}


class FailureClass(str, Enum):
    """Failure classes used by the fallback policy."""

    MODEL_ERROR = "model_error"
    RATE_LIMIT = "rate_limit"
    PROCESS_ERROR = "process_error"


@dataclass(slots=True)
class JobRecord:
    """Persisted state of one provider invocation."""

    provider: str
    job_id: str
    slug: str
    status: JobStatus
    prompt_file: str
    response_file: str
    model: str
    agent_role: str
    spawned_at: datetime
    pid: int | None = None
    completed_at: datetime | None = None
    error: str | None = None
    used_fallback: bool = False
    fallback_model: str | None = None
    killed_by_user: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the status-file JSON shape (camelCase keys, optional keys omitted)."""

        payload: dict[str, Any] = {
            "provider": self.provider,
            "jobId": self.job_id,
            "slug": self.slug,
            "status": self.status.value,
            "promptFile": self.prompt_file,
            "responseFile": self.response_file,
            "model": self.model,
            "agentRole": self.agent_role,
            "spawnedAt": self.spawned_at.isoformat(),
        }
        if self.pid is not None:
            payload["pid"] = self.pid
        if self.completed_at is not None:
            payload["completedAt"] = self.completed_at.isoformat()
        if self.error is not None:
            payload["error"] = self.error
        if self.used_fallback:
            payload["usedFallback"] = True
        if self.fallback_model is not None:
            payload["fallbackModel"] = self.fallback_model
        if self.killed_by_user:
            payload["killedByUser"] = True
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> JobRecord:
        pid = payload.get("pid")
        completed_at = payload.get("completedAt")
        return cls(
            provider=str(payload["provider"]),
            job_id=str(payload["jobId"]),
            slug=str(payload["slug"]),
            status=JobStatus(payload["status"]),
            prompt_file=str(payload.get("promptFile", "")),
            response_file=str(payload.get("responseFile", "")),
            model=str(payload.get("model", "")),
            agent_role=str(payload.get("agentRole", "")),
            spawned_at=from_iso(str(payload["spawnedAt"])),
            pid=int(pid) if pid is not None else None,
            completed_at=from_iso(str(completed_at)) if completed_at else None,
            error=payload.get("error"),
            used_fallback=bool(payload.get("usedFallback", False)),
            fallback_model=payload.get("fallbackModel"),
            killed_by_user=bool(payload.get("killedByUser", False)),
        )


def transition_rejection(current: JobRecord | None, proposed: JobRecord) -> str | None:
    """Return why ``proposed`` may not replace ``current``, or ``None`` if it may.

    A write flagged ``killed_by_user`` always wins. Otherwise a killed or
    terminal record is frozen, and statuses never move backwards.
    """

    if current is None or proposed.killed_by_user:
        return None
    if current.killed_by_user:
        return "job was killed by user"
    if current.is_terminal:
        return f"job already {current.status.value}"
    if _STATUS_RANK[proposed.status] < _STATUS_RANK[current.status]:
        return f"status cannot move from {current.status.value} to {proposed.status.value}"
    return None


def transition(
    record: JobRecord,
    status: JobStatus,
    *,
    at: datetime | None = None,
    **changes: Any,
) -> JobRecord:
    """Return a copy of ``record`` moved to ``status``; terminal moves get ``completed_at``."""

    if status in TERMINAL_STATUSES and "completed_at" not in changes:
        changes["completed_at"] = at or utc_now()
    return replace(record, status=status, **changes)
