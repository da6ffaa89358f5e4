"""JSON status files: the authoritative job state backend."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path

from cli_relay.orchestrator.models import JobRecord

logger = logging.getLogger(__name__)


def status_file_name(provider: str, slug: str, job_id: str) -> str:
    return f"{provider}-status-{slug}-{job_id}.json"


class FileJobStore:
    """One JSON file per job under the workspace prompts directory."""

    def __init__(self, prompts_dir: Path) -> None:
        self.prompts_dir = prompts_dir

    def path_for(self, record: JobRecord) -> Path:
        return self.prompts_dir / status_file_name(record.provider, record.slug, record.job_id)

    def write(self, record: JobRecord) -> Path:
        """Write ``record`` atomically: temp file in the same directory, then rename."""

        self.prompts_dir.mkdir(parents=True, exist_ok=True)
        target = self.path_for(record)
        payload = json.dumps(record.to_dict(), indent=2)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{target.name}.",
            suffix=".tmp",
            dir=self.prompts_dir,
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        return target

    def read(self, provider: str, slug: str, job_id: str) -> JobRecord | None:
        return self._load(self.prompts_dir / status_file_name(provider, slug, job_id))

    def find(self, provider: str, job_id: str) -> JobRecord | None:
        """Look up a job by id alone. Several matches prefer an active one, then the newest."""

        matches = [
            record
            for path in self._status_paths(provider, job_id=job_id)
            if (record := self._load(path)) is not None and record.job_id == job_id
        ]
        if not matches:
            return None
        active = [record for record in matches if record.is_active]
        candidates = active or matches
        return max(candidates, key=lambda record: record.spawned_at)

    def list_all(self, provider: str | None = None) -> list[JobRecord]:
        records, _ = self.scan(provider)
        return records

    def scan(self, provider: str | None = None) -> tuple[list[JobRecord], list[Path]]:
        """Load every status file, returning parsed records and the paths that failed to parse."""

        records: list[JobRecord] = []
        malformed: list[Path] = []
        for path in self._status_paths(provider):
            record = self._load(path)
            if record is None:
                if path.exists():
                    malformed.append(path)
                continue
            records.append(record)
        return records, malformed

    def delete(self, provider: str, job_id: str) -> bool:
        deleted = False
        for path in self._status_paths(provider, job_id=job_id):
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            deleted = True
        return deleted

    def _status_paths(self, provider: str | None, *, job_id: str | None = None) -> list[Path]:
        if not self.prompts_dir.is_dir():
            return []
        prefix = f"{provider}-status-" if provider else "*-status-"
        suffix = f"-{job_id}.json" if job_id else ".json"
        return sorted(self.prompts_dir.glob(f"{prefix}*{suffix}"))

    @staticmethod
    def _load(path: Path) -> JobRecord | None:
        try:
            payload = json.loads(path.read_text("utf-8"))
            return JobRecord.from_dict(payload)
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError, TypeError) as error:
            logger.debug("Skipping malformed status file %s: %s", path, error)
            return None
