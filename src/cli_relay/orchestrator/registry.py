"""Registry of processes started by one orchestrator instance."""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from cli_relay.orchestrator.backend.base import ProcessHandle


class SpawnedProcessRegistry:
    """PIDs this instance spawned and still owns.

    Not shared between orchestrator processes: a PID recorded in the job store
    by a sibling instance is never found here and can therefore not be signalled.
    """

    def __init__(self) -> None:
        self._handles: dict[int, ProcessHandle] = {}
        self._lock = threading.Lock()

    def register(self, handle: ProcessHandle) -> None:
        with self._lock:
            self._handles[handle.pid] = handle

    def unregister(self, pid: int) -> None:
        with self._lock:
            self._handles.pop(pid, None)

    def get(self, pid: int) -> ProcessHandle | None:
        with self._lock:
            return self._handles.get(pid)

    def __contains__(self, pid: object) -> bool:
        with self._lock:
            return pid in self._handles

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)
