"""Detect whether a provider CLI is installed, with a per-instance cache."""

from __future__ import annotations

import logging
import shutil
import subprocess
import threading
from collections.abc import Callable
from dataclasses import dataclass

from cli_relay.orchestrator.providers import get_provider

logger = logging.getLogger(__name__)

_VERSION_TIMEOUT_SECONDS = 10


@dataclass(frozen=True, slots=True)
class CliDetection:
    """Availability report for one provider executable."""

    provider: str
    available: bool
    install_hint: str
    path: str | None = None
    version: str | None = None
    error: str | None = None


class CliDetector:
    """Locate provider executables on ``PATH`` once and remember the answer.

    Both positive and negative results are cached until ``refresh=True`` is
    passed, so a missing CLI costs one lookup per process, not one per request.
    """

    def __init__(self, which: Callable[[str], str | None] = shutil.which) -> None:
        self._which = which
        self._cache: dict[str, CliDetection] = {}
        self._lock = threading.Lock()

    def detect(self, provider: str, *, refresh: bool = False) -> CliDetection:
        with self._lock:
            cached = self._cache.get(provider)
            if cached is not None and not refresh:
                return cached
        detection = self._inspect(provider)
        with self._lock:
            self._cache[provider] = detection
        return detection

    def reset(self) -> None:
        with self._lock:
            self._cache.clear()

    def _inspect(self, provider: str) -> CliDetection:
        spec = get_provider(provider)
        resolved = self._which(spec.executable)
        if resolved is None:
            logger.info("%s CLI not found on PATH", spec.display_name)
            return CliDetection(
                provider=provider,
                available=False,
                install_hint=spec.install_hint,
                error=f"Executable not found in PATH: {spec.executable}",
            )
        return CliDetection(
            provider=provider,
            available=True,
            install_hint=spec.install_hint,
            path=resolved,
            version=_read_version(resolved),
        )


def _read_version(executable: str) -> str | None:
    try:
        completed = subprocess.run(  # noqa: S603
            [executable, "--version"],
            capture_output=True,
            text=True,
            timeout=_VERSION_TIMEOUT_SECONDS,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as error:
        logger.debug("Version check failed for %s: %s", executable, error)
        return None
    if completed.returncode != 0:
        return None
    first_line = (completed.stdout or completed.stderr).strip().splitlines()
    return first_line[0] if first_line else None
