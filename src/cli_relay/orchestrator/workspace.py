"""Workspace root resolution for state and path boundaries."""

from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path

logger = logging.getLogger(__name__)

STATE_DIR_NAME = ".cli_relay"


def resolve_workspace_root(directory: Path | str | None = None) -> Path:
    """Return the git worktree root enclosing ``directory``, or the directory itself.

    Two worktrees of one repository resolve to different roots, so job state
    kept under the root stays isolated per worktree.
    """

    start = Path(os.path.realpath(directory or Path.cwd()))
    try:
        completed = subprocess.run(
            ["git", "rev-parse", "--show-toplevel"],  # noqa: S607
            cwd=start,
            capture_output=True,
            text=True,
            timeout=10,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as error:
        logger.debug("git root lookup failed in %s: %s", start, error)
        return start

    toplevel = completed.stdout.strip()
    if completed.returncode != 0 or not toplevel:
        return start
    return Path(os.path.realpath(toplevel))


def state_dir(workspace_root: Path) -> Path:
    return workspace_root / STATE_DIR_NAME


def prompts_dir(workspace_root: Path) -> Path:
    return state_dir(workspace_root) / "prompts"


def database_path(workspace_root: Path) -> Path:
    return state_dir(workspace_root) / "state" / "jobs.db"
