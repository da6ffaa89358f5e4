"""Path boundary checks for prompt, context and output files.

Every candidate path is checked twice: once lexically after joining it onto
the working directory, and once after ``os.path.realpath`` has followed any
symlinks. A path passes only if both forms stay inside the boundary.
"""

from __future__ import annotations

import logging
import os
from enum import Enum
from pathlib import Path

from cli_relay.orchestrator.errors import ValidationError

logger = logging.getLogger(__name__)

E_WORKDIR_INVALID = "E_WORKDIR_INVALID"
E_PATH_OUTSIDE_WORKDIR_PROMPT = "E_PATH_OUTSIDE_WORKDIR_PROMPT"
E_PATH_OUTSIDE_WORKDIR_OUTPUT = "E_PATH_OUTSIDE_WORKDIR_OUTPUT"
E_PATH_OUTSIDE_WORKDIR_CONTEXT = "E_PATH_OUTSIDE_WORKDIR_CONTEXT"
E_PATH_RESOLUTION_FAILED = "E_PATH_RESOLUTION_FAILED"
E_CONTEXT_FILE_INVALID = "E_CONTEXT_FILE_INVALID"
E_WRITE_FAILED = "E_WRITE_FAILED"

MAX_CONTEXT_FILE_BYTES = 5 * 1024 * 1024

_COMMON_ANCESTOR_HINT = (
    "place the file inside the working directory, or widen the working directory "
    "to a common ancestor"
)


class OutputPathPolicy(str, Enum):
    """How to handle an output path that resolves outside the working directory."""

    STRICT = "strict"
    REDIRECT_OUTPUT = "redirect_output"


def is_within(path: Path | str, root: Path | str) -> bool:
    """Whether ``path`` equals ``root`` or lies beneath it (no symlink resolution)."""

    path_text = os.path.normpath(str(path))
    root_text = os.path.normpath(str(root))
    try:
        return os.path.commonpath([path_text, root_text]) == root_text
    except ValueError:
        return False


def path_error(  # noqa: PLR0913
    *,
    token: str,
    summary: str,
    requested: str,
    resolved: Path | str | None,
    base_dir: Path,
    policy: str,
    suggestion: str,
) -> ValidationError:
    """Build a rejection that carries everything needed to self-diagnose."""

    lines = [
        f"{token}: {summary}",
        f"Requested: {requested}",
        f"Resolved path: {resolved if resolved is not None else '-'}",
        f"Working directory: {base_dir}",
        f"Path policy: {policy}",
        f"Suggested: {suggestion}",
    ]
    return ValidationError("\n".join(lines), error_token=token, suggestion=suggestion)


def validate_working_directory(
    requested: str | None,
    *,
    cwd: Path,
    workspace_root: Path,
    allow_external: bool = False,
) -> Path:
    """Resolve the working directory and ensure it stays inside the workspace root."""

    candidate = Path(requested).expanduser() if requested else cwd
    if not candidate.is_absolute():
        candidate = cwd / candidate
    policy = "allow_external" if allow_external else "workspace_root"
    try:
        resolved = Path(os.path.realpath(candidate, strict=True))
    except OSError as error:
        raise path_error(
            token=E_WORKDIR_INVALID,
            summary=f"working_directory '{requested}' does not exist or is not accessible: {error}",
            requested=str(requested),
            resolved=None,
            base_dir=workspace_root,
            policy=policy,
            suggestion="pass an existing directory inside the workspace",
        ) from error
    if not resolved.is_dir():
        raise path_error(
            token=E_WORKDIR_INVALID,
            summary=f"working_directory '{requested}' is not a directory.",
            requested=str(requested),
            resolved=resolved,
            base_dir=workspace_root,
            policy=policy,
            suggestion="pass a directory, not a file",
        )

    if is_within(resolved, workspace_root):
        return resolved
    if allow_external:
        logger.warning(
            "Accepting working directory %s outside workspace root %s",
            resolved,
            workspace_root,
        )
        return resolved
    raise path_error(
        token=E_WORKDIR_INVALID,
        summary=(
            f"working_directory '{requested}' is outside the workspace root ({workspace_root})."
        ),
        requested=str(requested),
        resolved=resolved,
        base_dir=workspace_root,
        policy=policy,
        suggestion="run from inside the workspace or set CLI_RELAY_ALLOW_EXTERNAL_WORKDIR=1",
    )


def resolve_inside(
    requested: str,
    *,
    base_dir: Path,
    token: str,
    label: str,
) -> Path:
    """Return the real path of ``requested`` if both its textual and real forms stay inside."""

    base_real = Path(os.path.realpath(base_dir))
    lexical = Path(os.path.normpath(base_real / Path(requested).expanduser()))
    if not is_within(lexical, base_real):
        raise path_error(
            token=token,
            summary=f"{label} '{requested}' is outside the working directory.",
            requested=requested,
            resolved=lexical,
            base_dir=base_real,
            policy="strict",
            suggestion=_COMMON_ANCESTOR_HINT,
        )

    try:
        resolved = Path(os.path.realpath(lexical, strict=True))
    except OSError as error:
        raise path_error(
            token=E_PATH_RESOLUTION_FAILED,
            summary=f"Failed to resolve {label} '{requested}': {error}",
            requested=requested,
            resolved=lexical,
            base_dir=base_real,
            policy="strict",
            suggestion="ensure the path exists and is readable",
        ) from error

    if not is_within(resolved, base_real):
        raise path_error(
            token=token,
            summary=f"{label} '{requested}' resolves to a path outside the working directory.",
            requested=requested,
            resolved=resolved,
            base_dir=base_real,
            policy="strict",
            suggestion=f"replace the symlink with a real file, or {_COMMON_ANCESTOR_HINT}",
        )
    return resolved


def validate_prompt_file(
    requested: str,
    *,
    base_dir: Path,
    allow_external: bool = False,
) -> Path:
    """Resolve a prompt file path against the working directory boundary."""

    if not requested or not requested.strip():
        raise ValidationError("prompt_file is required.", suggestion="pass --prompt-file")
    if allow_external:
        resolved = Path(os.path.realpath(Path(base_dir) / Path(requested).expanduser()))
        if not is_within(resolved, os.path.realpath(base_dir)):
            logger.warning("Accepting prompt file %s outside %s", resolved, base_dir)
        return resolved
    return resolve_inside(
        requested,
        base_dir=base_dir,
        token=E_PATH_OUTSIDE_WORKDIR_PROMPT,
        label="prompt_file",
    )


def validate_context_file(requested: str, *, base_dir: Path) -> Path:
    """Resolve and size-check a context file. Raises ``ValidationError`` on rejection."""

    resolved = resolve_inside(
        requested,
        base_dir=base_dir,
        token=E_PATH_OUTSIDE_WORKDIR_CONTEXT,
        label="context file",
    )
    if not resolved.is_file():
        raise ValidationError(
            f"{E_CONTEXT_FILE_INVALID}: context file '{requested}' does not exist "
            "or is not a regular file.",
            error_token=E_CONTEXT_FILE_INVALID,
        )
    size = resolved.stat().st_size
    if size > MAX_CONTEXT_FILE_BYTES:
        raise ValidationError(
            f"{E_CONTEXT_FILE_INVALID}: context file '{requested}' is too large "
            f"({size} bytes, max {MAX_CONTEXT_FILE_BYTES}).",
            error_token=E_CONTEXT_FILE_INVALID,
        )
    return resolved


def resolve_output_path(
    requested: str,
    *,
    base_dir: Path,
    policy: OutputPathPolicy = OutputPathPolicy.STRICT,
    redirect_dir: Path = Path(".cli_relay/outputs"),
) -> Path:
    """Lexical target of ``requested`` under ``policy``, without touching the filesystem.

    Used before a run to reject an unusable output path early and to snapshot
    the target's mtime.
    """

    if not requested or not requested.strip():
        raise ValidationError("output_file is required.", suggestion="pass --output-file")
    base_real = Path(os.path.realpath(base_dir))
    output_path = Path(os.path.normpath(base_real / Path(requested).expanduser()))

    if not is_within(output_path, base_real):
        if policy is OutputPathPolicy.STRICT:
            raise path_error(
                token=E_PATH_OUTSIDE_WORKDIR_OUTPUT,
                summary=(
                    f"output_file '{requested}' resolves outside working_directory "
                    f"'{base_real}' and was rejected by policy '{policy.value}'."
                ),
                requested=requested,
                resolved=output_path,
                base_dir=base_real,
                policy=policy.value,
                suggestion=(
                    f"use '{redirect_dir / output_path.name}' or set "
                    "CLI_RELAY_OUTPUT_PATH_POLICY=redirect_output"
                ),
            )
        target_dir = redirect_dir if redirect_dir.is_absolute() else base_real / redirect_dir
        redirected = Path(os.path.normpath(target_dir / output_path.name))
        logger.warning(
            "output_file %s resolves outside working directory, redirecting to %s per policy %s",
            requested,
            redirected,
            policy.value,
        )
        output_path = redirected
    return output_path


def safe_write_output_file(  # noqa: PLR0913
    requested: str,
    content: str,
    *,
    base_dir: Path,
    policy: OutputPathPolicy = OutputPathPolicy.STRICT,
    redirect_dir: Path = Path(".cli_relay/outputs"),
) -> Path:
    """Write ``content`` to ``requested`` without escaping ``base_dir``.

    Returns the path actually written. Raises ``ValidationError`` with an
    ``E_PATH_*`` or ``E_WRITE_FAILED`` token when the write is refused or fails.
    """

    base_real = Path(os.path.realpath(base_dir))
    output_path = resolve_output_path(
        requested,
        base_dir=base_real,
        policy=policy,
        redirect_dir=redirect_dir,
    )

    output_dir = output_path.parent
    try:
        output_dir.mkdir(parents=True, exist_ok=True)
    except OSError as error:
        raise _write_failed(requested, base_real, policy, error) from error

    output_dir_real = Path(os.path.realpath(output_dir))
    if policy is OutputPathPolicy.STRICT and not is_within(output_dir_real, base_real):
        raise path_error(
            token=E_PATH_OUTSIDE_WORKDIR_OUTPUT,
            summary=f"output_file directory '{output_dir}' resolves outside working_directory.",
            requested=requested,
            resolved=output_dir_real,
            base_dir=base_real,
            policy=policy.value,
            suggestion=_COMMON_ANCESTOR_HINT,
        )

    safe_path = output_dir_real / output_path.name
    target_real = Path(os.path.realpath(safe_path))
    allowed_root = base_real if policy is OutputPathPolicy.STRICT else output_dir_real
    if not is_within(target_real, allowed_root):
        raise path_error(
            token=E_PATH_OUTSIDE_WORKDIR_OUTPUT,
            summary=f"output file '{requested}' resolved to '{target_real}' via symlink.",
            requested=requested,
            resolved=target_real,
            base_dir=base_real,
            policy=policy.value,
            suggestion="remove the symlink and retry",
        )

    try:
        safe_path.write_text(content, "utf-8")
    except OSError as error:
        raise _write_failed(requested, base_real, policy, error) from error
    return safe_path


def _write_failed(
    requested: str,
    base_dir: Path,
    policy: OutputPathPolicy,
    error: OSError,
) -> ValidationError:
    return path_error(
        token=E_WRITE_FAILED,
        summary=f"Failed to write output file '{requested}': {error}",
        requested=requested,
        resolved=None,
        base_dir=base_dir,
        policy=policy.value,
        suggestion="check permissions and free space in the output directory",
    )
