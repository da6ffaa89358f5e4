"""Prompt and response artifacts written next to job status files.

Artifacts are named from ``(provider, slug, job_id)`` so the response path of
a background job is known before the job finishes.
"""

from __future__ import annotations

import json
import logging
import re
import secrets
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from cli_relay.orchestrator.workspace import prompts_dir
from cli_relay.storage.common import utc_now
from cli_relay.storage.file_store import status_file_name

logger = logging.getLogger(__name__)

_FRONTMATTER_RE = re.compile(r"\A---\n.*?\n---\n\n", re.DOTALL)
_MAX_SLUG_CHARS = 40


@dataclass(slots=True)
class PersistedPrompt:
    path: Path
    job_id: str
    slug: str


def slugify(text: str, max_words: int = 4) -> str:
    """Filesystem-safe slug built from the first words of ``text``."""

    if not text or not text.strip():
        return "prompt"
    words = text.strip().split()[:max_words]
    slug = re.sub(r"[^a-z0-9-]", "-", "-".join(words).lower())
    slug = re.sub(r"-+", "-", slug).strip("-")
    if len(slug) > _MAX_SLUG_CHARS:
        slug = slug[:_MAX_SLUG_CHARS].rstrip("-")
    return slug or "prompt"


def generate_job_id() -> str:
    return secrets.token_hex(4)


def prompt_path(workspace_root: Path, provider: str, slug: str, job_id: str) -> Path:
    return prompts_dir(workspace_root) / f"{provider}-prompt-{slug}-{job_id}.md"


def expected_response_path(workspace_root: Path, provider: str, slug: str, job_id: str) -> Path:
    return prompts_dir(workspace_root) / f"{provider}-response-{slug}-{job_id}.md"


def status_file_path(workspace_root: Path, provider: str, slug: str, job_id: str) -> Path:
    return prompts_dir(workspace_root) / status_file_name(provider, slug, job_id)


def persist_prompt(  # noqa: PLR0913
    *,
    workspace_root: Path,
    provider: str,
    agent_role: str,
    model: str,
    user_prompt: str,
    full_prompt: str,
    files: Sequence[str] = (),
) -> PersistedPrompt:
    """Write the assembled prompt with a metadata header. Raises ``OSError`` on failure."""

    job_id = generate_job_id()
    slug = slugify(user_prompt)
    header = [
        "---",
        f"provider: {_quoted(provider)}",
        f"agent_role: {_quoted(agent_role)}",
        f"model: {_quoted(model)}",
    ]
    if files:
        header.append("files:")
        header.extend(f"  - {_quoted(name)}" for name in files)
    header.append(f"timestamp: {_quoted(utc_now().isoformat())}")
    header.append("---")

    path = prompt_path(workspace_root, provider, slug, job_id)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(header) + "\n\n" + full_prompt, "utf-8")
    return PersistedPrompt(path=path, job_id=job_id, slug=slug)


def persist_response(  # noqa: PLR0913
    *,
    workspace_root: Path,
    provider: str,
    agent_role: str,
    model: str,
    job_id: str,
    slug: str,
    response: str,
    used_fallback: bool = False,
) -> Path | None:
    """Write the response artifact. Failures are logged, never raised."""

    header = [
        "---",
        f"provider: {_quoted(provider)}",
        f"agent_role: {_quoted(agent_role)}",
        f"model: {_quoted(model)}",
        f"prompt_id: {_quoted(job_id)}",
    ]
    if used_fallback:
        header.append("used_fallback: true")
        header.append(f"fallback_model: {_quoted(model)}")
    header.append(f"timestamp: {_quoted(utc_now().isoformat())}")
    header.append("---")

    path = expected_response_path(workspace_root, provider, slug, job_id)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("\n".join(header) + "\n\n" + response, "utf-8")
    except OSError as error:
        logger.warning("Failed to persist response for %s/%s: %s", provider, job_id, error)
        return None
    return path


def read_completed_response(path: Path) -> str | None:
    """Response body without its metadata header, or ``None`` if not written yet."""

    try:
        content = path.read_text("utf-8")
    except FileNotFoundError:
        return None
    match = _FRONTMATTER_RE.match(content)
    return content[match.end() :] if match else content


def _quoted(value: str) -> str:
    return json.dumps(value, ensure_ascii=False)
