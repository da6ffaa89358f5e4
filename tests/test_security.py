from __future__ import annotations

import os
from pathlib import Path

import allure
import pytest

from cli_relay.orchestrator.errors import ValidationError
from cli_relay.orchestrator.security import (
    E_CONTEXT_FILE_INVALID,
    E_PATH_OUTSIDE_WORKDIR_CONTEXT,
    E_PATH_OUTSIDE_WORKDIR_OUTPUT,
    E_PATH_OUTSIDE_WORKDIR_PROMPT,
    E_PATH_RESOLUTION_FAILED,
    E_WORKDIR_INVALID,
    MAX_CONTEXT_FILE_BYTES,
    OutputPathPolicy,
    is_within,
    safe_write_output_file,
    validate_context_file,
    validate_prompt_file,
    validate_working_directory,
)

pytestmark = [
    allure.epic("Provider Jobs"),
    allure.feature("Path Security"),
]


@pytest.fixture()
def layout(tmp_path: Path) -> tuple[Path, Path]:
    workdir = tmp_path / "repo"
    outside = tmp_path / "outside"
    workdir.mkdir()
    outside.mkdir()
    return workdir, outside


def test_is_within_does_not_match_sibling_prefix(tmp_path: Path) -> None:
    assert is_within(tmp_path / "repo" / "a.md", tmp_path / "repo")
    assert is_within(tmp_path / "repo", tmp_path / "repo")
    assert not is_within(tmp_path / "repo-other" / "a.md", tmp_path / "repo")


def test_prompt_file_inside_workdir_resolves_to_real_path(layout: tuple[Path, Path]) -> None:
    workdir, _ = layout
    (workdir / "prompts").mkdir()
    (workdir / "prompts" / "task.md").write_text("do it", "utf-8")

    resolved = validate_prompt_file("prompts/task.md", base_dir=workdir)

    assert resolved == Path(os.path.realpath(workdir / "prompts" / "task.md"))


def test_prompt_file_traversal_is_rejected_with_details(layout: tuple[Path, Path]) -> None:
    workdir, outside = layout
    (outside / "secret.md").write_text("secret", "utf-8")

    with pytest.raises(ValidationError) as excinfo:
        validate_prompt_file("../outside/secret.md", base_dir=workdir)

    error = excinfo.value
    assert error.error_token == E_PATH_OUTSIDE_WORKDIR_PROMPT
    message = str(error)
    assert "Requested: ../outside/secret.md" in message
    assert f"Working directory: {os.path.realpath(workdir)}" in message
    assert "Suggested:" in message


def test_prompt_symlink_escaping_workdir_is_rejected(layout: tuple[Path, Path]) -> None:
    workdir, outside = layout
    (outside / "secret.md").write_text("secret", "utf-8")
    (workdir / "innocent.md").symlink_to(outside / "secret.md")

    with pytest.raises(ValidationError) as excinfo:
        validate_prompt_file("innocent.md", base_dir=workdir)

    assert excinfo.value.error_token == E_PATH_OUTSIDE_WORKDIR_PROMPT
    assert "secret.md" in str(excinfo.value)


def test_missing_prompt_file_reports_resolution_failure(layout: tuple[Path, Path]) -> None:
    workdir, _ = layout

    with pytest.raises(ValidationError) as excinfo:
        validate_prompt_file("missing.md", base_dir=workdir)

    assert excinfo.value.error_token == E_PATH_RESOLUTION_FAILED


def test_external_prompt_is_accepted_only_with_bypass(layout: tuple[Path, Path]) -> None:
    workdir, outside = layout
    (outside / "shared.md").write_text("shared", "utf-8")

    with pytest.raises(ValidationError):
        validate_prompt_file(str(outside / "shared.md"), base_dir=workdir)

    resolved = validate_prompt_file(
        str(outside / "shared.md"),
        base_dir=workdir,
        allow_external=True,
    )
    assert resolved == Path(os.path.realpath(outside / "shared.md"))


def test_context_file_outside_or_oversized_is_rejected(layout: tuple[Path, Path]) -> None:
    workdir, outside = layout
    (outside / "notes.md").write_text("notes", "utf-8")
    big = workdir / "big.log"
    with big.open("wb") as handle:
        handle.truncate(MAX_CONTEXT_FILE_BYTES + 1)

    with pytest.raises(ValidationError) as outside_error:
        validate_context_file("../outside/notes.md", base_dir=workdir)
    with pytest.raises(ValidationError) as size_error:
        validate_context_file("big.log", base_dir=workdir)

    assert outside_error.value.error_token == E_PATH_OUTSIDE_WORKDIR_CONTEXT
    assert size_error.value.error_token == E_CONTEXT_FILE_INVALID


def test_working_directory_must_stay_inside_workspace(layout: tuple[Path, Path]) -> None:
    workdir, outside = layout
    (workdir / "pkg").mkdir()

    inside = validate_working_directory("pkg", cwd=workdir, workspace_root=workdir)
    assert inside == Path(os.path.realpath(workdir / "pkg"))

    with pytest.raises(ValidationError) as excinfo:
        validate_working_directory(str(outside), cwd=workdir, workspace_root=workdir)
    assert excinfo.value.error_token == E_WORKDIR_INVALID

    accepted = validate_working_directory(
        str(outside),
        cwd=workdir,
        workspace_root=workdir,
        allow_external=True,
    )
    assert accepted == Path(os.path.realpath(outside))


def test_missing_working_directory_is_invalid(layout: tuple[Path, Path]) -> None:
    workdir, _ = layout

    with pytest.raises(ValidationError) as excinfo:
        validate_working_directory("nope", cwd=workdir, workspace_root=workdir)

    assert excinfo.value.error_token == E_WORKDIR_INVALID


def test_output_write_creates_parent_directories(layout: tuple[Path, Path]) -> None:
    workdir, _ = layout

    written = safe_write_output_file("reports/today/answer.md", "hello", base_dir=workdir)

    assert written == Path(os.path.realpath(workdir)) / "reports" / "today" / "answer.md"
    assert written.read_text("utf-8") == "hello"


def test_output_outside_workdir_is_rejected_in_strict_mode(layout: tuple[Path, Path]) -> None:
    workdir, outside = layout

    with pytest.raises(ValidationError) as excinfo:
        safe_write_output_file("../outside/answer.md", "hello", base_dir=workdir)

    assert excinfo.value.error_token == E_PATH_OUTSIDE_WORKDIR_OUTPUT
    assert "Path policy: strict" in str(excinfo.value)
    assert not (outside / "answer.md").exists()


def test_output_outside_workdir_is_redirected_by_policy(layout: tuple[Path, Path]) -> None:
    workdir, outside = layout

    written = safe_write_output_file(
        "../outside/answer.md",
        "hello",
        base_dir=workdir,
        policy=OutputPathPolicy.REDIRECT_OUTPUT,
        redirect_dir=Path(".cli_relay/outputs"),
    )

    assert written == Path(os.path.realpath(workdir)) / ".cli_relay" / "outputs" / "answer.md"
    assert written.read_text("utf-8") == "hello"
    assert not (outside / "answer.md").exists()


def test_output_symlink_pointing_outside_is_not_followed(layout: tuple[Path, Path]) -> None:
    workdir, outside = layout
    target = outside / "victim.md"
    target.write_text("original", "utf-8")
    (workdir / "answer.md").symlink_to(target)

    with pytest.raises(ValidationError) as excinfo:
        safe_write_output_file("answer.md", "overwritten", base_dir=workdir)

    assert excinfo.value.error_token == E_PATH_OUTSIDE_WORKDIR_OUTPUT
    assert target.read_text("utf-8") == "original"


def test_output_directory_symlink_pointing_outside_is_rejected(
    layout: tuple[Path, Path],
) -> None:
    workdir, outside = layout
    (workdir / "linked").symlink_to(outside, target_is_directory=True)

    with pytest.raises(ValidationError) as excinfo:
        safe_write_output_file("linked/answer.md", "data", base_dir=workdir)

    assert excinfo.value.error_token == E_PATH_OUTSIDE_WORKDIR_OUTPUT
    assert not (outside / "answer.md").exists()
