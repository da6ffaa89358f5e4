"""Static description of the supported CLI providers."""

from __future__ import annotations

import re
import shlex
from dataclasses import dataclass

from cli_relay.orchestrator.errors import ValidationError

_MODEL_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9._-]{0,63}$", re.IGNORECASE)


@dataclass(frozen=True, slots=True)
class ProviderSpec:
    """Executable, argv shape and model catalogue of one provider."""

    name: str
    display_name: str
    executable: str
    default_model: str
    fallback_chain: tuple[str, ...]
    valid_roles: tuple[str, ...]
    install_hint: str
    headless_preamble: str | None = None

    def build_argv(self, *, model: str, command_template: str | None = None) -> list[str]:
        """Render argv for one attempt. The prompt itself is delivered on stdin."""

        validate_model_name(model)
        if command_template:
            try:
                rendered = command_template.format(model=shlex.quote(model))
            except (KeyError, IndexError) as error:
                raise ValidationError(
                    f"Unsupported command template placeholder: {error}",
                ) from error
            argv = shlex.split(rendered)
            if not argv:
                raise ValidationError(f"{self.display_name} command template is empty.")
            return argv
        if self.name == "codex":
            return [self.executable, "exec", "-m", model, "--json", "--full-auto"]
        return [self.executable, "-p", ".", "--yolo", "--model", model]


CODEX = ProviderSpec(
    name="codex",
    display_name="Codex",
    executable="codex",
    default_model="gpt-5.3-codex",
    fallback_chain=("gpt-5.3-codex", "gpt-5.3", "gpt-5.2-codex", "gpt-5.2"),
    valid_roles=(
        "architect",
        "planner",
        "critic",
        "analyst",
        "code-reviewer",
        "security-reviewer",
        "tdd-guide",
    ),
    install_hint="Install Codex CLI: npm install -g @openai/codex",
)

GEMINI = ProviderSpec(
    name="gemini",
    display_name="Gemini",
    executable="gemini",
    default_model="gemini-3-pro-preview",
    fallback_chain=(
        "gemini-3-pro-preview",
        "gemini-3-flash-preview",
        "gemini-2.5-pro",
        "gemini-2.5-flash",
    ),
    valid_roles=("designer", "writer", "vision"),
    install_hint="Install Gemini CLI: npm install -g @google/gemini-cli",
    headless_preamble=(
        "[HEADLESS SESSION] You are running non-interactively. Do not ask questions "
        "or wait for confirmation; complete the task and write any requested files."
    ),
)

PROVIDER_SPECS: dict[str, ProviderSpec] = {CODEX.name: CODEX, GEMINI.name: GEMINI}


def get_provider(name: str) -> ProviderSpec:
    try:
        return PROVIDER_SPECS[name]
    except KeyError as error:
        allowed = ", ".join(PROVIDER_SPECS)
        raise ValidationError(f"Unknown provider {name!r}. Expected one of: {allowed}") from error


def validate_model_name(model: str) -> str:
    """Reject model names that could smuggle flags or shell syntax onto the command line."""

    if not _MODEL_NAME_RE.fullmatch(model or ""):
        raise ValidationError(
            f"Invalid model name: {model!r}. Model names must match "
            "[a-z0-9][a-z0-9._-]{0,63}.",
            suggestion="omit --model to use the provider default",
        )
    return model
