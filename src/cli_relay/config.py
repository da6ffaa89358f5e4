"""Runtime configuration for provider execution and job state."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from cli_relay.orchestrator.providers import PROVIDER_SPECS, validate_model_name
from cli_relay.orchestrator.security import OutputPathPolicy

logger = logging.getLogger(__name__)

MIN_TIMEOUT_SECONDS = 5
MAX_TIMEOUT_SECONDS = 3_600
DEFAULT_MAX_STDOUT_BYTES = 10 * 1024 * 1024


@dataclass(slots=True)
class ProviderSettings:
    """Per-provider execution settings."""

    provider: str
    default_model: str
    timeout_seconds: int = MAX_TIMEOUT_SECONDS
    command_template: str | None = None


@dataclass(slots=True)
class PathSettings:
    """Workspace boundary and output placement policy."""

    allow_external_workdir: bool = False
    allow_external_prompt: bool = False
    output_path_policy: OutputPathPolicy = OutputPathPolicy.STRICT
    output_redirect_dir: Path = Path(".cli_relay/outputs")


@dataclass(slots=True)
class JobSettings:
    """Background job bookkeeping settings."""

    retention_hours: int = 24
    max_stdout_bytes: int = DEFAULT_MAX_STDOUT_BYTES
    fallback_budget_seconds: int = 7_200
    sqlite_busy_timeout_ms: int = 5_000


def _default_providers() -> dict[str, ProviderSettings]:
    return {
        name: ProviderSettings(provider=name, default_model=spec.default_model)
        for name, spec in PROVIDER_SPECS.items()
    }


@dataclass(slots=True)
class RelaySettings:
    """Application settings grouped by domain concerns."""

    providers: dict[str, ProviderSettings] = field(default_factory=_default_providers)
    paths: PathSettings = field(default_factory=PathSettings)
    jobs: JobSettings = field(default_factory=JobSettings)

    @classmethod
    def from_env(cls) -> RelaySettings:
        """Load settings from environment with defaults suited to local use."""

        providers: dict[str, ProviderSettings] = {}
        for name, spec in PROVIDER_SPECS.items():
            prefix = f"CLI_RELAY_{name.upper()}"
            default_model = os.getenv(f"{prefix}_DEFAULT_MODEL", "").strip() or spec.default_model
            validate_model_name(default_model)
            providers[name] = ProviderSettings(
                provider=name,
                default_model=default_model,
                timeout_seconds=clamp_timeout_seconds(
                    _env_int(f"{prefix}_TIMEOUT_SECONDS", MAX_TIMEOUT_SECONDS),
                ),
                command_template=os.getenv(f"{prefix}_COMMAND", "").strip() or None,
            )

        paths = PathSettings(
            allow_external_workdir=_env_bool("CLI_RELAY_ALLOW_EXTERNAL_WORKDIR", default=False),
            allow_external_prompt=_env_bool("CLI_RELAY_ALLOW_EXTERNAL_PROMPT", default=False),
            output_path_policy=_parse_output_policy(
                os.getenv("CLI_RELAY_OUTPUT_PATH_POLICY", OutputPathPolicy.STRICT.value),
            ),
            output_redirect_dir=Path(
                os.getenv("CLI_RELAY_OUTPUT_REDIRECT_DIR", ".cli_relay/outputs"),
            ),
        )
        if paths.allow_external_workdir:
            logger.warning(
                "CLI_RELAY_ALLOW_EXTERNAL_WORKDIR is enabled: working directories outside "
                "the workspace root will be accepted.",
            )
        if paths.allow_external_prompt:
            logger.warning(
                "CLI_RELAY_ALLOW_EXTERNAL_PROMPT is enabled: prompt files outside "
                "the working directory will be accepted.",
            )

        jobs = JobSettings(
            retention_hours=_env_int("CLI_RELAY_JOB_RETENTION_HOURS", 24),
            max_stdout_bytes=_env_int("CLI_RELAY_MAX_STDOUT_BYTES", DEFAULT_MAX_STDOUT_BYTES),
            fallback_budget_seconds=_env_int("CLI_RELAY_FALLBACK_BUDGET_SECONDS", 7_200),
            sqlite_busy_timeout_ms=_env_int("CLI_RELAY_SQLITE_BUSY_TIMEOUT_MS", 5_000),
        )
        settings = cls(providers=providers, paths=paths, jobs=jobs)
        settings.validate()
        return settings

    def provider(self, name: str) -> ProviderSettings:
        try:
            return self.providers[name]
        except KeyError as error:
            raise ValueError(f"Unknown provider: {name!r}") from error

    def validate(self) -> None:
        """Raise configuration error if numeric limits are out of range."""

        if self.jobs.retention_hours < 0:
            raise ValueError("CLI_RELAY_JOB_RETENTION_HOURS must be >= 0.")
        if self.jobs.max_stdout_bytes <= 0:
            raise ValueError("CLI_RELAY_MAX_STDOUT_BYTES must be > 0.")
        if self.jobs.fallback_budget_seconds < MIN_TIMEOUT_SECONDS:
            raise ValueError(
                f"CLI_RELAY_FALLBACK_BUDGET_SECONDS must be >= {MIN_TIMEOUT_SECONDS}.",
            )
        if self.jobs.sqlite_busy_timeout_ms <= 0:
            raise ValueError("CLI_RELAY_SQLITE_BUSY_TIMEOUT_MS must be > 0.")


def clamp_timeout_seconds(value: int) -> int:
    """Clamp a per-attempt timeout into the supported [5s, 1h] window."""

    return max(MIN_TIMEOUT_SECONDS, min(MAX_TIMEOUT_SECONDS, value))


def _parse_output_policy(value: str) -> OutputPathPolicy:
    normalized = value.strip().lower()
    try:
        return OutputPathPolicy(normalized)
    except ValueError as error:
        allowed = ", ".join(policy.value for policy in OutputPathPolicy)
        raise ValueError(
            f"Invalid CLI_RELAY_OUTPUT_PATH_POLICY: {value!r}. Expected one of: {allowed}",
        ) from error


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
