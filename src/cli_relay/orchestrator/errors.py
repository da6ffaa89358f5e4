"""Error taxonomy for provider invocations and job bookkeeping."""

from __future__ import annotations

from collections.abc import Sequence


class RelayError(Exception):
    """Base error carrying a greppable token and an optional remediation hint."""

    error_token = "E_RELAY"

    def __init__(
        self,
        message: str,
        *,
        error_token: str | None = None,
        suggestion: str | None = None,
    ) -> None:
        super().__init__(message)
        if error_token is not None:
            self.error_token = error_token
        self.suggestion = suggestion
        self.attempted_models: tuple[str, ...] = ()

    def with_attempts(self, models: Sequence[str]) -> RelayError:
        """Record which models were tried before this error surfaced."""

        self.attempted_models = tuple(models)
        return self

    def describe(self) -> str:
        """Render the error the way it is shown to callers."""

        message = str(self)
        lines = [message if message.startswith(self.error_token) else f"{self.error_token}: {message}"]
        if self.attempted_models:
            lines.append(f"Attempted models: {', '.join(self.attempted_models)}")
        if self.suggestion and "Suggested:" not in message:
            lines.append(f"Suggested: {self.suggestion}")
        return "\n".join(lines)


class ValidationError(RelayError, ValueError):
    """Bad or missing argument, invalid path or role. Never retried."""

    error_token = "E_VALIDATION"


class ProcessError(RelayError):
    """Provider process failed in a way that must not be retried."""

    error_token = "E_PROCESS"


class SpawnError(ProcessError):
    """Executable missing or the OS refused to create the process."""

    error_token = "E_SPAWN"

    def __init__(self, message: str, *, install_hint: str | None = None) -> None:
        super().__init__(message, suggestion=install_hint)
        self.install_hint = install_hint


class ExecutionTimeoutError(RelayError, TimeoutError):
    """Attempt exceeded its time budget and the process group was terminated."""

    error_token = "E_TIMEOUT"


class ProviderError(RelayError):
    """Provider reported an error in its own output."""

    error_token = "E_PROVIDER"


class ModelError(ProviderError):
    """Requested model is unknown or unsupported by the provider."""

    error_token = "E_MODEL"


class RateLimitError(ProviderError):
    """Provider rejected the request for rate limit or quota reasons."""

    error_token = "E_RATE_LIMIT"


class StoreError(RelayError):
    """Database backend unavailable. Callers degrade to file-only state."""

    error_token = "E_STORE"


RECOVERABLE_ERRORS: tuple[type[RelayError], ...] = (
    ModelError,
    RateLimitError,
    ExecutionTimeoutError,
)


def is_recoverable(error: BaseException) -> bool:
    """Whether an unpinned fallback walk may continue after this error."""

    return isinstance(error, RECOVERABLE_ERRORS)
