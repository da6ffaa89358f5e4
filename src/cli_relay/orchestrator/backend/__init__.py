"""Provider process backends."""

from cli_relay.orchestrator.backend.base import (
    ProcessHandle,
    ProviderBackend,
    ProviderRunRequest,
    ProviderRunResult,
)
from cli_relay.orchestrator.backend.cli_backend import CliProcessHandle, CliProviderBackend

__all__ = [
    "CliProcessHandle",
    "CliProviderBackend",
    "ProcessHandle",
    "ProviderBackend",
    "ProviderRunRequest",
    "ProviderRunResult",
]
