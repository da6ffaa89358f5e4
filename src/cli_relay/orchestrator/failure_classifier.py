"""Deterministic classification of provider output for the fallback policy."""

from __future__ import annotations

import re
from dataclasses import dataclass

from cli_relay.orchestrator.errors import ModelError, ProviderError, RateLimitError
from cli_relay.orchestrator.models import FailureClass
from cli_relay.orchestrator.output_parser import error_event_message, iter_json_events

_MODEL_ERROR_PATTERNS: tuple[str, ...] = (
    r"model.?not.?found",
    r"model is not supported",
    r"unsupported model",
    r"unknown model",
    r"invalid model",
    r"model\b.+\bdoes not exist",
    r"model\b.+\bnot.+available",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    r"\b429\b",
    r"rate.?limit",
    r"too many requests",
    r"quota.?exceeded",
    r"resource.?exhausted",
)


@dataclass(slots=True)
class ProviderFailureClassification:
    """Recoverable failure found in provider output."""

    failure_class: FailureClass
    matched_rule: str
    matched_pattern: str
    message: str

    def to_error(self, *, provider: str, model: str) -> ProviderError:
        if self.failure_class is FailureClass.MODEL_ERROR:
            return ModelError(f"{provider} model error for {model}: {self.message}")
        return RateLimitError(f"{provider} rate limited on {model}: {self.message}")


def classify_provider_output(
    *,
    stdout: str,
    stderr: str = "",
) -> ProviderFailureClassification | None:
    """Scan error events, raw stdout lines and stderr for a recoverable signature.

    Model errors take priority over rate limits when both are present.
    """

    candidates = _candidate_lines(stdout=stdout, stderr=stderr)
    for failure_class, rule, patterns in (
        (FailureClass.MODEL_ERROR, "model_error", _MODEL_ERROR_PATTERNS),
        (FailureClass.RATE_LIMIT, "rate_limit", _RATE_LIMIT_PATTERNS),
    ):
        for line in candidates:
            pattern = _first_match(line, patterns)
            if pattern is not None:
                return ProviderFailureClassification(
                    failure_class=failure_class,
                    matched_rule=rule,
                    matched_pattern=pattern,
                    message=line.strip(),
                )
    return None


def _candidate_lines(*, stdout: str, stderr: str) -> list[str]:
    lines: list[str] = []
    for item in iter_json_events(stdout):
        if isinstance(item, str):
            lines.append(item)
            continue
        message = error_event_message(item)
        if message:
            lines.append(message)
    lines.extend(line for line in stderr.splitlines() if line.strip())
    return lines


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if re.search(pattern, haystack, re.IGNORECASE):
            return pattern
    return None
