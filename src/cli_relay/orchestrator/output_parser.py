"""Parsing of newline-delimited JSON events emitted by provider CLIs."""

from __future__ import annotations

import json
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

TRUNCATION_MARKER = "\n\n[OUTPUT TRUNCATED: exceeded 10MB limit]"


@dataclass(slots=True)
class ParsedOutput:
    """Structured view of one process stdout."""

    events: list[dict[str, Any]] = field(default_factory=list)
    raw_lines: list[str] = field(default_factory=list)
    messages: list[str] = field(default_factory=list)


def iter_json_events(output: str) -> Iterator[dict[str, Any] | str]:
    """Yield decoded JSON objects, or the raw line when a line is not a JSON object."""

    for line in output.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        try:
            decoded = json.loads(stripped)
        except ValueError:
            yield stripped
            continue
        if isinstance(decoded, dict):
            yield decoded
        else:
            yield stripped


def parse_output(output: str) -> ParsedOutput:
    parsed = ParsedOutput()
    for item in iter_json_events(output):
        if isinstance(item, str):
            parsed.raw_lines.append(item)
            continue
        parsed.events.append(item)
        parsed.messages.extend(_message_texts(item))
    return parsed


def extract_response_text(output: str) -> str:
    """Concatenate every assistant message in emission order, or return raw output.

    A short acknowledgement event often precedes the substantive answer, so no
    single event is treated as the final one.
    """

    messages = parse_output(output).messages
    if messages:
        return "\n".join(messages)
    return output


def _message_texts(event: dict[str, Any]) -> list[str]:
    event_type = event.get("type")
    if event_type == "item.completed":
        item = event.get("item")
        if isinstance(item, dict) and item.get("type") == "agent_message":
            text = item.get("text")
            if isinstance(text, str) and text:
                return [text]
        return []

    if event_type == "message":
        content = event.get("content")
        if isinstance(content, str) and content:
            return [content]
        if isinstance(content, list):
            texts: list[str] = []
            for part in content:
                if not isinstance(part, dict) or part.get("type") != "text":
                    continue
                text = part.get("text")
                if isinstance(text, str) and text:
                    texts.append(text)
            return texts
        return []

    if event_type == "output_text":
        text = event.get("text")
        if isinstance(text, str) and text:
            return [text]
    return []


def error_event_message(event: dict[str, Any]) -> str | None:
    """Message of an ``error`` or ``turn.failed`` event, if the event is one."""

    if event.get("type") not in {"error", "turn.failed"}:
        return None
    message = event.get("message")
    if isinstance(message, str):
        return message
    error = event.get("error")
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return error["message"]
    return ""


class BoundedOutputCollector:
    """Accumulate decoded output up to ``max_bytes`` and mark truncation once."""

    def __init__(self, max_bytes: int) -> None:
        self._max_bytes = max_bytes
        self._chunks: list[str] = []
        self._byte_count = 0
        self.truncated = False

    def append(self, chunk: str) -> None:
        if self.truncated:
            return
        encoded = chunk.encode("utf-8")
        remaining = self._max_bytes - self._byte_count
        if len(encoded) <= remaining:
            self._chunks.append(chunk)
            self._byte_count += len(encoded)
            return
        head = encoded[: max(0, remaining)].decode("utf-8", errors="ignore")
        self._chunks.append(head)
        self._chunks.append(TRUNCATION_MARKER)
        self._byte_count = self._max_bytes
        self.truncated = True

    def text(self) -> str:
        return "".join(self._chunks)
