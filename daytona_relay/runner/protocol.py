"""Incremental decoding of the worker's line-oriented output protocol.

The worker prints plain progress lines plus marker-prefixed JSON lines on
stdout, and free-text diagnostics on stderr. Parsers keep the incomplete
trailing line between ``feed`` calls, so the events produced never depend on
how the byte stream was chunked.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

from daytona_relay.errors import FrameParseError

__all__ = [
    "CLAUDE_MESSAGE_MARKER",
    "TOOL_RESULT_MARKER",
    "TOOL_USE_MARKER",
    "ClaudeMessage",
    "ErrorEvent",
    "Event",
    "LineParser",
    "Progress",
    "SessionResult",
    "StderrParser",
    "StdoutParser",
    "ToolResult",
    "ToolUse",
    "extract_preview_url",
    "extract_sandbox_id",
]

logger = logging.getLogger(__name__)

CLAUDE_MESSAGE_MARKER = "__CLAUDE_MESSAGE__"
TOOL_USE_MARKER = "__TOOL_USE__"
TOOL_RESULT_MARKER = "__TOOL_RESULT__"
MARKER_DELIMITER = "__"
INTERNAL_LOG_TOKENS = ("[Claude]:", "[Tool]:")
ERROR_TOKENS = ("Error", "Failed")

# Tied to the worker's exact wording; a rephrased announcement is silently missed.
SANDBOX_PATTERN = re.compile(r"Sandbox created: ([a-f0-9-]+)")
PREVIEW_URL_PATTERN = re.compile(r"Preview URL: (https://\S+)")

_LINE_TERMINATOR = b"\n"


@dataclass(slots=True, frozen=True)
class ClaudeMessage:
    content: Any


@dataclass(slots=True, frozen=True)
class ToolUse:
    name: Any
    input: Any


@dataclass(slots=True, frozen=True)
class ToolResult:
    """Parsed from the stream but never forwarded to the client."""

    payload: Any


@dataclass(slots=True, frozen=True)
class Progress:
    text: str


@dataclass(slots=True, frozen=True)
class ErrorEvent:
    message: str


Event = ClaudeMessage | ToolUse | ToolResult | Progress | ErrorEvent


@dataclass(slots=True)
class SessionResult:
    """Facts announced by the worker; later announcements overwrite earlier ones."""

    sandbox_id: str | None = None
    preview_url: str | None = None
    warning: str | None = None

    def absorb(self, text: str) -> None:
        sandbox_id = extract_sandbox_id(text)
        if sandbox_id is not None:
            self.sandbox_id = sandbox_id
        preview_url = extract_preview_url(text)
        if preview_url is not None:
            self.preview_url = preview_url


def extract_sandbox_id(text: str) -> str | None:
    match = SANDBOX_PATTERN.search(text)
    return match.group(1) if match else None


def extract_preview_url(text: str) -> str | None:
    match = PREVIEW_URL_PATTERN.search(text)
    return match.group(1) if match else None


class LineParser:
    """Base for parsers that classify complete lines of a byte stream.

    ``feed`` updates the buffer immediately; classification of the returned
    lines happens lazily as the result is iterated.
    """

    def __init__(self) -> None:
        self._buffer = b""

    @property
    def pending(self) -> bytes:
        return self._buffer

    def feed(self, chunk: bytes) -> Iterator[Event]:
        *lines, self._buffer = (self._buffer + chunk).split(_LINE_TERMINATOR)
        return self._classify_all(lines)

    def flush(self) -> Iterator[Event]:
        """Classify a trailing line that never received a terminator."""

        tail, self._buffer = self._buffer, b""
        return self._classify_all([tail] if tail else [])

    def classify(self, line: str) -> Event | None:
        raise NotImplementedError

    def _classify_all(self, lines: list[bytes]) -> Iterator[Event]:
        for raw in lines:
            event = self.classify(raw.decode("utf-8", errors="replace"))
            if event is not None:
                yield event


class StdoutParser(LineParser):
    """Classify stdout lines into events and update the session result."""

    def __init__(self, result: SessionResult | None = None) -> None:
        super().__init__()
        self.result = result if result is not None else SessionResult()

    def classify(self, line: str) -> Event | None:
        if CLAUDE_MESSAGE_MARKER in line:
            return _optional(_claude_message, line, CLAUDE_MESSAGE_MARKER)
        if TOOL_USE_MARKER in line:
            return _optional(_tool_use, line, TOOL_USE_MARKER)
        if TOOL_RESULT_MARKER in line:
            return None
        text = line.strip()
        if not text or MARKER_DELIMITER in text:
            return None
        if any(token in text for token in INTERNAL_LOG_TOKENS):
            return None
        self.result.absorb(text)
        return Progress(text=text)


class StderrParser(LineParser):
    """Surface stderr lines that look like failures; log everything else."""

    def classify(self, line: str) -> ErrorEvent | None:
        text = line.strip()
        if not text:
            return None
        logger.warning("worker.stderr: %s", text)
        if any(token in text for token in ERROR_TOKENS):
            return ErrorEvent(message=text)
        return None


def _payload(line: str, marker: str) -> dict[str, Any]:
    start = line.index(marker) + len(marker)
    try:
        payload = json.loads(line[start:].strip())
    except json.JSONDecodeError as exc:
        raise FrameParseError(f"invalid {marker} payload: {exc}") from exc
    if not isinstance(payload, dict):
        raise FrameParseError(f"{marker} payload is not an object")
    return payload


def _claude_message(line: str, marker: str) -> ClaudeMessage:
    return ClaudeMessage(content=_payload(line, marker).get("content"))


def _tool_use(line: str, marker: str) -> ToolUse:
    payload = _payload(line, marker)
    return ToolUse(name=payload.get("name"), input=payload.get("input"))


def _optional(factory, line: str, marker: str) -> Event | None:
    try:
        return factory(line, marker)
    except FrameParseError:
        logger.debug("Dropping malformed marker line", exc_info=True)
        return None
