"""Parser for the agent's --output-format stream-json events.

Parses newline-delimited JSON from the agent's stdout into typed events and
turns tool activity into ToolEvents for real-time display. One malformed
line never aborts the stream: it is reported through on_error and parsing
continues with the next line.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Literal, Optional, Union

logger = logging.getLogger(__name__)

# Tools that modify files, mapped to the input key holding the file path
FILE_MOD_TOOLS: dict[str, str] = {
    "Edit": "file_path",
    "Write": "file_path",
    "MultiEdit": "file_path",
}

# Successful tool output longer than this is truncated; errors never are
PREVIEW_LINES = 20

ERROR_MARKERS = ("error", "failed", "tool_use_error", "not found")


class StreamParseError(ValueError):
    """A stream line that could not be decoded into a JSON object."""

    def __init__(self, line: str, reason: str) -> None:
        super().__init__(f"Malformed stream-json line ({reason}): {line[:200]}")
        self.line = line
        self.reason = reason


# --- Raw event union ---

@dataclass
class ToolUse:
    name: str
    input: dict = field(default_factory=dict)
    id: Optional[str] = None


@dataclass
class ToolResult:
    content: str
    is_error: bool = False
    tool_use_id: Optional[str] = None


@dataclass
class TextMessage:
    text: str


@dataclass
class FinalResult:
    result: str
    is_error: bool = False


@dataclass
class UnknownEvent:
    type: str
    raw: dict = field(default_factory=dict)


StreamEvent = Union[ToolUse, ToolResult, TextMessage, FinalResult, UnknownEvent]


@dataclass
class ToolEvent:
    """Display-ready tool activity from one stream event."""

    kind: Literal["tool_use", "tool_result", "text"]
    tool_name: Optional[str] = None
    payload: dict = field(default_factory=dict)
    is_error: bool = False
    text: str = ""

    def format(self) -> str:
        if self.kind == "tool_use":
            return _format_tool_use(self)
        if self.kind == "tool_result":
            return _format_tool_result(self)
        return self.text


def _content_blocks(raw: dict) -> list:
    message = raw.get("message")
    if not isinstance(message, dict):
        return []
    content = message.get("content")
    return content if isinstance(content, list) else []


def _result_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        texts = [
            c.get("text", "") for c in content
            if isinstance(c, dict) and c.get("type") == "text"
        ]
        if texts:
            return "\n".join(texts)
    return json.dumps(content)


def extract_final_result(obj: Any) -> Optional[str]:
    """Return the agent's final answer if obj is a terminal result event."""
    if not isinstance(obj, dict) or obj.get("type") != "result":
        return None
    result = obj.get("result")
    return result if isinstance(result, str) and result else None


def classify_event(obj: dict) -> list[StreamEvent]:
    """Split one decoded stream object into typed events."""
    event_type = obj.get("type")

    if event_type == "result":
        return [FinalResult(
            result=extract_final_result(obj) or "",
            is_error=obj.get("is_error") is True,
        )]

    if event_type == "content_block_start":
        block = obj.get("content_block")
        if isinstance(block, dict) and block.get("type") == "tool_use" and block.get("name"):
            return [ToolUse(name=block["name"], input=block.get("input") or {}, id=block.get("id"))]
        return [UnknownEvent(type=event_type, raw=obj)]

    events: list[StreamEvent] = []
    if event_type == "assistant":
        for block in _content_blocks(obj):
            if not isinstance(block, dict):
                continue
            if block.get("type") == "tool_use" and block.get("name"):
                events.append(ToolUse(
                    name=block["name"], input=block.get("input") or {}, id=block.get("id"),
                ))
            elif (
                block.get("type") == "text"
                and isinstance(block.get("text"), str)
                and block["text"].strip()
            ):
                events.append(TextMessage(text=block["text"].strip()))
    elif event_type == "user":
        for block in _content_blocks(obj):
            if isinstance(block, dict) and block.get("type") == "tool_result":
                events.append(ToolResult(
                    content=_result_text(block.get("content")),
                    is_error=bool(block.get("is_error", False)),
                    tool_use_id=block.get("tool_use_id"),
                ))

    return events or [UnknownEvent(type=str(event_type or "unknown"), raw=obj)]


def to_tool_event(event: StreamEvent) -> Optional[ToolEvent]:
    if isinstance(event, ToolUse):
        payload = {
            key: event.input[key]
            for key in ("file_path", "command", "pattern", "path",
                        "old_string", "new_string", "replace_all", "offset", "limit")
            if key in event.input
        }
        if event.name == "Write" and isinstance(event.input.get("content"), str):
            content = event.input["content"]
            payload["content_bytes"] = len(content.encode("utf-8"))
            payload["content_lines"] = content.count("\n") + 1
        return ToolEvent(kind="tool_use", tool_name=event.name, payload=payload)

    if isinstance(event, ToolResult):
        lowered = event.content.lower()
        is_error = event.is_error or any(m in lowered for m in ERROR_MARKERS)
        return ToolEvent(kind="tool_result", is_error=is_error, text=event.content)

    if isinstance(event, TextMessage):
        return ToolEvent(kind="text", text=event.text)

    return None


# --- Formatting ---

def _block(label: str, value: str) -> list[str]:
    lines = value.split("\n")
    if len(lines) == 1 and len(value) < 80:
        return [f"   {label}: {value}"]
    return [f"   {label}:"] + [f"     {line}" for line in lines]


def _format_tool_use(event: ToolEvent) -> str:
    p = event.payload
    parts = [f"[tool] {event.tool_name}"]
    if "file_path" in p:
        parts.append(f"   File: {p['file_path']}")
    elif "path" in p:
        parts.append(f"   Path: {p['path']}")
    if "command" in p:
        # Commands are shown in full
        parts.extend(_block("Command", str(p["command"])))
    if "pattern" in p:
        parts.append(f"   Pattern: {p['pattern']}")

    if event.tool_name == "Edit":
        if p.get("old_string"):
            parts.extend(_block("Replacing", str(p["old_string"])))
        if p.get("new_string"):
            parts.extend(_block("With", str(p["new_string"])))
        if p.get("replace_all"):
            parts.append("   Mode: replace all occurrences")
    elif event.tool_name == "Read" and ("offset" in p or "limit" in p):
        start = p.get("offset") or 0
        end = start + p["limit"] if p.get("limit") else "end"
        parts.append(f"   Range: lines {start}-{end}")
    elif event.tool_name == "Write" and "content_bytes" in p:
        parts.append(
            f"   Content size: {p['content_bytes'] / 1024:.1f} KB ({p['content_lines']} lines)"
        )
    return "\n".join(parts)


def _format_tool_result(event: ToolEvent) -> str:
    if event.is_error:
        return f"[error] {event.text}"

    lines = event.text.strip().split("\n")
    if len(lines) <= 1:
        return f"[ok] {lines[0] if lines else ''}".rstrip()
    shown = lines[:PREVIEW_LINES]
    parts = [f"[ok] output ({len(lines)} lines):"] + [f"     {line}" for line in shown]
    if len(lines) > PREVIEW_LINES:
        parts.append(f"   ... ({len(lines) - PREVIEW_LINES} more lines)")
    return "\n".join(parts)


class StreamJsonParser:
    """Incremental stream-json parser with per-line fault isolation."""

    def __init__(
        self,
        on_tool_event: Optional[Callable[[ToolEvent], None]] = None,
        on_error: Optional[Callable[[StreamParseError], None]] = None,
    ) -> None:
        self.on_tool_event = on_tool_event
        self.on_error = on_error
        self.final_result: Optional[str] = None
        self.tools_used: set[str] = set()
        self.files_modified: list[str] = []
        self._buffer = ""

    def feed(self, chunk: str) -> None:
        """Consume a chunk of text; complete lines are parsed immediately."""
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        for line in lines:
            self.parse_line(line)

    def flush(self) -> None:
        """Parse a trailing line that had no newline terminator."""
        if self._buffer:
            line, self._buffer = self._buffer, ""
            self.parse_line(line)

    def attach(self, stream: Iterable[str]) -> None:
        """Parse every line of a line-buffered text stream until EOF."""
        for line in stream:
            self.feed(line)
        self.flush()

    def parse_line(self, line: str) -> list[StreamEvent]:
        stripped = line.strip()
        if not stripped:
            return []

        try:
            obj = json.loads(stripped)
        except json.JSONDecodeError as e:
            self._report_error(StreamParseError(stripped, str(e)))
            return []
        if not isinstance(obj, dict):
            self._report_error(StreamParseError(stripped, "not a JSON object"))
            return []

        events = classify_event(obj)
        for event in events:
            self._handle(event)
        return events

    def _handle(self, event: StreamEvent) -> None:
        if isinstance(event, FinalResult):
            if event.result:
                self.final_result = event.result
            return

        if isinstance(event, ToolUse):
            self.tools_used.add(event.name)
            path_key = FILE_MOD_TOOLS.get(event.name)
            if path_key:
                file_path = event.input.get(path_key)
                if isinstance(file_path, str) and file_path not in self.files_modified:
                    self.files_modified.append(file_path)

        tool_event = to_tool_event(event)
        if tool_event is not None and self.on_tool_event is not None:
            try:
                self.on_tool_event(tool_event)
            except Exception as e:
                logger.warning("Tool event callback failed: %s", e)

    def _report_error(self, error: StreamParseError) -> None:
        logger.debug("%s", error)
        if self.on_error is not None:
            try:
                self.on_error(error)
            except Exception as e:
                logger.warning("Parse error callback failed: %s", e)
