"""Parser for the Claude CLI's ``--output-format stream-json`` output.

The CLI writes one JSON record per line. Chunks read from the pseudo-terminal
arrive split at arbitrary offsets, so the parser carries the unterminated
tail of each chunk over to the next call. Anything that does not decode is
surfaced as raw content rather than dropped.

Record shapes understood::

    {"type": "system", "subtype": "init", ...}
    {"type": "assistant", "message": {"content": [{"type": "text", ...}]}}
    {"type": "user", "message": {"content": [{"type": "tool_result", ...}]}}
    {"type": "result", "result": "...", "usage": {...}}

plus the lower-level API streaming primitives (``content_block_delta``,
``content_block_start``, ``message_start``, ``message_delta``,
``message_stop``, ``error``, ``ping``).
"""

import json
import logging
from dataclasses import asdict, dataclass

logger = logging.getLogger(__name__)

CONTENT = "content"
TOOL_USE = "tool_use"
TOOL_RESULT = "tool_result"
MESSAGE_START = "message_start"
MESSAGE_COMPLETE = "message_complete"
ERROR = "error"
SYSTEM = "system"
UNKNOWN = "unknown"

EVENT_TYPES = (
    CONTENT,
    TOOL_USE,
    TOOL_RESULT,
    MESSAGE_START,
    MESSAGE_COMPLETE,
    ERROR,
    SYSTEM,
    UNKNOWN,
)


@dataclass
class StreamEvent:
    type: str
    content: str | None = None
    partial: bool = False
    id: str | None = None
    name: str | None = None
    input: dict | None = None
    is_error: bool = False
    role: str | None = None
    raw: object = None

    def to_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}


class StreamParser:
    """Incremental line-oriented decoder. Never raises on bad input."""

    def __init__(self):
        self._buffer = ""

    def parse(self, chunk: str) -> list[StreamEvent]:
        """Feed a chunk of output and return the events for every complete line."""
        self._buffer += chunk
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()

        events: list[StreamEvent] = []
        for line in lines:
            events.extend(self._parse_line(line))
        return events

    def flush(self) -> list[StreamEvent]:
        """Return events for the unterminated tail and clear it.

        Call this when the process exits, or the last line is lost.
        """
        tail, self._buffer = self._buffer, ""
        if not tail.strip():
            return []
        return self._parse_line(tail, partial=True)

    def reset(self):
        self._buffer = ""

    @property
    def pending(self) -> str:
        return self._buffer

    def _parse_line(self, line: str, partial: bool = False) -> list[StreamEvent]:
        # The PTY turns "\n" into "\r\n".
        line = line.rstrip("\r")
        stripped = line.strip()
        if not stripped:
            return []
        try:
            data = json.loads(stripped)
        except (ValueError, RecursionError):
            return [StreamEvent(type=CONTENT, content=line, partial=True)]

        try:
            events = _decode_record(data)
        except (AttributeError, TypeError, KeyError):
            logger.debug("Unrecognized stream record shape: %.200s", stripped)
            events = [StreamEvent(type=UNKNOWN, raw=data)]
        if partial:
            for event in events:
                event.partial = True
        return events


# ── Record decoding ─────────────────────────────────────────────────────────


def _decode_record(data) -> list[StreamEvent]:
    if not isinstance(data, dict):
        return [StreamEvent(type=UNKNOWN, raw=data)]

    kind = data.get("type")

    if kind == "system":
        return [StreamEvent(type=SYSTEM, content=_text(data.get("subtype")), raw=data)]

    if kind == "assistant":
        events = []
        for block in _content_blocks(data):
            if block.get("type") == "text":
                events.append(
                    StreamEvent(type=CONTENT, content=_text(block.get("text"), ""), role="assistant")
                )
            elif block.get("type") == "tool_use":
                events.append(
                    StreamEvent(
                        type=TOOL_USE,
                        id=_text(block.get("id")),
                        name=_text(block.get("name")),
                        input=_mapping(block.get("input")),
                        role="assistant",
                    )
                )
        return events or [StreamEvent(type=UNKNOWN, role="assistant", raw=data)]

    if kind == "user":
        events = [
            _tool_result(block, role="user")
            for block in _content_blocks(data)
            if block.get("type") == "tool_result"
        ]
        return events or [StreamEvent(type=UNKNOWN, role="user", raw=data)]

    if kind == "result":
        return [
            StreamEvent(
                type=MESSAGE_COMPLETE,
                content=_text(data.get("result")),
                is_error=bool(data.get("is_error")),
                raw=data,
            )
        ]

    if kind == "content_block_delta":
        delta = data.get("delta") or {}
        if delta.get("type") == "text_delta":
            return [StreamEvent(type=CONTENT, content=_text(delta.get("text"), ""), partial=True)]
        if delta.get("type") == "input_json_delta":
            return [StreamEvent(type=TOOL_USE, content=_text(delta.get("partial_json"), ""), partial=True)]

    if kind == "content_block_start":
        block = data.get("content_block") or {}
        if block.get("type") == "tool_use":
            return [StreamEvent(type=TOOL_USE, id=_text(block.get("id")), name=_text(block.get("name")), input={})]

    if kind == "message_start":
        return [StreamEvent(type=MESSAGE_START)]

    if kind == "message_stop":
        return [StreamEvent(type=MESSAGE_COMPLETE)]

    if kind == "message_delta":
        stop_reason = (data.get("delta") or {}).get("stop_reason")
        if stop_reason:
            return [StreamEvent(type=MESSAGE_COMPLETE, content=_text(stop_reason))]

    if kind == "error":
        error = data.get("error") or {}
        message = _text(error.get("message")) if isinstance(error, dict) else str(error)
        return [StreamEvent(type=ERROR, content=message or "Unknown error", raw=data)]

    if kind == "tool_result":
        return [_tool_result(data)]

    # ping, and anything we don't know yet
    return [StreamEvent(type=UNKNOWN, raw=data)]


def _content_blocks(data: dict) -> list[dict]:
    message = data.get("message") or {}
    content = message.get("content")
    if not isinstance(content, list):
        return []
    return [block for block in content if isinstance(block, dict)]


def _tool_result(block: dict, role: str | None = None) -> StreamEvent:
    content = block.get("content")
    if isinstance(content, list):
        # Tool results may be a list of text blocks
        content = "\n".join(
            _text(part.get("text"), "") for part in content if isinstance(part, dict)
        )
    elif content is not None and not isinstance(content, str):
        content = json.dumps(content)
    return StreamEvent(
        type=TOOL_RESULT,
        id=_text(block.get("tool_use_id")),
        content=content,
        is_error=bool(block.get("is_error")),
        role=role,
    )


def _text(value, default: str | None = None) -> str | None:
    """Coerce a record field to a string."""
    if value is None:
        return default
    if isinstance(value, str):
        return value
    return json.dumps(value)


def _mapping(value) -> dict:
    return value if isinstance(value, dict) else {}
