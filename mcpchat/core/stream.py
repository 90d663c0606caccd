"""
Incremental parser for chat-completions server-sent events.

Feed it raw response bytes as they arrive; it returns the events each
chunk produced. One parser handles exactly one HTTP response.

    data: {"choices":[{"delta":{"content":"Hel"}}]}
    data: {"choices":[{"delta":{"content":"lo"}}]}
    data: [DONE]
"""

import codecs
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from mcpchat.mcp.schema import ToolCall

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"


def _text(value: Any) -> bool:
    return isinstance(value, str) and bool(value)


class ParserState(str, Enum):
    STREAMING = "streaming"
    TOOL_CALLS_PENDING = "tool_calls_pending"
    DONE = "done"


@dataclass
class ToolCallFragment:
    """Partial tool call, merged across deltas that share a stream index."""

    index: int
    id: Optional[str] = None
    type: Optional[str] = None
    name: Optional[str] = None
    arguments: str = ""

    def merge(self, delta: Dict[str, Any]) -> None:
        """Fold one delta in. Fields of the wrong JSON type are ignored."""
        if self.id is None and _text(delta.get("id")):
            self.id = delta["id"]
        if self.type is None and _text(delta.get("type")):
            self.type = delta["type"]
        function = delta.get("function")
        if not isinstance(function, dict):
            if function is not None:
                logger.warning("Ignoring tool call function of type %s", type(function).__name__)
            return
        if self.name is None and _text(function.get("name")):
            self.name = function["name"]
        arguments = function.get("arguments")
        if _text(arguments):
            self.arguments += arguments

    @property
    def is_complete(self) -> bool:
        # some servers omit "type" on every delta
        return bool(self.id and self.name) and (self.type or "function") == "function"

    def to_call(self) -> ToolCall:
        return ToolCall(id=self.id, name=self.name, arguments=self.arguments)


@dataclass(frozen=True)
class TextChunk:
    text: str
    reasoning: bool = False


@dataclass(frozen=True)
class ToolCallsReady:
    calls: List[ToolCall] = field(default_factory=list)


@dataclass(frozen=True)
class StreamDone:
    text: str
    had_tool_calls: bool = False


ParserEvent = Union[TextChunk, ToolCallsReady, StreamDone]


class StreamParser:
    """
    SSE state machine: STREAMING -> TOOL_CALLS_PENDING -> DONE.

    Text deltas are emitted as soon as their line is complete. Tool-call
    fragments are held until ``finish_reason == "tool_calls"`` or the end
    of the stream, then emitted together, sorted by id. Once DONE every
    further input is ignored, so a duplicate ``[DONE]`` is harmless.
    """

    def __init__(self):
        self.state = ParserState.STREAMING
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._text: List[str] = []
        self._fragments: Dict[int, ToolCallFragment] = {}
        self._had_tool_calls = False

    @property
    def text(self) -> str:
        """Assistant text accumulated so far (reasoning excluded)."""
        return "".join(self._text)

    @property
    def fragments(self) -> Dict[int, ToolCallFragment]:
        return dict(self._fragments)

    @property
    def is_done(self) -> bool:
        return self.state == ParserState.DONE

    # ── Input ─────────────────────────────────────────────────────────────

    def feed(self, chunk: bytes) -> List[ParserEvent]:
        """Consume one chunk of the response body."""
        if self.is_done:
            return []

        self._buffer += self._decoder.decode(chunk)
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()

        events: List[ParserEvent] = []
        for line in lines:
            if self.is_done:
                break
            events.extend(self._handle_line(line.rstrip("\r")))
        return events

    def finish(self) -> List[ParserEvent]:
        """Body ended. Flush any partial line and finalize as if ``[DONE]`` arrived."""
        if self.is_done:
            return []

        self._buffer += self._decoder.decode(b"", final=True)
        tail, self._buffer = self._buffer.rstrip("\r"), ""

        events: List[ParserEvent] = []
        if tail:
            events.extend(self._handle_line(tail))
        if not self.is_done:
            events.extend(self._finalize())
        return events

    # ── Lines ─────────────────────────────────────────────────────────────

    def _handle_line(self, line: str) -> List[ParserEvent]:
        if not line.startswith(DATA_PREFIX):
            return []

        payload = line[len(DATA_PREFIX):].strip()
        if not payload:
            return []
        if payload == DONE_SENTINEL:
            return self._finalize()

        try:
            data = json.loads(payload)
        except json.JSONDecodeError:
            logger.warning("Skipping malformed SSE line: %s", payload[:200])
            return []

        choices = data.get("choices") if isinstance(data, dict) else None
        if not choices:
            return []
        if not isinstance(choices, list) or not isinstance(choices[0], dict):
            logger.warning("Skipping SSE line with unexpected choices: %s", payload[:200])
            return []
        choice = choices[0]
        delta = choice.get("delta") or {}
        if not isinstance(delta, dict):
            logger.warning("Skipping SSE line with unexpected delta: %s", payload[:200])
            delta = {}

        events: List[ParserEvent] = []
        tool_calls = delta.get("tool_calls") or []
        if not isinstance(tool_calls, list):
            logger.warning("Ignoring tool_calls of type %s", type(tool_calls).__name__)
            tool_calls = []
        for entry in tool_calls:
            self._merge_fragment(entry)

        reasoning = delta.get("reasoning_content")
        if isinstance(reasoning, str) and reasoning:
            events.append(TextChunk(reasoning, reasoning=True))

        content = delta.get("content")
        if isinstance(content, str) and content:
            self._text.append(content)
            events.append(TextChunk(content))

        if choice.get("finish_reason") == "tool_calls":
            events.extend(self._emit_tool_calls())
        return events

    def _merge_fragment(self, entry: Any) -> None:
        if not isinstance(entry, dict):
            return
        index = entry.get("index")
        if not isinstance(index, int) or isinstance(index, bool):
            logger.warning("Tool call delta without integer index: %s", entry)
            return
        fragment = self._fragments.get(index)
        if fragment is None:
            fragment = self._fragments[index] = ToolCallFragment(index=index)
        fragment.merge(entry)

    # ── Finalization ──────────────────────────────────────────────────────

    def _emit_tool_calls(self) -> List[ParserEvent]:
        if not self._fragments:
            return []

        calls = []
        for fragment in self._fragments.values():
            if fragment.is_complete:
                calls.append(fragment.to_call())
            else:
                logger.warning("Dropping incomplete tool call fragment: %s", fragment)
        calls.sort(key=lambda call: call.id)
        self._fragments.clear()

        if not calls:
            return []
        self._had_tool_calls = True
        self.state = ParserState.TOOL_CALLS_PENDING
        return [ToolCallsReady(calls)]

    def _finalize(self) -> List[ParserEvent]:
        events = self._emit_tool_calls()
        self.state = ParserState.DONE
        events.append(StreamDone(self.text, had_tool_calls=self._had_tool_calls))
        return events
