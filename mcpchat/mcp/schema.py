"""Data models for MCP tool definitions, cached tool lists, calls, results and JSON values."""

from __future__ import annotations

import json
import math
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ToolDefinition(BaseModel):
    """A tool as reported by an MCP server's ``tools/list``."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    description: Optional[str] = None
    input_schema: Optional[Dict[str, Any]] = Field(default=None, alias="inputSchema")


class ServerCache(BaseModel):
    """Cached tool list for one server, as stored in ``cached_mcp_tools.json``."""

    model_config = ConfigDict(populate_by_name=True)

    last_updated: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), alias="lastUpdated"
    )
    tools: List[ToolDefinition] = Field(default_factory=list)


class ToolCall(BaseModel):
    """A finalized tool invocation requested by the model."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    arguments: str = ""  # raw JSON text, may be invalid

    def to_wire(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


class ToolResult(BaseModel):
    """Stringified outcome of executing a ToolCall."""

    model_config = ConfigDict(frozen=True)

    id: str
    tool_name: str
    content: str


# ── JSON values ───────────────────────────────────────────────────────────


class UnsupportedValueError(ValueError):
    """Raised when a Python value has no JSON representation."""


class JSONKind(str, Enum):
    STRING = "string"
    INT = "int"
    DOUBLE = "double"
    BOOL = "bool"
    NULL = "null"
    ARRAY = "array"
    OBJECT = "object"


class JSONValue:
    """
    Tagged JSON value used for JSON-RPC arguments.

    Decoding is permissive and tries int, then double, then string, then
    bool, then array, then object, then null, so heterogeneous servers that
    send e.g. ``1.0`` where an int is expected still round-trip.
    """

    __slots__ = ("kind", "value")

    def __init__(self, kind: JSONKind, value: Any = None):
        self.kind = kind
        self.value = value

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, JSONValue):
            return NotImplemented
        return self.kind == other.kind and self.value == other.value

    def __repr__(self) -> str:
        return f"JSONValue({self.kind.value}, {self.value!r})"

    @classmethod
    def from_python(cls, obj: Any) -> "JSONValue":
        """
        Convert a Python value, as produced by ``json.loads``.

        Raises:
            UnsupportedValueError: For non-finite floats, non-string keys,
                or objects with no JSON counterpart.
        """
        # bool is a subclass of int, so it has to be tested first
        if isinstance(obj, bool):
            return cls(JSONKind.BOOL, obj)
        if isinstance(obj, int):
            return cls(JSONKind.INT, obj)
        if isinstance(obj, float):
            if not math.isfinite(obj):
                raise UnsupportedValueError(f"Non-finite number {obj!r} is not valid JSON")
            if obj.is_integer():
                return cls(JSONKind.INT, int(obj))
            return cls(JSONKind.DOUBLE, obj)
        if isinstance(obj, str):
            return cls(JSONKind.STRING, obj)
        if obj is None:
            return cls(JSONKind.NULL)
        if isinstance(obj, (list, tuple)):
            return cls(JSONKind.ARRAY, [cls.from_python(item) for item in obj])
        if isinstance(obj, dict):
            items: Dict[str, JSONValue] = {}
            for key, value in obj.items():
                if not isinstance(key, str):
                    raise UnsupportedValueError(f"Object key {key!r} is not a string")
                items[key] = cls.from_python(value)
            return cls(JSONKind.OBJECT, items)
        raise UnsupportedValueError(f"Type {type(obj).__name__} is not convertible to JSON")

    @classmethod
    def decode(cls, text: str) -> "JSONValue":
        """Parse JSON text into a JSONValue."""
        return cls.from_python(json.loads(text))

    def to_python(self) -> Any:
        if self.kind == JSONKind.ARRAY:
            return [item.to_python() for item in self.value]
        if self.kind == JSONKind.OBJECT:
            return {key: item.to_python() for key, item in self.value.items()}
        return self.value

    def encode(self) -> str:
        return json.dumps(self.to_python(), ensure_ascii=False)


def parse_arguments(arguments: str) -> Dict[str, JSONValue]:
    """
    Turn a tool call's argument text into a JSON object of JSONValues.

    Empty text means no arguments.

    Raises:
        UnsupportedValueError: If the text is not a JSON object or holds
            values that cannot be represented.
    """
    if not arguments or not arguments.strip():
        return {}
    try:
        value = JSONValue.decode(arguments)
    except json.JSONDecodeError as exc:
        raise UnsupportedValueError(f"Arguments are not valid JSON: {exc}") from exc
    if value.kind != JSONKind.OBJECT:
        raise UnsupportedValueError(f"Arguments must be a JSON object, got {value.kind.value}")
    return value.value
