"""Tool executor: runs a ToolCall against a local function or MCP server and returns text."""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from mcpchat.mcp.pool import ConnectionPool
from mcpchat.mcp.registry import RegisteredTool, ToolKind, ToolRegistry
from mcpchat.mcp.schema import ToolCall, ToolResult, UnsupportedValueError, parse_arguments
from mcpchat.validation.config import MCPServerConfig

logger = logging.getLogger(__name__)

EMPTY_RESULT = "[Empty or non-text response from tool]"
RESOURCE_PREVIEW_CHARS = 50


def flatten_content(items: List[Any]) -> str:
    """
    Join MCP content items into one string.

    Text is kept verbatim; binary and resource items become bracketed
    placeholders since conversation messages only carry text.
    """
    parts: List[str] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        kind = item.get("type")
        if kind == "text":
            text = item.get("text")
            if text:
                parts.append(str(text))
        elif kind == "image":
            parts.append(f"[Image data of type {item.get('mimeType', 'unknown')} received]")
        elif kind == "audio":
            parts.append(f"[Audio data of type {item.get('mimeType', 'unknown')} received]")
        elif kind == "resource":
            resource = item.get("resource") or {}
            uri = resource.get("uri", "unknown")
            mime = resource.get("mimeType", "unknown")
            text = str(resource.get("text") or "")
            parts.append(
                f"[Resource at {uri} of type {mime} with text: {text[:RESOURCE_PREVIEW_CHARS]}...]"
            )
    return "\n".join(parts)


def render_result(tool_name: str, raw: str) -> str:
    """
    Turn a ``tools/call`` result (JSON text) into conversation text.

    Results that are not a ``{"content": [...]}`` object are passed through.
    """
    try:
        result = json.loads(raw)
    except ValueError:
        return raw or EMPTY_RESULT

    if not isinstance(result, dict):
        return raw or EMPTY_RESULT

    content = result.get("content")
    text = flatten_content(content) if isinstance(content, list) else ""

    if result.get("isError"):
        return f"Error from MCP tool '{tool_name}': {text or 'Unknown error from tool'}"
    if content is None:
        # non-standard servers sometimes reply with a bare object
        return raw if result else EMPTY_RESULT
    return text or EMPTY_RESULT


class ToolExecutor:
    """
    Executes tool calls requested by the model.

    ``execute`` never raises: every failure becomes the text of the
    returned ToolResult so the conversation loop always has something to
    send back to the model.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        pool: Optional[ConnectionPool] = None,
        servers: Optional[Dict[str, MCPServerConfig]] = None,
    ):
        self._registry = registry
        self._pool = pool
        self._servers = servers if servers is not None else {}

    def update_servers(self, servers: Dict[str, MCPServerConfig]) -> None:
        self._servers = servers

    # ── Execution ─────────────────────────────────────────────────────────

    def execute(self, call: ToolCall) -> ToolResult:
        """Run one tool call and return its stringified result."""
        t0 = time.perf_counter()
        tool = self._registry.get(call.name)
        if tool is None:
            logger.warning("Model requested unknown tool '%s'", call.name)
            content = f"Error: Tool '{call.name}' not found or not registered."
        else:
            try:
                if tool.kind == ToolKind.LOCAL_FUNCTION:
                    content = self._run_local(tool, call)
                else:
                    content = self._run_mcp(tool, call)
            except Exception as exc:
                logger.error("Tool '%s' failed: %s", call.name, exc)
                content = f"Error executing tool '{call.name}': {exc}"

        elapsed_ms = int((time.perf_counter() - t0) * 1000)
        logger.info("Tool '%s' (%s) finished in %dms", call.name, call.id, elapsed_ms)
        return ToolResult(id=call.id, tool_name=call.name, content=content)

    def _run_local(self, tool: RegisteredTool, call: ToolCall) -> str:
        if tool.args_model is None or tool.handler is None:
            return f"Error: Tool '{call.name}' has no local implementation."
        try:
            args = tool.args_model.model_validate_json(call.arguments or "{}")
        except ValidationError as exc:
            logger.warning("Invalid arguments for '%s': %s", call.name, call.arguments)
            return f"Error: Invalid arguments for tool '{call.name}': {exc.errors()[0]['msg']}"
        return str(tool.handler(args))

    def _run_mcp(self, tool: RegisteredTool, call: ToolCall) -> str:
        server = self._servers.get(tool.server_name or "")
        if server is None:
            return f"Error: MCP server '{tool.server_name}' for tool '{call.name}' is not configured."
        if not server.is_active:
            return f"Error: MCP server '{server.name}' is not active."
        if self._pool is None:
            return f"Error: No connection available for MCP server '{server.name}'."

        try:
            arguments = parse_arguments(call.arguments)
        except UnsupportedValueError as exc:
            return f"Error: Could not convert arguments for tool '{call.name}': {exc}"

        transport = self._pool.transport_for(server.name)
        raw = transport.call_tool(call.name, arguments)
        return render_result(call.name, raw)
