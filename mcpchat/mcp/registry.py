"""Tool registry: local functions and MCP server tools, advertised to the model."""

from __future__ import annotations

import json
import logging
import threading
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Type

from pydantic import BaseModel

from mcpchat.mcp.cache import ToolCache
from mcpchat.mcp.pool import ConnectionPool
from mcpchat.mcp.schema import ToolDefinition
from mcpchat.mcp.transport import MCPConfigError
from mcpchat.validation.config import MCPServerConfig

logger = logging.getLogger(__name__)

EMPTY_PARAMETERS: Dict[str, Any] = {"type": "object", "properties": {}}


class ToolKind(str, Enum):
    LOCAL_FUNCTION = "local_function"
    MCP_SERVICE = "mcp_service"


class RegisteredTool:
    """One callable tool, either a local Python function or a tool on an MCP server."""

    def __init__(
        self,
        name: str,
        kind: ToolKind,
        description: str,
        parameters: Optional[Dict[str, Any]] = None,
        server_name: Optional[str] = None,
        args_model: Optional[Type[BaseModel]] = None,
        handler: Optional[Callable[[Any], str]] = None,
    ):
        self.name = name
        self.kind = kind
        self.description = description
        self.parameters = parameters or dict(EMPTY_PARAMETERS)
        self.server_name = server_name
        self.args_model = args_model
        self.handler = handler

    def __repr__(self) -> str:
        where = f" @ {self.server_name}" if self.server_name else ""
        return f"RegisteredTool({self.name!r}, {self.kind.value}{where})"

    def to_openai(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


class ToolRegistry:
    """
    Maps tool names to their definitions.

    Populated from built-in local functions and from the tool names each
    active MCP server declares. Schemas for MCP tools come from the tool
    cache, which ``refresh()`` keeps current.
    """

    def __init__(self, cache: Optional[ToolCache] = None, pool: Optional[ConnectionPool] = None):
        self._cache = cache
        self._pool = pool
        self._tools: Dict[str, RegisteredTool] = {}
        self._lock = threading.Lock()

    # ── Registration ──────────────────────────────────────────────────────

    def register(self, tool: RegisteredTool) -> None:
        with self._lock:
            self._tools[tool.name] = tool
        logger.debug("Registered tool %r", tool)

    def register_function(
        self,
        name: str,
        description: str,
        args_model: Type[BaseModel],
        handler: Callable[[Any], str],
    ) -> RegisteredTool:
        """Register a local function whose arguments validate against *args_model*."""
        tool = RegisteredTool(
            name=name,
            kind=ToolKind.LOCAL_FUNCTION,
            description=description,
            parameters=args_model.model_json_schema(),
            args_model=args_model,
            handler=handler,
        )
        self.register(tool)
        return tool

    def register_mcp_servers(self, servers: Dict[str, MCPServerConfig]) -> int:
        """Register the declared tools of every active server. Returns the count."""
        count = 0
        for name, server in servers.items():
            if server.is_active:
                count += self.register_server(server)
        return count

    def register_server(self, server: MCPServerConfig) -> int:
        """
        Register one entry per tool name the server declares.

        A server that declares no names contributes whatever the cache holds.
        """
        self.unregister_server(server.name)

        cached = {tool.name: tool for tool in (self._cache.get_tools(server.name) if self._cache else None) or []}
        names = list(server.tools) or list(cached)

        for tool_name in names:
            definition = cached.get(tool_name)
            description = (
                (definition.description if definition else None)
                or server.description
                or f"MCP service tool: {tool_name} provided by {server.name}."
            )
            parameters = definition.input_schema if definition and definition.input_schema else None
            self.register(RegisteredTool(
                name=tool_name,
                kind=ToolKind.MCP_SERVICE,
                description=description,
                parameters=parameters,
                server_name=server.name,
            ))
        return len(names)

    def unregister_server(self, server_name: str) -> None:
        with self._lock:
            for name in [n for n, t in self._tools.items() if t.server_name == server_name]:
                del self._tools[name]

    # ── Refresh from MCP servers ──────────────────────────────────────────

    def refresh(self, server_name: str) -> List[ToolDefinition]:
        """
        Fetch ``tools/list`` from a server, update the cache, and re-register.

        Raises MCPTransportError (or a subclass) when the server cannot be
        reached or is not configured.
        """
        if self._pool is None:
            raise MCPConfigError("No connection pool available to refresh tools")

        server = self._pool.server(server_name)
        logger.info("Refreshing tools for %s", server.name)
        transport = self._pool.transport_for(server.name)
        raw_tools = transport.list_tools()

        tools = [ToolDefinition.model_validate(raw) for raw in raw_tools if isinstance(raw, dict)]
        if self._cache is not None:
            self._cache.update(server.name, tools)
        logger.info("Fetched %d tools for %s", len(tools), server.name)

        if server.is_active:
            self.register_server(server)
        return tools

    # ── Lookup ────────────────────────────────────────────────────────────

    def get(self, name: str) -> Optional[RegisteredTool]:
        with self._lock:
            return self._tools.get(name)

    def list_tools(self) -> List[RegisteredTool]:
        with self._lock:
            return sorted(self._tools.values(), key=lambda t: t.name)

    def tools_for_server(self, server_name: str) -> List[RegisteredTool]:
        return [t for t in self.list_tools() if t.server_name == server_name]

    def __contains__(self, name: str) -> bool:
        return self.get(name) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._tools)

    # ── Prompt Building ───────────────────────────────────────────────────

    def describe_tools_for_model(self) -> List[Dict[str, Any]]:
        """OpenAI ``tools`` array for the request body; empty when nothing is registered."""
        return [tool.to_openai() for tool in self.list_tools()]

    def describe_tools_json(self) -> str:
        """Same as ``describe_tools_for_model`` as pretty-printed JSON text."""
        tools = self.describe_tools_for_model()
        if not tools:
            return "[]"
        return json.dumps(tools, indent=2, ensure_ascii=False)
