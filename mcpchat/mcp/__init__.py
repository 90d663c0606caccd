"""
MCP support for mcpchat.

Talks JSON-RPC 2.0 to Model Context Protocol servers, either as long-lived
stdio subprocesses (pooled per server name) or as stateless HTTP
endpoints, and exposes their tools to the model next to a few built-in
local functions.

    Model --tool_calls--> ToolExecutor --> ToolRegistry --> ConnectionPool --> server
"""

from mcpchat.mcp.schema import JSONValue, ToolCall, ToolDefinition, ToolResult
from mcpchat.mcp.transport import (
    HTTPTransport,
    MCPConfigError,
    MCPProcessError,
    MCPRequestError,
    MCPTransportError,
    StdioTransport,
)
from mcpchat.mcp.pool import ConnectionPool
from mcpchat.mcp.cache import ToolCache
from mcpchat.mcp.registry import RegisteredTool, ToolKind, ToolRegistry
from mcpchat.mcp.executor import ToolExecutor

__all__ = [
    "JSONValue",
    "ToolCall",
    "ToolDefinition",
    "ToolResult",
    "HTTPTransport",
    "MCPConfigError",
    "MCPProcessError",
    "MCPRequestError",
    "MCPTransportError",
    "StdioTransport",
    "ConnectionPool",
    "ToolCache",
    "RegisteredTool",
    "ToolKind",
    "ToolRegistry",
    "ToolExecutor",
]
