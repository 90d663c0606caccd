"""
mcpchat - Streaming chat client for OpenAI-compatible APIs and MCP tool servers.

Streams answers from any ``/chat/completions`` endpoint and lets the model
call tools along the way: built-in local functions, or tools exposed by
Model Context Protocol servers over stdio or HTTP.

Architecture:
- Orchestrator drives an exchange: stream, detect tool calls, execute, repeat
- StreamParser reassembles SSE deltas and fragmented tool calls
- ConnectionPool keeps one initialized subprocess per stdio MCP server
- ToolCache keeps fetched tool lists on disk across restarts
"""

__version__ = "1.0.0"
__license__ = "Apache-2.0"

from mcpchat.core.context import AppContext
from mcpchat.core.orchestrator import Orchestrator
from mcpchat.validation.config import Config, ConfigError

__all__ = [
    "AppContext",
    "Orchestrator",
    "Config",
    "ConfigError",
    "__version__",
]
