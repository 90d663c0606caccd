"""
mcpchat Application Context - Wires the engine together.

Owns:
- the connection pool (stdio MCP subprocesses)
- the tool cache and tool registry
- the tool executor and orchestrator

Built once at startup; ``close()`` shuts every MCP subprocess down.
"""

import logging
from pathlib import Path
from typing import Callable, Dict, List, Optional

from mcpchat.core.orchestrator import Orchestrator
from mcpchat.core.prompts import PromptLibrary
from mcpchat.core.transcript import Transcript
from mcpchat.mcp.builtins import register_builtins
from mcpchat.mcp.cache import ToolCache
from mcpchat.mcp.executor import ToolExecutor
from mcpchat.mcp.pool import ConnectionPool
from mcpchat.mcp.registry import ToolRegistry
from mcpchat.mcp.schema import ToolDefinition
from mcpchat.providers.base import ChatProvider
from mcpchat.validation.config import Config

logger = logging.getLogger(__name__)


class AppContext:
    """Explicitly constructed application state with a start/close lifecycle."""

    def __init__(
        self,
        config: Config,
        provider_factory: Optional[Callable[[str], ChatProvider]] = None,
        pool: Optional[ConnectionPool] = None,
    ):
        self.config = config
        config_dir = Path(config.config_dir)
        servers = config.get_mcp_servers()

        self.pool = pool or ConnectionPool(
            servers, request_timeout=config.merged.agent.mcp_request_timeout
        )
        self.cache = ToolCache.in_dir(config_dir)
        self.registry = ToolRegistry(cache=self.cache, pool=self.pool)
        register_builtins(self.registry)
        self.registry.register_mcp_servers(servers)
        self.executor = ToolExecutor(self.registry, self.pool, servers)

        self.prompts = PromptLibrary(config_dir / "prompts")
        self.transcript = Transcript.in_dir(config_dir)
        self.orchestrator = Orchestrator(
            config,
            self.registry,
            self.executor,
            self.pool,
            prompts=self.prompts,
            transcript=self.transcript,
            provider_factory=provider_factory,
        )
        self._closed = False
        logger.debug(
            "Context ready: %d tools, %d MCP servers", len(self.registry), len(servers)
        )

    def __enter__(self) -> "AppContext":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ── MCP server management ─────────────────────────────────────────────

    def reload_servers(self) -> None:
        """Propagate changed server definitions (e.g. toggled ``is_active``)."""
        servers = self.config.get_mcp_servers()
        self.pool.update_servers(servers)
        self.executor.update_servers(servers)
        for name, server in servers.items():
            if server.is_active:
                self.registry.register_server(server)
            else:
                self.registry.unregister_server(name)

    def set_server_active(self, server_name: str, active: bool) -> None:
        self.config.set_server_active(server_name, active)
        self.reload_servers()

    def refresh_tools(self, server_name: Optional[str] = None) -> Dict[str, List[ToolDefinition]]:
        """
        Refetch ``tools/list`` from one server, or from every active server.

        Errors from individual servers are logged and skipped when refreshing all.
        """
        if server_name is not None:
            return {server_name: self.registry.refresh(server_name)}

        refreshed: Dict[str, List[ToolDefinition]] = {}
        for name in self.config.get_active_mcp_servers():
            try:
                refreshed[name] = self.registry.refresh(name)
            except Exception as e:
                logger.error("Failed to refresh tools for %s: %s", name, e)
        return refreshed

    # ── Lifecycle ─────────────────────────────────────────────────────────

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.orchestrator.close()
        self.pool.shutdown_all()
