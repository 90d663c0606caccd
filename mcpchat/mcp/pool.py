"""Connection pool: one initialized stdio transport per MCP server name."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, Optional, Union

from mcpchat.mcp.transport import HTTPTransport, MCPConfigError, StdioTransport
from mcpchat.validation.config import MCPServerConfig

logger = logging.getLogger(__name__)

Transport = Union[StdioTransport, HTTPTransport]


class ConnectionPool:
    """
    Lazily connects to stdio MCP servers and reuses the connection.

    Remote (HTTP) servers are stateless and bypass pooling: each call to
    ``transport_for`` returns a fresh ``HTTPTransport``.
    """

    def __init__(
        self,
        servers: Dict[str, MCPServerConfig],
        request_timeout: Optional[float] = 120.0,
        stdio_factory: Optional[Callable[[MCPServerConfig], StdioTransport]] = None,
        http_factory: Optional[Callable[[MCPServerConfig], HTTPTransport]] = None,
    ):
        self._servers = servers
        self._request_timeout = request_timeout
        self._stdio_factory = stdio_factory or (
            lambda server: StdioTransport(server, request_timeout=self._request_timeout)
        )
        self._http_factory = http_factory or (
            lambda server: HTTPTransport(server, timeout=self._request_timeout or 120.0)
        )
        self._connections: Dict[str, StdioTransport] = {}
        self._init_locks: Dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    def update_servers(self, servers: Dict[str, MCPServerConfig]) -> None:
        """Swap in reloaded server definitions; live connections are kept."""
        with self._lock:
            self._servers = servers

    def server(self, server_name: str) -> MCPServerConfig:
        server = self._servers.get(server_name)
        if server is None:
            raise MCPConfigError(f"MCP server '{server_name}' is not configured")
        return server

    def get_connection(self, server_name: str) -> StdioTransport:
        """
        Return the pooled connection for a stdio server, initializing it once.

        Concurrent callers for a name that is still connecting wait for the
        first caller's initialize instead of spawning a second process.
        """
        server = self.server(server_name)
        if server.is_remote:
            raise MCPConfigError(f"MCP server '{server_name}' is remote and is not pooled")

        with self._lock:
            connection = self._connections.get(server_name)
            if connection is not None and connection.is_initialized:
                logger.debug("Reusing existing connection for '%s'", server_name)
                return connection
            init_lock = self._init_locks.setdefault(server_name, threading.Lock())

        with init_lock:
            with self._lock:
                connection = self._connections.get(server_name)
                if connection is not None:
                    if connection.is_initialized:
                        return connection
                    # the process died since it was pooled
                    del self._connections[server_name]
            if connection is not None:
                connection.terminate()

            logger.info("Creating new connection for '%s'", server_name)
            connection = self._stdio_factory(server)
            try:
                connection.initialize()
            except Exception:
                connection.terminate()
                raise

            with self._lock:
                self._connections[server_name] = connection
            return connection

    def transport_for(self, server_name: str) -> Transport:
        """Transport to use for one call against *server_name*."""
        server = self.server(server_name)
        if server.is_remote:
            return self._http_factory(server)
        return self.get_connection(server_name)

    def __contains__(self, server_name: str) -> bool:
        with self._lock:
            return server_name in self._connections

    def __len__(self) -> int:
        with self._lock:
            return len(self._connections)

    def shutdown_all(self) -> None:
        """Terminate every pooled connection. Called once at exit."""
        with self._lock:
            connections = list(self._connections.items())
            self._connections.clear()

        logger.info("Shutting down %d active connections", len(connections))
        for name, connection in connections:
            connection.terminate()
            logger.debug("Terminated connection to '%s'", name)
