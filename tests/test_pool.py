"""Tests for the MCP connection pool."""

import threading
import time
from unittest import mock

import pytest

from mcpchat.mcp.pool import ConnectionPool
from mcpchat.mcp.transport import HTTPTransport, MCPConfigError, MCPProcessError
from mcpchat.validation.config import MCPServerConfig


class FakeConnection:
    """Stands in for StdioTransport; counts lifecycle calls."""

    def __init__(self, server, delay=0.0, fail=False):
        self.server = server
        self.delay = delay
        self.fail = fail
        self.initialize_calls = 0
        self.terminated = False
        self._initialized = False

    @property
    def is_initialized(self):
        return self._initialized and not self.terminated

    def initialize(self):
        self.initialize_calls += 1
        time.sleep(self.delay)
        if self.fail:
            raise MCPProcessError("spawn failed")
        self._initialized = True

    def terminate(self):
        self.terminated = True


@pytest.fixture
def servers():
    return {
        "local": MCPServerConfig(name="local", command="uvx", args=[]),
        "remote": MCPServerConfig(name="remote", type="http", url="https://mcp.test"),
    }


class TestConnectionPool:
    """Tests for ConnectionPool."""

    def test_connection_reused(self, servers):
        created = []

        def factory(server):
            created.append(FakeConnection(server))
            return created[-1]

        pool = ConnectionPool(servers, stdio_factory=factory)

        first = pool.get_connection("local")
        second = pool.get_connection("local")

        assert first is second
        assert len(created) == 1
        assert first.initialize_calls == 1
        assert "local" in pool
        assert len(pool) == 1

    def test_single_initialize_under_concurrency(self, servers):
        """Concurrent callers for one name share a single initialize."""
        created = []
        lock = threading.Lock()

        def factory(server):
            with lock:
                created.append(FakeConnection(server, delay=0.2))
            return created[-1]

        pool = ConnectionPool(servers, stdio_factory=factory)
        results = []

        def worker():
            results.append(pool.get_connection("local"))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=5)

        assert len(created) == 1
        assert len(results) == 8
        assert all(conn is created[0] for conn in results)

    def test_unknown_server(self, servers):
        pool = ConnectionPool(servers, stdio_factory=FakeConnection)

        with pytest.raises(MCPConfigError):
            pool.get_connection("nope")

    def test_remote_not_pooled(self, servers):
        pool = ConnectionPool(servers, stdio_factory=FakeConnection)

        with pytest.raises(MCPConfigError):
            pool.get_connection("remote")

        first = pool.transport_for("remote")
        second = pool.transport_for("remote")
        assert isinstance(first, HTTPTransport)
        assert first is not second
        assert len(pool) == 0

    def test_failed_initialize_terminates_and_propagates(self, servers):
        created = []

        def factory(server):
            created.append(FakeConnection(server, fail=True))
            return created[-1]

        pool = ConnectionPool(servers, stdio_factory=factory)

        with pytest.raises(MCPProcessError):
            pool.get_connection("local")

        assert created[0].terminated
        assert "local" not in pool

    def test_dead_connection_replaced(self, servers):
        created = []

        def factory(server):
            created.append(FakeConnection(server))
            return created[-1]

        pool = ConnectionPool(servers, stdio_factory=factory)
        first = pool.get_connection("local")
        first.terminated = True  # process exited

        second = pool.get_connection("local")

        assert second is not first
        assert len(created) == 2

    def test_shutdown_all(self, servers):
        pool = ConnectionPool(servers, stdio_factory=FakeConnection)
        connection = pool.get_connection("local")

        pool.shutdown_all()

        assert connection.terminated
        assert len(pool) == 0

    def test_update_servers(self, servers):
        pool = ConnectionPool({}, stdio_factory=FakeConnection)

        with pytest.raises(MCPConfigError):
            pool.server("local")

        pool.update_servers(servers)
        assert pool.server("local").command == "uvx"

    def test_real_transport_factory_used_by_default(self, servers):
        with mock.patch("mcpchat.mcp.pool.StdioTransport") as transport_cls:
            pool = ConnectionPool(servers, request_timeout=5)
            transport_cls.return_value.is_initialized = True

            connection = pool.get_connection("local")

        transport_cls.assert_called_once_with(servers["local"], request_timeout=5)
        connection.initialize.assert_called_once_with()
