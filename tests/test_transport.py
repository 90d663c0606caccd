"""Tests for the stdio and HTTP MCP transports."""

import json
import threading
from concurrent.futures import Future

import httpx
import pytest

from mcpchat.mcp.cache import ToolCache
from mcpchat.mcp.pool import ConnectionPool
from mcpchat.mcp.registry import ToolRegistry
from mcpchat.mcp.schema import JSONValue
from mcpchat.mcp.transport import (
    CLIENT_INFO,
    PROTOCOL_VERSION,
    HTTPTransport,
    MCPConfigError,
    MCPProcessError,
    MCPRequestError,
    MCPTransportError,
    StdioTransport,
)
from mcpchat.validation.config import MCPServerConfig


class TestStdioLineDispatch:
    """Response matching, without a subprocess."""

    @pytest.fixture
    def transport(self):
        return StdioTransport(MCPServerConfig(name="fake", command="fake", args=[]))

    def test_error_fails_only_matching_request(self, transport):
        """An error for id 7 leaves a concurrently pending id 8 untouched."""
        seven, eight = Future(), Future()
        transport._pending[7] = seven
        transport._pending[8] = eight

        transport._handle_line(json.dumps({"jsonrpc": "2.0", "id": 7, "error": {"message": "boom"}}))

        with pytest.raises(MCPRequestError, match="JSON-RPC Error: boom"):
            seven.result(timeout=0)
        assert not eight.done()
        assert 8 in transport._pending

        transport._handle_line(json.dumps({"jsonrpc": "2.0", "id": 8, "result": {"ok": True}}))
        assert eight.result(timeout=0) == {"ok": True}

    def test_null_error_is_success(self, transport):
        """Servers that always send an ``error`` key set it to null on success."""
        pending = Future()
        transport._pending[7] = pending

        transport._handle_line(json.dumps({"jsonrpc": "2.0", "id": 7, "result": {"ok": True}, "error": None}))

        assert pending.result(timeout=0) == {"ok": True}

    def test_result_for_unknown_id_ignored(self, transport):
        pending = Future()
        transport._pending[1] = pending

        transport._handle_line(json.dumps({"jsonrpc": "2.0", "id": 99, "result": {}}))

        assert not pending.done()

    @pytest.mark.parametrize("line", ["not json", "[1, 2]", '"text"', '{"id": "7", "result": {}}'])
    def test_garbage_lines_ignored(self, transport, line):
        pending = Future()
        transport._pending[7] = pending

        transport._handle_line(line)

        assert not pending.done()

    def test_output_split_across_chunks(self, transport):
        """Lines are reassembled from arbitrary chunk boundaries."""
        pending = Future()
        transport._pending[3] = pending
        data = json.dumps({"jsonrpc": "2.0", "id": 3, "result": {"text": "héllo"}}).encode() + b"\n"

        for i in range(0, len(data), 5):
            transport._process_output(data[i:i + 5])

        assert pending.result(timeout=0) == {"text": "héllo"}

    def test_terminate_fails_pending(self, transport):
        pending = Future()
        transport._pending[1] = pending

        transport.terminate()
        transport.terminate()

        with pytest.raises(MCPTransportError, match="Connection terminated"):
            pending.result(timeout=0)

    def test_send_when_not_open(self, transport):
        with pytest.raises(MCPTransportError):
            transport.send("tools/list")

    def test_call_tool_requires_initialize(self, transport):
        with pytest.raises(MCPTransportError, match="not initialized"):
            transport.call_tool("x", {})


class TestStdioConfig:
    """Server definitions that cannot be launched."""

    def test_missing_command(self):
        transport = StdioTransport(MCPServerConfig(name="bad", args=[]))

        with pytest.raises(MCPConfigError):
            transport.initialize()

    def test_missing_args(self):
        transport = StdioTransport(MCPServerConfig(name="bad", command="uvx"))

        with pytest.raises(MCPConfigError):
            transport.initialize()

    def test_spawn_failure(self):
        transport = StdioTransport(
            MCPServerConfig(name="bad", command="/nonexistent/mcp-server-binary", args=[])
        )

        with pytest.raises(MCPProcessError):
            transport.initialize()


class TestStdioFakeServer:
    """End-to-end against the scripted fake server."""

    @pytest.fixture
    def transport(self, fake_server_config):
        transport = StdioTransport(fake_server_config(), request_timeout=10)
        transport.initialize()
        yield transport
        transport.terminate()

    def test_handshake(self, transport):
        assert transport.is_initialized
        assert transport.is_running

    def test_initialize_is_idempotent(self, transport):
        pid = transport._process.pid

        assert transport.initialize() == {}
        assert transport._process.pid == pid

    def test_list_tools(self, transport):
        assert transport.list_tools() == [{"name": "video_to_text"}]

    def test_call_tool_returns_result_json(self, transport):
        raw = transport.call_tool("echo", {"n": JSONValue.from_python(1), "s": "x"})

        result = json.loads(raw)
        assert json.loads(result["content"][0]["text"]) == {"n": 1, "s": "x"}

    def test_call_tool_error(self, transport):
        with pytest.raises(MCPRequestError, match="tool exploded"):
            transport.call_tool("fail", {})

    def test_ids_increase(self, transport):
        before = transport._next_id
        transport.list_tools()
        transport.list_tools()

        assert transport._next_id == before + 2
        assert before > StdioTransport.FIRST_REQUEST_ID

    def test_concurrent_calls(self, transport):
        """Callers on several threads each receive their own response."""
        results = {}

        def run(n):
            raw = transport.call_tool("echo", {"n": n})
            results[n] = json.loads(json.loads(raw)["content"][0]["text"])

        threads = [threading.Thread(target=run, args=(n,)) for n in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert results == {n: {"n": n} for n in range(5)}

    def test_terminate(self, transport):
        transport.terminate()

        assert not transport.is_running
        assert not transport.is_initialized
        with pytest.raises(MCPTransportError):
            transport.list_tools()


class TestToolListScenario:
    """tools/list after handshake updates the cache."""

    def test_video_to_text_cached(self, fake_server_config, temp_dir):
        server = fake_server_config(name="video2text")
        cache = ToolCache.in_dir(temp_dir)
        pool = ConnectionPool({"video2text": server}, request_timeout=10)
        registry = ToolRegistry(cache=cache, pool=pool)
        try:
            tools = registry.refresh("video2text")
        finally:
            pool.shutdown_all()

        assert [t.name for t in tools] == ["video_to_text"]
        assert [t.name for t in cache.get_tools("video2text")] == ["video_to_text"]
        assert cache.get_last_updated("video2text") is not None

        reloaded = ToolCache.in_dir(temp_dir)
        assert [t.name for t in reloaded.get_tools("video2text")] == ["video_to_text"]
        assert "video_to_text" in registry


def mock_http(handler):
    return httpx.MockTransport(handler)


class TestHTTPTransport:
    """Tests for the stateless HTTP transport."""

    @pytest.fixture
    def server(self):
        return MCPServerConfig(name="github", type="http", url="https://mcp.test/rpc")

    def test_requires_url(self):
        with pytest.raises(MCPConfigError):
            HTTPTransport(MCPServerConfig(name="x", type="http"))

    def test_call_tool(self, server, monkeypatch):
        for var in ("GITHUB_TOKEN", "GITHUB_PERSONAL_ACCESS_TOKEN", "GH_TOKEN"):
            monkeypatch.delenv(var, raising=False)
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            seen["headers"] = request.headers
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": seen["body"]["id"],
                                             "result": {"content": [{"type": "text", "text": "hi"}]}})

        transport = HTTPTransport(server, http_transport=mock_http(handler))
        raw = transport.call_tool("search", {"q": JSONValue.from_python("mcp")})

        assert json.loads(raw) == {"content": [{"type": "text", "text": "hi"}]}
        assert seen["body"]["method"] == "tools/call"
        assert seen["body"]["params"] == {"name": "search", "arguments": {"q": "mcp"}}
        assert 1 <= seen["body"]["id"] <= 10000
        assert seen["headers"]["content-type"] == "application/json"
        assert "authorization" not in seen["headers"]

    def test_token_from_env(self, server, monkeypatch):
        monkeypatch.delenv("GITHUB_TOKEN", raising=False)
        monkeypatch.setenv("GITHUB_PERSONAL_ACCESS_TOKEN", "pat")
        monkeypatch.setenv("GH_TOKEN", "gh")

        assert HTTPTransport(server)._headers()["Authorization"] == "Bearer pat"

    def test_api_key_preferred_over_env(self, monkeypatch):
        monkeypatch.setenv("GITHUB_TOKEN", "env")
        server = MCPServerConfig(name="g", type="http", url="https://x.test", api_key="cfg")

        assert HTTPTransport(server)._headers()["Authorization"] == "Bearer cfg"

    def test_configured_authorization_kept(self, monkeypatch):
        monkeypatch.setenv("GITHUB_TOKEN", "env")
        server = MCPServerConfig(
            name="g", type="http", url="https://x.test",
            headers={"Authorization": "token abc", "X-Extra": "1"},
        )

        headers = HTTPTransport(server)._headers()
        assert headers["Authorization"] == "token abc"
        assert headers["X-Extra"] == "1"

    def test_non_200_status(self, server):
        transport = HTTPTransport(
            server, http_transport=mock_http(lambda request: httpx.Response(401, text="bad token"))
        )

        with pytest.raises(MCPTransportError, match="HTTP 401: bad token"):
            transport.call_tool("search", {})

    def test_error_envelope(self, server):
        transport = HTTPTransport(server, http_transport=mock_http(
            lambda request: httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "error": {"message": "nope"}})
        ))

        with pytest.raises(MCPRequestError, match="nope"):
            transport.call_tool("search", {})

    def test_non_json_body_returned_raw(self, server):
        transport = HTTPTransport(
            server, http_transport=mock_http(lambda request: httpx.Response(200, text="plain text"))
        )

        assert transport.call_tool("search", {}) == "plain text"

    def test_list_tools(self, server):
        transport = HTTPTransport(server, http_transport=mock_http(
            lambda request: httpx.Response(200, json={"id": 1, "result": {"tools": [{"name": "search"}]}})
        ))

        assert transport.list_tools() == [{"name": "search"}]


def test_client_info():
    assert PROTOCOL_VERSION == "2024-11-05"
    assert CLIENT_INFO["name"] == "mcpchat"
