"""MCP server communication over stdio subprocesses and HTTP POST."""

from __future__ import annotations

import codecs
import json
import logging
import os
import random
import subprocess
import threading
import time
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Dict, List, Optional

import httpx

from mcpchat import __version__
from mcpchat.mcp.schema import JSONValue
from mcpchat.validation.config import MCPServerConfig

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "mcpchat", "version": __version__}
TOKEN_ENV_VARS = ("GITHUB_TOKEN", "GITHUB_PERSONAL_ACCESS_TOKEN", "GH_TOKEN")


class MCPTransportError(Exception):
    """Raised when MCP transport communication fails."""


class MCPConfigError(MCPTransportError):
    """Raised when a server definition cannot be used to connect."""


class MCPProcessError(MCPTransportError):
    """Raised when the server subprocess cannot be started."""


class MCPRequestError(MCPTransportError):
    """Raised when the server answers a request with a JSON-RPC error."""


def _plain_arguments(arguments: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not arguments:
        return {}
    return {
        key: value.to_python() if isinstance(value, JSONValue) else value
        for key, value in arguments.items()
    }


def _error_message(error: Any) -> str:
    if isinstance(error, dict):
        return str(error.get("message", error))
    return str(error)


class StdioTransport:
    """
    Persistent JSON-RPC connection to an MCP server over stdin/stdout.

    One request per line is written to the child's stdin. A reader thread
    splits stdout into lines and resolves the pending request whose id
    matches each response, so several callers may wait at once.
    """

    FIRST_REQUEST_ID = 10000
    SETTLE_DELAY = 0.1

    def __init__(self, server: MCPServerConfig, request_timeout: Optional[float] = 120.0):
        self.server = server
        self.request_timeout = request_timeout
        self._process: Optional[subprocess.Popen] = None
        self._reader: Optional[threading.Thread] = None
        self._stderr_reader: Optional[threading.Thread] = None
        self._next_id = self.FIRST_REQUEST_ID
        self._pending: Dict[int, Future] = {}
        self._buffer = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._initialized = False
        self._closed = False

    @property
    def name(self) -> str:
        return self.server.name

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.poll() is None

    @property
    def is_initialized(self) -> bool:
        return self._initialized and self.is_running

    # ── Lifecycle ─────────────────────────────────────────────────────────

    def initialize(self) -> Dict[str, Any]:
        """Spawn the server and perform the MCP initialize handshake."""
        if self._initialized:
            return {}

        if not self.server.command or self.server.args is None:
            raise MCPConfigError(f"Local server '{self.name}' missing command or args")

        logger.info("Initializing connection to '%s'", self.name)
        self._spawn()

        result = self.send("initialize", {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": CLIENT_INFO,
        })
        logger.debug("Initialize response from '%s': %s", self.name, result)

        self.notify("notifications/initialized")
        # servers may handle the notification asynchronously
        time.sleep(self.SETTLE_DELAY)

        self._initialized = True
        logger.info("Connection to '%s' initialized", self.name)
        return result

    def _spawn(self) -> None:
        merged_env = {**os.environ, **self.server.env}
        try:
            self._process = subprocess.Popen(
                [self.server.command] + list(self.server.args or []),
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=merged_env,
            )
        except OSError as exc:
            raise MCPProcessError(
                f"Failed to start MCP server '{self.name}' ({self.server.command}): {exc}"
            ) from exc

        self._closed = False
        self._reader = threading.Thread(
            target=self._read_stdout, name=f"mcp-{self.name}-stdout", daemon=True
        )
        self._reader.start()
        self._stderr_reader = threading.Thread(
            target=self._read_stderr, name=f"mcp-{self.name}-stderr", daemon=True
        )
        self._stderr_reader.start()

    def terminate(self) -> None:
        """Stop the server and fail every request still waiting. Idempotent."""
        with self._lock:
            if self._closed and self._process is None:
                return
            self._closed = True
            process, self._process = self._process, None
            self._initialized = False

        if process is not None:
            logger.info("Terminating connection to '%s'", self.name)
            if process.poll() is None:
                process.terminate()
                try:
                    process.wait(timeout=5)
                except subprocess.TimeoutExpired:
                    process.kill()
                    process.wait()
            for stream in (process.stdin, process.stdout, process.stderr):
                if stream is not None:
                    try:
                        stream.close()
                    except OSError:
                        pass

        self._fail_pending(MCPTransportError("Connection terminated"))

    # ── JSON-RPC ──────────────────────────────────────────────────────────

    def send(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Send a JSON-RPC request and block until its response arrives."""
        future: Future = Future()
        with self._lock:
            if self._closed or self._process is None:
                raise MCPTransportError(f"Connection to '{self.name}' is not open")
            request_id = self._next_id
            self._next_id += 1
            self._pending[request_id] = future

        request: Dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            request["params"] = params

        try:
            self._write(request)
        except MCPTransportError:
            with self._lock:
                self._pending.pop(request_id, None)
            raise

        try:
            return future.result(timeout=self.request_timeout)
        except FutureTimeoutError:
            with self._lock:
                self._pending.pop(request_id, None)
            raise MCPTransportError(
                f"Timed out after {self.request_timeout}s waiting for '{method}' "
                f"(id {request_id}) from '{self.name}'"
            )

    def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        """Send a JSON-RPC notification; no response is expected."""
        notification: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            notification["params"] = params
        self._write(notification)

    def _write(self, message: Dict[str, Any]) -> None:
        process = self._process
        if process is None or process.stdin is None:
            raise MCPTransportError(f"Connection to '{self.name}' is not open")
        line = json.dumps(message) + "\n"
        with self._write_lock:
            try:
                process.stdin.write(line.encode("utf-8"))
                process.stdin.flush()
            except (BrokenPipeError, OSError, ValueError) as exc:
                raise MCPTransportError(f"MCP transport error: {exc}") from exc

    # ── MCP Protocol ──────────────────────────────────────────────────────

    def list_tools(self) -> List[Dict[str, Any]]:
        """Fetch the tool list from the MCP server."""
        result = self.send("tools/list", {})
        if isinstance(result, dict):
            return result.get("tools", [])
        return []

    def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> str:
        """Call a tool and return its ``result`` serialized as JSON text."""
        if not self._initialized:
            raise MCPTransportError("Connection not initialized")

        logger.info("Calling tool '%s' on '%s'", name, self.name)
        result = self.send("tools/call", {"name": name, "arguments": _plain_arguments(arguments)})
        return json.dumps(result, ensure_ascii=False)

    # ── Output handling ───────────────────────────────────────────────────

    def _read_stdout(self) -> None:
        process = self._process
        if process is None or process.stdout is None:
            return
        fd = process.stdout.fileno()
        while True:
            try:
                chunk = os.read(fd, 65536)
            except OSError:
                break
            if not chunk:
                break
            self._process_output(chunk)

        logger.debug("stdout of '%s' reached EOF", self.name)
        self._fail_pending(MCPTransportError(f"MCP server '{self.name}' closed connection"))

    def _read_stderr(self) -> None:
        process = self._process
        if process is None or process.stderr is None:
            return
        for raw in iter(process.stderr.readline, b""):
            logger.debug("[%s stderr] %s", self.name, raw.decode("utf-8", errors="replace").rstrip())

    def _process_output(self, chunk: bytes) -> None:
        with self._lock:
            self._buffer += self._decoder.decode(chunk)
            lines = self._buffer.split("\n")
            self._buffer = lines.pop()

        for line in lines:
            if line.strip():
                self._handle_line(line)

    def _handle_line(self, line: str) -> None:
        try:
            message = json.loads(line)
        except json.JSONDecodeError:
            logger.warning("Could not parse JSON line from '%s': %s", self.name, line[:100])
            return
        if not isinstance(message, dict):
            logger.warning("Ignoring non-object line from '%s': %s", self.name, line[:100])
            return

        request_id = message.get("id")
        if message.get("error") is not None:
            text = _error_message(message["error"])
            logger.error("JSON-RPC error from '%s': %s", self.name, text)
            future = self._take_pending(request_id)
            if future is not None:
                future.set_exception(MCPRequestError(f"JSON-RPC Error: {text}"))
            return

        if "result" in message:
            future = self._take_pending(request_id)
            if future is not None:
                future.set_result(message["result"])
            else:
                logger.debug("Response for unknown id %r from '%s'", request_id, self.name)

    def _take_pending(self, request_id: Any) -> Optional[Future]:
        if not isinstance(request_id, int) or isinstance(request_id, bool):
            return None
        with self._lock:
            return self._pending.pop(request_id, None)

    def _fail_pending(self, error: Exception) -> None:
        with self._lock:
            pending = list(self._pending.values())
            self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_exception(error)


class HTTPTransport:
    """
    Stateless JSON-RPC over HTTP POST.

    Every call is a standalone request, so there is nothing to initialize
    or pool.
    """

    def __init__(
        self,
        server: MCPServerConfig,
        timeout: float = 120.0,
        http_transport: Optional[httpx.BaseTransport] = None,
    ):
        if not server.url:
            raise MCPConfigError(f"Remote server '{server.name}' has no url")
        self.server = server
        self.timeout = timeout
        self._http_transport = http_transport

    @property
    def name(self) -> str:
        return self.server.name

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        headers.update(self.server.headers)
        if not any(key.lower() == "authorization" for key in headers):
            token = self.server.api_key or next(
                (os.environ[var] for var in TOKEN_ENV_VARS if os.environ.get(var)), None
            )
            if token:
                headers["Authorization"] = f"Bearer {token}"
        return headers

    def send(self, method: str, params: Optional[Dict[str, Any]] = None) -> str:
        """POST one request and return the ``result`` as JSON text."""
        body = {
            "jsonrpc": "2.0",
            "id": random.randint(1, 10000),
            "method": method,
            "params": params or {},
        }
        try:
            with httpx.Client(timeout=self.timeout, transport=self._http_transport) as client:
                response = client.post(self.server.url, headers=self._headers(), json=body)
        except httpx.HTTPError as exc:
            raise MCPTransportError(f"Failed to call remote MCP server '{self.name}': {exc}") from exc

        if response.status_code != 200:
            raise MCPTransportError(f"HTTP {response.status_code}: {response.text}")

        try:
            payload = response.json()
        except ValueError:
            return response.text

        if isinstance(payload, dict):
            if payload.get("error") is not None:
                raise MCPRequestError(f"JSON-RPC Error: {_error_message(payload['error'])}")
            if "result" in payload:
                return json.dumps(payload["result"], ensure_ascii=False)
        return response.text

    def initialize(self) -> Dict[str, Any]:
        return {}

    def list_tools(self) -> List[Dict[str, Any]]:
        raw = self.send("tools/list")
        try:
            result = json.loads(raw)
        except ValueError as exc:
            raise MCPTransportError(f"Invalid tools/list response from '{self.name}': {raw[:100]}") from exc
        if isinstance(result, dict):
            return result.get("tools", [])
        return []

    def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> str:
        logger.info("Calling remote tool '%s' on '%s'", name, self.name)
        return self.send("tools/call", {"name": name, "arguments": _plain_arguments(arguments)})

    def terminate(self) -> None:
        return None
