"""
Conversation orchestrator.

Drives one exchange from the user's message to the final assistant
answer, looping through tool calls in between:

    user -> [LLM stream -> tool calls -> execute -> LLM stream]* -> answer

Models whose name matches a configured MCP server are answered by that
server's chat tool instead, in a single non-streaming call.

Events are yielded from ``start_exchange``; UIs running on another thread
can use ``run_exchange`` with a callback instead.
"""

import logging
import queue
import socket
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Callable, Iterator, List, Optional, Union

import httpx

from mcpchat.core.events import (
    Cancelled,
    Completed,
    Event,
    ExchangeState,
    Failed,
    TextDelta,
    ToolCallsDetected,
)
from mcpchat.core.messages import ContentPart, Conversation, Message
from mcpchat.core.prompts import PromptLibrary
from mcpchat.core.stream import StreamDone, StreamParser, TextChunk, ToolCallsReady
from mcpchat.core.transcript import Transcript
from mcpchat.mcp.executor import ToolExecutor, render_result
from mcpchat.mcp.pool import ConnectionPool
from mcpchat.mcp.registry import ToolRegistry
from mcpchat.mcp.schema import ToolCall
from mcpchat.providers.base import ChatProvider, ProviderError, ProviderFactory
from mcpchat.validation.config import Config, ConfigError, MCPServerConfig

logger = logging.getLogger(__name__)

CHAT_TOOL_NAMES = ("chat", "generate_text")
CANCEL_POLL_INTERVAL = 0.1
MCP_CHAT_WORKERS = 8

TOOL_PREAMBLE = (
    "You can call the tools listed below when they help answer the user. "
    "Request a tool through the function-calling interface; its result will "
    "be returned to you in a tool message. Only use tools when needed.\n\n"
    "Available tools:\n"
)

UserInput = Union[str, List[ContentPart]]


@dataclass
class Exchange:
    """Bookkeeping for one user-initiated exchange."""

    model: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: ExchangeState = ExchangeState.IDLE
    tool_rounds: int = 0
    cancel_event: threading.Event = field(default_factory=threading.Event)
    conversation: Conversation = field(default_factory=Conversation)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


def pick_chat_tool(server: MCPServerConfig) -> Optional[str]:
    """The tool that answers chat messages for an MCP-routed model."""
    for name in server.tools:
        if name in CHAT_TOOL_NAMES:
            return name
    return server.tools[0] if server.tools else None


_END_OF_BODY = object()


def _pump_body(response: httpx.Response, chunks: "queue.Queue", stop: threading.Event) -> None:
    """Copy body chunks onto *chunks*; read errors are handed over, not raised here."""
    try:
        for chunk in response.iter_bytes():
            if stop.is_set():
                return
            chunks.put(chunk)
    except Exception as e:
        chunks.put(e)
    finally:
        chunks.put(_END_OF_BODY)


def abort_response(response: Optional[httpx.Response]) -> None:
    """
    Wake a thread blocked reading *response*.

    Closing an httpx response from another thread does not interrupt a
    pending ``recv``, so the socket is shut down directly when the
    transport exposes it. The owning thread still closes the response.
    """
    if response is None:
        return
    stream = response.extensions.get("network_stream")
    sock = stream.get_extra_info("socket") if stream is not None else None
    if sock is None:
        return
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError as e:
        logger.debug("Socket already closed: %s", e)


class Orchestrator:
    """
    Runs exchanges against LLMs and MCP servers, one conversation each.

    Only one exchange is current at a time; starting a new one makes the
    previous one stale and its generator stops yielding.
    """

    def __init__(
        self,
        config: Config,
        registry: ToolRegistry,
        executor: ToolExecutor,
        pool: ConnectionPool,
        prompts: Optional[PromptLibrary] = None,
        transcript: Optional[Transcript] = None,
        provider_factory: Optional[Callable[[str], ChatProvider]] = None,
    ):
        self.config = config
        self.registry = registry
        self.executor = executor
        self.pool = pool
        self.prompts = prompts
        self.transcript = transcript
        self._provider_factory = provider_factory or (
            lambda model: ProviderFactory.create(model, self.config)
        )

        self.prompt_name: Optional[str] = config.merged.agent.prompt
        self._model: Optional[str] = None

        self._lock = threading.Lock()
        self._current: Optional[Exchange] = None
        self._response: Optional[httpx.Response] = None
        self._partial_text = ""
        self._mcp_workers = ThreadPoolExecutor(
            max_workers=MCP_CHAT_WORKERS, thread_name_prefix="mcp-chat"
        )
        self._mcp_running = 0

    # ── Settings ──────────────────────────────────────────────────────────

    @property
    def model(self) -> str:
        return self._model or self.config.get_default_model()

    @model.setter
    def model(self, value: str) -> None:
        self._model = value

    @property
    def max_tool_rounds(self) -> int:
        return self.config.merged.agent.max_tool_rounds

    @property
    def current_exchange(self) -> Optional[Exchange]:
        with self._lock:
            return self._current

    @property
    def conversation(self) -> Conversation:
        """Messages of the current exchange; empty before the first one."""
        with self._lock:
            exchange = self._current
        return exchange.conversation if exchange is not None else Conversation()

    @property
    def partial_text(self) -> str:
        """Assistant text streamed so far in the current turn."""
        with self._lock:
            return self._partial_text

    def is_mcp_model(self, model: str) -> bool:
        return model in self.config.get_mcp_servers()

    # ── Exchange lifecycle ────────────────────────────────────────────────

    def start_exchange(
        self,
        user_input: UserInput,
        model: Optional[str] = None,
        prompt: Optional[str] = None,
    ) -> Iterator[Event]:
        """
        Begin a new exchange and return the iterator of its events.

        Each exchange starts a fresh conversation holding the system and
        user messages; turns only run while the returned iterator is
        consumed. A superseded exchange keeps writing to its own
        conversation until it notices the cancellation. The last event is
        always exactly one of Completed, Failed or Cancelled.
        """
        exchange = Exchange(model=model or self.model)
        if prompt is not None:
            self.prompt_name = prompt

        system_message = self._build_system_message(exchange.model)
        exchange.conversation.reset(system_message)
        user_message = Message.user(user_input)
        exchange.conversation.append(user_message)

        with self._lock:
            previous = self._current
            response = self._response
            self._current = exchange
            self._partial_text = ""
        if previous is not None and not previous.state.is_terminal:
            logger.debug("Exchange %s superseded by %s", previous.id, exchange.id)
            previous.cancel_event.set()
            abort_response(response)

        if system_message is not None:
            self._persist(system_message)
        self._persist(user_message)

        return self._guarded(exchange)

    def run_exchange(
        self,
        user_input: UserInput,
        sink: Callable[[Event], None],
        model: Optional[str] = None,
        prompt: Optional[str] = None,
    ) -> None:
        """Run an exchange to the end, passing each event to *sink*."""
        for event in self.start_exchange(user_input, model=model, prompt=prompt):
            sink(event)

    def cancel(self) -> None:
        """Cancel the current exchange. Safe to call from any thread."""
        with self._lock:
            exchange = self._current
            response = self._response
        if exchange is None or exchange.state.is_terminal:
            return

        logger.info("Cancelling exchange %s", exchange.id)
        exchange.cancel_event.set()
        abort_response(response)

    def close(self) -> None:
        self.cancel()
        self._mcp_workers.shutdown(wait=False)

    def _is_current(self, exchange: Exchange) -> bool:
        with self._lock:
            return self._current is exchange

    def _guarded(self, exchange: Exchange) -> Iterator[Event]:
        for event in self._drive(exchange):
            if not self._is_current(exchange):
                logger.debug("Dropping events of stale exchange %s", exchange.id)
                return
            yield event
            if isinstance(event, (Completed, Failed, Cancelled)):
                return

    def _drive(self, exchange: Exchange) -> Iterator[Event]:
        exchange.state = ExchangeState.AWAITING_FIRST_RESPONSE
        try:
            yield from self.run_turn(exchange)
        except ConfigError as e:
            exchange.state = ExchangeState.FAILED
            yield Failed(exchange.id, str(e))
        except Exception as e:
            logger.exception("Exchange %s failed unexpectedly", exchange.id)
            exchange.state = ExchangeState.FAILED
            yield Failed(exchange.id, f"Internal Error: {e}")

    # ── Turns ─────────────────────────────────────────────────────────────

    def run_turn(self, exchange: Exchange) -> Iterator[Event]:
        """Route the exchange by model name and run it to a terminal event."""
        servers = self.config.get_mcp_servers()
        if exchange.model in servers:
            yield from self._run_mcp_turn(exchange, servers[exchange.model])
        else:
            yield from self._run_llm_turns(exchange)

    def _run_llm_turns(self, exchange: Exchange) -> Iterator[Event]:
        provider = self._provider_factory(exchange.model)
        tools = self.registry.describe_tools_for_model() or None
        try:
            while True:
                calls: List[ToolCall] = []
                done: Optional[StreamDone] = None

                for event in self._stream_once(exchange, provider, tools):
                    if isinstance(event, TextDelta):
                        yield event
                    elif isinstance(event, ToolCallsReady):
                        calls.extend(event.calls)
                        with self._lock:
                            self._partial_text = ""
                        yield ToolCallsDetected(exchange.id, list(event.calls))
                    elif isinstance(event, StreamDone):
                        done = event
                    else:
                        # terminal event from the stream itself
                        yield event
                        return

                if exchange.cancelled:
                    exchange.state = ExchangeState.CANCELLED
                    yield Cancelled(exchange.id)
                    return

                if not calls:
                    yield self._complete(exchange, done.text if done else "")
                    return

                if exchange.tool_rounds >= self.max_tool_rounds:
                    exchange.state = ExchangeState.FAILED
                    yield Failed(
                        exchange.id,
                        f"Stopped after {self.max_tool_rounds} rounds of tool calls",
                    )
                    return
                exchange.tool_rounds += 1

                cancelled = self._execute_tools(exchange, calls)
                if cancelled:
                    exchange.state = ExchangeState.CANCELLED
                    yield Cancelled(exchange.id)
                    return
                exchange.state = ExchangeState.AWAITING_FOLLOWUP_RESPONSE
        finally:
            provider.close()

    def _stream_once(self, exchange: Exchange, provider: ChatProvider, tools):
        """
        One streaming request. Yields TextDelta, ToolCallsReady and StreamDone,
        or a single Failed when the request does not finish. Ends early and
        silently once the exchange is cancelled.

        The body is read on a helper thread so a stalled server cannot
        hold this generator past a cancellation.
        """
        parser = StreamParser()
        response = None
        try:
            with provider.stream(exchange.conversation.to_wire(), tools) as response:
                with self._lock:
                    if self._current is exchange:
                        self._response = response
                if exchange.cancelled:
                    return

                chunks: "queue.Queue" = queue.Queue()
                stop = threading.Event()
                threading.Thread(
                    target=_pump_body,
                    args=(response, chunks, stop),
                    name=f"stream-{exchange.id[:8]}",
                    daemon=True,
                ).start()

                ended = False
                try:
                    while not exchange.cancelled:
                        try:
                            item = chunks.get(timeout=CANCEL_POLL_INTERVAL)
                        except queue.Empty:
                            continue
                        if item is _END_OF_BODY:
                            ended = True
                            yield from self._translate(exchange, parser.finish())
                            break
                        if isinstance(item, Exception):
                            raise item
                        yield from self._translate(exchange, parser.feed(item))
                        if parser.is_done:
                            break
                finally:
                    stop.set()
                    if not ended:
                        abort_response(response)
        except ProviderError as e:
            if exchange.cancelled:
                logger.debug("Request ended by cancellation: %s", e)
                return
            logger.error("Provider error: %s", e)
            exchange.state = ExchangeState.FAILED
            yield Failed(exchange.id, str(e))
        except (httpx.HTTPError, httpx.StreamError) as e:
            if exchange.cancelled:
                logger.debug("Stream closed by cancellation: %s", e)
                return
            logger.error("Network error: %s", e)
            exchange.state = ExchangeState.FAILED
            yield Failed(exchange.id, f"Network Error: {e}")
        finally:
            with self._lock:
                if response is not None and self._response is response:
                    self._response = None

    def _translate(self, exchange: Exchange, events) -> Iterator:
        for event in events:
            if exchange.cancelled:
                return
            if isinstance(event, TextChunk):
                if not event.reasoning and self._is_current(exchange):
                    with self._lock:
                        self._partial_text += event.text
                yield TextDelta(exchange.id, event.text, reasoning=event.reasoning)
            else:
                yield event

    def _execute_tools(self, exchange: Exchange, calls: List[ToolCall]) -> bool:
        """Run tool calls in order, appending results. Returns True if cancelled."""
        exchange.state = ExchangeState.EXECUTING_TOOLS
        exchange.conversation.append(Message.assistant_tool_calls(calls, model=exchange.model))
        for call in calls:
            if exchange.cancelled or not self._is_current(exchange):
                return True
            logger.info("Executing tool %s (%s)", call.name, call.id)
            result = self.executor.execute(call)
            exchange.conversation.append(Message.tool_result(result))
        return exchange.cancelled

    def _run_mcp_turn(self, exchange: Exchange, server: MCPServerConfig) -> Iterator[Event]:
        tool_name = pick_chat_tool(server)
        if tool_name is None:
            exchange.state = ExchangeState.FAILED
            yield Failed(exchange.id, f"MCP server '{server.name}' declares no tools")
            return

        prompt = exchange.conversation.last_user_text()
        future = self._submit_chat_call(server, tool_name, prompt)

        while True:
            if exchange.cancelled:
                logger.warning(
                    "Cancelled exchange %s; call to '%s' on '%s' keeps running in the background",
                    exchange.id, tool_name, server.name,
                )
                exchange.state = ExchangeState.CANCELLED
                yield Cancelled(exchange.id)
                return
            try:
                text = future.result(timeout=CANCEL_POLL_INTERVAL)
                break
            except FutureTimeoutError:
                continue
            except Exception as e:
                logger.error("MCP chat call to '%s' failed: %s", server.name, e)
                exchange.state = ExchangeState.FAILED
                yield Failed(exchange.id, f"MCP Error: {e}")
                return

        yield self._complete(exchange, text)

    def _submit_chat_call(self, server: MCPServerConfig, tool_name: str, prompt: str) -> Future:
        # cancelled calls keep their worker until the server answers
        with self._lock:
            busy = self._mcp_running
            self._mcp_running += 1
        if busy >= MCP_CHAT_WORKERS:
            logger.warning(
                "%d MCP chat calls still running; call to '%s' waits for a free worker",
                busy, server.name,
            )
        future: Future = self._mcp_workers.submit(self._call_chat_tool, server, tool_name, prompt)
        future.add_done_callback(self._chat_call_done)
        return future

    def _chat_call_done(self, future: Future) -> None:
        with self._lock:
            self._mcp_running -= 1

    def _call_chat_tool(self, server: MCPServerConfig, tool_name: str, prompt: str) -> str:
        transport = self.pool.transport_for(server.name)
        raw = transport.call_tool(tool_name, {"prompt": prompt})
        return render_result(tool_name, raw)

    # ── Helpers ───────────────────────────────────────────────────────────

    def _complete(self, exchange: Exchange, text: str) -> Completed:
        exchange.state = ExchangeState.COMPLETED
        if not self._is_current(exchange):
            return Completed(exchange.id, None)
        with self._lock:
            self._partial_text = ""
        if not text:
            return Completed(exchange.id, None)
        message = Message.assistant(text, model=exchange.model)
        exchange.conversation.append(message)
        self._persist(message)
        return Completed(exchange.id, message)

    def _build_system_message(self, model: str) -> Optional[Message]:
        parts = []
        if self.prompts is not None:
            prompt_text = self.prompts.load(self.prompt_name)
            if prompt_text:
                parts.append(prompt_text)

        if not self.is_mcp_model(model) and len(self.registry):
            parts.append(TOOL_PREAMBLE + self.registry.describe_tools_json())

        if not parts:
            return None
        return Message.system("\n\n".join(parts))

    def _persist(self, message: Message) -> None:
        if self.transcript is not None:
            self.transcript.append(message, prompt_name=self.prompt_name)
