"""Events yielded by the orchestrator for one exchange."""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Union

from mcpchat.core.messages import Message
from mcpchat.mcp.schema import ToolCall


class ExchangeState(str, Enum):
    IDLE = "idle"
    AWAITING_FIRST_RESPONSE = "awaiting_first_response"
    EXECUTING_TOOLS = "executing_tools"
    AWAITING_FOLLOWUP_RESPONSE = "awaiting_followup_response"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ExchangeState.COMPLETED, ExchangeState.FAILED, ExchangeState.CANCELLED)


@dataclass(frozen=True)
class TextDelta:
    """A piece of streamed assistant text, shown immediately."""

    exchange_id: str
    text: str
    reasoning: bool = False


@dataclass(frozen=True)
class ToolCallsDetected:
    """The model asked for tools; partial text shown so far should be cleared."""

    exchange_id: str
    calls: List[ToolCall] = field(default_factory=list)

    @property
    def tool_names(self) -> List[str]:
        return [call.name for call in self.calls]


@dataclass(frozen=True)
class Completed:
    exchange_id: str
    message: Optional[Message] = None


@dataclass(frozen=True)
class Failed:
    exchange_id: str
    error: str


@dataclass(frozen=True)
class Cancelled:
    exchange_id: str


Event = Union[TextDelta, ToolCallsDetected, Completed, Failed, Cancelled]
TERMINAL_EVENTS = (Completed, Failed, Cancelled)
