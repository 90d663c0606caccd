"""
mcpchat core module.

Conversation orchestration, streaming response parsing and the
application context that wires them to MCP servers and providers.
"""

from mcpchat.core.messages import Conversation, ImagePart, Message, Role, TextPart
from mcpchat.core.events import (
    Cancelled,
    Completed,
    Event,
    ExchangeState,
    Failed,
    TextDelta,
    ToolCallsDetected,
)
from mcpchat.core.stream import StreamParser
from mcpchat.core.orchestrator import Orchestrator
from mcpchat.core.context import AppContext

__all__ = [
    "AppContext",
    "Cancelled",
    "Completed",
    "Conversation",
    "Event",
    "ExchangeState",
    "Failed",
    "ImagePart",
    "Message",
    "Orchestrator",
    "Role",
    "StreamParser",
    "TextDelta",
    "TextPart",
    "ToolCallsDetected",
]
