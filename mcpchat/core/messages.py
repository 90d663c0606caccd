"""
Conversation messages in the OpenAI chat-completions shape.

Messages are immutable once created; a Conversation only ever appends.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from mcpchat.mcp.schema import ToolCall, ToolResult


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class TextPart(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["text"] = "text"
    text: str


class ImageURL(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: str  # data:<mime>;base64,<payload>


class ImagePart(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["image_url"] = "image_url"
    image_url: ImageURL

    @classmethod
    def from_data(cls, mime_type: str, base64_data: str) -> "ImagePart":
        return cls(image_url=ImageURL(url=f"data:{mime_type};base64,{base64_data}"))


ContentPart = Annotated[Union[TextPart, ImagePart], Field(discriminator="type")]
Content = Union[str, List[ContentPart]]


class Message(BaseModel):
    """One entry in the conversation."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: Optional[Content] = None
    timestamp: datetime = Field(default_factory=datetime.now)
    model: Optional[str] = None
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    tool_calls: Optional[List[ToolCall]] = None
    tool_call_id: Optional[str] = None
    name: Optional[str] = None

    @model_validator(mode="after")
    def _check_role_fields(self) -> "Message":
        if self.tool_calls is not None:
            if self.role != Role.ASSISTANT:
                raise ValueError("tool_calls are only allowed on assistant messages")
            if self.content:
                raise ValueError("assistant message cannot carry both content and tool_calls")
        if self.role == Role.TOOL and not self.tool_call_id:
            raise ValueError("tool message requires tool_call_id")
        if self.role != Role.TOOL and self.tool_call_id is not None:
            raise ValueError("tool_call_id is only allowed on tool messages")
        return self

    # ── Constructors ──────────────────────────────────────────────────────

    @classmethod
    def system(cls, text: str) -> "Message":
        return cls(role=Role.SYSTEM, content=text)

    @classmethod
    def user(cls, content: Content) -> "Message":
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(cls, text: str, model: Optional[str] = None) -> "Message":
        return cls(role=Role.ASSISTANT, content=text, model=model)

    @classmethod
    def assistant_tool_calls(cls, calls: List[ToolCall], model: Optional[str] = None) -> "Message":
        return cls(role=Role.ASSISTANT, tool_calls=list(calls), model=model)

    @classmethod
    def tool_result(cls, result: ToolResult) -> "Message":
        return cls(role=Role.TOOL, content=result.content, tool_call_id=result.id, name=result.tool_name)

    # ── Accessors ─────────────────────────────────────────────────────────

    @property
    def text(self) -> str:
        """Concatenated text of the message, ignoring images."""
        if self.content is None:
            return ""
        if isinstance(self.content, str):
            return self.content
        return "".join(part.text for part in self.content if isinstance(part, TextPart))

    @property
    def images(self) -> List[ImagePart]:
        if isinstance(self.content, list):
            return [part for part in self.content if isinstance(part, ImagePart)]
        return []

    # ── Wire format ───────────────────────────────────────────────────────

    def to_wire(self) -> Dict[str, Any]:
        """Render as an entry of the chat-completions ``messages`` array."""
        wire: Dict[str, Any] = {"role": self.role.value}
        if isinstance(self.content, list):
            wire["content"] = [part.model_dump() for part in self.content]
        else:
            wire["content"] = self.content
        if self.tool_calls is not None:
            wire["tool_calls"] = [call.to_wire() for call in self.tool_calls]
        if self.tool_call_id is not None:
            wire["tool_call_id"] = self.tool_call_id
        if self.name is not None:
            wire["name"] = self.name
        return wire

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> "Message":
        tool_calls = None
        if data.get("tool_calls"):
            tool_calls = [
                ToolCall(
                    id=call["id"],
                    name=call["function"]["name"],
                    arguments=call["function"].get("arguments") or "",
                )
                for call in data["tool_calls"]
            ]
        return cls(
            role=Role(data["role"]),
            content=data.get("content"),
            tool_calls=tool_calls,
            tool_call_id=data.get("tool_call_id"),
            name=data.get("name"),
        )


class Conversation:
    """
    Ordered, append-only message list for one exchange.

    Each exchange owns one; ``reset`` seeds it with the system message.
    """

    def __init__(self):
        self._messages: List[Message] = []

    def reset(self, system_message: Optional[Message] = None) -> None:
        self._messages = [system_message] if system_message is not None else []

    def append(self, message: Message) -> None:
        self._messages.append(message)

    @property
    def messages(self) -> List[Message]:
        return list(self._messages)

    def last_user_text(self) -> str:
        for message in reversed(self._messages):
            if message.role == Role.USER:
                return message.text
        return ""

    def to_wire(self) -> List[Dict[str, Any]]:
        return [message.to_wire() for message in self._messages]

    def __len__(self) -> int:
        return len(self._messages)
