"""
Append-only markdown log of every persisted message.

Each entry looks like::

    [2025-01-01 12:00:00] assistant [gpt-4o] [ID: 3f2a...]:
    The weather in Boston is sunny.
"""

import logging
import threading
from pathlib import Path
from typing import Optional

from mcpchat.core.messages import ImagePart, Message, Role, TextPart

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


def display_url(url: str) -> str:
    """Shorten long (usually base64) URLs to their head and tail."""
    if len(url) > 100:
        return f"{url[:50]}...{url[-20:]}"
    return url


def format_entry(message: Message, prompt_name: Optional[str] = None) -> str:
    header = f"[{message.timestamp.strftime(TIMESTAMP_FORMAT)}] {message.role.value}"
    if message.model:
        header += f" [{message.model}]"
    header += f" [ID: {message.id}]"
    if message.role == Role.SYSTEM and prompt_name:
        header += f" [Prompt: {prompt_name}]"

    if isinstance(message.content, list):
        lines = []
        for part in message.content:
            if isinstance(part, TextPart):
                lines.append(part.text)
            elif isinstance(part, ImagePart):
                lines.append(f"[Image: {display_url(part.image_url.url)}]")
        body = "\n".join(lines)
    else:
        body = message.content or ""

    return f"\n{header}:\n{body}"


class Transcript:
    """Writes messages to ``history.md``. Appends only; never rewrites."""

    FILE_NAME = "history.md"

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    @classmethod
    def in_dir(cls, config_dir: Path) -> "Transcript":
        return cls(Path(config_dir) / cls.FILE_NAME)

    def append(self, message: Message, prompt_name: Optional[str] = None) -> None:
        entry = format_entry(message, prompt_name)
        with self._lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with open(self.path, "a", encoding="utf-8") as f:
                    f.write(entry)
            except OSError as e:
                logger.error("Failed to write transcript %s: %s", self.path, e)
