"""
mcpchat Tool Cache - Persisted MCP tool descriptions.

Caches the result of every successful ``tools/list`` per server so tool
lists survive restarts without refetching. Stored as JSON in
``<config dir>/cached_mcp_tools.json``::

    {
      "video2text": {
        "lastUpdated": "2025-01-01T12:00:00+00:00",
        "tools": [{"name": "video_to_text", "description": "...", "inputSchema": {...}}]
      }
    }
"""

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from pydantic import ValidationError

from mcpchat.mcp.schema import ServerCache, ToolDefinition

logger = logging.getLogger(__name__)


class ToolCache:
    """
    Filesystem-backed map from server name to its last fetched tool list.

    The file is read once at construction and rewritten after every update.
    """

    FILE_NAME = "cached_mcp_tools.json"

    def __init__(self, cache_path: Path):
        self.cache_path = Path(cache_path)
        self._entries: Dict[str, ServerCache] = {}
        self._lock = threading.Lock()
        self.load()

    @classmethod
    def in_dir(cls, config_dir: Path) -> "ToolCache":
        return cls(Path(config_dir) / cls.FILE_NAME)

    def load(self) -> None:
        """Load the cache file. A missing or corrupt file leaves the cache empty."""
        if not self.cache_path.exists():
            return

        try:
            with open(self.cache_path, encoding="utf-8") as f:
                raw = json.load(f)
            entries = {name: ServerCache.model_validate(data) for name, data in raw.items()}
        except (OSError, ValueError, AttributeError, ValidationError) as e:
            logger.warning("Failed to load tool cache %s: %s", self.cache_path, e)
            return

        with self._lock:
            self._entries = entries
        logger.debug("Loaded tool cache for %d servers", len(entries))

    def save(self) -> None:
        """Write the cache to disk."""
        with self._lock:
            data = {
                name: entry.model_dump(mode="json", by_alias=True)
                for name, entry in self._entries.items()
            }

        try:
            self.cache_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.cache_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
        except OSError as e:
            logger.error("Failed to save tool cache %s: %s", self.cache_path, e)
            return
        logger.debug("Saved tool cache to %s", self.cache_path)

    def update(self, server_name: str, tools: Iterable[ToolDefinition]) -> ServerCache:
        """Replace a server's tools, stamp them with the current time, and persist."""
        entry = ServerCache(last_updated=datetime.now(timezone.utc), tools=list(tools))
        with self._lock:
            self._entries[server_name] = entry
        self.save()
        return entry

    def get_tools(self, server_name: str) -> Optional[List[ToolDefinition]]:
        with self._lock:
            entry = self._entries.get(server_name)
        return list(entry.tools) if entry else None

    def get_tool(self, server_name: str, tool_name: str) -> Optional[ToolDefinition]:
        for tool in self.get_tools(server_name) or []:
            if tool.name == tool_name:
                return tool
        return None

    def get_last_updated(self, server_name: str) -> Optional[datetime]:
        with self._lock:
            entry = self._entries.get(server_name)
        return entry.last_updated if entry else None

    def clear(self, server_name: Optional[str] = None) -> int:
        """
        Remove cached entries.

        Args:
            server_name: Only clear this server. If None, clear all.

        Returns:
            Number of entries cleared.
        """
        with self._lock:
            if server_name is None:
                cleared = len(self._entries)
                self._entries.clear()
            else:
                cleared = 1 if self._entries.pop(server_name, None) else 0
        if cleared:
            self.save()
        return cleared

    def servers(self) -> List[str]:
        with self._lock:
            return sorted(self._entries)
