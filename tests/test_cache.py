"""Tests for the tool-description cache."""

import json
from datetime import datetime, timezone

from mcpchat.mcp.cache import ToolCache
from mcpchat.mcp.schema import ToolDefinition


def tool(name, description=None, schema=None):
    return ToolDefinition(name=name, description=description, input_schema=schema)


class TestToolCache:
    """Tests for ToolCache."""

    def test_empty_when_missing(self, temp_dir):
        cache = ToolCache.in_dir(temp_dir)

        assert cache.servers() == []
        assert cache.get_tools("video2text") is None
        assert cache.get_last_updated("video2text") is None

    def test_update_persists_file(self, temp_dir):
        cache = ToolCache.in_dir(temp_dir)
        before = datetime.now(timezone.utc)

        cache.update("video2text", [tool("video_to_text", "Transcribe", {"type": "object"})])

        data = json.loads((temp_dir / "cached_mcp_tools.json").read_text())
        entry = data["video2text"]
        assert entry["tools"] == [
            {"name": "video_to_text", "description": "Transcribe", "inputSchema": {"type": "object"}}
        ]
        assert isinstance(entry["lastUpdated"], str)
        assert ToolCache.in_dir(temp_dir).get_last_updated("video2text") >= before

    def test_reload_from_disk(self, temp_dir):
        ToolCache.in_dir(temp_dir).update("a", [tool("x"), tool("y")])

        cache = ToolCache.in_dir(temp_dir)

        assert [t.name for t in cache.get_tools("a")] == ["x", "y"]
        assert cache.get_tool("a", "y").name == "y"
        assert cache.get_tool("a", "z") is None

    def test_reads_camel_case_file(self, temp_dir):
        """A file written by another client with lastUpdated/inputSchema loads."""
        (temp_dir / "cached_mcp_tools.json").write_text(json.dumps({
            "github": {
                "lastUpdated": "2025-01-02T03:04:05Z",
                "tools": [{"name": "search", "description": "d", "inputSchema": {"type": "object"}}],
            }
        }))

        cache = ToolCache.in_dir(temp_dir)

        assert cache.get_tools("github")[0].input_schema == {"type": "object"}
        assert cache.get_last_updated("github").year == 2025

    def test_corrupt_file_starts_empty(self, temp_dir):
        (temp_dir / "cached_mcp_tools.json").write_text("{not json")

        cache = ToolCache.in_dir(temp_dir)

        assert cache.servers() == []

    def test_update_replaces_tools(self, temp_dir):
        cache = ToolCache.in_dir(temp_dir)
        cache.update("a", [tool("old")])

        cache.update("a", [tool("new")])

        assert [t.name for t in cache.get_tools("a")] == ["new"]

    def test_clear(self, temp_dir):
        cache = ToolCache.in_dir(temp_dir)
        cache.update("a", [tool("x")])
        cache.update("b", [tool("y")])

        assert cache.clear("a") == 1
        assert cache.clear("missing") == 0
        assert cache.servers() == ["b"]
        assert cache.clear() == 1
        assert ToolCache.in_dir(temp_dir).servers() == []
