"""Shared fixtures."""

import sys
import tempfile
from pathlib import Path

import pytest

from mcpchat.validation.config import MCPServerConfig

FAKE_SERVER = Path(__file__).parent / "fake_mcp_server.py"


@pytest.fixture
def temp_dir():
    """Create a temporary directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def fake_server_config():
    """Server definition that launches the scripted fake MCP server."""

    def make(name="video2text", tools=None, env=None, is_active=True):
        return MCPServerConfig(
            name=name,
            type="stdio",
            command=sys.executable,
            args=["-u", str(FAKE_SERVER)],
            env=env or {},
            tools=tools or [],
            is_active=is_active,
        )

    return make
