"""Tests for the command-line entry point."""

from unittest import mock

import yaml
from click.testing import CliRunner
from rich.markdown import Markdown
from rich.text import Text

from mcpchat import __version__
from mcpchat.cli.main import ExchangeView, cli
from mcpchat.core.events import Completed, Failed, TextDelta, ToolCallsDetected
from mcpchat.core.messages import Message
from mcpchat.mcp.schema import ToolCall
from mcpchat.validation.config import Config


class TestCommand:
    """Tests for the click command."""

    def test_version(self):
        result = CliRunner().invoke(cli, ["--version"])

        assert result.exit_code == 0
        assert f"mcpchat v{__version__}" in result.output

    def test_init_writes_config(self, temp_dir):
        with mock.patch.object(Config, "GLOBAL_CONFIG_DIR", temp_dir):
            result = CliRunner().invoke(cli, ["--init"])

        assert result.exit_code == 0
        data = yaml.safe_load((temp_dir / "config.yaml").read_text())
        assert data["agent"]["max_tool_rounds"] == 10
        assert "video2text" in data["mcp_servers"]
        assert (temp_dir / "prompts").is_dir()


class TestExchangeView:
    """Rendering of orchestrator events."""

    def test_text_then_tool_call_then_answer(self):
        live = mock.Mock()
        view = ExchangeView(live)

        view.handle(TextDelta("x", "Let me "))
        view.handle(TextDelta("x", "check."))
        assert view.text.plain == "Let me check."

        view.handle(ToolCallsDetected("x", [ToolCall(id="1", name="getCurrentWeather")]))
        assert view.text.plain == ""
        assert "getCurrentWeather" in live.console.print.call_args[0][0]

        view.handle(Completed("x", Message.assistant("Sunny.")))
        assert isinstance(live.update.call_args[0][0], Markdown)

    def test_failed(self):
        live = mock.Mock()

        ExchangeView(live).handle(Failed("x", "HTTP 401: invalid key"))

        rendered = live.update.call_args[0][0]
        assert isinstance(rendered, Text)
        assert rendered.plain == "Error: HTTP 401: invalid key"
