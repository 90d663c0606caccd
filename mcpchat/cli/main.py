"""
mcpchat CLI - Interactive streaming chat.

Run `mcpchat` to start the REPL, or `mcpchat "question"` for one exchange.
Configuration lives in ~/.config/mcpchat/config.yaml.
"""

import logging
import queue
import sys
import threading
from pathlib import Path
from typing import Optional

import click
from rich.console import Console, Group
from rich.live import Live
from rich.logging import RichHandler
from rich.markdown import Markdown
from rich.panel import Panel
from rich.spinner import Spinner
from rich.table import Table
from rich.text import Text

from mcpchat import __version__
from mcpchat.core.context import AppContext
from mcpchat.core.events import Cancelled, Completed, Event, Failed, TextDelta, ToolCallsDetected
from mcpchat.mcp.transport import MCPTransportError
from mcpchat.validation.config import Config, ConfigError

console = Console()
logger = logging.getLogger(__name__)

_END = object()


def setup_logging(verbose: bool = False) -> None:
    """Route library logging through rich on stderr."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=verbose, rich_tracebacks=True)],
        force=True,
    )
    if not verbose:
        # httpx logs every request at INFO
        logging.getLogger("httpx").setLevel(logging.WARNING)


class ExchangeView:
    """
    Renders one exchange's events into a rich Live region.

    Streamed text is shown as it arrives; a tool call replaces it, since
    the real answer is the one produced after the tools ran.
    """

    def __init__(self, live: Live):
        self.live = live
        self.text = Text()
        self.reasoning = Text(style="dim italic")

    def _spinner(self, label: str) -> Spinner:
        return Spinner("dots", text=Text(label, style="bold blue"))

    def start(self) -> None:
        self.live.update(self._spinner("Thinking..."))

    def handle(self, event: Event) -> None:
        if isinstance(event, TextDelta):
            if event.reasoning:
                self.reasoning.append(event.text)
            else:
                self.text.append(event.text)
            self.live.update(Group(self.reasoning, self.text) if self.reasoning else self.text)

        elif isinstance(event, ToolCallsDetected):
            self.text = Text()
            self.reasoning = Text(style="dim italic")
            names = ", ".join(event.tool_names)
            self.live.console.print(f"[dim]🔧 Using tools: {names}[/dim]")
            self.live.update(self._spinner("Running tools..."))

        elif isinstance(event, Completed):
            if event.message is not None:
                self.live.update(Markdown(event.message.text))
            else:
                self.live.update(Text("(no response)", style="dim"))

        elif isinstance(event, Failed):
            self.live.update(Text(f"Error: {event.error}", style="bold red"))

        elif isinstance(event, Cancelled):
            self.live.update(Text("Cancelled.", style="yellow"))


def run_exchange(ctx: AppContext, user_input: str) -> Optional[Event]:
    """
    Run one exchange on a worker thread and render it.

    Ctrl+C cancels the exchange instead of exiting. Returns the terminal event.
    """
    orchestrator = ctx.orchestrator
    events: "queue.Queue" = queue.Queue()
    model = orchestrator.model

    def worker() -> None:
        try:
            orchestrator.run_exchange(user_input, events.put)
        except Exception as e:
            logger.exception("Exchange failed")
            events.put(Failed("", str(e)))
        finally:
            events.put(_END)

    thread = threading.Thread(target=worker, name="exchange", daemon=True)
    terminal: Optional[Event] = None

    with Live(console=console, refresh_per_second=12) as live:
        view = ExchangeView(live)
        view.start()
        thread.start()
        while True:
            try:
                event = events.get(timeout=0.1)
            except queue.Empty:
                continue
            except KeyboardInterrupt:
                orchestrator.cancel()
                continue
            if event is _END:
                break
            view.handle(event)
            if isinstance(event, (Completed, Failed, Cancelled)):
                terminal = event

    if isinstance(terminal, Completed) and terminal.message is not None:
        console.print(f"[dim]─ {model} · {terminal.message.id[:8]}[/dim]")
    return terminal


class ChatREPL:
    """Interactive chat loop. Slash commands manage models, prompts and MCP servers."""

    SLASH_COMMANDS = [
        "/help", "/?",
        "/models", "/model ",
        "/prompts", "/prompt ",
        "/servers", "/server on ", "/server off ",
        "/tools", "/tools refresh",
        "/clear",
        "/exit", "/quit", "/q",
    ]

    def __init__(self, ctx: AppContext):
        self.ctx = ctx
        self.running = True
        self._ctrlc_count = 0
        self._init_readline()

    def _init_readline(self):
        """Initialize readline for arrow-key history and slash-command completion."""
        try:
            import readline
        except ImportError:
            self._readline = None
            return
        self._readline = readline
        self._history_file = Path(self.ctx.config.config_dir) / "input_history"
        readline.set_history_length(500)
        if self._history_file.exists():
            try:
                readline.read_history_file(str(self._history_file))
            except OSError:
                pass

        def completer(text, state):
            matches = [c for c in self.SLASH_COMMANDS if c.startswith(text)] if text.startswith("/") else []
            return matches[state] if state < len(matches) else None

        readline.set_completer(completer)
        readline.set_completer_delims("")
        readline.parse_and_bind("tab: complete")

    def _save_history(self):
        if self._readline is not None:
            try:
                self._history_file.parent.mkdir(parents=True, exist_ok=True)
                self._readline.write_history_file(str(self._history_file))
            except OSError:
                pass

    def _get_input(self) -> str:
        console.print("[bold green]> [/bold green]", end="")
        return input().strip()

    def _print_banner(self):
        info = Text()
        info.append(f"mcpchat v{__version__}", style="bold cyan")
        info.append("  |  ", style="dim")
        info.append(f"Model: {self.ctx.orchestrator.model}", style="dim")
        console.print(info)
        console.print("[dim]Type a message, or /help for commands. Ctrl+C cancels a response.[/dim]")
        console.print()

    def _print_help(self):
        help_text = """
[bold]Commands:[/bold]
  /help, /?                Show this help
  /models                  List models (LLM providers and MCP servers)
  /model <name>            Switch model
  /prompts                 List system prompts
  /prompt <name>           Use a system prompt (None to disable)
  /servers                 List MCP servers
  /server on|off <name>    Activate or deactivate an MCP server
  /tools                   List registered tools
  /tools refresh [server]  Re-fetch tool lists from MCP servers
  /clear                   Clear the screen
  /exit, /quit, /q         Exit
"""
        console.print(help_text)

    # ── Commands ──────────────────────────────────────────────────────────

    def _list_models(self):
        config = self.ctx.config
        current = self.ctx.orchestrator.model
        table = Table(title="Models", show_header=True, header_style="bold")
        table.add_column("Model")
        table.add_column("Served by")
        for name, provider in config.merged.providers.items():
            if not provider.enabled:
                continue
            for model in provider.models:
                marker = " [green]●[/green]" if model == current else ""
                table.add_row(f"{model}{marker}", name)
        for name in config.get_mcp_servers():
            marker = " [green]●[/green]" if name == current else ""
            table.add_row(f"{name}{marker}", "MCP server")
        console.print(table)

    def _switch_model(self, model_name: str):
        config = self.ctx.config
        if not model_name:
            console.print("[yellow]Usage: /model <name>[/yellow]")
            return
        if config.find_model(model_name) is None and model_name not in config.get_mcp_servers():
            console.print(f"[red]Unknown model: {model_name}[/red] (see /models)")
            return
        self.ctx.orchestrator.model = model_name
        config.set_model(model_name, global_=True)
        config.save()
        console.print(f"[green]Switched to {model_name}[/green]")

    def _list_prompts(self):
        prompts = self.ctx.prompts.available()
        current = self.ctx.orchestrator.prompt_name
        if not prompts:
            console.print(f"[dim]No prompts. Add markdown files to {self.ctx.prompts.prompts_dir}[/dim]")
            return
        for name in prompts:
            marker = " [green]●[/green]" if name == current else ""
            console.print(f"  [cyan]{name}[/cyan]{marker}")

    def _switch_prompt(self, name: str):
        if name and name != "None" and name not in self.ctx.prompts.available():
            console.print(f"[red]Unknown prompt: {name}[/red] (see /prompts)")
            return
        self.ctx.orchestrator.prompt_name = name or None
        console.print(f"[green]Prompt: {name or 'None'}[/green]")

    def _list_servers(self):
        servers = self.ctx.config.get_mcp_servers()
        if not servers:
            console.print("[dim]No MCP servers configured.[/dim]")
            return
        table = Table(title="MCP servers", show_header=True, header_style="bold")
        table.add_column("Name")
        table.add_column("Type")
        table.add_column("Active")
        table.add_column("Tools")
        for name, server in servers.items():
            table.add_row(
                name,
                server.type,
                "[green]yes[/green]" if server.is_active else "[dim]no[/dim]",
                ", ".join(server.tools) or "[dim](from cache)[/dim]",
            )
        console.print(table)

    def _handle_server(self, args: str):
        parts = args.split()
        if len(parts) != 2 or parts[0] not in ("on", "off"):
            console.print("[yellow]Usage: /server on|off <name>[/yellow]")
            return
        active = parts[0] == "on"
        try:
            self.ctx.set_server_active(parts[1], active)
            self.ctx.config.save()
        except ConfigError as e:
            console.print(f"[red]{e}[/red]")
            return
        console.print(f"[green]{parts[1]} {'activated' if active else 'deactivated'}[/green]")

    def _handle_tools(self, args: str):
        parts = args.split()
        sub = parts[0] if parts else "list"

        if sub == "list":
            tools = self.ctx.registry.list_tools()
            if not tools:
                console.print("[dim]No tools registered.[/dim]")
                return
            console.print(f"[bold]Available tools ({len(tools)}):[/bold]")
            for tool in tools:
                where = f" [dim]({tool.server_name})[/dim]" if tool.server_name else " [dim](local)[/dim]"
                console.print(f"  [cyan]{tool.name}[/cyan]{where} - {tool.description}")

        elif sub == "refresh":
            server_name = parts[1] if len(parts) > 1 else None
            try:
                with console.status("[bold blue]Fetching tools...[/bold blue]", spinner="dots"):
                    refreshed = self.ctx.refresh_tools(server_name)
            except MCPTransportError as e:
                console.print(f"[red]Failed: {e}[/red]")
                return
            if not refreshed:
                console.print("[yellow]No active MCP servers to refresh.[/yellow]")
            for name, tools in refreshed.items():
                console.print(f"  [green]{name}: {len(tools)} tools fetched[/green]")

        else:
            console.print("[yellow]Usage: /tools [refresh [server]][/yellow]")

    def _handle_command(self, cmd: str) -> bool:
        """Handle a slash command. Returns True if should continue."""
        parts = cmd.split(maxsplit=1)
        command = parts[0].lower()
        args = parts[1].strip() if len(parts) > 1 else ""

        if command in ("/exit", "/quit", "/q"):
            return False
        elif command in ("/help", "/?"):
            self._print_help()
        elif command == "/models":
            self._list_models()
        elif command == "/model":
            self._switch_model(args)
        elif command == "/prompts":
            self._list_prompts()
        elif command == "/prompt":
            self._switch_prompt(args)
        elif command == "/servers":
            self._list_servers()
        elif command == "/server":
            self._handle_server(args)
        elif command == "/tools":
            self._handle_tools(args)
        elif command == "/clear":
            console.clear()
        else:
            console.print(f"[yellow]Unknown command: {command}[/yellow] (try /help)")
        return True

    def run(self):
        """Run the interactive REPL."""
        self._print_banner()

        while self.running:
            try:
                user_input = self._get_input()
                self._ctrlc_count = 0

                if not user_input:
                    continue

                if user_input.startswith("/"):
                    if not self._handle_command(user_input):
                        break
                    continue

                run_exchange(self.ctx, user_input)
                console.print()

            except EOFError:
                break
            except KeyboardInterrupt:
                self._ctrlc_count += 1
                if self._ctrlc_count >= 2:
                    break
                console.print("\n[dim]Press Ctrl+C again to exit, or type a message.[/dim]")
                continue
            except ConfigError as e:
                console.print(f"[red]Configuration error: {e}[/red]")
            except Exception as e:
                console.print(f"[red]Error: {e}[/red]")

        self._save_history()
        console.print(Panel("[bold blue]Bye![/bold blue]", border_style="blue"))


@click.command()
@click.option("--model", "-m", default=None, help="Model to use for this session")
@click.option("--prompt", "-p", default=None, help="System prompt name")
@click.option("--verbose", is_flag=True, help="Enable debug logging")
@click.option("--version", "-v", is_flag=True, help="Show version")
@click.option("--init", "init_", is_flag=True, help="Write the default global config and exit")
@click.argument("message", required=False, nargs=-1)
def cli(
    model: Optional[str],
    prompt: Optional[str],
    verbose: bool,
    version: bool,
    init_: bool,
    message: tuple,
) -> None:
    """
    mcpchat - Streaming chat with MCP tools.

    Run without arguments to start interactive mode.

    \b
    Examples:
        mcpchat                         # Start interactive chat
        mcpchat "what's the weather?"   # Run one exchange
        mcpchat -m video2text "..."     # Ask an MCP server's chat tool
        mcpchat --init                  # Write default config
    """
    if version:
        console.print(f"mcpchat v{__version__}")
        return

    setup_logging(verbose)

    if init_:
        path = Config.create_default_global()
        console.print(f"[green]Config written to {path}[/green]")
        return

    try:
        config = Config.load()
        ctx = AppContext(config)
    except ConfigError as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        console.print("[dim]Run `mcpchat --init` to create a default config.[/dim]")
        sys.exit(1)

    with ctx:
        if model:
            ctx.orchestrator.model = model
        if prompt:
            ctx.orchestrator.prompt_name = prompt

        if message:
            terminal = run_exchange(ctx, " ".join(message))
            if not isinstance(terminal, Completed):
                sys.exit(1)
            return

        ChatREPL(ctx).run()


def main() -> None:
    """Entry point."""
    cli()


if __name__ == "__main__":
    main()
