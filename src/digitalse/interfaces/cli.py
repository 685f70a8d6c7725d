"""
interfaces/cli.py — DigitalSE CLI Interface

Rich-powered terminal REPL for the DigitalSE agent.
Uses rich for rendering; blocking input() runs in a worker thread so the
event loop stays free.

Commands:
  /help           Show available commands
  /tools          List registered tools with their side effects
  /status         Show session info (turns, tool calls, held steps)
  /clear          Clear conversation context (keeps the session)
  exit / quit     Exit the REPL

Anything else is sent to the agent as a question or a statement to run.
Confirmation of a held WRITE/DESTRUCTIVE step is just the next message:
reply "yes" or "no".
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import ValidationError
from rich import box
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from digitalse import __version__
from digitalse.agent.composer import AgentResponse, ResponseKind
from digitalse.agent.orchestrator import Orchestrator
from digitalse.agent.router import SearchSuggester
from digitalse.agent.session import Session
from digitalse.collaborators.base import Collaborator, StaticCollaborator, demo_responses
from digitalse.config.settings import ConfigError, Settings, load_settings
from digitalse.observability.logger import get_logger, setup_logging
from digitalse.tools.catalog import build_registry
from digitalse.tools.types import SideEffect

log = get_logger(__name__)

_HELP_TEXT = """
## DigitalSE Commands

| Command | Description |
|---|---|
| `/help` | Show this help |
| `/tools` | List registered tools |
| `/status` | Show session info |
| `/clear` | Clear conversation context |
| `exit` / `quit` | Exit |

Ask about Snowflake features, your account usage, a specific query id, or
paste a DDL/DML statement to run it. Statements that change data or objects
are held until you reply **yes**.
"""

_SIDE_EFFECT_COLOURS = {
    SideEffect.READ: "green",
    SideEffect.WRITE: "yellow",
    SideEffect.DESTRUCTIVE: "red",
}

_KIND_STYLES = {
    ResponseKind.ANSWER: ("cyan", None),
    ResponseKind.PARTIAL: ("yellow", "[yellow]Partial answer[/]"),
    ResponseKind.CONFIRMATION: ("red", "[bold red]⚠ Confirmation Required[/]"),
    ResponseKind.CLARIFICATION: ("magenta", "[magenta]Need a detail[/]"),
    ResponseKind.FALLBACK: ("dim", None),
}


class CLIInterface:
    """
    Interactive REPL driving one session of the orchestrator.

    Args:
        settings:     Loaded DigitalSE settings.
        orchestrator: Fully wired orchestrator.
        offline:      True when answering from canned demo payloads.
    """

    def __init__(
        self,
        settings: Settings,
        orchestrator: Orchestrator,
        offline: bool = False,
        console: Optional[Console] = None,
    ) -> None:
        self.settings = settings
        self.console = console or Console()
        self._orchestrator = orchestrator
        self._offline = offline
        self._session: Session = orchestrator.sessions.create()

    # ── Startup ───────────────────────────────────────────────────────────────

    async def start(self) -> None:
        self._print_banner()
        await self._repl_loop()

    def _print_banner(self) -> None:
        mode = "[yellow]offline demo[/]" if self._offline else (
            f"[cyan]{self.settings.snowflake.account or '?'}[/] "
            f"as [cyan]{self.settings.snowflake.role}[/]"
        )
        self.console.print(
            Panel(
                f"[bold]{self.settings.agent_name}[/] v{__version__}  ·  "
                f"Snowflake: {mode}  ·  "
                f"Tools: {len(self._orchestrator.registry)}  ·  "
                f"Session: [dim]{self._session.id}[/]\n\n"
                f"Type your question or [bold]/help[/] for commands. "
                f"[bold]exit[/] or Ctrl+D to quit.",
                border_style="cyan",
                padding=(0, 2),
            )
        )

    # ── REPL Loop ─────────────────────────────────────────────────────────────

    async def _repl_loop(self) -> None:
        while True:
            try:
                user_input = await asyncio.to_thread(self.console.input, self._build_prompt())
            except (EOFError, KeyboardInterrupt):
                self.console.print("\n[dim]Goodbye.[/]")
                break

            user_input = user_input.strip()
            if not user_input:
                continue
            if user_input.lower() in ("exit", "quit"):
                self.console.print("[dim]Goodbye.[/]")
                break

            await self.dispatch(user_input)

    def _build_prompt(self) -> str:
        held = self._session.context.pending_plan is not None
        marker = "[red]?[/]" if held else ""
        return f"[bold cyan]DigitalSE[/][dim][{self._session.turn_count}][/]{marker}> "

    async def dispatch(self, raw: str) -> None:
        """Route input to a command handler or to the agent."""
        if not raw.startswith("/"):
            await self._cmd_ask(raw)
            return

        cmd = raw.split(maxsplit=1)[0].lower()
        handlers = {
            "/help": self._print_help,
            "/tools": self._cmd_tools,
            "/status": self._cmd_status,
            "/clear": self._cmd_clear,
        }
        handler = handlers.get(cmd)
        if handler:
            handler()
        else:
            self.console.print(f"[yellow]Unknown command: {cmd}. Type /help for commands.[/]")

    # ── Commands ──────────────────────────────────────────────────────────────

    def _print_help(self) -> None:
        self.console.print(Markdown(_HELP_TEXT))

    async def _cmd_ask(self, message: str) -> None:
        with self.console.status("[dim]Working...[/]"):
            response = await self._orchestrator.handle_turn(self._session.id, message)
        self.render_response(response)

    def _cmd_tools(self) -> None:
        table = Table(title="Registered tools", box=box.ROUNDED, border_style="dim")
        table.add_column("Name", style="cyan bold", no_wrap=True)
        table.add_column("Effect", no_wrap=True)
        table.add_column("Source", no_wrap=True)
        table.add_column("Description")
        for d in self._orchestrator.registry.list_descriptors():
            colour = _SIDE_EFFECT_COLOURS.get(d.side_effect, "white")
            table.add_row(
                d.name,
                f"[{colour}]{d.side_effect.value}[/]",
                d.source.value,
                d.description[:70] + ("…" if len(d.description) > 70 else ""),
            )
        self.console.print(table)

    def _cmd_status(self) -> None:
        summary = self._session.status_summary()
        table = Table(box=box.SIMPLE, show_header=False)
        table.add_column("Key", style="dim")
        table.add_column("Value")
        for key, value in summary.items():
            if isinstance(value, (list, dict)):
                value = ", ".join(f"{k}={v}" for k, v in value.items()) if isinstance(value, dict) \
                    else ", ".join(value)
            table.add_row(key, str(value) or "-")
        self.console.print(table)

    def _cmd_clear(self) -> None:
        self._session.context.clear()
        log.info("cli.context_cleared", session_id=self._session.id)
        self.console.print("[dim]Conversation context cleared.[/]")

    # ── Rendering ─────────────────────────────────────────────────────────────

    def render_response(self, response: AgentResponse) -> None:
        text = response.text.strip() if response.text else ""
        if not text:
            return
        border, title = _KIND_STYLES.get(response.kind, ("cyan", None))
        self.console.print(
            Panel(Markdown(text), title=title, border_style=border, padding=(0, 2))
        )


# ── Bootstrap ─────────────────────────────────────────────────────────────────


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="digitalse",
        description="DigitalSE: a Snowflake solutions engineer in your terminal",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: $DIGITALSE_CONFIG or config/config.yaml)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override log level from config",
    )
    parser.add_argument(
        "--offline",
        action="store_true",
        default=False,
        help="Answer from canned demo payloads instead of a Snowflake account",
    )
    return parser.parse_args(argv)


def bootstrap(args: argparse.Namespace) -> Settings:
    """
    Load config, validate it fully, and set up logging.
    Exits with code 1 after printing a clear message on any config problem.
    """
    try:
        settings = load_settings(args.config)
    except ValidationError as exc:
        problems = "\n".join(
            f"  • {e['loc'][-1] if e['loc'] else '?'}: {e['msg']}"
            for e in exc.errors()
        )
        print(
            f"\n❌  Config validation failed:\n\n{problems}\n\n"
            f"    Fix config/config.yaml or your .env file and restart.\n",
            file=sys.stderr,
        )
        sys.exit(1)
    except (OSError, ValueError) as exc:
        print(f"\n❌  Failed to load config: {type(exc).__name__}: {exc}\n", file=sys.stderr)
        sys.exit(1)

    try:
        settings.validate_all(online=not args.offline)
    except ConfigError as exc:
        print(str(exc), file=sys.stderr)
        sys.exit(1)

    setup_logging(settings.logging, level=args.log_level)
    return settings


def build_orchestrator(settings: Settings, offline: bool = False) -> tuple[Orchestrator, Collaborator]:
    """Build the collaborator and the orchestrator around one shared registry."""
    if offline:
        collaborator: Collaborator = StaticCollaborator(demo_responses())
    else:
        from digitalse.collaborators.snowflake import SnowflakeCollaborator
        collaborator = SnowflakeCollaborator(settings)

    registry = build_registry(settings)
    orchestrator = Orchestrator.from_settings(
        settings,
        collaborator,
        suggester=SearchSuggester(registry),
        registry=registry,
    )
    return orchestrator, collaborator


async def run_cli(settings: Settings, offline: bool = False) -> None:
    """Wire the agent stack and run the REPL until the user exits."""
    orchestrator, collaborator = build_orchestrator(settings, offline=offline)
    cli = CLIInterface(settings, orchestrator, offline=offline)

    log.info("cli.starting", offline=offline, tools=len(orchestrator.registry))
    try:
        await cli.start()
    finally:
        aclose = getattr(collaborator, "aclose", None)
        if aclose is not None:
            await aclose()
        log.info("cli.stopped")


def main(argv: Optional[list[str]] = None) -> int:
    load_dotenv(dotenv_path=Path.cwd() / ".env")
    args = parse_args(argv)
    settings = bootstrap(args)
    try:
        asyncio.run(run_cli(settings, offline=args.offline))
    except KeyboardInterrupt:
        log.info("cli.interrupted")
    return 0


if __name__ == "__main__":
    sys.exit(main())
