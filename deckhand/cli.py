"""
DECKHAND CLI — The Interface

Two modes:
  1. deckhand run --workspace <path> "goal"      (one request)
  2. deckhand chat --workspace <path>            (interactive thread)

Plus utilities:
  - deckhand status        (check config + API keys)
  - deckhand init <path>   (bootstrap .deckhand in a folder)
  - deckhand history       (view previous conversations)
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from loguru import logger
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from deckhand.audit_logger import AuditLogger
from deckhand.config_loader import DeckhandConfig, load_config, validate_api_keys
from deckhand.controller import Controller, LoopBusyError
from deckhand.event_bus import DeckEvent, EventBus
from deckhand.history import ConversationHistory
from deckhand.identity import BANNER, __codename__, __tagline__, __version__
from deckhand.state import Conversation, ConversationTurn, RunOutcome, TurnResult
from deckhand.workspace import WorkspaceError, WorkspaceSession

# Load .env from current directory or home
load_dotenv()
load_dotenv(Path.home() / ".deckhand" / ".env")

app = typer.Typer(
    name="deckhand",
    help=f"{__codename__} — {__tagline__}\nRuns model-proposed commands inside one workspace folder.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__codename__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
):
    pass


# ---------------------------------------------------------------------------
# Banner
# ---------------------------------------------------------------------------


def _print_banner():
    console.print(f"[bright_cyan]{BANNER}[/]")
    console.print(f"  [dim]v{__version__} — {__tagline__}[/]\n")


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------

_OUTCOME_COLORS = {
    RunOutcome.COMPLETED: "green",
    RunOutcome.ITERATION_LIMIT: "yellow",
    RunOutcome.STOPPED_BY_USER: "yellow",
    RunOutcome.TIMED_OUT: "red",
    RunOutcome.UPSTREAM_ERROR: "red",
    RunOutcome.BUDGET_EXCEEDED: "red",
}


def _print_event(event: DeckEvent) -> None:
    payload = event.payload
    if event.event_type == "unit_executed":
        color = "green" if payload.get("exit_code") == 0 else "red"
        marker = "  ↳" if payload.get("prerequisite") else "  $"
        console.print(f"[dim]{marker} {escape(str(payload.get('unit', '')))}[/] [{color}]exit {payload.get('exit_code')}[/]")
    elif event.event_type == "unit_refused":
        console.print(f"  [red]✗ refused:[/] [dim]{escape(str(payload.get('unit', '')))}[/]")
    elif event.event_type == "request_sent":
        console.print(
            f"[dim]⋯ iteration {payload.get('iteration')} "
            f"(~{payload.get('estimated_tokens')} tokens)[/]"
        )


def _build_controller(workspace: Path | None, config: DeckhandConfig) -> Controller:
    session = WorkspaceSession()
    if workspace is not None:
        session.open_folder(workspace)

    bus = EventBus()
    bus.subscribe(_print_event)
    if session.root.is_set:
        AuditLogger(session.root.path / config.workspace.log_dir / "audit.jsonl", bus)

    return Controller(
        session=session,
        config=config,
        history=ConversationHistory(config.workspace.history_dir),
        bus=bus,
    )


def _print_run(conversation: Conversation, result: TurnResult, start_index: int) -> None:
    for turn in conversation.turns[start_index:]:
        if turn.role == "assistant":
            style = "red" if turn.is_error else "cyan"
            console.print(Panel(Text(turn.content), title="assistant", border_style=style))
    color = _OUTCOME_COLORS.get(result.outcome, "white")
    console.print(
        f"[bold {color}]{result.outcome.value}[/] "
        f"[dim]({result.verdict.value}, {result.iterations} iteration(s), "
        f"{len(result.results)} command(s), ${conversation.total_cost:.4f} total)[/]"
    )


def _run_once(controller: Controller, conversation: Conversation, text: str) -> TurnResult:
    start = len(conversation.turns)
    result = controller.run(conversation, ConversationTurn(role="user", content=text))
    _print_run(conversation, result, start)
    return result


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def run(
    goal: str = typer.Argument(..., help="What you want done in the workspace"),
    workspace: Optional[Path] = typer.Option(None, "--workspace", "-w", help="Workspace folder"),
    thread: Optional[str] = typer.Option(None, "--thread", "-t", help="Continue an existing conversation"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Run one request against a workspace folder."""
    _print_banner()
    _configure_logging(verbose)

    config = load_config(workspace.resolve() if workspace else None)
    try:
        controller = _build_controller(workspace, config)
    except WorkspaceError as e:
        console.print(f"[red]{escape(e.to_marked_text())}[/]")
        raise typer.Exit(1)

    conversation = _resolve_conversation(controller, thread)
    result = _run_once(controller, conversation, goal)

    if result.outcome is not RunOutcome.COMPLETED:
        raise typer.Exit(1)


@app.command()
def chat(
    workspace: Optional[Path] = typer.Option(None, "--workspace", "-w", help="Workspace folder"),
    thread: Optional[str] = typer.Option(None, "--thread", "-t", help="Continue an existing conversation"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Interactive conversation. /folder PATH changes the workspace, /quit exits."""
    _print_banner()
    _configure_logging(verbose)

    config = load_config(workspace.resolve() if workspace else None)
    try:
        controller = _build_controller(workspace, config)
    except WorkspaceError as e:
        console.print(f"[red]{escape(e.to_marked_text())}[/]")
        raise typer.Exit(1)

    conversation = _resolve_conversation(controller, thread)
    console.print(f"[dim]Conversation {conversation.id} — workspace: {controller.session.root or '(none)'}[/]")

    while True:
        try:
            text = console.input("[bold cyan]you ›[/] ").strip()
        except (EOFError, KeyboardInterrupt):
            console.print()
            break
        if not text:
            continue
        if text in ("/quit", "/exit"):
            break
        if text.startswith("/folder"):
            target = text[len("/folder"):].strip()
            try:
                root = controller.session.change_folder(target or None)
                console.print(f"[green]Workspace: {root or '(none)'}[/]")
            except WorkspaceError as e:
                console.print(f"[red]{escape(e.to_marked_text())}[/]")
            continue
        try:
            _run_once(controller, conversation, text)
        except LoopBusyError as e:
            console.print(f"[yellow]{escape(e.to_marked_text())}[/]")


def _resolve_conversation(controller: Controller, thread: str | None) -> Conversation:
    if not thread:
        return Conversation()
    conversation = controller.history.load(thread) if controller.history else None
    if conversation is None:
        console.print(f"[red]No conversation {thread}[/]")
        raise typer.Exit(1)
    return conversation


@app.command()
def status(
    workspace: Optional[Path] = typer.Option(None, "--workspace", "-w", help="Workspace folder"),
):
    """Check configuration and API key status."""
    _print_banner()

    config = load_config(workspace.resolve() if workspace else None)
    keys = validate_api_keys()

    table = Table(title="API Keys", border_style="cyan")
    table.add_column("Key")
    table.add_column("Status")
    for key, present in keys.items():
        table.add_row(key, "[green]✓ set[/]" if present else "[dim]missing[/]")
    console.print(table)

    settings = Table(title="Effective Settings", border_style="cyan")
    settings.add_column("Setting")
    settings.add_column("Value")
    settings.add_row("model", config.routing.model)
    settings.add_row("api_base", config.routing.api_base or "(provider default)")
    settings.add_row("max_iterations", str(config.limits.max_iterations))
    settings.add_row("max_context_tokens", f"{config.limits.max_context_tokens:,}")
    settings.add_row("max_payload_bytes", f"{config.limits.max_payload_bytes:,}")
    settings.add_row("budget / run", f"{config.limits.max_tokens_per_run:,} tokens, ${config.limits.max_dollars_per_run:.2f}")
    settings.add_row("auto_stash", str(config.safety.auto_stash))
    settings.add_row("briefing", config.briefing.path if config.briefing.enabled else "(disabled)")
    console.print(settings)


@app.command()
def init(
    path: Optional[Path] = typer.Argument(None, help="Path to workspace folder"),
):
    """Initialize a .deckhand directory in a workspace folder."""
    _print_banner()

    root = (path or Path.cwd()).resolve()
    dh_dir = root / ".deckhand"
    dh_dir.mkdir(parents=True, exist_ok=True)
    (dh_dir / "logs").mkdir(exist_ok=True)

    config_path = dh_dir / "config.yaml"
    if not config_path.exists():
        config_path.write_text("""# DECKHAND workspace-level config overrides
# These merge with the built-in defaults.

# Pick the model for this workspace:
# routing:
#   model: "openai/gpt-4.1"
#   api_base: "https://my-gateway.example.com/v1"

# Adjust limits:
# limits:
#   max_iterations: 30
#   max_dollars_per_run: 2.0

# Project handoff document, sent once per conversation:
# briefing:
#   path: "COMPLETE_SYSTEM_HANDOFF.md"

# Git safety:
# safety:
#   auto_stash: true
""", encoding="utf-8")

    gitignore = root / ".gitignore"
    ignore_entries = [".deckhand/logs/"]
    if gitignore.exists():
        content = gitignore.read_text(encoding="utf-8")
        additions = [e for e in ignore_entries if e not in content]
        if additions:
            with open(gitignore, "a", encoding="utf-8") as f:
                f.write("\n# DECKHAND\n")
                for e in additions:
                    f.write(f"{e}\n")
    else:
        gitignore.write_text("# DECKHAND\n" + "\n".join(ignore_entries) + "\n", encoding="utf-8")

    console.print(f"[green]✓ Initialized {dh_dir}[/]")


@app.command()
def history(
    count: int = typer.Option(10, "--count", "-n", help="Number of conversations to show"),
    workspace: Optional[Path] = typer.Option(None, "--workspace", "-w", help="Workspace folder (for config)"),
):
    """View recent conversations and their cost."""
    _print_banner()

    config = load_config(workspace.resolve() if workspace else None)
    threads = ConversationHistory(config.workspace.history_dir).list_threads(limit=count)
    if not threads:
        console.print("[dim]No history yet.[/]")
        return

    table = Table(title=f"Recent Conversations (last {count})", border_style="cyan")
    table.add_column("Updated", style="dim")
    table.add_column("ID")
    table.add_column("Title")
    table.add_column("Turns")
    table.add_column("Tokens in/out")
    table.add_column("Cost")

    for t in threads:
        table.add_row(
            t["updated_at"][:19],
            t["id"],
            (t["title"] or "")[:40],
            str(t["turns"]),
            f"{t['total_tokens_in']:,}/{t['total_tokens_out']:,}",
            f"${t['total_cost']:.4f}",
        )
    console.print(table)


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

def _configure_logging(verbose: bool) -> None:
    logger.remove()
    if verbose:
        logger.add(
            lambda msg: console.print(f"{msg}", style="dim", highlight=False, markup=False),
            level="DEBUG",
            format="{time:HH:mm:ss} | {level:<7} | {message}",
        )
    else:
        logger.add(
            lambda msg: console.print(f"{msg}", style="dim", highlight=False, markup=False),
            level="WARNING",
            format="{message}",
        )


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app()
