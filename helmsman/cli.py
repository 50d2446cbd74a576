"""
HELMSMAN CLI — read-only views over governance state.

  helmsman status        (phase, persistence, active chain, warnings)
  helmsman anchors       (anchors per session, with staleness)
  helmsman tasks         (epic → task → subtask tree)
  helmsman delegations   (handoff ledger)
  helmsman init <path>   (bootstrap .helmsman in a project)

Every read goes through the StateManager; nothing here writes
governance files behind its back.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from helmsman.anchors import staleness_hours
from helmsman.clock import MINUTE_MS
from helmsman.config_loader import PROJECT_CONFIG_NAME, default_project_config, load_config
from helmsman.delegation import DelegationLedger, format_delegation_store
from helmsman.identity import BANNER, __codename__, __tagline__, __version__
from helmsman.state_manager import BACKUP_DIR, StateManager, atomic_write_text
from helmsman.tasks import build_governance_reminder, create_bootstrap_store, format_task_tree

# Load .env from current directory or home
load_dotenv()
load_dotenv(Path.home() / ".helmsman" / ".env")

app = typer.Typer(
    name="helmsman",
    help=f"{__codename__} — {__tagline__}\nGovernance state for AI coding agents.",
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


def _open_state(repo: Optional[Path]) -> StateManager:
    """Load a project's state, or exit when it was never initialized."""
    repo = (repo or Path.cwd()).resolve()
    config = load_config(repo)
    if not (repo / config.governance_dir).is_dir():
        console.print(f"[red]No {config.governance_dir}/ in {repo}. Run: helmsman init {repo}[/]")
        raise typer.Exit(1)
    state = StateManager(config)
    state.init(repo)
    return state


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def status(
    repo: Optional[Path] = typer.Option(None, "--repo", "-r", help="Project directory"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Show governance phase, persistence health and the active chain."""
    _configure_logging(verbose)
    _print_banner()
    state = _open_state(repo)
    gov = state.get_state()
    graph = state.task_graph()

    table = Table(title="Governance", border_style="cyan")
    table.add_column("Property")
    table.add_column("Value")

    table.add_row("Directory", str(state.governance_dir))
    table.add_row("Phase", gov.phase)
    table.add_row(
        "Persistence",
        "[red]✗ degraded (in-memory only)[/]" if state.is_degraded() else "[green]✓ durable[/]",
    )
    table.add_row("Sessions", str(len(gov.sessions)))
    table.add_row("Anchors", str(len(gov.anchors)))
    table.add_row("Epics", str(len(graph.store.epics)))
    table.add_row("Delegations", str(len(state.get_delegation_store().delegations)))
    table.add_row("Validations", str(gov.validation_count))

    chain = graph.get_active_chain()
    if chain is None:
        table.add_row("Active chain", "[yellow]none — writes will be blocked[/]")
    else:
        task = f"\"{chain.task.name}\"" if chain.task else "[yellow](no active task)[/]"
        table.add_row("Active chain", f"\"{chain.epic.name}\" → {task}")

    console.print(table)

    warnings = graph.detect_chain_breaks()
    if warnings:
        warn_table = Table(title="Chain Warnings", border_style="yellow")
        warn_table.add_column("Kind")
        warn_table.add_column("Message")
        for w in warnings:
            warn_table.add_row(w.kind, w.message)
        console.print(warn_table)


@app.command()
def anchors(
    repo: Optional[Path] = typer.Option(None, "--repo", "-r", help="Project directory"),
    session: Optional[str] = typer.Option(None, "--session", "-s", help="Only this session"),
):
    """List anchors that will survive compaction."""
    _configure_logging(False)
    state = _open_state(repo)
    store = state.anchor_store

    sessions = [session] if session else store.sessions()
    rows = [a for sid in sessions for a in state.get_anchors(sid)]
    if not rows:
        console.print("[dim]No anchors yet.[/]")
        return

    table = Table(title=f"Anchors ({len(rows)})", border_style="cyan")
    table.add_column("Session", style="dim")
    table.add_column("Priority")
    table.add_column("Type")
    table.add_column("Content")
    table.add_column("Age")

    colors = {"critical": "red", "high": "yellow", "medium": "white", "low": "dim"}
    for anchor in rows:
        age = f"{staleness_hours(anchor):.1f}h"
        if store.is_stale(anchor):
            age = f"[dim]STALE {age}[/]"
        color = colors.get(anchor.priority, "white")
        table.add_row(
            anchor.session_id,
            f"[{color}]{anchor.priority.upper()}[/]",
            anchor.type,
            anchor.content if len(anchor.content) <= 80 else anchor.content[:80] + "…",
            age,
        )
    console.print(table)


@app.command()
def tasks(
    repo: Optional[Path] = typer.Option(None, "--repo", "-r", help="Project directory"),
):
    """Show the epic → task → subtask tree."""
    _configure_logging(False)
    state = _open_state(repo)
    graph = state.task_graph()
    console.print(format_task_tree(graph.store), highlight=False)
    console.print()
    console.print(Panel(build_governance_reminder(graph), border_style="dim"))


@app.command()
def delegations(
    repo: Optional[Path] = typer.Option(None, "--repo", "-r", help="Project directory"),
):
    """Show delegation records grouped by status."""
    _configure_logging(False)
    state = _open_state(repo)
    # Reading through the ledger applies lazy expiry to the view
    ledger = DelegationLedger(state.get_delegation_store(), expiry_ms=state.config.delegation.expiry_minutes * MINUTE_MS)
    console.print(format_delegation_store(ledger.store), highlight=False)


@app.command()
def init(
    repo: Optional[Path] = typer.Argument(None, help="Path to project"),
):
    """Initialize the .helmsman directory in a project."""
    _print_banner()

    repo = (repo or Path.cwd()).resolve()
    config = load_config(repo)
    gov_dir = repo / config.governance_dir
    gov_dir.mkdir(parents=True, exist_ok=True)
    (gov_dir / "logs").mkdir(exist_ok=True)
    (gov_dir / BACKUP_DIR).mkdir(exist_ok=True)

    config_path = gov_dir / PROJECT_CONFIG_NAME
    if not config_path.exists():
        atomic_write_text(config_path, json.dumps(default_project_config(), indent=2))

    state = StateManager(config)
    state.init(repo)
    if not state.get_task_store().epics:
        state.set_task_store(create_bootstrap_store())
    saved = state.force_save()

    # Add to .gitignore
    gitignore = repo / ".gitignore"
    ignore_entries = [f"{config.governance_dir}/logs/", f"{config.governance_dir}/{BACKUP_DIR}/"]
    if gitignore.exists():
        content = gitignore.read_text()
        additions = [e for e in ignore_entries if e not in content]
        if additions:
            with open(gitignore, "a") as f:
                f.write("\n# HELMSMAN\n")
                for e in additions:
                    f.write(f"{e}\n")
    else:
        gitignore.write_text("# HELMSMAN\n" + "\n".join(ignore_entries) + "\n")

    if not saved:
        console.print(f"[yellow]⚠ Initialized {gov_dir}, but state could not be written (degraded mode)[/]")
        raise typer.Exit(1)

    console.print(f"[green]✅ Initialized HELMSMAN in {gov_dir}[/]")
    console.print(f"  Config:  {config_path}")
    console.print(f"  State:   {gov_dir / 'state.json'}")
    console.print(f"  Tasks:   {gov_dir / 'tasks.json'}")


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    if verbose:
        logger.add(
            lambda msg: console.print(f"[dim]{msg}[/]", highlight=False),
            level="DEBUG",
            format="{time:HH:mm:ss} | {level:<7} | {message}",
        )
    else:
        logger.add(
            lambda msg: console.print(f"[dim]{msg}[/]", highlight=False),
            level="WARNING",
            format="{message}",
        )


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app()
