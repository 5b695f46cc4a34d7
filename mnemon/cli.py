"""Operator CLI for the memory subsystem."""

import asyncio
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from mnemon.config import MnemonConfig, load_config
from mnemon.exceptions import DatabaseLockedError
from mnemon.memory.db import Database
from mnemon.memory.embeddings import EmbeddingProvider
from mnemon.memory.mutations import MemoryToolContext, add_memory_tool, remove_memory_tool
from mnemon.memory.queue import PassiveMemoryQueue
from mnemon.memory.schema import QUEUE_STATUSES
from mnemon.memory.store import MemoryStore

app = typer.Typer(
    name="mnemon",
    help="Long-term memory for agents: inspect memories, the extraction queue, and run the worker",
    no_args_is_help=True,
)
memories_app = typer.Typer(help="Inspect and edit an agent's memories")
queue_app = typer.Typer(help="Inspect the passive memory queue")
control_app = typer.Typer(help="Pause or resume passive memory processing")

app.add_typer(memories_app, name="memories")
app.add_typer(queue_app, name="queue")
app.add_typer(control_app, name="control")

console = Console()

ConfigOption = typer.Option(None, "--config", "-c", help="Path to config (default: ~/.config/mnemon/config.yaml)")


def _load(config_path: Optional[Path]) -> MnemonConfig:
    try:
        return load_config(config_path)
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)


def _open(config: MnemonConfig) -> Database:
    try:
        return Database(config.db_path)
    except DatabaseLockedError as e:
        console.print(f"[red]{e}[/red]")
        console.print("[dim]Stop the worker before running this command, or run it from the worker's process.[/dim]")
        raise typer.Exit(1)


def _run(config: MnemonConfig, fn):
    """Run ``fn(db)`` against the configured database and close it afterwards."""
    db = _open(config)
    try:
        return asyncio.run(fn(db))
    finally:
        db.close()


@app.command()
def version():
    """Show version information."""
    from mnemon import __version__

    console.print(f"Mnemon version {__version__}")


@app.command()
def worker(config: Optional[Path] = ConfigOption):
    """Run the passive memory worker until interrupted.

    DuckDB lets one process hold the database file, so while this command runs
    the other mnemon commands (memories, queue, control) cannot open it. Stop
    the worker to inspect or pause, or embed the worker in the host process with
    create_worker() and ensure_start(), next to on_run_completed().
    """
    from mnemon.passive.worker import run_worker

    try:
        asyncio.run(run_worker(config))
    except DatabaseLockedError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    except (KeyboardInterrupt, SystemExit):
        pass
    finally:
        console.print("\n[yellow]Worker stopped[/yellow]")


@memories_app.command("list")
def memories_list(
    agent: str = typer.Argument(..., help="Agent ID"),
    min_strength: Optional[float] = typer.Option(
        None, "--min-strength", help="Hide memories weaker than this (default: the agent's min_strength)"
    ),
    config: Optional[Path] = ConfigOption,
):
    """List an agent's memories, strongest first.

    Examples:
        mnemon memories list support-bot
        mnemon memories list support-bot --min-strength 0
    """
    cfg = _load(config)
    if min_strength is None:
        min_strength = cfg.memory_settings(agent).min_strength
    memories = _run(cfg, lambda db: MemoryStore(db).list(agent, min_strength))

    if not memories:
        console.print(f"[yellow]No memories stored for agent '{agent}'[/yellow]")
        return

    table = Table(title=f"Memories for {agent} ({len(memories)})")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Content")
    table.add_column("Kind", style="dim")
    table.add_column("Strength", justify="right")
    table.add_column("Hits", justify="right", style="dim")
    table.add_column("Ver", justify="right", style="dim")

    for memory in memories:
        table.add_row(
            memory.id,
            ("📌 " if memory.permanent else "") + memory.content,
            memory.kind,
            f"{memory.strength:.2f}",
            str(memory.access_count),
            str(memory.version),
        )

    console.print(table)


@memories_app.command("add")
def memories_add(
    agent: str = typer.Argument(..., help="Agent ID"),
    content: str = typer.Argument(..., help="Memory text"),
    pin: bool = typer.Option(False, "--pin", help="Store as a permanent memory"),
    config: Optional[Path] = ConfigOption,
):
    """Store a memory for an agent."""
    cfg = _load(config)
    embeddings = EmbeddingProvider(cfg.worker.embedding_model, enabled=cfg.worker.embeddings_enabled)

    async def _add(db):
        context = MemoryToolContext(agent_id=agent, store=MemoryStore(db), embeddings=embeddings)
        return await add_memory_tool({"content": content, "permanent": pin}, context)

    result = _run(cfg, _add)
    if not result.success:
        console.print(f"[red]{result.error}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]{result.output}[/green]")


@memories_app.command("remove")
def memories_remove(
    agent: str = typer.Argument(..., help="Agent ID"),
    memory_id: Optional[str] = typer.Option(None, "--id", help="Memory ID to delete"),
    content: Optional[str] = typer.Option(None, "--content", help="Memory text to match instead of an ID"),
    contains: bool = typer.Option(False, "--contains", help="Match content as a substring"),
    config: Optional[Path] = ConfigOption,
):
    """Delete one memory by ID or by matching its text."""
    cfg = _load(config)
    params = {"memory_id": memory_id, "content": content, "match_mode": "contains" if contains else "exact"}

    async def _remove(db):
        context = MemoryToolContext(agent_id=agent, store=MemoryStore(db))
        return await remove_memory_tool(params, context)

    result = _run(cfg, _remove)
    if not result.success:
        console.print(f"[red]{result.error}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]{result.output}[/green]")


@memories_app.command("clear")
def memories_clear(
    agent: str = typer.Argument(..., help="Agent ID"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
    config: Optional[Path] = ConfigOption,
):
    """Delete every non-permanent memory for an agent. Pinned memories are kept."""
    cfg = _load(config)
    if not yes and not typer.confirm(f"Delete all non-permanent memories for '{agent}'?"):
        console.print("[yellow]Cancelled[/yellow]")
        raise typer.Exit(0)

    deleted = _run(cfg, lambda db: MemoryStore(db).delete_non_permanent(agent))
    console.print(f"[green]Deleted {deleted} memories for {agent}[/green]")


@queue_app.command("status")
def queue_status(
    agent: Optional[str] = typer.Option(None, "--agent", help="Show recent jobs for this agent"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum number of jobs to show"),
    config: Optional[Path] = ConfigOption,
):
    """Show queue counts by status, and recent jobs when --agent is given."""
    cfg = _load(config)

    async def _status(db):
        queue = PassiveMemoryQueue(db)
        counts = await queue.count_by_status(agent)
        entries = await queue.list_by_agent(agent, limit=limit) if agent else []
        enabled = await MemoryStore(db).get_processing_enabled()
        return counts, entries, enabled

    counts, entries, enabled = _run(cfg, _status)

    state = "[green]running[/green]" if enabled else "[yellow]paused[/yellow]"
    console.print(f"Processing: {state}")

    table = Table(title="Passive memory queue")
    table.add_column("Status", style="cyan")
    table.add_column("Jobs", justify="right")
    for status in QUEUE_STATUSES:
        table.add_row(status, str(counts.get(status, 0)))
    console.print(table)

    if not entries:
        return

    jobs = Table(title=f"Recent jobs for {agent}")
    jobs.add_column("Job", style="cyan", no_wrap=True)
    jobs.add_column("Status")
    jobs.add_column("Attempts", justify="right", style="dim")
    jobs.add_column("New", justify="right")
    jobs.add_column("Changed", justify="right")
    jobs.add_column("Reason / error", style="dim")

    for entry in entries:
        summary = entry.summary or {}
        jobs.add_row(
            entry.job_id,
            entry.status,
            f"{entry.attempt_count}/{entry.max_attempts}",
            str(len(summary.get("created_ids", []))),
            str(len(summary.get("updated_ids", []))),
            summary.get("reason") or entry.last_error or "",
        )
    console.print(jobs)


@control_app.command("pause")
def control_pause(config: Optional[Path] = ConfigOption):
    """Stop workers from claiming new jobs."""
    cfg = _load(config)
    _run(cfg, lambda db: MemoryStore(db).set_processing_enabled(False))
    console.print("[yellow]Passive memory processing paused[/yellow]")


@control_app.command("resume")
def control_resume(config: Optional[Path] = ConfigOption):
    """Let workers claim jobs again."""
    cfg = _load(config)
    _run(cfg, lambda db: MemoryStore(db).set_processing_enabled(True))
    console.print("[green]Passive memory processing resumed[/green]")


if __name__ == "__main__":
    app()
