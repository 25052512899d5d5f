"""Courier CLI: inspect and drive the job queue.

Usage:
    courier daemon                       # Run daemon (foreground)
    courier daemon --dry-run --debug     # Trace commands, log HTTP bodies
    courier dry-run /research "rust async"   # Show the action trace for a message
    courier enqueue "summarize inbox" -p HIGH
    courier queue                        # Jobs per state
    courier sessions                     # Active session codes
    courier cancel ab                    # Cancel the job for a session code
    courier recover                      # Requeue stale active jobs
    courier status                       # Queue counts and heartbeat
    courier commands                     # Registered commands
    courier config worker.max_concurrent=2
"""

import asyncio
import json
import os
from dataclasses import asdict

import click
from rich.console import Console
from rich.table import Table

from courier.config import COURIER_HOME, COURIER_LOGS, CourierConfig, configure_logging, ensure_courier_home
from courier.context import CourierContext, build_registry, get_default_context
from courier.dry_run import format_result
from courier.errors import CourierError, ValidationError
from courier.executor import Executor
from courier.heartbeat import HEARTBEAT_FILENAME
from courier.job_queue import ACTIVE, CANCELLED, COMPLETED, FAILED, PENDING
from courier.parser import parse_message
from courier.schema import SOURCES, Priority

console = Console()

STATUS_COLORS = {
    PENDING: "yellow",
    ACTIVE: "blue",
    COMPLETED: "green",
    FAILED: "red",
    CANCELLED: "dim",
}


def _run_async(coro):
    """Run async function from sync context."""
    return asyncio.run(coro)


def _context(ctx: click.Context) -> CourierContext:
    if isinstance(ctx.obj, CourierContext):
        return ctx.obj
    return get_default_context()


@click.group()
def cli():
    """Courier: route chat and webhook commands into a durable job queue."""
    pass


# --- Daemon ---


@cli.command()
@click.option("--dry-run", is_flag=True, help="Trace commands without queueing or spawning agents")
@click.option("--debug", is_flag=True, help="Log webhook request/response bodies")
@click.option("--port", type=int, default=None, help="Webhook port (default from config)")
def daemon(dry_run, debug, port):
    """Run the Courier daemon in the foreground."""
    from courier.daemon import CourierDaemon

    ensure_courier_home()
    configure_logging(debug=debug, log_dir=COURIER_LOGS)
    console.print("[bold blue]Courier daemon[/] starting in foreground...\n")
    try:
        d = CourierDaemon(
            CourierContext(CourierConfig.load(), dry_run=dry_run, project_path=os.getcwd()),
            debug=debug,
            port=port,
        )
        _run_async(d.start())
    except (CourierError, OSError) as e:
        console.print(f"[red]Daemon failed to start:[/] {e}")
        raise SystemExit(1)


# --- Commands ---


@cli.command("dry-run")
@click.argument("message", nargs=-1, required=True)
@click.option("--source", type=click.Choice(SOURCES), default="chat", help="Channel the message arrives on")
@click.pass_context
def dry_run(ctx, message, source):
    """Show what a message would do, without doing it."""
    registry = ctx.obj.registry if isinstance(ctx.obj, CourierContext) else build_registry(os.getcwd())
    parsed = parse_message(" ".join(message), registry)
    result = _run_async(Executor(dry_run=True).execute(parsed, {"source": source}))
    console.print(format_result(result), markup=False, highlight=False)


@cli.command()
@click.pass_context
def commands(ctx):
    """List registered commands."""
    registry = ctx.obj.registry if isinstance(ctx.obj, CourierContext) else build_registry(os.getcwd())

    table = Table(title="Commands")
    table.add_column("Command")
    table.add_column("Aliases", style="dim")
    table.add_column("Handler")
    table.add_column("Priority")
    table.add_column("Source")
    table.add_column("Description")

    for definition in registry.list():
        if definition.hidden:
            continue
        table.add_row(
            f"/{definition.name}",
            ", ".join(f"/{a}" for a in definition.aliases),
            definition.handler.type,
            definition.priority.name,
            definition.source,
            definition.description,
        )

    console.print(table)


# --- Queue ---


@cli.command()
@click.argument("task", nargs=-1, required=True)
@click.option(
    "--priority",
    "-p",
    type=click.Choice([p.name for p in Priority], case_sensitive=False),
    default="NORMAL",
)
@click.option("--session", "-s", "session_code", default=None, help="Attach to an existing session code")
@click.pass_context
def enqueue(ctx, task, priority, session_code):
    """Add a task to the queue."""
    context = _context(ctx)
    if session_code and context.sessions.get_by_code(session_code) is None:
        console.print(f"[red]Session not found or expired: {session_code}[/]")
        raise SystemExit(1)

    job_id = context.enqueue_task(
        " ".join(task), priority=Priority[priority.upper()], session_code=session_code
    )
    console.print(f"[green]Queued[/] {job_id} (queue depth {context.queue.queue_depth()})")


@cli.command()
@click.option(
    "--status",
    "status_filter",
    type=click.Choice([PENDING, ACTIVE, COMPLETED, FAILED, CANCELLED]),
    default=None,
)
@click.option("--limit", type=int, default=20, help="Rows per state")
@click.pass_context
def queue(ctx, status_filter, limit):
    """Show jobs per state."""
    context = _context(ctx)
    states = [status_filter] if status_filter else [PENDING, ACTIVE, COMPLETED, FAILED, CANCELLED]

    table = Table(title="Jobs")
    table.add_column("ID", style="dim")
    table.add_column("Status")
    table.add_column("Priority")
    table.add_column("Session")
    table.add_column("Task")
    table.add_column("Created", style="dim")

    rows = 0
    for state in states:
        jobs = context.queue.list_jobs(state)
        if state not in (PENDING, ACTIVE):
            jobs = sorted(jobs, key=lambda j: j.created_at or "", reverse=True)
        for job in jobs[:limit]:
            color = STATUS_COLORS.get(job.status, "white")
            table.add_row(
                job.id,
                f"[{color}]{job.status}[/]",
                str(job.priority),
                job.session_code or "-",
                job.task[:50],
                (job.created_at or "")[:19],
            )
            rows += 1

    if not rows:
        console.print("[dim]Queue is empty[/]")
        return
    console.print(table)


@cli.command()
@click.pass_context
def sessions(ctx):
    """List active sessions."""
    context = _context(ctx)
    active = context.sessions.list_active()
    if not active:
        console.print("[dim]No active sessions[/]")
        return

    table = Table(title="Active Sessions")
    table.add_column("Code")
    table.add_column("Kind")
    table.add_column("Task")
    table.add_column("Last Activity", style="dim")
    table.add_column("Agent Session", style="dim")

    for session in active:
        table.add_row(
            f"/{session.code}",
            session.kind,
            session.task[:40],
            session.last_activity[:19],
            session.agent_session_id or "-",
        )

    console.print(table)


@cli.command()
@click.argument("code")
@click.pass_context
def cancel(ctx, code):
    """Cancel the pending or active job for a session code."""
    context = _context(ctx)
    job = _run_async(context.cancel(code.lower()))
    if job is None:
        console.print(f"[yellow]No pending or active job for /{code}[/]")
        raise SystemExit(1)
    console.print(f"[green]Cancelled[/] {job.id}: {job.task[:50]}")


@cli.command()
@click.option("--stale-after", type=float, default=None, help="Seconds before an active job counts as stale")
@click.pass_context
def recover(ctx, stale_after):
    """Move stale active jobs back to pending."""
    context = _context(ctx)
    threshold = context.config.queue.stale_after_seconds if stale_after is None else stale_after
    recovered = context.queue.recover_stale_jobs(threshold)
    if not recovered:
        console.print("[dim]No stale jobs[/]")
        return
    for job_id in recovered:
        console.print(f"[yellow]Recovered[/] {job_id}")


@cli.command()
@click.pass_context
def status(ctx):
    """Queue counts and the daemon heartbeat."""
    context = _context(ctx)
    table = Table(show_header=False, box=None)
    table.add_row("Pending", str(context.queue.queue_depth()))
    table.add_row("Active", str(context.queue.active_count()))
    table.add_row("Completed", str(len(context.queue.list_jobs(COMPLETED))))
    table.add_row("Failed", str(len(context.queue.list_jobs(FAILED))))
    table.add_row("Cancelled", str(len(context.queue.list_jobs(CANCELLED))))
    table.add_row("Sessions", str(len(context.sessions.list_active())))

    heartbeat_path = COURIER_HOME / HEARTBEAT_FILENAME
    if heartbeat_path.exists():
        try:
            beat = json.loads(heartbeat_path.read_text())
            table.add_row("Last heartbeat", str(beat.get("last_heartbeat")))
            table.add_row("Processed / failed", f"{beat.get('tasks_processed')} / {beat.get('tasks_failed')}")
        except (OSError, ValueError):
            table.add_row("Last heartbeat", "[red]unreadable[/]")
    else:
        table.add_row("Last heartbeat", "[dim]daemon not running[/]")

    console.print(table)


# --- Configuration ---


@cli.command()
@click.argument("key_value", nargs=-1)
def config(key_value):
    """View or set Courier configuration.

    Examples:
        courier config                             # show all
        courier config worker.max_concurrent=2     # run two agents at once
        courier config webhook.allow_unsigned=false
    """
    cfg = CourierConfig.load()
    if not key_value:
        data = asdict(cfg)
        if data["webhook"]["secret"]:
            data["webhook"]["secret"] = "***"
        console.print_json(json.dumps(data))
        return

    kv = " ".join(key_value)
    if "=" not in kv:
        console.print("[yellow]Usage: courier config key=value[/]")
        return

    key, value = kv.split("=", 1)
    key = key.strip()
    value = value.strip()
    try:
        cfg.set_value(key, value)
    except (ValidationError, ValueError) as e:
        console.print(f"[red]{e}[/]")
        raise SystemExit(1)

    cfg.save()
    console.print(f"[green]Set {key} = {value}[/]")


def main():
    """Entry point."""
    cli()


if __name__ == "__main__":
    main()
