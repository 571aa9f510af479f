"""Command-line interface with Rich formatting."""

import asyncio
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import List

import click
from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich.prompt import Confirm
import structlog

from . import __version__
from .config import load_settings, create_example_config
from .database import DatabaseManager
from .engine import SyncEngine
from .models import ConflictResolution, SyncReport

console = Console()
logger = structlog.get_logger()


def setup_logging(level: str, debug: bool = False, log_format: str = None) -> None:
    """Set up structured logging."""
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=log_format)
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer() if debug else structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def async_command(f):
    """Decorator to wrap async click commands."""
    @click.pass_context
    def wrapper(ctx, *args, **kwargs):
        return asyncio.run(f(ctx, *args, **kwargs))
    wrapper.__name__ = f.__name__
    wrapper.__doc__ = f.__doc__
    return wrapper


@click.group()
@click.version_option(version=__version__)
@click.option('--config', '-c', type=click.Path(exists=True),
              help='Path to configuration file')
@click.option('--debug', is_flag=True, help='Enable debug mode')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose output')
@click.pass_context
def cli(ctx, config, debug, verbose):
    """CalSync Hub - calendar sync and conflict resolution engine.

    Pulls events from Google, Apple and Outlook calendars, reconciles them
    with local changes and propagates changes to your other live sessions.
    """
    ctx.ensure_object(dict)

    try:
        settings = load_settings(config)
        if debug:
            settings.debug = True
        if verbose:
            settings.log_level = 'DEBUG'

        ctx.obj['settings'] = settings

        setup_logging(settings.log_level, settings.debug, settings.log_format)

    except Exception as e:
        console.print(f"[red]Error loading configuration: {e}[/red]")
        sys.exit(1)


def _require_valid_settings(settings) -> None:
    missing_fields = settings.validate_required_settings()
    if missing_fields:
        console.print(Panel(
            f"[red]Missing required configuration fields:[/red]\n" +
            "\n".join(f"• {field}" for field in missing_fields) +
            f"\n\nPlease set these environment variables or create a configuration file.\n" +
            f"Use [bold]calsync-hub config create[/bold] to create an example file.",
            title="Configuration Error"
        ))
        sys.exit(1)


@cli.command()
@click.option('--conflict-resolution', '-r',
              type=click.Choice([c.value for c in ConflictResolution]),
              help='Strategy for operations from other sessions')
@async_command
async def sync(ctx, conflict_resolution):
    """Run one pull/push cycle against every configured provider."""
    settings = ctx.obj['settings']

    if conflict_resolution:
        settings.conflict_resolution = ConflictResolution(conflict_resolution)

    _require_valid_settings(settings)

    try:
        engine = SyncEngine(settings)
        console.print("🚀 Synchronizing calendars...")
        try:
            reports = await engine.sync_once()
        finally:
            await engine.stop()
        logger.info("sync_completed", providers=[r.provider for r in reports], errors=len(engine.errors))
        console.print("✅ Sync completed")

        _display_sync_results(reports)
        _display_errors(reports, engine.errors)

    except KeyboardInterrupt:
        console.print("[yellow]Sync cancelled by user[/yellow]")
        sys.exit(1)
    except Exception as e:
        console.print(f"[red]Sync failed: {e}[/red]")
        if settings.debug:
            console.print_exception()
        sys.exit(1)


@cli.command()
@click.option('--interval', '-i', type=float,
              help='Poll interval in seconds for every provider (overrides config)')
@click.option('--no-realtime', is_flag=True, help='Do not connect the realtime channel')
@async_command
async def daemon(ctx, interval, no_realtime):
    """Run the engine with polling and realtime until interrupted."""
    settings = ctx.obj['settings']

    if interval:
        settings.providers = [
            config.model_copy(update={'poll_interval_seconds': interval})
            for config in settings.providers
        ]
    if no_realtime:
        settings.realtime_url = None

    _require_valid_settings(settings)

    console.print(f"[green]Starting CalSync Hub daemon[/green] - {len(settings.get_active_providers())} providers")

    engine = SyncEngine(settings)
    engine.add_error_listener(
        lambda error: console.print(f"[red]❌ {error}[/red]")
    )
    if engine.channel is not None:
        engine.channel.on_state_change(
            lambda state: console.print(f"[dim]Realtime channel: {state.value}[/dim]")
        )
    engine.store.subscribe(
        lambda ids: console.print(
            f"[blue]{datetime.now().strftime('%H:%M:%S')}[/blue] {len(ids)} events changed"
        )
    )

    logger.info("daemon_started", session_id=engine.session_id, providers=list(engine.services))
    try:
        async with engine:
            while True:
                await asyncio.sleep(3600)
    except (KeyboardInterrupt, asyncio.CancelledError):
        console.print("\n[yellow]Daemon stopped by user[/yellow]")


@cli.command()
@click.option('--days', '-d', default=7, type=int, help='Days of sync history to summarize')
@click.pass_context
def status(ctx, days):
    """Show store size, queue depths and recent activity."""
    settings = ctx.obj['settings']

    try:
        engine = SyncEngine(settings)
        engine_status = engine.get_status()
        stats = engine.db_manager.get_sync_statistics(days=days)
        sessions = engine.db_manager.get_recent_sync_sessions(limit=10)
    except Exception as e:
        console.print(f"[red]Failed to get status: {e}[/red]")
        if settings.debug:
            console.print_exception()
        sys.exit(1)

    console.print(Panel(
        f"Session: {engine_status['session_id']}\n"
        f"Events in store: {engine_status['events']}\n"
        f"Sessions ({days} days): {stats['total_sessions']} "
        f"({stats['successful_sessions']} ok, {stats['failed_sessions']} failed)\n"
        f"Pending operations: {stats['pending_operations']}\n"
        f"Dead letters: {stats['dead_letters']}",
        title="Sync Status"
    ))

    table = Table(show_header=True, header_style="bold magenta", title="Queues")
    table.add_column("Queue", style="cyan")
    table.add_column("Pending", justify="center")
    table.add_column("Dead", justify="center", style="red")
    for name, depth in engine_status['queues'].items():
        table.add_row(name, str(depth['pending']), str(depth['dead']))
    console.print(table)

    if sessions:
        history = Table(show_header=True, header_style="bold magenta", title="Recent Syncs")
        history.add_column("Started", style="dim")
        history.add_column("Provider", style="cyan")
        history.add_column("Status")
        history.add_column("Fetched", justify="center")
        history.add_column("Pushed", justify="center")
        history.add_column("Skipped", justify="center", style="dim")
        for session in sessions:
            color = "green" if session.status == 'completed' else "red"
            history.add_row(
                session.started_at.strftime('%Y-%m-%d %H:%M:%S'),
                session.provider,
                f"[{color}]{session.status}[/{color}]",
                str(session.fetched),
                str(session.pushed),
                str(session.skipped),
            )
        console.print(history)


@cli.group()
def queue():
    """Inspect and repair the outbound operation queues."""
    pass


@queue.command('list')
@click.option('--dead', is_flag=True, help='Only show dead letters')
@click.pass_context
def queue_list(ctx, dead):
    """List queued operations."""
    settings = ctx.obj['settings']
    engine = SyncEngine(settings)

    table = Table(show_header=True, header_style="bold magenta", title="Queued Operations")
    table.add_column("Queue", style="cyan")
    table.add_column("Seq", justify="right")
    table.add_column("Type")
    table.add_column("Event")
    table.add_column("Attempts", justify="center")
    table.add_column("Status")
    table.add_column("Last Error", style="dim")

    rows = 0
    for name, sync_queue in engine.queues.items():
        entries = sync_queue.dead_letters() if dead else sync_queue.pending_entries() + sync_queue.dead_letters()
        for entry in entries:
            table.add_row(
                name,
                str(entry.seq),
                entry.operation.type.value,
                entry.operation.event_id,
                str(entry.attempts),
                entry.status.value,
                entry.last_error or '',
            )
            rows += 1

    if rows:
        console.print(table)
    else:
        console.print("[green]No queued operations[/green]")


@queue.command('retry')
@click.argument('seq', type=int)
@click.option('--queue', '-q', 'queue_name', help='Only this queue (default: all)')
@click.pass_context
def queue_retry(ctx, seq, queue_name):
    """Move a dead-lettered operation back to pending."""
    settings = ctx.obj['settings']
    engine = SyncEngine(settings)
    try:
        count = engine.retry_dead_letter(seq, queue_name)
    except KeyError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)

    if count:
        console.print(f"[green]✓ Operation {seq} re-queued in {count} queue(s)[/green]")
    else:
        console.print(f"[yellow]No dead letter with seq {seq}[/yellow]")
        sys.exit(1)


@queue.command('discard')
@click.argument('seq', type=int)
@click.option('--queue', '-q', 'queue_name', help='Only this queue (default: all)')
@click.option('--yes', '-y', is_flag=True, help='Do not ask for confirmation')
@click.pass_context
def queue_discard(ctx, seq, queue_name, yes):
    """Drop a queued operation without delivering it."""
    settings = ctx.obj['settings']
    if not yes and not Confirm.ask(f"Discard operation {seq}? The change will not be synced"):
        console.print("[yellow]Cancelled[/yellow]")
        return

    engine = SyncEngine(settings)
    try:
        count = engine.discard(seq, queue_name)
    except KeyError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)

    if count:
        console.print(f"[green]✓ Operation {seq} discarded from {count} queue(s)[/green]")
    else:
        console.print(f"[yellow]No queued operation with seq {seq}[/yellow]")
        sys.exit(1)


@cli.group()
def config():
    """Configuration management commands."""
    pass


@config.command('create')
@click.option('--path', '-p', type=click.Path(), default='.env',
              help='Path to create config file')
@click.option('--force', '-f', is_flag=True,
              help='Overwrite existing file')
def create_config(path, force):
    """Create an example configuration file."""
    config_path = Path(path)

    if config_path.exists() and not force:
        if not Confirm.ask(f"File {path} already exists. Overwrite?"):
            console.print("[yellow]Configuration creation cancelled[/yellow]")
            return

    try:
        create_example_config(config_path)
        console.print(f"[green]Configuration file created at {path}[/green]")
        console.print("Please edit the file with your actual credentials.")
    except OSError as e:
        console.print(f"[red]Failed to create configuration file: {e}[/red]")


@config.command('validate')
@click.pass_context
def validate_config(ctx):
    """Validate the current configuration."""
    settings = ctx.obj['settings']

    missing_fields = settings.validate_required_settings()

    if missing_fields:
        console.print(Panel(
            f"[red]Missing required fields:[/red]\n" +
            "\n".join(f"• {field}" for field in missing_fields),
            title="Configuration Validation",
            border_style="red"
        ))
        sys.exit(1)
    else:
        providers = ", ".join(c.provider for c in settings.get_active_providers()) or "none"
        console.print(Panel(
            f"[green]✓ All required configuration fields are present[/green]\n"
            f"Providers: {providers}\n"
            f"Realtime: {settings.realtime_url or 'disabled'}",
            title="Configuration Validation",
            border_style="green"
        ))


@cli.command()
@click.confirmation_option(prompt='Are you sure you want to reset all sync data?')
@click.pass_context
def reset(ctx):
    """Drop the stored events, queues and sync history."""
    settings = ctx.obj['settings']

    try:
        DatabaseManager(settings).reset()
        console.print("[green]✓ All sync data has been reset[/green]")
        console.print("[yellow]⚠️  Unsent local changes were discarded[/yellow]")
    except Exception as e:
        console.print(f"[red]Failed to reset sync data: {e}[/red]")
        sys.exit(1)


def _display_sync_results(reports: List[SyncReport]) -> None:
    """Display sync results."""
    table = Table(show_header=True, header_style="bold magenta", title="Sync Results")
    table.add_column("Provider", style="cyan")
    table.add_column("Fetched", justify="center")
    table.add_column("Inserted", justify="center")
    table.add_column("Updated", justify="center")
    table.add_column("Kept Local", justify="center")
    table.add_column("Pushed", justify="center")
    table.add_column("Re-queued", justify="center", style="yellow")
    table.add_column("Dead", justify="center", style="red")
    table.add_column("Skipped", justify="center", style="dim")

    for report in reports:
        table.add_row(
            report.provider,
            str(report.fetched),
            str(report.inserted),
            str(report.updated),
            str(report.kept_local),
            str(report.pushed),
            str(report.requeued),
            str(report.dead_lettered),
            str(report.skipped),
        )

    console.print(table)

    for report in reports:
        if report.completed_at:
            duration = report.completed_at - report.started_at
            console.print(
                f"[dim]{report.provider}: {duration.total_seconds():.1f}s, "
                f"{report.success_rate * 100:.1f}% of {report.total_operations} pushes succeeded[/dim]"
            )


def _display_errors(reports: List[SyncReport], engine_errors: List[Exception]) -> None:
    errors = [error for report in reports for error in report.errors]
    errors.extend(str(error) for error in engine_errors)
    if errors:
        console.print(Panel(
            "\n".join(f"• {error}" for error in errors),
            title="[red]Errors[/red]",
            border_style="red"
        ))


def main():
    """Entry point for the CLI."""
    cli()


if __name__ == '__main__':
    main()
