"""Command line interface for note synchronization.

Local notes are read from and written back to a notes export document
(``{"version", "export_date", "notes": [...]}``).
"""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.table import Table

from . import __version__
from .adapters import ADAPTER_CLASSES
from .note_store import ExportFileNoteStore, NoteApplier, load_snapshots
from .sync_adapter import SyncError
from .sync_manager import SyncManager
from .sync_models import ConflictResolution, SyncProvider, SyncResult

console = Console()


def get_sync_manager() -> SyncManager:
    """Get a sync manager over the default data directory."""
    return SyncManager()


def _setup_logging(verbose: bool):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


@click.group(name="feather-sync")
@click.version_option(__version__, prog_name="feather-sync")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def cli(verbose: bool):
    """Synchronize notes with Nextcloud, WebDAV, iCloud Drive or Google Drive."""
    _setup_logging(verbose)


@cli.command("setup")
@click.argument("provider", type=click.Choice([p.value for p in SyncProvider]))
@click.option("--server-url", help="WebDAV or Nextcloud server URL")
@click.option("--username", help="Account user name")
@click.option("--password", help="Account password")
@click.option("--app-password", help="App password (preferred over --password)")
@click.option("--apple-id", help="Apple ID for iCloud Drive")
@click.option("--app-specific-password", help="App-specific password for iCloud Drive")
@click.option("--client-id", help="Google OAuth client id")
@click.option("--client-secret", help="Google OAuth client secret")
@click.option("--refresh-token", help="Google OAuth refresh token")
@click.option("--test/--no-test", "run_test", default=True, help="Test the connection after saving")
def setup_command(provider: str, run_test: bool, **options):
    """Configure a sync provider and store its credentials."""
    provider_enum = SyncProvider(provider)
    values = {key: value for key, value in options.items() if value}
    adapter_class = ADAPTER_CLASSES[provider_enum]

    if sys.stdin.isatty():
        for key in adapter_class.REQUIRED_FIELDS:
            if key not in values:
                values[key] = Prompt.ask(
                    key.replace("_", " ").capitalize(),
                    password=key in adapter_class.SECRET_FIELDS,
                )

    try:
        ok = asyncio.run(_setup_async(provider_enum, values, run_test))
    except SyncError as e:
        console.print(f"[red]Setup failed: {e}[/red]")
        sys.exit(1)
    if not ok:
        sys.exit(1)


async def _setup_async(provider: SyncProvider, values: Dict[str, str], run_test: bool) -> bool:
    manager = get_sync_manager()
    try:
        adapter = await manager.set_provider(provider)
        await manager.configure_provider(values)

        missing = adapter.missing_fields()
        if missing:
            console.print(f"[yellow]Saved, but still missing: {', '.join(missing)}[/yellow]")
            return False

        if not manager.credential_store.credentials.is_keyring_available():
            console.print(
                "[yellow]Keyring not available - secrets are kept for this session only[/yellow]"
            )

        if run_test:
            console.print("[yellow]Testing connection...[/yellow]")
            if not await manager.test_connection():
                console.print(f"[red]Connection failed: {manager.last_error}[/red]")
                return False
            console.print("[green]Connection successful[/green]")

        console.print(f"[green]{provider.display_name} configured[/green]")
        return True
    finally:
        await manager.aclose()


@cli.command("status")
@click.option("--json", "output_json", is_flag=True, help="Output in JSON format")
def status_command(output_json: bool):
    """Show the configured provider, queue and schedule."""
    asyncio.run(_status_async(output_json))


async def _status_async(output_json: bool):
    manager = get_sync_manager()
    try:
        await manager.initialize()
        manager.scheduler.stop()
        status = manager.get_sync_status()
        status['queued_operations'] = await manager.queued_operations_count()
        status['configuration'] = manager.adapter.get_configuration() if manager.adapter else None

        if output_json:
            click.echo(json.dumps(status, indent=2, default=str))
            return

        if manager.adapter is None:
            console.print("[yellow]No sync provider configured[/yellow]")
            console.print("Run 'feather-sync setup <provider>' to get started")
            return

        table = Table(title=f"{manager.adapter.provider_name} Sync")
        table.add_column("Property", style="cyan")
        table.add_column("Value")
        for key, value in (status['configuration'] or {}).items():
            table.add_row(key, str(value))
        table.add_row("Queued operations", str(status['queued_operations']))
        selected = status['selected_note_ids']
        table.add_row("Selected notes", ", ".join(map(str, selected)) if selected else "all")
        background = (
            f"every {status['background_sync_interval_minutes']} min"
            if status['background_sync_enabled'] else "off"
        )
        table.add_row("Background sync", background)
        console.print(table)
    finally:
        await manager.aclose()


@cli.command("test")
def test_command():
    """Test the connection to the configured provider."""
    ok = asyncio.run(_test_async())
    if not ok:
        sys.exit(1)


async def _test_async() -> bool:
    manager = get_sync_manager()
    try:
        await manager.initialize()
        manager.scheduler.stop()
        if manager.adapter is None:
            console.print("[yellow]No sync provider configured[/yellow]")
            return False
        if await manager.test_connection():
            console.print(f"[green]Connected to {manager.adapter.provider_name}[/green]")
            return True
        console.print(f"[red]Connection failed: {manager.last_error}[/red]")
        return False
    finally:
        await manager.aclose()


@cli.command("sync")
@click.argument("notes_file", type=click.Path(dir_okay=False, path_type=Path))
@click.option("--resolve", type=click.Choice([r.value for r in ConflictResolution]),
              help="Resolve every conflict with this strategy")
@click.option("--no-queue", is_flag=True, help="Do not replay the offline queue")
def sync_command(notes_file: Path, resolve: Optional[str], no_queue: bool):
    """Sync the notes in NOTES_FILE with the configured provider."""
    try:
        result = asyncio.run(_sync_async(notes_file, resolve, no_queue))
    except SyncError as e:
        console.print(f"[red]Sync failed: {e}[/red]")
        sys.exit(1)
    if result is None or result.has_error:
        sys.exit(1)


async def _sync_async(notes_file: Path, resolve: Optional[str],
                      no_queue: bool) -> Optional[SyncResult]:
    manager = get_sync_manager()
    try:
        await manager.initialize()
        manager.scheduler.stop()

        store = ExportFileNoteStore(notes_file)
        applier = NoteApplier(store)
        snapshots = await load_snapshots(store)

        result = await manager.sync(
            snapshots,
            on_note_updated=applier.on_note_updated,
            on_note_created=applier.on_note_created,
            process_queue=not no_queue,
            on_note_stamped=applier.on_note_stamped,
        )
        if result is None:
            console.print("[yellow]A sync is already running[/yellow]")
            return None

        _display_sync_result(manager, result)

        if resolve and result.conflict_list:
            resolution = ConflictResolution(resolve)
            for conflict in result.conflict_list:
                instructions = await manager.resolve_conflict(conflict, resolution)
                await applier.apply_all(instructions)
            console.print(
                f"[green]Resolved {result.conflicts} conflicts with {resolution.value}[/green]"
            )
        return result
    finally:
        await manager.aclose()


def _display_sync_result(manager: SyncManager, result: SyncResult):
    if result.has_error:
        console.print(f"[red]Sync failed: {result.error}[/red]")
    elif result.has_conflicts:
        console.print("[yellow]Sync finished with conflicts[/yellow]")
    else:
        console.print("[green]Sync successful[/green]")

    table = Table()
    table.add_column("Metric", style="cyan")
    table.add_column("Count", justify="right")
    table.add_row("Uploaded", str(result.uploaded))
    table.add_row("Downloaded", str(result.downloaded))
    table.add_row("Conflicts", str(result.conflicts))
    if result.queued:
        table.add_row("Queued", str(result.queued))
    if result.dropped_operations:
        table.add_row("Dropped", str(len(result.dropped_operations)))
    table.add_row("Duration", f"{result.duration_seconds:.1f}s")
    console.print(table)

    for conflict in result.conflict_list:
        console.print(f"  • {conflict.describe()}")
    if result.dropped_operations and manager.last_error:
        console.print(f"[red]{manager.last_error}[/red]")


@cli.group("queue")
def queue_group():
    """Inspect or clear the offline queue."""
    pass


@queue_group.command("list")
def queue_list():
    """List queued operations."""
    asyncio.run(_queue_list_async())


async def _queue_list_async():
    manager = get_sync_manager()
    try:
        operations = await manager.queue.list_all()
        if not operations:
            console.print("[green]Offline queue is empty[/green]")
            return
        table = Table(title="Offline Queue")
        table.add_column("ID", justify="right")
        table.add_column("Operation", style="cyan")
        table.add_column("Note", justify="right")
        table.add_column("Queued at")
        table.add_column("Retries", justify="right")
        for op in operations:
            table.add_row(str(op.id), op.kind.value, str(op.note_id),
                          op.created_at.strftime("%Y-%m-%d %H:%M:%S"), str(op.retry_count))
        console.print(table)
    finally:
        await manager.aclose()


@queue_group.command("clear")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
def queue_clear(yes: bool):
    """Drop every queued operation."""
    if not yes and not Confirm.ask("Clear all queued operations?"):
        return
    asyncio.run(_queue_clear_async())


async def _queue_clear_async():
    manager = get_sync_manager()
    try:
        await manager.queue.clear()
        console.print("[green]Offline queue cleared[/green]")
    finally:
        await manager.aclose()


@cli.command("select")
@click.argument("note_ids", nargs=-1, type=int)
@click.option("--all", "select_all", is_flag=True, help="Sync all notes again")
def select_command(note_ids: List[int], select_all: bool):
    """Restrict syncing to NOTE_IDS."""
    if not note_ids and not select_all:
        console.print("[yellow]Give note ids or use --all[/yellow]")
        return
    asyncio.run(_select_async([] if select_all else list(note_ids)))


async def _select_async(note_ids: List[int]):
    manager = get_sync_manager()
    try:
        manager.set_selected_note_ids(note_ids)
        if note_ids:
            console.print(f"[green]Syncing only notes: {', '.join(map(str, sorted(note_ids)))}[/green]")
        else:
            console.print("[green]Syncing all notes[/green]")
    finally:
        await manager.aclose()


@cli.command("background")
@click.option("--enable/--disable", default=None, help="Turn background sync on or off")
@click.option("--interval", type=int, help="Interval in minutes (5-720)")
def background_command(enable: Optional[bool], interval: Optional[int]):
    """Configure periodic background sync."""
    try:
        asyncio.run(_background_async(enable, interval))
    except ValueError as e:
        console.print(f"[red]Invalid setting: {e}[/red]")
        sys.exit(1)


async def _background_async(enable: Optional[bool], interval: Optional[int]):
    manager = get_sync_manager()
    try:
        if interval is not None:
            await manager.set_background_sync_interval(interval)
        if enable is not None:
            await manager.set_background_sync_enabled(enable)
        manager.scheduler.stop()

        settings = manager.settings
        state = "enabled" if settings.background_sync_enabled else "disabled"
        console.print(Panel(
            f"Background sync {state}, every {settings.background_sync_interval_minutes} minutes",
            title="Background Sync",
            border_style="cyan",
        ))
    finally:
        await manager.aclose()


@cli.command("disconnect")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
def disconnect_command(yes: bool):
    """Forget the provider, its credentials and queued operations."""
    if not yes and not Confirm.ask("Disconnect and delete stored credentials?"):
        return
    asyncio.run(_disconnect_async())


async def _disconnect_async():
    manager = get_sync_manager()
    try:
        await manager.initialize()
        await manager.disconnect()
        console.print("[green]Disconnected[/green]")
    finally:
        await manager.aclose()


if __name__ == "__main__":
    cli()
