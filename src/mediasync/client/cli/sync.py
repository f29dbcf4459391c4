"""Sync commands for mediasync CLI.

Commands:
- sync: Run one synchronization pass
- daemon: Run periodic passes in the background until interrupted
"""

from __future__ import annotations

import sys
import threading
import time
from pathlib import Path
from typing import TYPE_CHECKING

import click

from mediasync.client.cli.config import (
    get_media_folder,
    get_state_db,
    load_sync_settings,
    save_sync_settings,
)
from mediasync.client.cli.session import ClientSession, open_session

if TYPE_CHECKING:
    from mediasync.client.state import LocalMediaStore
    from mediasync.client.sync import SyncEngine, SyncResult
    from mediasync.client.sync.engine import SyncScheduler


def _build_engine(
    session: ClientSession,
    store: LocalMediaStore,
    parallel: int,
    scheduler: SyncScheduler | None = None,
) -> SyncEngine:
    from mediasync.client.sync import SyncEngine

    return SyncEngine(
        session.client,
        store,
        settings=load_sync_settings(),
        scheduler=scheduler,
        max_parallel_uploads=parallel,
    )


def _display_summary(result: SyncResult) -> None:
    """Display sync results summary."""
    from mediasync.client.sync import SyncOutcome

    if result.outcome == SyncOutcome.ALREADY_RUNNING:
        click.echo("A sync is already running.")
        return
    if result.outcome in (SyncOutcome.FAILED, SyncOutcome.FATAL):
        click.echo(click.style(f"Sync failed: {result.error}", fg="red"), err=True)
        if result.outcome == SyncOutcome.FATAL:
            click.echo("Run 'mediasync login' to start a new session.", err=True)
        return

    if result.conflicts:
        click.echo(click.style("\nConflicts (uploaded again):", fg="yellow"))
        for uri in result.conflicts:
            click.echo(f"  ! {uri}")

    if result.errors:
        click.echo(click.style("\nErrors:", fg="red"))
        for error in result.errors:
            click.echo(f"  ✗ {error}")

    if result.outcome == SyncOutcome.CANCELLED:
        click.echo("\nSync cancelled.")
    click.echo(
        f"\nSync complete: {len(result.uploaded)} uploaded, "
        f"{len(result.already_synced)} already synced, "
        f"{len(result.failed)} failed, "
        f"{len(result.remote_only)} only on server"
    )
    if result.pending_count:
        click.echo(f"{result.pending_count} files still need upload.")


@click.command()
@click.option(
    "--folder",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Media folder to sync (default: configured folder).",
)
@click.option("--no-upload", is_flag=True, help="Only report what would be uploaded.")
@click.option("--force", is_flag=True, help="Ignore the cached server snapshot.")
@click.option("--parallel", "-p", default=1, show_default=True, help="Concurrent uploads.")
@click.option("--no-progress", is_flag=True, help="Disable the progress line.")
def sync(
    folder: Path | None,
    no_upload: bool,
    force: bool,
    parallel: int,
    no_progress: bool,
) -> None:
    """Synchronize the media folder with the server.

    Hashes new or modified media, asks the server which hashes it already
    holds and uploads the rest.
    """
    from mediasync.client.media import refresh_media_index
    from mediasync.client.state import LocalMediaStore
    from mediasync.client.sync import SyncOutcome, UploadProgress

    media_folder = (folder or get_media_folder()).expanduser().resolve()
    if not media_folder.is_dir():
        click.echo(f"Error: Media folder not found: {media_folder}", err=True)
        sys.exit(1)

    store = LocalMediaStore(get_state_db())
    with open_session() as session:
        engine = _build_engine(session, store, parallel)

        if not no_progress:
            def show_upload(progress: UploadProgress) -> None:
                click.echo(
                    f"\r  ↑ {progress.current_index}/{progress.total_count}",
                    nl=progress.current_index == progress.total_count,
                )

            engine.upload_progress.add_callback(show_upload)

        click.echo(f"Syncing {media_folder} with {session.client.config.server_url}...")
        records, _ = refresh_media_index(store, media_folder)
        click.echo(f"{len(records)} media files found.")

        try:
            result = engine.sync(
                auto_upload=False if no_upload else None,
                force_full_refresh=force,
                records=records,
            )
        except KeyboardInterrupt:
            click.echo("\nStopping...")
            sys.exit(130)
        finally:
            store.close()

    if result.outcome == SyncOutcome.COMPLETED:
        save_sync_settings(engine.settings)
    _display_summary(result)
    if result.outcome in (SyncOutcome.FAILED, SyncOutcome.FATAL):
        sys.exit(1)


@click.command()
@click.option(
    "--folder",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Media folder to sync (default: configured folder).",
)
@click.option("--parallel", "-p", default=1, show_default=True, help="Concurrent uploads.")
def daemon(folder: Path | None, parallel: int) -> None:
    """Run background sync passes on the configured interval.

    A pass runs immediately, then every interval_hours (see 'mediasync
    settings'). Failed passes are retried with exponential backoff.
    """
    from mediasync.client.media import refresh_media_index
    from mediasync.client.scheduler import BackgroundSyncScheduler
    from mediasync.client.state import LocalMediaStore
    from mediasync.client.sync import SyncOutcome

    media_folder = (folder or get_media_folder()).expanduser().resolve()
    if not media_folder.is_dir():
        click.echo(f"Error: Media folder not found: {media_folder}", err=True)
        sys.exit(1)

    store = LocalMediaStore(get_state_db())
    session = open_session()
    stopped = threading.Event()

    def run_pass(auto_upload: bool) -> SyncResult:
        records, _ = refresh_media_index(store, media_folder)
        result = engine.sync(auto_upload=auto_upload, records=records)
        if result.outcome == SyncOutcome.COMPLETED:
            save_sync_settings(engine.settings)
        elif result.outcome == SyncOutcome.FATAL:
            click.echo(f"Sync stopped: {result.error}", err=True)
            stopped.set()
        _display_summary(result)
        return result

    scheduler = BackgroundSyncScheduler(run_pass)
    engine = _build_engine(session, store, parallel, scheduler=scheduler)
    settings = engine.settings
    if not settings.auto_sync_enabled:
        click.echo(
            "Error: Automatic sync is disabled. Enable it with 'mediasync settings --auto-sync'.",
            err=True,
        )
        session.close()
        store.close()
        sys.exit(1)

    engine.apply_settings(settings)
    scheduler.start()
    engine.request_sync()
    click.echo(
        f"Syncing {media_folder} every {settings.interval_hours:g} hours... (Ctrl+C to stop)"
    )

    try:
        while not stopped.is_set():
            time.sleep(1.0)
    except KeyboardInterrupt:
        click.echo("\nStopping...")
    finally:
        engine.cancel()
        scheduler.stop()
        session.close()
        store.close()
