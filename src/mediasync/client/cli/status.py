"""Status and settings commands for mediasync CLI.

Commands:
- status: Show session, media index and sync state
- settings: Show or change sync settings
"""

from __future__ import annotations

from datetime import datetime

import click

from mediasync.client.cli.config import (
    get_media_folder,
    get_session_file,
    get_state_db,
    load_config,
    load_sync_settings,
    save_sync_settings,
)


def _format_time(timestamp: float | None) -> str:
    if timestamp is None:
        return "never"
    return datetime.fromtimestamp(timestamp).strftime("%Y-%m-%d %H:%M:%S")


@click.command()
def status() -> None:
    """Show session, media index and sync state."""
    from mediasync.client.auth import TokenStore
    from mediasync.client.state import LocalMediaStore

    config = load_config()
    tokens = TokenStore(get_session_file())
    settings = load_sync_settings()

    click.echo(f"Server:       {config.get('server_url') or 'not configured'}")
    if tokens.is_authenticated:
        state = tokens.state
        expired = state is not None and state.is_access_expired() and not state.can_refresh()
        label = click.style("expired", fg="red") if expired else click.style("logged in", fg="green")
        click.echo(f"Session:      {label} ({config.get('username', 'unknown user')})")
    else:
        click.echo(f"Session:      {click.style('logged out', fg='yellow')}")
    click.echo(f"Media folder: {get_media_folder()}")

    db_path = get_state_db()
    if not db_path.exists():
        click.echo("Media index:  empty (run 'mediasync sync')")
        return

    store = LocalMediaStore(db_path)
    try:
        records = store.list_all()
        unhashed = store.needs_recompute(r.uri for r in records)
        pending = store.list_unlinked()
        links = store.list_links()
        last_sync = store.get_last_sync_time() or settings.last_sync_time
    finally:
        store.close()

    click.echo(f"Media index:  {len(records)} items ({len(unhashed)} need hashing)")
    click.echo(f"Synced:       {len(links)} items")
    if pending:
        click.echo(click.style(f"Pending:      {len(pending)} files still need upload", fg="yellow"))
    click.echo(f"Last sync:    {_format_time(last_sync)}")


@click.command()
@click.option("--auto-sync/--no-auto-sync", default=None, help="Enable periodic background sync.")
@click.option(
    "--wifi-only/--any-network",
    default=None,
    help=(
        "Upload only on unmetered networks. Applies to embedders that supply a "
        "NetworkMonitor; the command line cannot detect metered links and treats "
        "every network as unmetered."
    ),
)
@click.option("--auto-upload/--no-auto-upload", default=None, help="Upload missing files.")
@click.option("--interval", type=float, default=None, help="Hours between background syncs.")
@click.option(
    "--folder",
    type=click.Path(file_okay=False),
    default=None,
    help="Media folder to sync.",
)
def settings(
    auto_sync: bool | None,
    wifi_only: bool | None,
    auto_upload: bool | None,
    interval: float | None,
    folder: str | None,
) -> None:
    """Show or change sync settings."""
    from mediasync.client.cli.config import save_config

    current = load_sync_settings()
    changed = False

    if auto_sync is not None:
        current.auto_sync_enabled = auto_sync
        changed = True
    if wifi_only is not None:
        current.wifi_only = wifi_only
        changed = True
    if auto_upload is not None:
        current.auto_upload = auto_upload
        changed = True
    if interval is not None:
        if interval <= 0:
            raise click.BadParameter("must be positive", param_hint="--interval")
        current.interval_hours = interval
        changed = True

    if changed:
        save_sync_settings(current)
    if folder is not None:
        config = load_config()
        config["media_folder"] = folder
        save_config(config)
        changed = True
    if changed:
        click.echo("Settings saved.")

    click.echo(f"Auto sync:    {'on' if current.auto_sync_enabled else 'off'}")
    click.echo(
        f"Wi-Fi only:   {'on' if current.wifi_only else 'off'}"
        " (not enforced: no network detection on the command line)"
    )
    click.echo(f"Auto upload:  {'on' if current.auto_upload else 'off'}")
    click.echo(f"Interval:     {current.interval_hours:g} hours")
    click.echo(f"Media folder: {get_media_folder()}")
    click.echo(f"Last sync:    {_format_time(current.last_sync_time)}")
