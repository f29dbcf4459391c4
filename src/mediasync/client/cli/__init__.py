"""Command-line interface for mediasync.

This module provides the main CLI entry point and assembles all commands.

Commands:
- login: Log in to a media server
- logout: End the session
- sync: Synchronize the media folder with the server
- daemon: Run periodic background syncs
- status: Show session and sync state
- settings: Show or change sync settings
- download: Fetch a media item from the server
"""

from __future__ import annotations

import click

from mediasync.client.cli.auth import login, logout
from mediasync.client.cli.config import (
    configure_logging,
    get_config_dir,
    get_config_file,
    get_media_folder,
    get_session_file,
    get_state_db,
    load_config,
    load_sync_settings,
    save_config,
    save_sync_settings,
)
from mediasync.client.cli.download import download
from mediasync.client.cli.status import settings, status
from mediasync.client.cli.sync import daemon, sync


@click.group()
@click.version_option(package_name="mediasync")
@click.option("--verbose", "-v", is_flag=True, help="Show debug output.")
def cli(verbose: bool) -> None:
    """mediasync - Back up your photos and videos to a media server."""
    configure_logging(verbose)


# Session commands
cli.add_command(login)
cli.add_command(logout)

# Sync commands
cli.add_command(sync)
cli.add_command(daemon)
cli.add_command(download)

# Information commands
cli.add_command(status)
cli.add_command(settings)


def main() -> None:
    """Entry point for the CLI."""
    cli()


__all__ = [
    # Main entry points
    "cli",
    "main",
    # Config utilities
    "configure_logging",
    "get_config_dir",
    "get_config_file",
    "get_media_folder",
    "get_session_file",
    "get_state_db",
    "load_config",
    "load_sync_settings",
    "save_config",
    "save_sync_settings",
]
