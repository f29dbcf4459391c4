"""Download command for mediasync CLI.

Commands:
- download: Fetch a media item that only exists on the server
"""

from __future__ import annotations

import sys
from pathlib import Path

import click

from mediasync.client.cli.config import get_media_folder
from mediasync.client.cli.session import open_session


@click.command()
@click.argument("remote_id")
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Destination file (default: media folder / remote-<id>).",
)
def download(remote_id: str, output: Path | None) -> None:
    """Download a media item from the server by its remote id."""
    import httpx

    from mediasync.client.api import APIError, NotFoundError

    destination = output or (get_media_folder() / f"remote-{remote_id}")
    if destination.exists():
        click.echo(f"Error: {destination} already exists.", err=True)
        sys.exit(1)

    with open_session() as session:
        try:
            path = session.client.download_media(remote_id, destination)
        except NotFoundError:
            click.echo(f"Error: No media item with id {remote_id}.", err=True)
            sys.exit(1)
        except (APIError, httpx.TransportError) as e:
            click.echo(f"Error: Download failed: {e}", err=True)
            sys.exit(1)

    click.echo(f"Downloaded to {path}")
