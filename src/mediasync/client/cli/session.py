"""Client wiring shared by CLI commands.

This module provides:
- ClientSession: CloudClient with its token store and TokenGuard installed
- open_session: Builds a ClientSession from the saved configuration
"""

from __future__ import annotations

import sys
from dataclasses import dataclass

import click

from mediasync.client.api import CloudClient
from mediasync.client.auth import TokenGuard, TokenStore, get_device_info
from mediasync.client.cli.config import get_config_dir, get_session_file, load_config
from mediasync.core.config import ServerConfig


@dataclass
class ClientSession:
    """An HTTP client whose calls are guarded by the stored session tokens."""

    client: CloudClient
    tokens: TokenStore
    guard: TokenGuard

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> ClientSession:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


def open_session(server_url: str | None = None, require_login: bool = True) -> ClientSession:
    """Build a guarded client from the saved configuration.

    Exits with an error message when no server is configured, or when
    require_login is set and no session is stored.

    Args:
        server_url: Server to use instead of the configured one.
        require_login: Require stored session tokens.
    """
    config = load_config()
    server_url = server_url or config.get("server_url")
    if not server_url:
        click.echo("Error: No server configured. Run 'mediasync login' first.", err=True)
        sys.exit(1)

    tokens = TokenStore(get_session_file())
    if require_login and not tokens.is_authenticated:
        click.echo("Error: Not logged in. Run 'mediasync login' first.", err=True)
        sys.exit(1)

    server_config = ServerConfig(
        server_url=server_url,
        verify_ssl=bool(config.get("verify_ssl", True)),
    )
    client = CloudClient(server_config, get_device_info(get_config_dir()))
    guard = TokenGuard(tokens, refresh=client.refresh_token)
    client.set_auth(guard)
    return ClientSession(client=client, tokens=tokens, guard=guard)
