"""Session commands for mediasync CLI.

Commands:
- login: Log in to a media server
- logout: End the session
"""

from __future__ import annotations

import sys

import click

from mediasync.client.cli.config import load_config, save_config
from mediasync.client.cli.session import open_session


@click.command()
@click.option("--server", default=None, help="Server URL (e.g., https://media.example.com).")
@click.option("--username", "-u", default=None, help="Account name.")
@click.option("--password", default=None, help="Account password (prompted when omitted).")
def login(server: str | None, username: str | None, password: str | None) -> None:
    """Log in to a media server and store the session tokens."""
    import httpx

    from mediasync.client.api import APIError, AuthenticationError

    config = load_config()
    server = server or config.get("server_url")
    if not server:
        server = click.prompt("Server URL")
    if not username:
        username = click.prompt("Username", default=config.get("username") or None)
    if password is None:
        password = click.prompt("Password", hide_input=True)

    with open_session(server, require_login=False) as session:
        try:
            grant = session.client.login(username, password)
        except AuthenticationError as e:
            click.echo(f"Error: Login failed: {e}", err=True)
            sys.exit(1)
        except (APIError, httpx.TransportError) as e:
            click.echo(f"Error: Cannot reach server: {e}", err=True)
            sys.exit(1)

        session.tokens.save_grant(grant)

    config["server_url"] = server.rstrip("/")
    config["username"] = username
    save_config(config)
    click.echo(f"Logged in to {config['server_url']} as {username}")


@click.command()
def logout() -> None:
    """Log out and forget the session tokens."""
    import httpx

    from mediasync.client.api import APIError

    with open_session(require_login=False) as session:
        if not session.tokens.is_authenticated:
            click.echo("Not logged in.")
            return
        try:
            session.client.logout()
        except (APIError, httpx.TransportError) as e:
            # The local session is dropped regardless of the server answer
            click.echo(f"Warning: Server logout failed: {e}", err=True)
        session.tokens.clear()

    click.echo("Logged out.")
