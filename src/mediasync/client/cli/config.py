"""Configuration utilities for mediasync CLI.

This module provides shared configuration functions used across CLI commands.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from mediasync.core.config import SyncSettings

CONFIG_DIR_ENV = "MEDIASYNC_HOME"


def get_config_dir() -> Path:
    """Get the configuration directory for mediasync.

    Returns:
        Path from $MEDIASYNC_HOME, or ~/.mediasync.
    """
    override = os.environ.get(CONFIG_DIR_ENV)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".mediasync"


def get_config_file() -> Path:
    """Get the path to the config file."""
    return get_config_dir() / "config.json"


def get_session_file() -> Path:
    """Get the path to the session token file."""
    return get_config_dir() / "session.json"


def get_state_db() -> Path:
    """Get the path to the local state database."""
    return get_config_dir() / "state.db"


def load_config() -> dict[str, Any]:
    """Load configuration from config file."""
    config_file = get_config_file()
    if config_file.exists():
        return dict(json.loads(config_file.read_text()))
    return {}


def save_config(config: dict[str, Any]) -> None:
    """Save configuration to config file."""
    config_file = get_config_file()
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(json.dumps(config, indent=2))


def get_media_folder() -> Path:
    """Get the media folder path.

    Returns:
        Path to the media folder (configured or default ~/Pictures).
    """
    config = load_config()
    if config.get("media_folder"):
        return Path(config["media_folder"]).expanduser().resolve()
    return Path.home() / "Pictures"


def load_sync_settings() -> SyncSettings:
    """Load persisted sync settings (defaults when none are stored)."""
    return SyncSettings.from_dict(load_config().get("sync", {}))


def save_sync_settings(settings: SyncSettings) -> None:
    """Persist sync settings."""
    config = load_config()
    config["sync"] = settings.to_dict()
    save_config(config)


def configure_logging(verbose: bool) -> None:
    """Send mediasync log output to stderr.

    Args:
        verbose: Show debug output instead of warnings only.
    """
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(message)s"))

    mediasync_logger = logging.getLogger("mediasync")
    for existing in mediasync_logger.handlers[:]:
        mediasync_logger.removeHandler(existing)
    mediasync_logger.addHandler(handler)
    mediasync_logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    mediasync_logger.propagate = False
