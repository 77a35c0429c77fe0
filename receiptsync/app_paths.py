"""Centralised helpers for managing Receipt Sync application directories."""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterable

logger = logging.getLogger(__name__)

_APP_ENV_VARS: Iterable[str] = ("LOCALAPPDATA", "APPDATA", "XDG_DATA_HOME")


def _detect_base_directory() -> Path:
    override = os.environ.get("RECEIPTSYNC_DATA_DIR")
    if override:
        return Path(override).expanduser().resolve()
    for env_var in _APP_ENV_VARS:
        value = os.environ.get(env_var)
        if value:
            return Path(value).expanduser().resolve() / "ReceiptSync"
    return Path.home().resolve() / ".receiptsync"


APP_DIR: Path = _detect_base_directory()
TOKENS_DIR: Path = APP_DIR / "tokens"
LOG_DIR: Path = APP_DIR / "logs"


def ensure_directory(path: Path) -> Path:
    """Ensure that ``path`` exists, returning the :class:`~pathlib.Path`."""

    path.mkdir(parents=True, exist_ok=True)
    return path


def ensure_app_structure() -> None:
    """Create the base directories required for application data."""

    for directory in (APP_DIR, TOKENS_DIR, LOG_DIR):
        ensure_directory(directory)


def data_path(*parts: str) -> Path:
    """Return a path rooted inside :data:`APP_DIR`, creating parent directories."""

    ensure_app_structure()
    target = APP_DIR.joinpath(*parts)
    if target.parent and not target.parent.exists():
        target.parent.mkdir(parents=True, exist_ok=True)
    return target


def token_path(filename: str = "token.json") -> Path:
    """Return the location of the cached OAuth token."""

    ensure_directory(TOKENS_DIR)
    return TOKENS_DIR / filename


__all__ = [
    "APP_DIR",
    "TOKENS_DIR",
    "LOG_DIR",
    "data_path",
    "ensure_app_structure",
    "ensure_directory",
    "token_path",
]
