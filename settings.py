"""Application configuration helpers for Receipt Sync."""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

from receiptsync import app_paths
from receiptsync.sheets_client import parse_spreadsheet_id


logger = logging.getLogger(__name__)


DEFAULT_SETTINGS_PATH = str(app_paths.APP_DIR / "settings.json")
DEFAULT_WORKSHEET_TITLE = "Transactions (1065)"
DEFAULT_CATEGORIES_TAB = "Chart of Accounts"
DEFAULT_LISTS_TAB = "Lists"
DEFAULT_CLIENT_SECRET_PATH = str(app_paths.APP_DIR / "client_secret.json")
DEFAULT_TOKEN_PATH = str(app_paths.TOKENS_DIR / "token.json")
DEFAULT_MAX_RETRIES = 5
DEFAULT_POLL_INTERVAL = 30
MIN_POLL_INTERVAL = 5
MAX_POLL_INTERVAL = 3600

ENV_OVERRIDES: Mapping[str, str] = {
    "spreadsheet_id": "RECEIPTSYNC_SPREADSHEET_ID",
    "drive_folder_id": "RECEIPTSYNC_DRIVE_FOLDER_ID",
    "client_secret_path": "RECEIPTSYNC_CLIENT_SECRET_PATH",
}


@dataclass
class ReceiptSyncSettings:
    spreadsheet_id: str = ""
    worksheet_title: str = DEFAULT_WORKSHEET_TITLE
    drive_folder_id: str = ""
    client_id: str = ""
    client_secret_path: str = DEFAULT_CLIENT_SECRET_PATH
    token_path: str = DEFAULT_TOKEN_PATH
    categories_tab: str = DEFAULT_CATEGORIES_TAB
    lists_tab: str = DEFAULT_LISTS_TAB
    max_retries: int = DEFAULT_MAX_RETRIES
    poll_interval_seconds: int = DEFAULT_POLL_INTERVAL
    allowed_members: Dict[str, str] = field(default_factory=dict)

    @property
    def is_configured(self) -> bool:
        return bool(self.spreadsheet_id and self.worksheet_title)

    def to_json(self) -> Dict[str, object]:
        return {
            "spreadsheet_id": self.spreadsheet_id,
            "worksheet_title": self.worksheet_title,
            "drive_folder_id": self.drive_folder_id,
            "client_id": self.client_id,
            "client_secret_path": self.client_secret_path,
            "token_path": self.token_path,
            "categories_tab": self.categories_tab,
            "lists_tab": self.lists_tab,
            "max_retries": self.max_retries,
            "poll_interval_seconds": self.poll_interval_seconds,
            "allowed_members": dict(self.allowed_members),
        }


def _defaults() -> Dict[str, object]:
    return ReceiptSyncSettings().to_json()


def _coerce_int(value: object, default: int, lower: int, upper: Optional[int] = None) -> int:
    try:
        number = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default
    number = max(lower, number)
    if upper is not None:
        number = min(upper, number)
    return number


def _merge(data: Mapping[str, object]) -> Dict[str, object]:
    merged = _defaults()
    for key, value in data.items():
        if key not in merged:
            continue
        if key == "max_retries":
            merged[key] = _coerce_int(value, DEFAULT_MAX_RETRIES, 0)
        elif key == "poll_interval_seconds":
            merged[key] = _coerce_int(value, DEFAULT_POLL_INTERVAL, MIN_POLL_INTERVAL, MAX_POLL_INTERVAL)
        elif key == "allowed_members":
            if isinstance(value, Mapping):
                merged[key] = {
                    str(email).strip().lower(): str(label).strip()
                    for email, label in value.items()
                    if str(email).strip() and str(label).strip()
                }
        elif isinstance(value, str):
            merged[key] = value.strip()
    return merged


def _apply_environment(merged: Dict[str, object]) -> None:
    for key, env_var in ENV_OVERRIDES.items():
        value = os.getenv(env_var)
        if value:
            merged[key] = value.strip()


def load_settings(path: str = DEFAULT_SETTINGS_PATH) -> ReceiptSyncSettings:
    """Load the settings file merged over the defaults, then apply environment overrides."""

    data: Mapping[str, object] = {}
    if os.path.exists(path):
        try:
            with open(path, "r", encoding="utf-8") as handle:
                loaded = json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable settings file %s: %s", path, exc)
        else:
            if isinstance(loaded, Mapping):
                data = loaded

    merged = _merge(data)
    _apply_environment(merged)
    merged["spreadsheet_id"] = parse_spreadsheet_id(str(merged["spreadsheet_id"]))
    if not merged["worksheet_title"]:
        merged["worksheet_title"] = DEFAULT_WORKSHEET_TITLE
    return ReceiptSyncSettings(**merged)  # type: ignore[arg-type]


def save_settings(settings: ReceiptSyncSettings, path: str = DEFAULT_SETTINGS_PATH) -> None:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    payload = settings.to_json()
    payload["spreadsheet_id"] = parse_spreadsheet_id(settings.spreadsheet_id)

    with open(path, "w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=2)


__all__ = [
    "DEFAULT_MAX_RETRIES",
    "DEFAULT_POLL_INTERVAL",
    "DEFAULT_SETTINGS_PATH",
    "DEFAULT_WORKSHEET_TITLE",
    "ReceiptSyncSettings",
    "load_settings",
    "save_settings",
]
