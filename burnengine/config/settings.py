"""Settings storage for write engine tuning.

The tool keeps no durable state of its own: settings are read from an optional
JSON file at startup and changes made with ``set_setting`` live in memory only.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


SETTINGS_PATH = Path(
    os.environ.get(
        "BURNENGINE_SETTINGS_PATH",
        Path.home() / ".config" / "burnengine" / "settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_BLOCK_SIZE = 4 * 1024 * 1024
DEFAULT_FLUSH_INTERVAL_BYTES = 64 * 1024 * 1024
DEFAULT_UNMOUNT_ATTEMPTS = 3
DEFAULT_UNMOUNT_BACKOFF_SECONDS = 1.0
DEFAULT_DD_PROGRESS_TIMEOUT_SECONDS = 30.0
DEFAULT_MIN_DEVICE_SIZE_BYTES = 100_000_000

DEFAULT_SETTINGS: dict[str, Any] = {
    "block_size": DEFAULT_BLOCK_SIZE,
    "flush_interval_bytes": DEFAULT_FLUSH_INTERVAL_BYTES,
    "unmount_attempts": DEFAULT_UNMOUNT_ATTEMPTS,
    "unmount_backoff_seconds": DEFAULT_UNMOUNT_BACKOFF_SECONDS,
    "confirm_timeout_seconds": None,
    "copy_backend": "native",
    "dd_progress_timeout_seconds": DEFAULT_DD_PROGRESS_TIMEOUT_SECONDS,
    "verify_after_write": False,
    "min_device_size_bytes": DEFAULT_MIN_DEVICE_SIZE_BYTES,
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def load_settings(path: Path | None = None) -> None:
    settings_store.values = dict(DEFAULT_SETTINGS)
    path = path or SETTINGS_PATH
    if not path.exists():
        return
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return
    if isinstance(data, dict):
        settings_store.values.update(data)


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def set_setting(key: str, value: Any) -> None:
    settings_store.values[key] = value


def get_bool(key: str, default: bool = False) -> bool:
    return bool(get_setting(key, default))


def get_int(key: str, default: int = 0) -> int:
    value = get_setting(key, default)
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def get_float(key: str, default: float | None = None) -> float | None:
    value = get_setting(key, default)
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


load_settings()
