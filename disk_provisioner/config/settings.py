"""Settings storage for runtime configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


SETTINGS_PATH = Path(
    os.environ.get(
        "DISK_PROVISIONER_SETTINGS_PATH",
        Path.home() / ".config" / "disk-provisioner" / "settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_DESTRUCTIVE_TIMEOUT_SECONDS = 300.0
DEFAULT_NON_DESTRUCTIVE_TIMEOUT_SECONDS = 60.0
DEFAULT_MAX_RETRIES = 1
DEFAULT_RETRY_BACKOFF_SECONDS = 2.0
MAX_WORKERS = 8

DEFAULT_SETTINGS: dict[str, Any] = {
    "destructive_timeout_seconds": DEFAULT_DESTRUCTIVE_TIMEOUT_SECONDS,
    "non_destructive_timeout_seconds": DEFAULT_NON_DESTRUCTIVE_TIMEOUT_SECONDS,
    "max_retries": DEFAULT_MAX_RETRIES,
    "retry_backoff_seconds": DEFAULT_RETRY_BACKOFF_SECONDS,
    "max_workers": MAX_WORKERS,
    "stop_on_any_failure": True,
    "preflight": True,
    "log_dir": None,
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


def get_bool(key: str, default: bool = False) -> bool:
    return bool(get_setting(key, default))


def get_float(key: str, default: float = 0.0) -> float:
    value = get_setting(key, default)
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def get_int(key: str, default: int = 0) -> int:
    value = get_setting(key, default)
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


load_settings()
