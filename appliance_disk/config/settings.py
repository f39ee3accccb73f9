"""Settings storage for engine configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


SETTINGS_PATH = Path(
    os.environ.get(
        "APPLIANCE_DISK_SETTINGS_PATH",
        Path.home() / ".config" / "appliance-disk" / "settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_KPARTX_PATH = "kpartx"
DEFAULT_MAPPER_DIR = "/dev/mapper"
DEFAULT_MAPPER_GRACE_SECONDS = 1.0
DEFAULT_CHROOT_PATH = "/usr/local/bin:/usr/local/sbin:/usr/bin:/usr/sbin:/bin:/sbin"

DEFAULT_SETTINGS: dict[str, Any] = {
    "kpartx_path": DEFAULT_KPARTX_PATH,
    "mapper_dir": DEFAULT_MAPPER_DIR,
    "mapper_grace_seconds": DEFAULT_MAPPER_GRACE_SECONDS,
    "chroot_path": DEFAULT_CHROOT_PATH,
    "log_dir": None,
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def load_settings() -> None:
    settings_store.values = dict(DEFAULT_SETTINGS)
    if not SETTINGS_PATH.exists():
        return
    try:
        data = json.loads(SETTINGS_PATH.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return
    if isinstance(data, dict):
        settings_store.values.update(data)


def save_settings() -> None:
    SETTINGS_PATH.parent.mkdir(parents=True, exist_ok=True)
    SETTINGS_PATH.write_text(
        json.dumps(settings_store.values, indent=2, sort_keys=True),
        encoding="utf-8",
    )


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def set_setting(key: str, value: Any) -> None:
    settings_store.values[key] = value
    save_settings()


def get_float(key: str, default: float = 0.0) -> float:
    value = get_setting(key, default)
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


load_settings()
