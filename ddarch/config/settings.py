"""Settings storage for ddarch defaults."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


SETTINGS_PATH = Path(
    os.environ.get(
        "DDARCH_SETTINGS_PATH",
        Path.home() / ".config" / "ddarch" / "settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
MIB = 1024 * 1024
DEFAULT_RESIZEPART_TAIL = MIB
DEFAULT_TRUNCATE_TAIL = MIB
DEFAULT_COMPRESSION_RATIO = 0.75
DEFAULT_DD_BLOCK_SIZE = "4M"

DEFAULT_SETTINGS: dict[str, Any] = {
    "arch_type": "7z",
    "resizepart_tail": DEFAULT_RESIZEPART_TAIL,
    "truncate_tail": DEFAULT_TRUNCATE_TAIL,
    "compression_ratio": DEFAULT_COMPRESSION_RATIO,
    "dd_block_size": DEFAULT_DD_BLOCK_SIZE,
    "space_check": True,
    "work_dir": None,
    "mnt_dir": None,
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


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def get_bool(key: str, default: bool = False) -> bool:
    return bool(get_setting(key, default))


def get_int(key: str, default: int = 0) -> int:
    value = get_setting(key, default)
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def get_float(key: str, default: float = 0.0) -> float:
    value = get_setting(key, default)
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


load_settings()
