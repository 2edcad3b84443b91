"""
Configuration management and loading.

Handles timer, billing, gesture and storage settings.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from dance_timer.storage.db import DEFAULT_DB_PATH

DEFAULT_PREFERENCES_PATH = "dance_timer_prefs.yaml"

_SECTION_KEYS = {
    "billing": {"grace_seconds"},
    "timer": {
        "auto_confirm_seconds",
        "tick_interval_seconds",
        "backup_tick_interval_seconds",
        "wake_lock_max_seconds",
    },
    "gestures": {"hold_threshold_ms", "repeat_window_ms", "repeat_count"},
    "storage": {"database_path", "preferences_path"},
}


@dataclass(frozen=True)
class TimerSettings:
    """Tunable constants for the billing engine, timer and gesture detector."""
    grace_seconds: int = 30
    auto_confirm_seconds: int = 15
    tick_interval_seconds: float = 1.0
    backup_tick_interval_seconds: float = 30.0
    wake_lock_max_seconds: float = 60 * 60
    hold_threshold_ms: int = 1500
    repeat_window_ms: int = 600
    repeat_count: int = 3
    database_path: str = DEFAULT_DB_PATH
    preferences_path: str = DEFAULT_PREFERENCES_PATH

    def __post_init__(self):
        """Validate setting values."""
        if self.grace_seconds < 0:
            raise ValueError("grace_seconds must be >= 0")
        if self.auto_confirm_seconds < 0:
            raise ValueError("auto_confirm_seconds must be >= 0")
        if self.tick_interval_seconds <= 0:
            raise ValueError("tick_interval_seconds must be > 0")
        if self.backup_tick_interval_seconds <= 0:
            raise ValueError("backup_tick_interval_seconds must be > 0")
        if self.wake_lock_max_seconds <= 0:
            raise ValueError("wake_lock_max_seconds must be > 0")
        if self.hold_threshold_ms <= 0:
            raise ValueError("hold_threshold_ms must be > 0")
        if self.repeat_window_ms <= 0:
            raise ValueError("repeat_window_ms must be > 0")
        if self.repeat_count < 1:
            raise ValueError("repeat_count must be >= 1")
        if not self.database_path:
            raise ValueError("database_path cannot be empty")
        if not self.preferences_path:
            raise ValueError("preferences_path cannot be empty")


def load_settings(path: str) -> TimerSettings:
    """Load and validate timer settings from a YAML file.

    Every section is optional; omitted keys keep their defaults. Unknown
    sections or keys are rejected so typos never pass silently.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated TimerSettings object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Settings file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    unknown_sections = set(raw_config.keys()) - set(_SECTION_KEYS)
    if unknown_sections:
        raise ValueError(f"Unknown configuration sections: {unknown_sections}")

    values: Dict[str, Any] = {}
    for section, allowed_keys in _SECTION_KEYS.items():
        data = raw_config.get(section)
        if data is None:
            continue
        if not isinstance(data, dict):
            raise ValueError(f"'{section}' must be a dictionary")
        unknown_keys = set(data.keys()) - allowed_keys
        if unknown_keys:
            raise ValueError(f"Unknown keys in {section}: {unknown_keys}")
        for key, value in data.items():
            values[key] = _coerce(section, key, value)

    return TimerSettings(**values)


def load_settings_or_default(path: Optional[str]) -> TimerSettings:
    """Load settings from ``path`` when given, otherwise use the defaults."""
    if path is None:
        return TimerSettings()
    return load_settings(path)


def _coerce(section: str, key: str, value: Any) -> Any:
    """Check the YAML type of one setting and convert it to the field type.

    Raises:
        ValueError: If the value has the wrong type
    """
    where = f"{section}.{key}"
    if section == "storage":
        if not isinstance(value, str):
            raise ValueError(f"'{where}' must be a string")
        return value

    # bool is an int subclass; "true" is never a valid number here
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{where}' must be a number")

    if key.endswith("_seconds") and key not in ("grace_seconds", "auto_confirm_seconds"):
        return float(value)
    if not float(value).is_integer():
        raise ValueError(f"'{where}' must be a whole number")
    return int(value)
