"""
User preferences persisted as a small YAML document.

Unlike the settings file, preferences are written by the application itself,
so a damaged or outdated value falls back to its default instead of failing.
"""

from dataclasses import asdict, dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

import structlog
import yaml

logger = structlog.get_logger(__name__)


class TriggerMode(Enum):
    """How the two hardware buttons are recognised."""
    SUSTAINED_HOLD = "sustained_hold"  # hold for 1.5 s
    RAPID_REPEAT = "rapid_repeat"      # press 3 times within 600 ms


class ThemeMode(Enum):
    LIGHT = "light"
    DARK = "dark"
    SYSTEM = "system"


@dataclass(frozen=True)
class Preferences:
    """Snapshot of every user preference."""
    trigger_mode: TriggerMode = TriggerMode.SUSTAINED_HOLD
    vibrate_on_unit_boundary: bool = True
    auto_start_on_screen_off: bool = False
    first_launch: bool = True
    theme: ThemeMode = ThemeMode.DARK

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["trigger_mode"] = self.trigger_mode.value
        data["theme"] = self.theme.value
        return data


_ENUM_FIELDS = {"trigger_mode": TriggerMode, "theme": ThemeMode}
_BOOL_FIELDS = {"vibrate_on_unit_boundary", "auto_start_on_screen_off", "first_launch"}


class PreferenceStore:
    """Key-value preference storage backed by a YAML file.

    Values are cached after the first read; ``update`` writes through.
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self._cache: Optional[Preferences] = None

    def get(self) -> Preferences:
        if self._cache is None:
            self._cache = self._load()
        return self._cache

    def reload(self) -> Preferences:
        self._cache = None
        return self.get()

    def update(self, **changes: Any) -> Preferences:
        """Change one or more preferences and save them.

        Enum preferences accept either the enum member or its string value.

        Raises:
            ValueError: If a key is unknown or a value has the wrong type
        """
        parsed: Dict[str, Any] = {}
        for key, value in changes.items():
            if key in _ENUM_FIELDS:
                parsed[key] = _ENUM_FIELDS[key](value.value if isinstance(value, Enum) else value)
            elif key in _BOOL_FIELDS:
                if not isinstance(value, bool):
                    raise ValueError(f"'{key}' must be true or false")
                parsed[key] = value
            else:
                raise ValueError(f"Unknown preference: {key}")

        preferences = replace(self.get(), **parsed)
        self._save(preferences)
        self._cache = preferences
        logger.info("preferences_updated", changes=sorted(parsed))
        return preferences

    # Shorthands read by the timer and the trigger bindings

    @property
    def trigger_mode(self) -> TriggerMode:
        return self.get().trigger_mode

    @property
    def vibrate_on_unit_boundary(self) -> bool:
        return self.get().vibrate_on_unit_boundary

    @property
    def auto_start_on_screen_off(self) -> bool:
        return self.get().auto_start_on_screen_off

    def mark_first_launch_done(self) -> Preferences:
        return self.update(first_launch=False)

    def _load(self) -> Preferences:
        if not self.path.exists():
            return Preferences()

        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                raw = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError):
            logger.warning("preferences_unreadable", path=str(self.path), exc_info=True)
            return Preferences()

        if not isinstance(raw, dict):
            logger.warning("preferences_malformed", path=str(self.path))
            return Preferences()

        defaults = Preferences()
        values: Dict[str, Any] = {}
        for key, enum_type in _ENUM_FIELDS.items():
            if key not in raw:
                continue
            try:
                values[key] = enum_type(raw[key])
            except ValueError:
                logger.warning("preference_defaulted", key=key, value=raw[key])
                values[key] = getattr(defaults, key)
        for key in _BOOL_FIELDS:
            if key not in raw:
                continue
            if isinstance(raw[key], bool):
                values[key] = raw[key]
            else:
                logger.warning("preference_defaulted", key=key, value=raw[key])
        return replace(defaults, **values)

    def _save(self, preferences: Preferences) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w', encoding='utf-8') as f:
            yaml.safe_dump(preferences.to_dict(), f, sort_keys=True)
