from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, TypedDict

import yaml


logger = logging.getLogger(__name__)

PREFERENCES_KEY = "commute_preferences"
THEMES = ("dark", "light")


class Preferences(TypedDict):
    theme: str
    avoid_highways: bool
    selected_station: Dict[str, str]


class PreferencesError(ValueError):
    pass


def default_preferences(default_stations: Optional[Mapping[str, str]] = None) -> Preferences:
    return {
        "theme": "dark",
        "avoid_highways": False,
        "selected_station": dict(default_stations or {}),
    }


def _coerce(raw: Mapping[str, Any], base: Preferences) -> Preferences:
    theme = raw.get("theme", base["theme"])
    if theme not in THEMES:
        raise PreferencesError(f"Unsupported theme '{theme}'.")
    avoid = raw.get("avoid_highways", base["avoid_highways"])
    if not isinstance(avoid, bool):
        raise PreferencesError("avoid_highways must be true or false.")
    selected = raw.get("selected_station", base["selected_station"])
    if not isinstance(selected, Mapping):
        raise PreferencesError("selected_station must be a mapping of line to station.")
    merged = dict(base["selected_station"])
    merged.update({str(line): str(station) for line, station in selected.items()})
    return {"theme": theme, "avoid_highways": avoid, "selected_station": merged}


class PreferenceStore:
    """Flat preference document stored under one key in a YAML file.

    Every change rewrites the document wholesale.
    """

    def __init__(self, path: Path, default_stations: Optional[Mapping[str, str]] = None) -> None:
        self._path = path
        self._defaults = default_preferences(default_stations)
        self._lock = threading.Lock()
        self._current = self._load()

    def _load(self) -> Preferences:
        if not self._path.exists():
            return default_preferences(self._defaults["selected_station"])
        try:
            with self._path.open() as handle:
                document = yaml.safe_load(handle) or {}
            raw = document.get(PREFERENCES_KEY, {}) if isinstance(document, dict) else {}
            if not isinstance(raw, dict):
                raise PreferencesError(f"{PREFERENCES_KEY} must be a mapping.")
            return _coerce(raw, self._defaults)
        except (yaml.YAMLError, PreferencesError) as exc:
            logger.warning("Ignoring unreadable preferences at %s: %s", self._path, exc)
            return default_preferences(self._defaults["selected_station"])

    def _write(self, prefs: Preferences) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("w") as handle:
            yaml.safe_dump({PREFERENCES_KEY: dict(prefs)}, handle, sort_keys=False)

    def get(self) -> Preferences:
        with self._lock:
            current = self._current
            return {
                "theme": current["theme"],
                "avoid_highways": current["avoid_highways"],
                "selected_station": dict(current["selected_station"]),
            }

    def update(self, changes: Mapping[str, Any], valid_stations: Optional[Mapping[str, set]] = None) -> Preferences:
        unknown = set(changes) - set(Preferences.__annotations__)
        if unknown:
            raise PreferencesError(f"Unknown preference keys: {', '.join(sorted(unknown))}")
        with self._lock:
            updated = _coerce(changes, self._current)
            if valid_stations is not None:
                for line_id, station_id in updated["selected_station"].items():
                    if line_id not in valid_stations or station_id not in valid_stations[line_id]:
                        raise PreferencesError(f"Unknown station {station_id} for line {line_id}.")
            self._write(updated)
            self._current = updated
        logger.info("Preferences saved to %s", self._path)
        return self.get()
