"""Storage paths, JSON helpers and the persisted key-value settings."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
import tempfile
from typing import Any

from platformdirs import user_config_path, user_state_path

logger = logging.getLogger(__name__)

APP_NAME = "darkware-zapret"
SETTINGS_FILE = "settings.json"


def get_config_dir() -> Path:
    return Path(user_config_path(APP_NAME))


def get_state_dir() -> Path:
    return Path(user_state_path(APP_NAME))


def get_logs_dir() -> Path:
    return get_state_dir() / "logs"


def ensure_dirs() -> None:
    for path in (get_config_dir(), get_state_dir(), get_logs_dir()):
        path.mkdir(parents=True, exist_ok=True)


def load_json(path: Path, default: Any) -> Any:
    if not path.exists():
        return default
    try:
        with path.open("r", encoding="utf-8") as handle:
            return json.load(handle)
    except json.JSONDecodeError:
        return default


class SettingsStore:
    """String key-value store persisted as a flat JSON object.

    Remembers the selected engine and the per-engine strategy across restarts
    of the application.
    """

    def __init__(self, path: Path | None = None) -> None:
        self.path = path or (get_config_dir() / SETTINGS_FILE)
        self._values: dict[str, str] = {}
        self.last_load_error: str | None = None
        self.load()

    def load(self) -> None:
        self.last_load_error = None
        data = load_json(self.path, None)
        if data is None:
            if self.path.exists():
                self.last_load_error = f"Settings file is corrupted: {self.path}"
                logger.warning("%s; starting with defaults", self.last_load_error)
            self._values = {}
            return
        if not isinstance(data, dict):
            self.last_load_error = f"Settings file format is invalid: {self.path}"
            logger.warning("%s; starting with defaults", self.last_load_error)
            self._values = {}
            return
        self._values = {
            str(key): value for key, value in data.items() if isinstance(value, str)
        }

    def get_string(self, key: str) -> str | None:
        return self._values.get(key)

    def set_string(self, key: str, value: str) -> None:
        if self._values.get(key) == value:
            return
        self._values[key] = value
        self._atomic_write_json(dict(self._values))

    def _atomic_write_json(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path_str = tempfile.mkstemp(
            prefix=f".{self.path.name}.",
            suffix=".tmp",
            dir=str(self.path.parent),
        )
        tmp_path = Path(tmp_path_str)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(data, handle, indent=2, sort_keys=True)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self.path)
        except Exception:
            try:
                if tmp_path.exists():
                    tmp_path.unlink()
            except OSError:
                logger.exception("Failed to remove temporary settings file: %s", tmp_path)
            raise
