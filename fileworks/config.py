"""Engine settings for fileworks.

Settings are stored as JSON under ``~/.fileworks/config.json``.  The engine
itself holds no state: a host application loads a :class:`ConfigManager`
and passes it (or individual values) to the job-start functions.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_BASE_DIR = Path.home() / ".fileworks"

DEFAULT_CONFIG: dict[str, Any] = {
    "tar_path": None,
    "copy_chunk_size": 256 * 1024,
    "progress_interval": 0.05,
    "staging_dir": str(DEFAULT_BASE_DIR / "tmp"),
    "ssh_timeout": 15,
}

# ---------------------------------------------------------------------------
# ConfigManager
# ---------------------------------------------------------------------------


class ConfigManager:
    """Loads and persists engine settings.

    Writes atomically (write-to-temp, then rename) to prevent corruption on
    unexpected exit.  A corrupt config triggers a warning and a safe reset —
    it never crashes the host.
    """

    def __init__(self, base_dir: Path | None = None) -> None:
        """Initialise, creating the settings directory if necessary."""
        self._base = base_dir or DEFAULT_BASE_DIR
        self._config_path = self._base / "config.json"

        self._base.mkdir(parents=True, exist_ok=True)
        self._config: dict[str, Any] = self._load_config()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _atomic_write(self, path: Path, data: Any) -> None:
        """Serialise *data* as JSON and write atomically to *path*."""
        tmp = path.with_suffix(".tmp")
        try:
            tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
            tmp.replace(path)
        except OSError as exc:
            logger.error("Failed to write %s: %s", path, exc)
            raise

    def _load_config(self) -> dict[str, Any]:
        """Load ``config.json``, resetting to defaults on corruption."""
        if not self._config_path.exists():
            logger.debug("No config file — creating defaults")
            config = dict(DEFAULT_CONFIG)
            self._atomic_write(self._config_path, config)
            return config

        try:
            raw = self._config_path.read_text(encoding="utf-8")
            loaded = json.loads(raw)
            if not isinstance(loaded, dict):
                raise ValueError("Config root must be a JSON object")
            # Merge with defaults so new keys are always present
            merged = dict(DEFAULT_CONFIG)
            merged.update(loaded)
            return merged
        except (json.JSONDecodeError, ValueError, OSError) as exc:
            logger.warning("Corrupt config.json (%s) — resetting to defaults", exc)
            config = dict(DEFAULT_CONFIG)
            self._atomic_write(self._config_path, config)
            return config

    # ------------------------------------------------------------------
    # Access
    # ------------------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        """Return the value for *key*, or *default* if missing."""
        return self._config.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Set *key* to *value* and persist the config file."""
        self._config[key] = value
        self._atomic_write(self._config_path, self._config)
        logger.debug("Config updated: %s = %r", key, value)

    def get_all(self) -> dict[str, Any]:
        """Return a shallow copy of the full config dict."""
        return dict(self._config)

    # ------------------------------------------------------------------
    # Typed accessors
    # ------------------------------------------------------------------

    @property
    def tar_path(self) -> str | None:
        """User override for the tar executable, or ``None`` to auto-detect."""
        value = self._config.get("tar_path")
        return value or None

    @property
    def staging_dir(self) -> Path:
        return Path(self._config.get("staging_dir") or DEFAULT_CONFIG["staging_dir"]).expanduser()

    @property
    def copy_chunk_size(self) -> int:
        return _positive_int(self._config.get("copy_chunk_size"), DEFAULT_CONFIG["copy_chunk_size"])

    @property
    def progress_interval(self) -> float:
        value = self._config.get("progress_interval")
        if isinstance(value, (int, float)) and value >= 0:
            return float(value)
        return DEFAULT_CONFIG["progress_interval"]

    @property
    def ssh_timeout(self) -> float:
        return float(_positive_int(self._config.get("ssh_timeout"), DEFAULT_CONFIG["ssh_timeout"]))


def _positive_int(value: Any, fallback: int) -> int:
    """Return *value* if it is a positive int, else *fallback* (with a warning)."""
    if isinstance(value, int) and not isinstance(value, bool) and value > 0:
        return value
    if value is not None:
        logger.warning("Ignoring invalid setting value %r — using %r", value, fallback)
    return fallback
