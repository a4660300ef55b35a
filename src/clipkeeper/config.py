"""Configuration loaded from an optional JSON file and environment variables.

Environment variables win over the file; the file wins over defaults.
"""

import json
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger("clipkeeper.config")

_FALSE_VALUES = ("0", "false", "no", "off")


def clipkeeper_home() -> Path:
    """Resolve CLIPKEEPER_HOME lazily so tests can override via env var."""
    return Path(os.environ.get("CLIPKEEPER_HOME", str(Path.home() / ".clipkeeper")))


def _env_bool(name: str, default: bool) -> bool:
    val = os.environ.get(name)
    if val is None or not val.strip():
        return default
    return val.strip().lower() not in _FALSE_VALUES


@dataclass
class ClipkeeperConfig:
    home: Path = field(default_factory=clipkeeper_home)
    db_path: Optional[Path] = None

    # Retention (0 = keep forever)
    retention_days: int = 30
    sweep_interval: float = 3600.0

    # Search
    search_limit: int = 10
    full_text: bool = True

    def __post_init__(self):
        self.home = Path(self.home)
        if self.db_path is None:
            self.db_path = self.home / "clipkeeper.db"
        elif str(self.db_path) != ":memory:":
            self.db_path = Path(self.db_path)

    def validate(self) -> List[str]:
        """Return a list of human-readable problems; empty when valid."""
        errors = []
        if not isinstance(self.retention_days, int) or self.retention_days < 0:
            errors.append("Retention days must be a non-negative integer")
        if self.sweep_interval <= 0:
            errors.append("Sweep interval must be positive")
        if not isinstance(self.search_limit, int) or self.search_limit < 1:
            errors.append("Search limit must be at least 1")
        return errors


def _read_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text())
    except (json.JSONDecodeError, OSError) as e:
        logger.warning("Failed to load config from %s: %s. Using defaults.", path, e)
        return {}
    if not isinstance(data, dict):
        logger.warning("Config file %s is not a JSON object. Using defaults.", path)
        return {}
    known = {f.name for f in fields(ClipkeeperConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        logger.debug("Ignoring unknown config keys: %s", ", ".join(unknown))
    return {k: v for k, v in data.items() if k in known}


def load_config(path=None) -> ClipkeeperConfig:
    """Build a config from defaults, then ``path`` (or <home>/config.json), then env vars."""
    home = clipkeeper_home()
    config_path = Path(path) if path else home / "config.json"
    values: Dict[str, Any] = {"home": home}
    values.update(_read_file(config_path))

    if os.environ.get("CLIPKEEPER_DB_PATH"):
        values["db_path"] = os.environ["CLIPKEEPER_DB_PATH"]
    if os.environ.get("CLIPKEEPER_RETENTION_DAYS"):
        values["retention_days"] = int(os.environ["CLIPKEEPER_RETENTION_DAYS"])
    if os.environ.get("CLIPKEEPER_SWEEP_INTERVAL"):
        values["sweep_interval"] = float(os.environ["CLIPKEEPER_SWEEP_INTERVAL"])
    if os.environ.get("CLIPKEEPER_SEARCH_LIMIT"):
        values["search_limit"] = int(os.environ["CLIPKEEPER_SEARCH_LIMIT"])
    values["full_text"] = _env_bool("CLIPKEEPER_FTS", bool(values.get("full_text", True)))

    return ClipkeeperConfig(**values)
