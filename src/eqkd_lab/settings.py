"""
Persisted link settings.

Settings are stored as a flat JSON object, for example::

    {
      "packet_size": 100000,
      "linear_drift_coefficient": 0.05,
      "linear_drift_coeff_num_var": 5,
      "linear_drift_coeff_rel_var": 0.001,
      "time_window": 100000,
      "time_bin": 1000,
      "key_time_window": 1000,
      "key_time_bin": 100
    }

``time_window`` and ``time_bin`` are the clock synchronization histogram
settings; the ``key_`` pair sets the key correlation window.

Loading never raises: a missing or malformed file yields the defaults plus a
reason string. Saving goes through a temporary file in the target directory
that atomically replaces the previous file.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional, Tuple
import json
import logging
import os
import tempfile

from .helpers import validate_float, validate_int

logger = logging.getLogger(__name__)


class SettingsError(Exception):
    """Settings could not be written."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


@dataclass(frozen=True)
class LinkSettings:
    packet_size: int = 100000
    linear_drift_coefficient: float = 0.0
    linear_drift_coeff_num_var: int = 5
    linear_drift_coeff_rel_var: float = 0.001
    time_window: int = 100000
    time_bin: int = 1000
    key_time_window: int = 1000
    key_time_bin: int = 100

    def __post_init__(self):
        validate_int("packet_size", self.packet_size, min_value=1)
        validate_float("linear_drift_coefficient", self.linear_drift_coefficient, min_value=-1.0)
        validate_int("linear_drift_coeff_num_var", self.linear_drift_coeff_num_var, min_value=0)
        validate_float("linear_drift_coeff_rel_var", self.linear_drift_coeff_rel_var, min_value=0.0)
        validate_int("time_window", self.time_window, min_value=1)
        validate_int("time_bin", self.time_bin, min_value=1)
        validate_int("key_time_window", self.key_time_window, min_value=1)
        validate_int("key_time_bin", self.key_time_bin, min_value=1)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "LinkSettings":
        """Create LinkSettings from a dictionary; unknown keys are ignored."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(d) - known)
        if unknown:
            logger.warning("Ignoring unknown settings keys: %s", ", ".join(unknown))
        return cls(**{k: v for k, v in d.items() if k in known})

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def load_settings(path: str) -> Tuple[LinkSettings, Optional[str]]:
    """
    Returns (settings, reason). ``reason`` is None when the file was read,
    otherwise it says why the defaults are used.
    """
    settings_path = Path(path)
    if not settings_path.exists():
        return LinkSettings(), f"settings file not found: {path}"
    try:
        with open(settings_path, "r") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as exc:
        return LinkSettings(), f"could not read settings file {path}: {exc}"
    if not isinstance(data, dict):
        return LinkSettings(), f"settings file {path} must contain a JSON object"
    try:
        return LinkSettings.from_dict(data), None
    except (TypeError, ValueError) as exc:
        return LinkSettings(), f"invalid settings in {path}: {exc}"


def save_settings(settings: LinkSettings, path: str) -> Path:
    """
    Write settings atomically.

    Raises
    ------
    SettingsError
        If the file cannot be written; the previous file is left untouched.
    """
    out = Path(path)
    tmp_name = None
    try:
        out.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{out.name}.", suffix=".tmp", dir=out.parent)
        with os.fdopen(fd, "w") as f:
            json.dump(settings.to_dict(), f, indent=2)
            f.write("\n")
        os.replace(tmp_name, out)
    except OSError as exc:
        if tmp_name is not None and os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise SettingsError(f"could not write settings to {path}: {exc}") from exc
    return out
