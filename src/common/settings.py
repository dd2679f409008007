"""
Settings

Operator settings loaded from a JSON file. Everything has a default, so a
host without any settings file behaves exactly like a fresh install.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, fields, asdict
from pathlib import Path
from typing import Optional, List, Dict, Any

from .exceptions import InvalidConfigError

logger = logging.getLogger(__name__)

ENV_VAR = "GPU_PASSTHROUGH_CONFIG"


@dataclass
class Settings:
    """Tunable behaviour for detection, synthesis and verification."""

    probe_timeout: float = 30.0
    container_config_dir: str = "/etc/pve/lxc"
    udev_rules_path: str = "/etc/udev/rules.d/99-gpu-passthrough.rules"
    # None = decide from the detected platform version
    mask_apparmor_parameter: Optional[bool] = None
    stable_by_path_mounts: bool = False
    log_file: Optional[str] = None
    json_logs: bool = False

    SEARCH_PATHS = [
        Path("/etc/gpu-passthrough/settings.json"),
        Path.home() / ".config/gpu-passthrough/settings.json",
    ]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Settings":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            logger.warning(f"Ignoring unknown settings: {', '.join(unknown)}")

        values = {k: v for k, v in data.items() if k in known}
        settings = cls(**values)
        settings.validate()
        return settings

    def validate(self) -> None:
        if not isinstance(self.probe_timeout, (int, float)) or self.probe_timeout <= 0:
            raise InvalidConfigError("probe_timeout", self.probe_timeout, "must be a positive number")
        if self.mask_apparmor_parameter not in (None, True, False):
            raise InvalidConfigError(
                "mask_apparmor_parameter", self.mask_apparmor_parameter, "must be true, false or null"
            )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def candidate_paths() -> List[Path]:
    """Settings files in the order they are consulted."""
    paths = []
    override = os.environ.get(ENV_VAR)
    if override:
        paths.append(Path(override))
    paths.extend(Settings.SEARCH_PATHS)
    return paths


def load_settings(path: Optional[Path] = None) -> Settings:
    """
    Load settings from the first existing settings file.

    Args:
        path: Explicit settings file; skips the search when given

    Returns:
        Settings with defaults for anything not specified

    Raises:
        InvalidConfigError: If the file is not valid JSON or has bad values
    """
    paths = [path] if path else candidate_paths()

    for candidate in paths:
        if not candidate.exists():
            continue

        try:
            with open(candidate) as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise InvalidConfigError(str(candidate), "<file>", f"not valid JSON: {e}")

        if not isinstance(data, dict):
            raise InvalidConfigError(str(candidate), "<file>", "top level must be an object")

        logger.debug(f"Loaded settings from {candidate}")
        return Settings.from_dict(data)

    return Settings()
