"""
Engine configuration.

Loads .claude/planstate.yaml from the project root. If no config file
exists, returns defaults. Every value is range-checked; a bad value falls
back to its default with a warning rather than failing the load.

Example planstate.yaml:

    history_limit: 500
    default_memory_priority: 60
    default_page_size: 25
"""

import logging
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional

import yaml

from planstate.lib.constants import (
    CONFIG_FILE_NAME,
    DEFAULT_MEMORY_PRIORITY,
    DEFAULT_STATE_DIR,
    MAX_HISTORY_ENTRIES,
)
from planstate.lib.ids import is_safe_id

logger = logging.getLogger(__name__)


@dataclass
class EngineConfig:
    """Engine configuration from planstate.yaml."""
    state_dir: str = DEFAULT_STATE_DIR
    history_limit: int = MAX_HISTORY_ENTRIES
    default_memory_priority: int = DEFAULT_MEMORY_PRIORITY
    default_page_size: int = 20
    max_page_size: int = 100


# (minimum, maximum) per integer setting; None means unbounded
_INT_RANGES = {
    "history_limit": (1, None),
    "default_memory_priority": (0, 100),
    "default_page_size": (1, None),
    "max_page_size": (1, None),
}


def _coerce_int(key: str, value, default: int, config_path: Path) -> int:
    low, high = _INT_RANGES[key]
    if isinstance(value, bool) or not isinstance(value, int):
        logger.warning(f"[CONFIG] {config_path}: {key} must be an integer, got {value!r}; using {default}")
        return default
    if value < low or (high is not None and value > high):
        logger.warning(f"[CONFIG] {config_path}: {key}={value} out of range; using {default}")
        return default
    return value


def load_engine_config(project_root: Optional[Path]) -> EngineConfig:
    """Load planstate.yaml and return EngineConfig.

    If project_root is None or the file doesn't exist, returns defaults.
    """
    if project_root is None:
        return EngineConfig()

    config_path = Path(project_root) / DEFAULT_STATE_DIR / CONFIG_FILE_NAME
    if not config_path.exists():
        return EngineConfig()

    try:
        data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except (yaml.YAMLError, OSError) as e:
        logger.warning(f"[CONFIG] Failed to parse {config_path}: {e}")
        return EngineConfig()

    if data is None:
        return EngineConfig()
    if not isinstance(data, dict):
        logger.warning(f"[CONFIG] {config_path}: expected a mapping at top level, using defaults")
        return EngineConfig()

    defaults = EngineConfig()
    known = {f.name for f in fields(EngineConfig)}
    for key in sorted(set(data) - known):
        logger.warning(f"[CONFIG] {config_path}: ignoring unknown key '{key}'")

    values = {}
    for key in _INT_RANGES:
        if key in data:
            values[key] = _coerce_int(key, data[key], getattr(defaults, key), config_path)

    if "state_dir" in data:
        state_dir = data["state_dir"]
        if isinstance(state_dir, str) and (is_safe_id(state_dir) or is_safe_id(state_dir.lstrip("."))):
            values["state_dir"] = state_dir
        else:
            logger.warning(f"[CONFIG] {config_path}: invalid state_dir {state_dir!r}; using {DEFAULT_STATE_DIR}")

    config = EngineConfig(**values)
    if config.default_page_size > config.max_page_size:
        logger.warning(
            f"[CONFIG] {config_path}: default_page_size {config.default_page_size} exceeds "
            f"max_page_size {config.max_page_size}; clamping"
        )
        config.default_page_size = config.max_page_size
    return config
