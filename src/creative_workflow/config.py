"""Load optional engine configuration from `.creative_workflow/config.yaml`."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from .constants import (
    CONFIG_FILE,
    DEFAULT_ACTIVITY_CHANCE,
    DEFAULT_AUTO_POLL,
    DEFAULT_MAX_INCREMENT,
    DEFAULT_POLL_INTERVAL_SECONDS,
    STATE_DIR_NAME,
)
from .io_utils import _load_data_with_error


def load_config(project_dir: Path) -> tuple[dict[str, Any], str | None]:
    """Load the optional config file.

    Args:
        project_dir: Project root holding the state directory.

    Returns:
        A tuple of `(config, error_message)`. If the file is missing, returns `({}, None)`.
    """
    path = project_dir.resolve() / STATE_DIR_NAME / CONFIG_FILE
    if not path.exists():
        return {}, None
    data, err = _load_data_with_error(path, {})
    if err:
        return {}, err
    return data, None


def _get_nested(config: dict[str, Any], *keys: str) -> Any:
    cur: Any = config
    for key in keys:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def _as_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def get_evidence_config(config: dict[str, Any]) -> dict[str, Any]:
    """Extract evidence polling settings, filling defaults and clamping ranges.

    Args:
        config: Engine configuration dictionary.

    Returns:
        A mapping with `poll_interval_seconds`, `activity_chance`,
        `max_increment` and `auto_poll`.
    """
    raw = _get_nested(config, "evidence")
    raw = raw if isinstance(raw, dict) else {}

    interval = _as_float(raw.get("poll_interval_seconds"), DEFAULT_POLL_INTERVAL_SECONDS)
    if interval <= 0:
        interval = DEFAULT_POLL_INTERVAL_SECONDS
    chance = min(max(_as_float(raw.get("activity_chance"), DEFAULT_ACTIVITY_CHANCE), 0.0), 1.0)
    try:
        max_increment = max(int(raw.get("max_increment", DEFAULT_MAX_INCREMENT)), 1)
    except (TypeError, ValueError):
        max_increment = DEFAULT_MAX_INCREMENT
    auto_poll = raw.get("auto_poll", DEFAULT_AUTO_POLL)

    return {
        "poll_interval_seconds": interval,
        "activity_chance": chance,
        "max_increment": max_increment,
        "auto_poll": auto_poll if isinstance(auto_poll, bool) else DEFAULT_AUTO_POLL,
    }


def get_extra_tools(config: dict[str, Any]) -> list[dict[str, Any]]:
    """Extract additional tool catalog entries from `tools.extra`."""
    raw = _get_nested(config, "tools", "extra")
    if not isinstance(raw, list):
        return []
    return [item for item in raw if isinstance(item, dict)]
