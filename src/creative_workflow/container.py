"""Bootstrap the state directory and wire the file repositories."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from loguru import logger

from .constants import (
    CONFIG_FILE,
    DEFAULT_ACTIVITY_CHANCE,
    DEFAULT_AUTO_POLL,
    DEFAULT_MAX_INCREMENT,
    DEFAULT_POLL_INTERVAL_SECONDS,
    EVENTS_FILE,
    EVENTS_LOCK_FILE,
    SCHEMA_VERSION,
    STATE_DIR_NAME,
    TASKS_FILE,
    TASKS_LOCK_FILE,
)
from .io_utils import _atomic_write_yaml, _load_data_with_error
from .storage import FileEventRepository, FileTaskRepository


def _default_config() -> dict[str, Any]:
    return {
        "schema_version": SCHEMA_VERSION,
        "evidence": {
            "poll_interval_seconds": DEFAULT_POLL_INTERVAL_SECONDS,
            "activity_chance": DEFAULT_ACTIVITY_CHANCE,
            "max_increment": DEFAULT_MAX_INCREMENT,
            "auto_poll": DEFAULT_AUTO_POLL,
        },
        "tools": {"extra": []},
    }


def ensure_state_root(project_dir: Path) -> Path:
    """Create ``.creative_workflow`` with its state files if missing.

    An existing config is kept as-is apart from stamping ``schema_version``;
    an unreadable config is left untouched so it can be repaired by hand.
    """
    state_root = project_dir / STATE_DIR_NAME
    state_root.mkdir(parents=True, exist_ok=True)

    tasks_path = state_root / TASKS_FILE
    if not tasks_path.exists():
        _atomic_write_yaml(tasks_path, {"version": SCHEMA_VERSION, "tasks": []})
    events_path = state_root / EVENTS_FILE
    if not events_path.exists():
        events_path.touch()

    config_path = state_root / CONFIG_FILE
    if not config_path.exists():
        _atomic_write_yaml(config_path, _default_config())
        return state_root

    config, err = _load_data_with_error(config_path, {})
    if err:
        logger.warning("Leaving unreadable config in place: {}", err)
        return state_root
    if config.get("schema_version") != SCHEMA_VERSION:
        config["schema_version"] = SCHEMA_VERSION
        _atomic_write_yaml(config_path, config)
    return state_root


class Container:
    def __init__(self, project_dir: Path) -> None:
        self.project_dir = project_dir.resolve()
        self.state_root = ensure_state_root(self.project_dir)

        self.tasks = FileTaskRepository(self.state_root / TASKS_FILE, self.state_root / TASKS_LOCK_FILE)
        self.events = FileEventRepository(self.state_root / EVENTS_FILE, self.state_root / EVENTS_LOCK_FILE)

    @property
    def project_id(self) -> str:
        return self.project_dir.name
