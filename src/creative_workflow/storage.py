"""File-backed repositories for tasks and workflow events."""

from __future__ import annotations

import threading
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

import yaml
from filelock import FileLock

from .constants import SCHEMA_VERSION
from .io_utils import _append_jsonl, _atomic_write_yaml, _read_jsonl
from .models import Task, now_iso


class TaskRepository(ABC):
    @abstractmethod
    def list(self) -> list[Task]:
        raise NotImplementedError

    @abstractmethod
    def get(self, task_id: str) -> Optional[Task]:
        raise NotImplementedError

    @abstractmethod
    def upsert(self, task: Task) -> Task:
        raise NotImplementedError

    @abstractmethod
    def delete(self, task_id: str) -> bool:
        raise NotImplementedError


class EventRepository(ABC):
    @abstractmethod
    def append(self, *, event_type: str, entity_id: str, payload: dict[str, Any], project_id: str) -> dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def for_entity(self, entity_id: str) -> list[dict[str, Any]]:
        raise NotImplementedError


class FileTaskRepository(TaskRepository):
    """Tasks stored as one YAML document, replaced whole on every write.

    A thread lock guards in-process callers and a file lock guards other
    processes sharing the same state directory.
    """

    def __init__(self, path: Path, lock_path: Path) -> None:
        self._path = path
        self._lock = FileLock(str(lock_path))
        self._thread_lock = threading.RLock()

    def _load(self) -> list[Task]:
        if not self._path.exists():
            return []
        raw = yaml.safe_load(self._path.read_text(encoding="utf-8"))
        if not isinstance(raw, dict):
            return []
        items = raw.get("tasks", [])
        if not isinstance(items, list):
            return []
        return [Task.from_dict(item) for item in items if isinstance(item, dict)]

    def _save(self, tasks: list[Task]) -> None:
        payload = {"version": SCHEMA_VERSION, "tasks": [task.to_dict() for task in tasks]}
        _atomic_write_yaml(self._path, payload)

    def list(self) -> list[Task]:
        with self._thread_lock:
            with self._lock:
                return self._load()

    def get(self, task_id: str) -> Optional[Task]:
        for task in self.list():
            if task.id == task_id:
                return task
        return None

    def upsert(self, task: Task) -> Task:
        with self._thread_lock:
            with self._lock:
                tasks = self._load()
                for idx, existing in enumerate(tasks):
                    if existing.id == task.id:
                        tasks[idx] = task
                        break
                else:
                    task.created_at = task.created_at or now_iso()
                    tasks.append(task)
                self._save(tasks)
        return task

    def delete(self, task_id: str) -> bool:
        with self._thread_lock:
            with self._lock:
                tasks = self._load()
                keep = [t for t in tasks if t.id != task_id]
                if len(keep) == len(tasks):
                    return False
                self._save(keep)
        return True


class FileEventRepository(EventRepository):
    """Append-only JSONL log of workflow events."""

    def __init__(self, path: Path, lock_path: Path) -> None:
        self._path = path
        self._lock = FileLock(str(lock_path))
        self._thread_lock = threading.RLock()

    def append(self, *, event_type: str, entity_id: str, payload: dict[str, Any], project_id: str) -> dict[str, Any]:
        event = {
            "id": f"evt-{uuid.uuid4().hex[:10]}",
            "ts": now_iso(),
            "type": event_type,
            "entity_id": entity_id,
            "payload": payload,
            "project_id": project_id,
        }
        with self._thread_lock:
            with self._lock:
                _append_jsonl(self._path, event)
        return event

    def for_entity(self, entity_id: str) -> list[dict[str, Any]]:
        with self._thread_lock:
            with self._lock:
                records = _read_jsonl(self._path)
        return [event for event in records if event.get("entity_id") == entity_id]
