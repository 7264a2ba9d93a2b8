"""Evidence tracking for AI tool usage.

The evidence session runs independently of the workflow step.  Counts only
move while the session is ``active``; activity arrives from an
:class:`EvidenceSource`, which in local mode is a random-chance simulation
standing in for the browser-extension telemetry feed.
"""

from __future__ import annotations

import copy
import random
import threading
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

from loguru import logger

from .constants import DEFAULT_ACTIVITY_CHANCE, DEFAULT_MAX_INCREMENT, DEFAULT_POLL_INTERVAL_SECONDS
from .errors import ErrorKind, Outcome, WorkflowError
from .models import EvidenceCounts, EvidenceSession, EvidenceStatus, Task, now_iso


@dataclass(frozen=True)
class EvidenceDelta:
    """Non-negative increments to apply to the evidence counts."""

    prompts: int = 0
    generations: int = 0
    downloads: int = 0

    def __post_init__(self) -> None:
        for name in ("prompts", "generations", "downloads"):
            if int(getattr(self, name)) < 0:
                raise ValueError(f"Evidence increment '{name}' must be non-negative")

    @property
    def is_empty(self) -> bool:
        return not (self.prompts or self.generations or self.downloads)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EvidenceDelta":
        return cls(
            prompts=int(data.get("prompts") or 0),
            generations=int(data.get("generations") or 0),
            downloads=int(data.get("downloads") or 0),
        )

    def to_dict(self) -> dict[str, int]:
        return {"prompts": self.prompts, "generations": self.generations, "downloads": self.downloads}


def _new_session_id() -> str:
    return f"ev-{uuid.uuid4().hex[:12]}"


def tracking_error(task: Task) -> Optional[WorkflowError]:
    """Return why evidence cannot be tracked for ``task``, or None."""
    if task.converted_to_manual:
        return WorkflowError(
            ErrorKind.IRREVERSIBLE_ACTION_ALREADY_TAKEN,
            "Task was converted to manual; its evidence is read-only.",
        )
    if not task.is_ai_mode:
        return WorkflowError(ErrorKind.INVALID_STATE, "Evidence tracking is not needed for manual tasks.")
    return None


def open_session(session: EvidenceSession, *, now: str, reset_counts: bool = True) -> None:
    """Mark ``session`` active under a fresh session id (in place)."""
    session.status = EvidenceStatus.ACTIVE
    session.session_id = _new_session_id()
    session.last_activity_at = now
    if reset_counts:
        session.counts = EvidenceCounts()


def initialize_session(task: Task, *, now: Optional[str] = None) -> EvidenceSession:
    """Build the session a task gets when it enters an AI mode.

    The session starts active when the task has already reached the
    tool-launch stage, inactive otherwise.  Existing counts are carried over.
    """
    now = now or now_iso()
    session = EvidenceSession(counts=copy.deepcopy(task.evidence.counts))
    reached = [task.workflow_step or 0, *task.completed_steps]
    if max(reached) >= 3:
        open_session(session, now=now, reset_counts=False)
    else:
        session.status = EvidenceStatus.INACTIVE
    return session


def activate(task: Task, *, now: Optional[str] = None) -> Outcome:
    err = tracking_error(task)
    if err is not None:
        return Outcome(task=task, error=err)
    updated = copy.deepcopy(task)
    now = now or now_iso()
    open_session(updated.evidence, now=now)
    updated.touch(now)
    return Outcome(task=updated)


def deactivate(task: Task, *, now: Optional[str] = None) -> Outcome:
    """Stop capturing. Counts are kept."""
    err = tracking_error(task)
    if err is not None:
        return Outcome(task=task, error=err)
    if task.evidence.status == EvidenceStatus.INACTIVE:
        return Outcome(task=task)
    updated = copy.deepcopy(task)
    updated.evidence.status = EvidenceStatus.INACTIVE
    updated.evidence.session_id = None
    updated.touch(now)
    return Outcome(task=updated)


def record_evidence(task: Task, delta: EvidenceDelta, *, now: Optional[str] = None) -> Outcome:
    """Apply ``delta`` to the counts; a no-op unless the session is active."""
    if task.evidence.status != EvidenceStatus.ACTIVE or delta.is_empty:
        return Outcome(task=task)
    updated = copy.deepcopy(task)
    now = now or now_iso()
    counts = updated.evidence.counts
    counts.prompts += delta.prompts
    counts.generations += delta.generations
    counts.downloads += delta.downloads
    updated.evidence.last_activity_at = now
    updated.touch(now)
    return Outcome(task=updated)


# ---------------------------------------------------------------------------
# Event sources
# ---------------------------------------------------------------------------

class EvidenceSource(Protocol):
    def next_batch(self) -> Optional[EvidenceDelta]:
        ...


class SimulatedEvidenceSource:
    """Random-chance stand-in for the browser-extension telemetry channel.

    Each poll has ``activity_chance`` of reporting activity: at least one
    prompt, possibly generations, and a download only alongside generations.
    """

    def __init__(
        self,
        activity_chance: float = DEFAULT_ACTIVITY_CHANCE,
        max_increment: int = DEFAULT_MAX_INCREMENT,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.activity_chance = min(max(float(activity_chance), 0.0), 1.0)
        self.max_increment = max(int(max_increment), 1)
        self._rng = rng or random.Random()

    def next_batch(self) -> Optional[EvidenceDelta]:
        if self._rng.random() >= self.activity_chance:
            return None
        generations = self._rng.randint(0, self.max_increment)
        return EvidenceDelta(
            prompts=self._rng.randint(1, self.max_increment),
            generations=generations,
            downloads=self._rng.randint(0, 1) if generations else 0,
        )


class EvidencePoller:
    """Background loop feeding one task's evidence from a source.

    ``apply`` records a batch and returns whether the session is still
    active.  ``is_active`` is consulted on every tick before the source is
    polled, so the loop exits as soon as the session leaves ``active`` even
    when the source stays quiet.  :meth:`stop` ends it at once.
    """

    def __init__(
        self,
        task_id: str,
        source: EvidenceSource,
        apply: Callable[[str, EvidenceDelta], bool],
        interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        is_active: Optional[Callable[[str], bool]] = None,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.task_id = task_id
        self.source = source
        self.interval_seconds = float(interval_seconds)
        self._apply = apply
        self._is_active = is_active
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop, daemon=True, name=f"evidence-poller-{self.task_id}"
        )
        self._thread.start()
        logger.debug("Evidence poller started for {} every {}s", self.task_id, self.interval_seconds)

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            if self._is_active is not None and not self._is_active(self.task_id):
                break
            delta = self.source.next_batch()
            if delta is None or delta.is_empty:
                continue
            if self._stop.is_set():
                break
            try:
                still_active = self._apply(self.task_id, delta)
            except Exception:
                logger.exception("Evidence poll failed for {}", self.task_id)
                break
            if not still_active:
                break
        logger.debug("Evidence poller exited for {}", self.task_id)
