"""Shared builders for tasks at interesting points of the workflow."""

from __future__ import annotations

from typing import Optional

import pytest
from loguru import logger

from creative_workflow.fsm import reduce_task
from creative_workflow.models import (
    AddAsset,
    Advance,
    EnterAIMode,
    Operation,
    SelectTool,
    Task,
    TaskMode,
    UploadedAsset,
)

NOW = "2026-01-01T00:00:00+00:00"


def apply_ok(task: Task, *ops: Operation) -> Task:
    for op in ops:
        outcome = reduce_task(task, op, now=NOW)
        assert outcome.ok, outcome.error
        task = outcome.task
    return task


def new_ai_task(mode: TaskMode = TaskMode.ASSISTED, title: str = "Poster") -> Task:
    return apply_ok(Task(title=title), EnterAIMode(mode=mode))


def task_at_stage(step: int, *, tool: Optional[str] = "Midjourney", label: Optional[str] = "Full Tracking") -> Task:
    """Walk a fresh assisted task forward to ``step`` with every guard satisfied."""
    task = new_ai_task()
    while task.workflow_step < step:
        current = task.workflow_step
        if current == 2:
            task = apply_ok(task, SelectTool(tool=tool or "", tracking_label=label))
            continue
        if current == 5 and not task.uploaded_assets:
            task = apply_ok(task, AddAsset(asset=UploadedAsset(id="asset-1", name="hero.png", size=2048)))
        task = apply_ok(task, Advance())
    return task


@pytest.fixture
def ai_task() -> Task:
    return new_ai_task()


@pytest.fixture
def submitted_task() -> Task:
    return task_at_stage(7)


@pytest.fixture
def quiet_logger():
    yield logger
    logger.remove()


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"
