# src/prompt_relay/tasks/task_events.py

from __future__ import annotations

"""
Task lifecycle events and their fan-out.

The processor publishes; connectors subscribe and decide how to render.
Delivery is best-effort: a failing sink is logged and skipped.
"""

import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import ClassVar

from ..core.ports import EventSink
from .task_models import Task

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class TaskStarted:
    kind: ClassVar[str] = "task:started"

    task: Task


@dataclass(slots=True, frozen=True)
class TaskCompleted:
    kind: ClassVar[str] = "task:completed"

    task: Task
    output: str


@dataclass(slots=True, frozen=True)
class TaskFailed:
    kind: ClassVar[str] = "task:failed"

    task: Task
    error: str


@dataclass(slots=True, frozen=True)
class TaskRetry:
    kind: ClassVar[str] = "task:retry"

    task: Task
    attempt: int
    delay_seconds: float


TaskEvent = TaskStarted | TaskCompleted | TaskFailed | TaskRetry


class TaskEventBus:
    """Ordered list of sinks; publish() calls each one once per event."""

    def __init__(self) -> None:
        self._sinks: list[EventSink] = []

    def subscribe(self, sink: EventSink) -> Callable[[], None]:
        self._sinks.append(sink)

        def unsubscribe() -> None:
            if sink in self._sinks:
                self._sinks.remove(sink)

        return unsubscribe

    def __len__(self) -> int:
        return len(self._sinks)

    async def publish(self, event: TaskEvent) -> None:
        logger.debug("Event %s task=%s", event.kind, event.task.id)
        for sink in list(self._sinks):
            try:
                res = sink(event)
                if inspect.isawaitable(res):
                    await res
            except Exception:
                logger.exception("Event sink failed event=%s task=%s", event.kind, event.task.id)
