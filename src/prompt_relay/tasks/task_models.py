# src/prompt_relay/tasks/task_models.py

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field, fields
from enum import Enum, StrEnum
from typing import Any, Final

DEFAULT_TASK_TYPE = "agent_prompt"


class TaskStatus(StrEnum):
    """
    Task lifecycle status.

    pending -> running -> completed
    running -> pending (retry) | failed
    pending/running -> cancelled
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)

    @classmethod
    def from_db(cls, raw: str | None) -> TaskStatus:
        if not raw:
            return cls.PENDING
        try:
            return cls(raw)
        except ValueError:
            return cls.PENDING


class _Unset(Enum):
    UNSET = "UNSET"

    def __repr__(self) -> str:
        return "UNSET"


UNSET: Final = _Unset.UNSET


@dataclass(slots=True)
class Task:
    id: str
    workspace: str
    instruction: str
    status: TaskStatus
    created_at: float

    chat_id: str | None = None
    message_id: str | None = None
    type: str = DEFAULT_TASK_TYPE

    started_at: float | None = None
    completed_at: float | None = None
    result: str | None = None
    error: str | None = None
    retries: int = 0


@dataclass(slots=True)
class TaskPatch:
    """
    Partial update for a task.

    Only the mutable fields are listed. A field left as UNSET is not touched;
    None is a real value and clears the field.
    """

    status: TaskStatus | _Unset = UNSET
    started_at: float | None | _Unset = UNSET
    completed_at: float | None | _Unset = UNSET
    result: str | None | _Unset = UNSET
    error: str | None | _Unset = UNSET
    retries: int | _Unset = UNSET

    def changed(self) -> Iterator[tuple[str, Any]]:
        for f in fields(self):
            value = getattr(self, f.name)
            if value is not UNSET:
                yield f.name, value

    def is_empty(self) -> bool:
        return next(self.changed(), None) is None


@dataclass(slots=True)
class QueueState:
    active_workspace: str | None = None
    tasks: list[Task] = field(default_factory=list)
    last_updated: str | None = None
