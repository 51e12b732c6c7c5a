# src/prompt_relay/tasks/task_queue.py

from __future__ import annotations

import contextlib
import logging
import threading
import time
import uuid
from collections.abc import Iterator
from dataclasses import replace

from ..core.errors import InvalidTaskSpec, TaskNotFound, WorkspaceNotFound
from ..core.ports import WorkspaceResolver
from .task_models import DEFAULT_TASK_TYPE, QueueState, Task, TaskPatch, TaskStatus
from .task_store import TaskStore

logger = logging.getLogger(__name__)


def now_ts() -> float:
    """Wall-clock seconds, rounded to the millisecond precision of the state file."""
    return round(time.time(), 3)


class TaskQueue:
    """
    In-memory ordered task queue plus the active workspace pointer.

    Ownership:
    - the task list and active workspace are only mutated through this class
    - every method returns copies, never the stored Task objects

    Thread-safety:
    - a single RLock guards all read-modify-write sequences
    - transaction() lets callers hold it across several calls

    Persistence is explicit: mutations never write to disk, call save().
    """

    def __init__(self, store: TaskStore, resolver: WorkspaceResolver | None = None) -> None:
        self._store = store
        self._resolver = resolver
        self._lock = threading.RLock()
        self._tasks: list[Task] = []
        self._active_workspace: str | None = None
        self._last_updated: str | None = None

    @contextlib.contextmanager
    def transaction(self) -> Iterator[TaskQueue]:
        with self._lock:
            yield self

    # ---- persistence ----

    def load(self) -> None:
        """Replace in-memory state with the stored snapshot. Raises PersistenceError."""
        state = self._store.load()
        with self._lock:
            self._tasks = list(state.tasks)
            self._active_workspace = state.active_workspace
            self._last_updated = state.last_updated

    def save(self) -> None:
        """Write the current state. Raises PersistenceError; memory stays authoritative."""
        with self._lock:
            snapshot = self.snapshot()
            self._last_updated = self._store.save(snapshot)
            logger.debug("Queue saved: %d tasks", len(snapshot.tasks))

    def snapshot(self) -> QueueState:
        with self._lock:
            return QueueState(
                active_workspace=self._active_workspace,
                tasks=[replace(t) for t in self._tasks],
                last_updated=self._last_updated,
            )

    @property
    def last_updated(self) -> str | None:
        return self._last_updated

    # ---- workspace ----

    @property
    def active_workspace(self) -> str | None:
        return self._active_workspace

    def set_active_workspace(self, key: str | None) -> None:
        if key is None:
            with self._lock:
                self._active_workspace = None
            logger.info("Active workspace cleared")
            return

        key = key.strip().lower()
        if self._resolver is not None and key not in self._resolver:
            raise WorkspaceNotFound(key)
        with self._lock:
            self._active_workspace = key
        logger.info("Active workspace -> %s", key)

    # ---- CRUD ----

    def enqueue(
        self,
        *,
        instruction: str,
        workspace: str | None = None,
        chat_id: str | None = None,
        message_id: str | None = None,
        task_id: str | None = None,
        type: str = DEFAULT_TASK_TYPE,
    ) -> Task:
        if not instruction or not instruction.strip():
            raise InvalidTaskSpec("instruction is required")

        with self._lock:
            key = (workspace or self._active_workspace or "").strip().lower()
            if not key:
                raise InvalidTaskSpec("workspace is required (no active workspace selected)")
            if self._resolver is not None and key not in self._resolver:
                raise InvalidTaskSpec(f"unknown workspace: {key}")

            new_id = task_id or uuid.uuid4().hex
            if any(t.id == new_id for t in self._tasks):
                raise InvalidTaskSpec(f"duplicate task id: {new_id}")

            task = Task(
                id=new_id,
                workspace=key,
                instruction=instruction,
                status=TaskStatus.PENDING,
                created_at=now_ts(),
                chat_id=chat_id,
                message_id=message_id,
                type=type or DEFAULT_TASK_TYPE,
            )
            self._tasks.append(task)
            logger.info("Task enqueued id=%s workspace=%s position=%d", task.id, key, len(self._tasks))
            return replace(task)

    def next_pending(self) -> Task | None:
        with self._lock:
            for t in self._tasks:
                if t.status == TaskStatus.PENDING:
                    return replace(t)
            return None

    def claim_next(self) -> Task | None:
        """
        Atomically pick the first pending task and mark it running.

        Returns None if nothing is pending or another task is already running.
        """
        with self._lock:
            if any(t.status == TaskStatus.RUNNING for t in self._tasks):
                return None
            for t in self._tasks:
                if t.status == TaskStatus.PENDING:
                    t.status = TaskStatus.RUNNING
                    t.started_at = now_ts()
                    logger.debug("Task claimed id=%s", t.id)
                    return replace(t)
            return None

    def get(self, task_id: str) -> Task | None:
        with self._lock:
            t = self._find(task_id)
            return replace(t) if t is not None else None

    def update(self, task_id: str, patch: TaskPatch) -> Task:
        with self._lock:
            t = self._find(task_id)
            if t is None:
                raise TaskNotFound(task_id)
            for name, value in patch.changed():
                setattr(t, name, value)
            logger.debug("Task updated id=%s status=%s", task_id, t.status.value)
            return replace(t)

    def remove(self, task_id: str) -> Task | None:
        with self._lock:
            for i, t in enumerate(self._tasks):
                if t.id == task_id:
                    del self._tasks[i]
                    logger.debug("Task removed id=%s", task_id)
                    return t
            return None

    def all_tasks(self) -> list[Task]:
        with self._lock:
            return [replace(t) for t in self._tasks]

    def position(self, task_id: str) -> int | None:
        """1-based rank among unfinished (pending/running) tasks."""
        with self._lock:
            rank = 0
            for t in self._tasks:
                if t.status.is_terminal:
                    continue
                rank += 1
                if t.id == task_id:
                    return rank
            return None

    # ---- bulk ----

    def stats(self) -> dict[str, int]:
        with self._lock:
            out = {s.value: 0 for s in TaskStatus}
            for t in self._tasks:
                out[t.status.value] += 1
            out["total"] = len(self._tasks)
            return out

    def cleanup(self, max_age_seconds: float, *, now: float | None = None) -> int:
        """
        Drop completed/failed tasks finished more than max_age_seconds ago.

        Cancelled tasks are kept; /clearqueue removes them.
        """
        cutoff = (now_ts() if now is None else now) - max_age_seconds
        sweepable = (TaskStatus.COMPLETED, TaskStatus.FAILED)
        with self._lock:
            before = len(self._tasks)
            self._tasks = [
                t
                for t in self._tasks
                if not (
                    t.status in sweepable
                    and t.completed_at is not None
                    and t.completed_at < cutoff
                )
            ]
            removed = before - len(self._tasks)
        if removed:
            logger.info("Cleanup: removed %d old tasks", removed)
        return removed

    def clear_all(self) -> int:
        with self._lock:
            removed = len(self._tasks)
            self._tasks = []
        logger.info("All tasks cleared (%d); active workspace still %s", removed, self._active_workspace)
        return removed

    def reset(self) -> None:
        with self._lock:
            self._tasks = []
            self._active_workspace = None
        logger.info("Queue reset")

    def recover_orphans(self) -> int:
        """
        Requeue tasks left 'running' by a previous process.

        Only meaningful at startup, before the processor is started. The retry
        counter is kept; started_at is cleared.
        """
        with self._lock:
            n = 0
            for t in self._tasks:
                if t.status == TaskStatus.RUNNING:
                    t.status = TaskStatus.PENDING
                    t.started_at = None
                    n += 1
        if n:
            logger.warning("Requeued %d task(s) left running by a previous run", n)
        return n

    def _find(self, task_id: str) -> Task | None:
        for t in self._tasks:
            if t.id == task_id:
                return t
        return None
