# src/prompt_relay/tasks/task_store.py

from __future__ import annotations

import contextlib
import json
import logging
import os
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from ..core.errors import PersistenceError
from .task_models import DEFAULT_TASK_TYPE, QueueState, Task, TaskStatus

logger = logging.getLogger(__name__)


class TaskStore:
    """
    JSON snapshot store for the queue state.

    The whole state lives in one document:
      {"currentRepo": ..., "tasks": [...], "lastUpdated": "<ISO-8601>"}

    Timestamps are stored as epoch milliseconds. Saving writes a sibling
    ".tmp" file and os.replace()s it over the real one, so a reader never sees
    a torn document. No business logic lives here.
    """

    def __init__(self, path: str | Path = "queue_state.json") -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        logger.info("TaskStore ready path=%s exists=%s", self._path, self._path.exists())

    @property
    def path(self) -> Path:
        return self._path

    # ---- encoding helpers ----

    @staticmethod
    def _ts_to_ms(ts: float | None) -> int | None:
        if ts is None:
            return None
        return int(round(ts * 1000))

    @staticmethod
    def _ms_to_ts(raw: Any) -> float | None:
        if raw is None:
            return None
        try:
            return float(raw) / 1000.0
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _opt_str(raw: Any) -> str | None:
        return None if raw is None else str(raw)

    def task_to_dict(self, task: Task) -> dict[str, Any]:
        return {
            "id": task.id,
            "messageId": task.message_id,
            "chatId": task.chat_id,
            "type": task.type,
            "repo": task.workspace,
            "prompt": task.instruction,
            "status": task.status.value,
            "createdAt": self._ts_to_ms(task.created_at),
            "startedAt": self._ts_to_ms(task.started_at),
            "completedAt": self._ts_to_ms(task.completed_at),
            "result": task.result,
            "error": task.error,
            "retries": task.retries,
        }

    def dict_to_task(self, row: dict[str, Any]) -> Task:
        task_id = row.get("id")
        prompt = row.get("prompt")
        if not task_id or prompt is None:
            raise ValueError("task entry is missing id or prompt")

        try:
            retries = max(0, int(row.get("retries") or 0))
        except (TypeError, ValueError):
            retries = 0

        return Task(
            id=str(task_id),
            workspace=str(row.get("repo") or ""),
            instruction=str(prompt),
            status=TaskStatus.from_db(row.get("status")),
            created_at=self._ms_to_ts(row.get("createdAt")) or 0.0,
            chat_id=self._opt_str(row.get("chatId")),
            message_id=self._opt_str(row.get("messageId")),
            type=str(row.get("type") or DEFAULT_TASK_TYPE),
            started_at=self._ms_to_ts(row.get("startedAt")),
            completed_at=self._ms_to_ts(row.get("completedAt")),
            result=row.get("result"),
            error=row.get("error"),
            retries=retries,
        )

    # ---- public API ----

    def load(self) -> QueueState:
        """
        Read the snapshot from disk.

        Missing file -> empty state. Unreadable or non-JSON file -> PersistenceError.
        Individual malformed task entries are skipped with a warning.
        """
        if not self._path.exists():
            logger.info("No queue state at %s; starting empty", self._path)
            return QueueState()

        try:
            data = json.loads(self._path.read_text("utf-8"))
        except (OSError, ValueError) as e:
            raise PersistenceError(self._path, f"Failed to read queue state: {e}") from e

        if not isinstance(data, dict):
            raise PersistenceError(self._path, "Queue state is not a JSON object")

        tasks: list[Task] = []
        raw_tasks = data.get("tasks") or []
        if not isinstance(raw_tasks, list):
            logger.warning("Queue state 'tasks' is not a list; ignoring it")
            raw_tasks = []

        for row in raw_tasks:
            if not isinstance(row, dict):
                logger.warning("Skipping non-object task entry: %r", row)
                continue
            try:
                tasks.append(self.dict_to_task(row))
            except ValueError:
                logger.warning("Skipping malformed task entry id=%r", row.get("id"))

        active = data.get("currentRepo")
        state = QueueState(
            active_workspace=str(active) if active else None,
            tasks=tasks,
            last_updated=self._opt_str(data.get("lastUpdated")),
        )
        logger.info(
            "Loaded queue: %d tasks, active workspace: %s", len(state.tasks), state.active_workspace
        )
        return state

    def save(self, state: QueueState) -> str:
        """Atomically replace the snapshot. Returns the lastUpdated stamp written."""
        last_updated = datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")
        doc = {
            "currentRepo": state.active_workspace,
            "tasks": [self.task_to_dict(t) for t in state.tasks],
            "lastUpdated": last_updated,
        }

        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(doc, ensure_ascii=False, indent=2), "utf-8")
            os.replace(tmp, self._path)
        except (OSError, TypeError, ValueError) as e:
            with contextlib.suppress(OSError):
                tmp.unlink()
            raise PersistenceError(self._path, f"Failed to save queue state: {e}") from e

        with contextlib.suppress(OSError):
            # Instructions and outputs may contain sensitive content.
            os.chmod(self._path, 0o600)

        logger.debug("Queue saved: %d tasks -> %s", len(state.tasks), self._path)
        return last_updated
