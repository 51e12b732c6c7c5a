# src/prompt_relay/tasks/task_api.py

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path

from ..core.errors import PersistenceError
from ..core.state import AppState
from .task_events import TaskCompleted, TaskEvent, TaskFailed, TaskRetry, TaskStarted
from .task_models import Task, TaskStatus

logger = logging.getLogger(__name__)

_STATUS_ICONS = {
    TaskStatus.PENDING: "⏳",
    TaskStatus.RUNNING: "▶️",
    TaskStatus.COMPLETED: "✅",
    TaskStatus.FAILED: "❌",
    TaskStatus.CANCELLED: "🛑",
}

# Characters that chat markup (Markdown) may interpret.
_MARKUP_CHARS = re.compile(r"[*_`\[\]()~\\]")


@dataclass(slots=True, frozen=True)
class SubmitResult:
    task: Task
    position: int


def _save(state: AppState) -> None:
    try:
        state.queue.save()
    except PersistenceError:
        logger.exception("Failed to persist queue state")


def submit_instruction(
    state: AppState,
    text: str,
    *,
    chat_id: str | None = None,
    message_id: str | None = None,
) -> SubmitResult:
    """
    Queue a free-form instruction in the active workspace.

    Raises InvalidTaskSpec (empty text, no active workspace). Persistence is
    best-effort: the task is queued in memory even if the write fails.
    """
    task = state.queue.enqueue(instruction=text, chat_id=chat_id, message_id=message_id)
    _save(state)
    position = state.queue.position(task.id) or 1
    logger.info("Submitted task %s (position %d) from chat=%s", task.id, position, chat_id)
    return SubmitResult(task=task, position=position)


def switch_workspace(state: AppState, key: str) -> Path:
    """Make key the active workspace. Raises WorkspaceNotFound."""
    path = state.resolver.resolve(key)
    state.queue.set_active_workspace(key)
    _save(state)
    return path


def clear_queue(state: AppState) -> int:
    """Drop every task; a running process is killed first. Active workspace is kept."""
    current = state.processor.current_task_id
    if current is not None:
        state.processor.cancel(current)
    removed = state.queue.clear_all()
    _save(state)
    return removed


def cancel_task(state: AppState, task_id: str) -> bool:
    return state.processor.cancel(task_id)


def cancel_all(state: AppState) -> int:
    return state.processor.cancel_all()


def cleanup_queue(state: AppState, max_age_hours: float) -> int:
    removed = state.queue.cleanup(max(0.0, float(max_age_hours)) * 3600.0)
    if removed:
        _save(state)
    return removed


def find_task(state: AppState, id_prefix: str) -> Task | None:
    """Look a task up by full id or by an unambiguous id prefix."""
    id_prefix = (id_prefix or "").strip()
    if not id_prefix:
        return None
    exact = state.queue.get(id_prefix)
    if exact is not None:
        return exact
    matches = [t for t in state.queue.all_tasks() if t.id.startswith(id_prefix)]
    return matches[0] if len(matches) == 1 else None


# ---- rendering ----


def _short(text: str, limit: int) -> str:
    text = " ".join((text or "").split())
    return text if len(text) <= limit else text[:limit] + "..."


def format_queue(state: AppState, *, now: float | None = None) -> str:
    tasks = state.queue.all_tasks()
    if not tasks:
        return "📋 Queue is empty"

    now = time.time() if now is None else now
    stats = state.queue.stats()
    lines = [
        "📋 Queue Status",
        "",
        f"⏳ Pending: {stats['pending']}",
        f"▶️ Running: {stats['running']}",
        f"✅ Completed: {stats['completed']}",
        f"❌ Failed: {stats['failed']}",
        f"🛑 Cancelled: {stats['cancelled']}",
        "",
    ]
    for i, t in enumerate(tasks, start=1):
        icon = _STATUS_ICONS.get(t.status, "⏳")
        elapsed = ""
        if t.status == TaskStatus.RUNNING and t.started_at:
            elapsed = f" [{int(now - t.started_at)}s]"
        lines.append(f"{i}. {icon} {t.id[:8]} {_short(t.instruction, 30)}{elapsed}")
    return "\n".join(lines)


def format_event(event: TaskEvent, *, max_chars: int = 4000, max_retries: int | None = None) -> str:
    """Render a lifecycle event as a user-facing chat message."""
    if isinstance(event, TaskStarted):
        return f"▶️ Started {event.task.id[:8]} in {event.task.workspace}"

    if isinstance(event, TaskCompleted):
        clean = _MARKUP_CHARS.sub("", event.output).strip()
        if len(clean) > max_chars:
            clean = clean[:max_chars] + "..."
        return f"✅ Answer:\n{clean}"

    if isinstance(event, TaskFailed):
        return f"❌ Error: {event.error[:500]}"

    if isinstance(event, TaskRetry):
        total = f"/{max_retries}" if max_retries is not None else ""
        return f"🔄 Retrying (attempt {event.attempt}{total}) in {event.delay_seconds:g}s"

    return str(event)
