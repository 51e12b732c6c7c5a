# src/prompt_relay/cli/bootstrap.py

"""
CLI bootstrap helpers.

This module is the "composition root":
- loads settings once,
- ensures local (gitignored) directories exist,
- wires the store, queue, executor, processor and event bus into AppState,
- restores the persisted queue and recovers tasks orphaned by a crash.
"""

from __future__ import annotations

import logging

from ..config import get_settings
from ..core.errors import PersistenceError, WorkspaceNotFound
from ..core.state import AppState
from ..core.workspaces import StaticWorkspaceResolver
from ..tasks.task_events import TaskEventBus
from ..tasks.task_executor import SubprocessExecutor
from ..tasks.task_processor import TaskProcessor
from ..tasks.task_queue import TaskQueue
from ..tasks.task_store import TaskStore

logger = logging.getLogger(__name__)


def _ensure_local_dirs(settings) -> None:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.state_file.parent.mkdir(parents=True, exist_ok=True)


def create_initial_state(*, settings=None, executor=None) -> AppState:
    """
    Create AppState from the provided settings.

    Keeping settings (and the executor) injectable makes the app easier to test.
    If settings is None, falls back to get_settings().
    """
    if settings is None:
        settings = get_settings()

    _ensure_local_dirs(settings)

    resolver = StaticWorkspaceResolver(settings.workspaces)
    if not len(resolver):
        logger.warning("No workspaces configured; set PROMPT_RELAY_WORKSPACES=name=/path,...")

    queue = TaskQueue(TaskStore(settings.state_file), resolver)
    events = TaskEventBus()
    processor = TaskProcessor(
        queue,
        executor if executor is not None else SubprocessExecutor(),
        resolver,
        events,
        command_template=settings.agent_command,
        max_retries=settings.max_retries,
        backoff_base_seconds=settings.retry_backoff_base_ms / 1000.0,
        poll_interval_seconds=settings.poll_interval_ms / 1000.0,
        cleanup_max_age_seconds=settings.cleanup_max_age_hours * 3600.0,
        cleanup_interval_seconds=settings.cleanup_interval_minutes * 60.0,
    )

    return AppState(
        settings=settings,
        queue=queue,
        processor=processor,
        resolver=resolver,
        events=events,
    )


def restore_queue(state: AppState) -> None:
    """
    Load the persisted queue (best-effort) and prepare it for a fresh processor.

    A corrupt state file is logged and the app starts with an empty queue.
    """
    settings = state.settings
    queue = state.queue

    try:
        queue.load()
    except PersistenceError:
        logger.exception("Failed to load queue state; starting with an empty queue")
        return

    changed = False
    if getattr(settings, "recover_orphans", True) and queue.recover_orphans():
        changed = True

    if queue.active_workspace is None and getattr(settings, "default_workspace", None):
        try:
            queue.set_active_workspace(settings.default_workspace)
            changed = True
        except WorkspaceNotFound:
            logger.warning("Default workspace %r is not configured", settings.default_workspace)

    if changed:
        try:
            queue.save()
        except PersistenceError:
            logger.exception("Failed to persist recovered queue state")

    stats = queue.stats()
    logger.info(
        "Queue restored: %d tasks (%d pending), active workspace: %s",
        stats["total"],
        stats["pending"],
        queue.active_workspace,
    )
