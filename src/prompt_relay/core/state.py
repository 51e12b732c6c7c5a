# src/prompt_relay/core/state.py

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from ..tasks.task_events import TaskEventBus
from ..tasks.task_processor import TaskProcessor
from ..tasks.task_queue import TaskQueue
from .workspaces import StaticWorkspaceResolver


@dataclass
class AppState:
    """Everything connectors and commands need, wired once in cli/bootstrap.py."""

    # Settings object (config.Settings in the app, SimpleNamespace in tests).
    settings: Any

    queue: TaskQueue
    processor: TaskProcessor
    resolver: StaticWorkspaceResolver
    events: TaskEventBus
