# src/prompt_relay/cli/commands.py

from __future__ import annotations

import inspect
import logging
from collections.abc import Callable
from typing import cast

from ..core.errors import WorkspaceNotFound
from ..core.state import AppState
from ..tasks.task_api import (
    cancel_all,
    cancel_task,
    cleanup_queue,
    clear_queue,
    find_task,
    format_queue,
    switch_workspace,
)

CommandEmitter = Callable[[str], None]
CommandHandler4 = Callable[[AppState, list[str], str | None, str | None], str]
CommandHandler5 = Callable[
    [AppState, list[str], str | None, str | None, CommandEmitter | None], str
]
CommandHandler = CommandHandler4 | CommandHandler5

logger = logging.getLogger(__name__)


class CommandRegistry:
    """Simple slash-command registry used by connectors (/help, /queue, ...)."""

    def __init__(self) -> None:
        self._handlers: dict[str, CommandHandler] = {}
        self._help: dict[str, str] = {}

    def register(
        self,
        name: str,
        handler: CommandHandler,
        help_text: str,
        aliases: list[str] | None = None,
    ) -> None:
        aliases = aliases or []
        key = name.lower()
        self._handlers[key] = handler
        self._help[key] = help_text
        for alias in aliases:
            self._handlers[alias.lower()] = handler

    def handle(
        self,
        state: AppState,
        line: str,
        user_id: str | None = None,
        room_id: str | None = None,
        emit: CommandEmitter | None = None,
    ) -> str | None:
        """
        Handle a string like "/command args".
        Returns a reply string or None if not a command.
        """
        if not line.startswith("/"):
            return None

        parts = line[1:].split()
        if not parts:
            return "Empty command. Use /help to list available commands."

        name = parts[0].lower()
        args = parts[1:]

        handler = self._handlers.get(name)
        if not handler:
            return f"Unknown command: /{name}. Use /help to list available commands."

        try:
            nparams = len(inspect.signature(handler).parameters)
        except (TypeError, ValueError):
            nparams = 5

        if nparams >= 5:
            h5 = cast(CommandHandler5, handler)
            return h5(state, args, user_id, room_id, emit)

        h4 = cast(CommandHandler4, handler)
        return h4(state, args, user_id, room_id)

    def build_help(self) -> str:
        lines = ["Available commands:"]
        for name, help_text in self._help.items():
            lines.append(f"  /{name} - {help_text}")
        lines.append("Any other message is queued as a prompt for the active workspace.")
        return "\n".join(lines)


registry = CommandRegistry()


def cmd_help(
    state: AppState,
    args: list[str],
    user_id: str | None,
    room_id: str | None,
    emit: CommandEmitter | None = None,
) -> str:
    return registry.build_help()


def cmd_repos(state: AppState, args: list[str], user_id: str | None, room_id: str | None) -> str:
    if not len(state.resolver):
        return "No workspaces configured."
    lines = ["📚 Available workspaces:", ""]
    for key, path in state.resolver.items():
        lines.append(f"  {key} - {path}")
    active = state.queue.active_workspace
    if active:
        lines.append("")
        lines.append(f"📂 Active: {active}")
    return "\n".join(lines)


def cmd_use(state: AppState, args: list[str], user_id: str | None, room_id: str | None) -> str:
    """
    /use         -> show active workspace
    /use <name>  -> switch workspace
    """
    if not args:
        active = state.queue.active_workspace
        return f"📂 Active workspace: {active}" if active else "No active workspace. Use /use <name>."

    try:
        path = switch_workspace(state, args[0])
    except WorkspaceNotFound as e:
        return f"{e}. Use /repos to list workspaces."

    logger.debug("Workspace switch requested (user_id=%s room_id=%s)", user_id, room_id)
    return f"✅ Switched to: {args[0].lower()}\n📂 {path}"


def cmd_status(state: AppState, args: list[str], user_id: str | None, room_id: str | None) -> str:
    st = state.processor.status()
    active = state.queue.active_workspace or "(none)"
    current = st.current_task
    current_line = f"{current.id[:8]} {current.instruction[:40]}" if current else "(idle)"
    s = st.queue_stats
    return (
        "Status:\n"
        f"  Active workspace: {active}\n"
        f"  Processor: {'running' if st.is_processing else 'stopped'}\n"
        f"  Current task: {current_line}\n"
        f"  Pending: {s['pending']}  Failed: {s['failed']}  Total: {s['total']}"
    )


def cmd_queue(state: AppState, args: list[str], user_id: str | None, room_id: str | None) -> str:
    return format_queue(state)


def cmd_clearqueue(
    state: AppState,
    args: list[str],
    user_id: str | None,
    room_id: str | None,
) -> str:
    if not state.queue.stats()["total"]:
        return "📋 Queue is already empty"
    removed = clear_queue(state)
    return f"🗑️ Cleared {removed} task(s). Active workspace still: {state.queue.active_workspace}"


def cmd_cancel(state: AppState, args: list[str], user_id: str | None, room_id: str | None) -> str:
    """
    /cancel <task_id>  -> cancel one task (id or unique id prefix)
    /cancel all        -> cancel running + pending tasks
    """
    if not args:
        return "Usage: /cancel <task_id> | /cancel all"

    if args[0].lower() == "all":
        n = cancel_all(state)
        return f"🛑 Cancelled {n} task(s)" if n else "📋 No tasks to cancel"

    task = find_task(state, args[0])
    if task is None or not cancel_task(state, task.id):
        return f"Task not found or not cancellable: {args[0]}"
    return f"🛑 Task cancelled: {task.id}"


def cmd_cleanup(state: AppState, args: list[str], user_id: str | None, room_id: str | None) -> str:
    hours: float = getattr(state.settings, "cleanup_max_age_hours", 24)
    if args:
        try:
            hours = float(args[0])
        except ValueError:
            return "Usage: /cleanup [hours]"
    removed = cleanup_queue(state, hours)
    return f"🧹 Removed {removed} finished task(s) older than {hours:g}h"


registry.register("help", cmd_help, help_text="Show available commands.", aliases=["h", "?"])
registry.register("repos", cmd_repos, help_text="List configured workspaces.")
registry.register("use", cmd_use, help_text="Switch workspace: /use <name>.", aliases=["repo"])
registry.register("status", cmd_status, help_text="Show active workspace and processor state.")
registry.register("queue", cmd_queue, help_text="Show queued tasks.", aliases=["q"])
registry.register("clearqueue", cmd_clearqueue, help_text="Remove every task.", aliases=["cq"])
registry.register("cancel", cmd_cancel, help_text="Cancel a task: /cancel <id> | /cancel all.")
registry.register("cleanup", cmd_cleanup, help_text="Drop finished tasks: /cleanup [hours].")
