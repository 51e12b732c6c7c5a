# src/prompt_relay/connectors/console_connector.py

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from ..cli.commands import registry as command_registry
from ..core.errors import InvalidTaskSpec
from ..core.state import AppState
from ..tasks.task_api import format_event, submit_instruction
from ..tasks.task_events import TaskEvent

logger = logging.getLogger(__name__)

CONSOLE_CHAT_ID = "console"


def _ts_local() -> str:
    return datetime.now().astimezone().strftime("%Y-%m-%d %H:%M:%S")


def _print_ts(text: str) -> None:
    print(f"[{_ts_local()}] {text}", flush=True)


def make_console_sink(state: AppState, *, printer: Callable[[str], None] = _print_ts):
    """Event sink that prints every lifecycle event to the terminal."""
    max_chars = int(getattr(state.settings, "message_max_chars", 4000))
    max_retries = getattr(state.settings, "max_retries", None)

    def sink(event: TaskEvent) -> None:
        printer(format_event(event, max_chars=max_chars, max_retries=max_retries))

    return sink


def handle_console_line(state: AppState, line: str) -> str | None:
    """
    Route one REPL line: slash commands go to the registry, anything else is queued.

    Returns the reply to print, or None for an empty line.
    """
    line = line.strip()
    if not line:
        return None

    try:
        cmd_response = command_registry.handle(state, line, user_id=CONSOLE_CHAT_ID, emit=_print_ts)
    except Exception:
        logger.exception("Command handler crashed.")
        return "Internal error while handling a command."

    if cmd_response is not None:
        return cmd_response

    try:
        res = submit_instruction(state, line, chat_id=CONSOLE_CHAT_ID)
    except InvalidTaskSpec as e:
        return f"⚠️ {e}. Use /repos and /use <name> first."
    return f"📝 Queued {res.task.id[:8]} in {res.task.workspace} (position {res.position})"


def run_console_loop(state: AppState) -> None:
    logger.info("Console connector started.")
    _print_ts("[CONSOLE] Type a prompt to queue it. Use /help for commands. Use /exit to quit.\n")

    unsubscribe = state.events.subscribe(make_console_sink(state))
    try:
        while True:
            try:
                user_input = input(">>> ").strip()
            except EOFError:
                logger.info("Console EOF received, exiting.")
                break
            except KeyboardInterrupt:
                logger.info("Console KeyboardInterrupt, exiting.")
                print()
                break

            if user_input.lower() in ("/exit", "/quit"):
                logger.info("Console exit command received.")
                break

            reply = handle_console_line(state, user_input)
            if reply is not None:
                _print_ts(reply)
    finally:
        unsubscribe()

    logger.info("Console connector finished.")
