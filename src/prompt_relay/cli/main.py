# src/prompt_relay/cli/main.py

"""
CLI entrypoint.

Initializes logging, builds AppState, restores the persisted queue, then starts:
- the task processor in a background thread,
- the Matrix connector in a background thread (optional),
- the console REPL in the main thread (optional).
"""

from __future__ import annotations

import logging
import signal
import threading
from typing import TYPE_CHECKING

from ..cli.bootstrap import create_initial_state, restore_queue
from ..config import get_settings
from ..connectors.console_connector import run_console_loop
from ..core.errors import PersistenceError
from ..logging_setup import setup_logging
from ..tasks.task_processor import start_processor_in_background

logger = logging.getLogger(__name__)

if TYPE_CHECKING:
    from ..connectors.matrix_connector import MatrixBackgroundRunner
    from ..tasks.task_processor import ProcessorRunner


def _shutdown(state) -> None:
    """Best-effort final save (no exceptions should escape)."""
    try:
        state.queue.save()
    except PersistenceError:
        logger.exception("Failed to save queue state on shutdown.")


def _make_signal_handler(stop_main: threading.Event, *, interrupt_console: bool):
    """
    Build the SIGINT/SIGTERM handler.

    With the REPL active the main thread sits in input(), so setting the event
    alone would not end it; the handler raises KeyboardInterrupt there instead.
    """

    def _handle_signal(signum, _frame) -> None:
        logger.info("Signal %s received, shutting down...", signum)
        stop_main.set()
        if interrupt_console:
            raise KeyboardInterrupt

    return _handle_signal


def main() -> None:
    settings = get_settings()

    level_name = str(getattr(settings, "log_level", "INFO")).upper()
    console_level = getattr(logging, level_name, logging.INFO)

    log_dir = getattr(settings, "data_dir", ".local/prompt-relay")
    setup_logging(log_dir=log_dir, console_level=console_level, interactive=settings.console_enabled)

    logger.info("Starting %s...", getattr(settings, "app_name", "prompt-relay"))

    state = create_initial_state(settings=settings)
    restore_queue(state)

    processor_runner: ProcessorRunner | None = start_processor_in_background(state.processor)

    matrix_runner: MatrixBackgroundRunner | None = None
    if settings.matrix_enabled:
        from ..connectors.matrix_connector import start_matrix_in_background

        matrix_runner = start_matrix_in_background(state)

    stop_main = threading.Event()

    _handle_signal = _make_signal_handler(stop_main, interrupt_console=settings.console_enabled)

    try:
        # With the REPL active, Ctrl+C must reach input() as KeyboardInterrupt.
        if not settings.console_enabled:
            signal.signal(signal.SIGINT, _handle_signal)
        signal.signal(signal.SIGTERM, _handle_signal)
    except (ValueError, OSError):
        logger.debug("Signal handlers not installed.", exc_info=True)

    try:
        if settings.console_enabled:
            try:
                run_console_loop(state)
            except KeyboardInterrupt:
                logger.info("Console interrupted.")
            stop_main.set()
        else:
            logger.info("Console disabled. Running background connectors only. Press Ctrl+C to stop.")
            stop_main.wait()

    finally:
        if matrix_runner is not None:
            matrix_runner.stop()
            matrix_runner.join(timeout=10.0)

        if processor_runner is not None:
            processor_runner.stop()
            processor_runner.join(timeout=10.0)

        _shutdown(state)
        logger.info("Bye.")


if __name__ == "__main__":
    main()
