# src/prompt_relay/logging_setup.py

from __future__ import annotations

import logging
import sys
from pathlib import Path


# Minimum console level per logger name; the longest matching prefix wins.
_CONSOLE_THRESHOLDS: dict[str, int] = {
    "prompt_relay": logging.DEBUG,
    # Per-chunk traces of agent output.
    "prompt_relay.tasks.task_processor": logging.INFO,
    "prompt_relay.tasks.task_executor": logging.INFO,
    "prompt_relay.connectors.matrix_client": logging.WARNING,
    "prompt_relay.connectors.matrix_connector": logging.WARNING,
}


class _ConsoleNoiseFilter(logging.Filter):
    """
    Keep the interactive console readable while an agent is running.

    Everything still reaches the log file; this only drops console records below
    the threshold of their logger. Loggers outside the table (nio, aiohttp,
    py.warnings, ...) need ERROR.
    """

    def __init__(self, thresholds: dict[str, int] | None = None, default: int = logging.ERROR) -> None:
        super().__init__()
        self._thresholds = dict(_CONSOLE_THRESHOLDS if thresholds is None else thresholds)
        self._default = default

    def threshold(self, name: str) -> int:
        best = ""
        level = self._default
        for prefix, min_level in self._thresholds.items():
            if (name == prefix or name.startswith(prefix + ".")) and len(prefix) > len(best):
                best, level = prefix, min_level
        return level

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno >= self.threshold(record.name)


# Chatty third-party loggers, capped at the logger itself so the file stays useful.
_THIRD_PARTY_LEVELS: dict[str, int] = {
    "nio": logging.INFO,
    "aiohttp": logging.WARNING,
    "asyncio": logging.WARNING,
}


def setup_logging(
    *,
    log_dir: str | Path = ".local/prompt-relay",
    console_level: int = logging.INFO,
    file_level: int = logging.DEBUG,
    interactive: bool = True,
) -> Path:
    """
    Configure logging with:
    - Console handler on stderr, filtered by _ConsoleNoiseFilter. With
      interactive=False (no REPL, e.g. running under a service manager)
      third-party warnings are shown as well.
    - File handler with full logs in <log_dir>/prompt-relay.log

    Call this ONCE, very early (before first logger.info). Returns the log file path.
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "prompt-relay.log"

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    # Remove any pre-existing handlers to avoid duplicates.
    for h in list(root.handlers):
        root.removeHandler(h)

    fmt = logging.Formatter(
        fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    ch = logging.StreamHandler(sys.stderr)
    ch.setLevel(console_level)
    ch.setFormatter(fmt)
    ch.addFilter(_ConsoleNoiseFilter(default=logging.ERROR if interactive else logging.WARNING))
    root.addHandler(ch)

    fh = logging.FileHandler(str(log_file), encoding="utf-8")
    fh.setLevel(file_level)
    fh.setFormatter(fmt)
    root.addHandler(fh)

    for name, level in _THIRD_PARTY_LEVELS.items():
        logging.getLogger(name).setLevel(max(level, min(console_level, file_level)))

    logging.captureWarnings(True)
    return log_file
