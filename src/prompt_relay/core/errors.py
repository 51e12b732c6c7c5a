# src/prompt_relay/core/errors.py

"""Error types raised by the queue, the processor and the executor."""

from __future__ import annotations

from pathlib import Path


class RelayError(Exception):
    """Base error for all prompt-relay operations."""


class InvalidTaskSpec(RelayError):
    """Enqueue request is missing required fields; the queue is left unchanged."""


class WorkspaceNotFound(RelayError):
    """Workspace key does not map to a known directory."""

    def __init__(self, key: str | None) -> None:
        self.key = key
        super().__init__(f"Unknown workspace: {key}")


class TaskNotFound(RelayError):
    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Task not found: {task_id}")


class ExecutorSpawnError(RelayError):
    """The external process could not be started."""


class ExecutorNonZeroExit(RelayError):
    def __init__(self, exit_code: int | None, stderr: str = "") -> None:
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(stderr.strip() or f"Exit code {exit_code}")


class EmptyOutput(RelayError):
    """Process exited cleanly but produced no output."""

    def __init__(self) -> None:
        super().__init__("Empty output")


class PersistenceError(RelayError):
    """Queue snapshot could not be read from or written to disk."""

    def __init__(self, path: str | Path, message: str) -> None:
        self.path = Path(path)
        super().__init__(f"{message} ({self.path})")
