# src/prompt_relay/core/ports.py

from __future__ import annotations

"""
Ports (interfaces) used by the core.

The processor depends on Protocols instead of concrete implementations.
This keeps the executor, the workspace table and the chat transports swappable
and makes testing easier.
"""

from collections.abc import AsyncIterator, Awaitable, Mapping, Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from ..tasks.task_events import TaskEvent
    from ..tasks.task_executor import OutputChunk, ProcessOutcome


class ProcessHandle(Protocol):
    """A started external process."""

    def chunks(self) -> AsyncIterator[OutputChunk]: ...
    async def wait(self) -> ProcessOutcome: ...
    def kill(self) -> None: ...


class Executor(Protocol):
    """
    Starts external processes.

    run() raises ExecutorSpawnError if the process cannot be started.
    """

    async def run(
            self,
            argv: Sequence[str],
            cwd: Path,
            *,
            env: Mapping[str, str] | None = None,
    ) -> ProcessHandle: ...


class WorkspaceResolver(Protocol):
    """resolve() raises WorkspaceNotFound for unknown keys."""

    def resolve(self, key: str) -> Path: ...
    def keys(self) -> list[str]: ...
    def __contains__(self, key: object) -> bool: ...


class EventSink(Protocol):
    """
    Receives task lifecycle events.

    May return None (plain callback) or an awaitable (coroutine function).
    """

    def __call__(self, event: TaskEvent) -> Awaitable[None] | None: ...


class OutboundMessenger(Protocol):
    """
    Connector-side port: how event sinks send text outward.

    The connector decides how to interpret room_id (can be None), e.g. the Matrix
    connector picks a default room when it is missing.
    """

    def send_text(
            self,
            *,
            text: str,
            room_id: str | None = None,
            reply_to: str | None = None,
    ) -> Awaitable[None]: ...
