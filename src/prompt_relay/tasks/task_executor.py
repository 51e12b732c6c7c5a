# src/prompt_relay/tasks/task_executor.py

"""Subprocess executor for the agent CLI."""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import logging
import os
import shlex
import signal
from collections.abc import AsyncIterator, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from ..core.errors import ExecutorSpawnError

logger = logging.getLogger(__name__)

DEFAULT_AGENT_COMMAND = "claude --dangerously-skip-permissions -p {prompt}"

_READ_SIZE = 4096


@dataclass(slots=True, frozen=True)
class OutputChunk:
    stream: str  # "stdout" | "stderr"
    text: str


@dataclass(slots=True, frozen=True)
class ProcessOutcome:
    exit_code: int | None
    signal: int | None
    stdout: str
    stderr: str
    killed: bool = False

    @property
    def output(self) -> str:
        """Combined output used for classification: stdout, else stderr."""
        return (self.stdout or self.stderr or "").strip()


def build_command(template: str, instruction: str) -> list[str]:
    """
    Render an agent command template into argv.

    The template must contain {prompt}. The instruction is shell-quoted before
    substitution and the result is shlex-split, so it always ends up as exactly
    one literal argument regardless of quotes or metacharacters.
    """
    stripped = (template or "").strip()
    if not stripped:
        raise ValueError("agent command template is empty")
    if "{prompt}" not in stripped:
        raise ValueError("agent command template must include {prompt}")

    try:
        rendered = stripped.format(prompt=shlex.quote(instruction))
    except (KeyError, IndexError) as e:
        raise ValueError(f"unsupported placeholder in agent command template: {e}") from e

    argv = shlex.split(rendered)
    if not argv:
        raise ValueError("agent command template rendered an empty command")
    return argv


class SubprocessHandle:
    """
    Handle to a running process.

    Output is drained in the background; chunks() yields it as it arrives and
    wait() returns the final outcome. After kill() no further chunks are
    delivered.
    """

    def __init__(self, process: asyncio.subprocess.Process) -> None:
        self._process = process
        self._killed = False
        self._stdout: list[str] = []
        self._stderr: list[str] = []
        self._chunks: asyncio.Queue[OutputChunk | None] = asyncio.Queue()
        self._readers = [
            asyncio.create_task(self._drain(process.stdout, "stdout", self._stdout)),
            asyncio.create_task(self._drain(process.stderr, "stderr", self._stderr)),
        ]
        self._done: asyncio.Task[ProcessOutcome] = asyncio.create_task(self._finish())

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def killed(self) -> bool:
        return self._killed

    async def _drain(self, stream: asyncio.StreamReader | None, name: str, sink: list[str]) -> None:
        if stream is None:
            return
        # Multi-byte characters can straddle read boundaries.
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await stream.read(_READ_SIZE)
            text = decoder.decode(data, final=not data)
            if text:
                sink.append(text)
                if not self._killed:
                    self._chunks.put_nowait(OutputChunk(stream=name, text=text))
            if not data:
                return

    async def _finish(self) -> ProcessOutcome:
        try:
            await asyncio.gather(*self._readers)
            code = await self._process.wait()
        finally:
            self._chunks.put_nowait(None)

        sig = -code if code is not None and code < 0 else None
        return ProcessOutcome(
            exit_code=code,
            signal=sig,
            stdout="".join(self._stdout),
            stderr="".join(self._stderr),
            killed=self._killed,
        )

    async def chunks(self) -> AsyncIterator[OutputChunk]:
        while True:
            chunk = await self._chunks.get()
            if chunk is None or self._killed:
                return
            yield chunk

    async def wait(self) -> ProcessOutcome:
        return await asyncio.shield(self._done)

    def kill(self) -> None:
        if self._killed:
            return
        self._killed = True
        # Unblock a consumer of chunks() immediately.
        self._chunks.put_nowait(None)
        if self._process.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError, PermissionError):
            # The agent may spawn helpers that inherit our pipes; take the whole group down.
            if hasattr(os, "killpg"):
                os.killpg(self._process.pid, signal.SIGKILL)
            else:
                self._process.kill()
        logger.info("Killed process pid=%s", self._process.pid)


class SubprocessExecutor:
    """Starts processes with asyncio.create_subprocess_exec (argv, no shell)."""

    async def run(
        self,
        argv: Sequence[str],
        cwd: Path,
        *,
        env: Mapping[str, str] | None = None,
    ) -> SubprocessHandle:
        if not argv:
            raise ExecutorSpawnError("empty command")

        run_env = None
        if env:
            run_env = os.environ.copy()
            run_env.update(env)

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(cwd),
                env=run_env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            raise ExecutorSpawnError(f"failed to execute command '{argv[0]}': {e}") from e

        logger.debug("Started pid=%s cmd=%s cwd=%s", process.pid, argv[0], cwd)
        return SubprocessHandle(process)
