# src/prompt_relay/tasks/task_processor.py

from __future__ import annotations

"""
Task processor.

A single cooperative loop that:
- claims the first pending task from the queue,
- resolves its workspace and runs the agent CLI there,
- classifies the outcome and applies the retry state machine,
- publishes lifecycle events.

Exactly one task runs at a time. Retry backoff blocks the whole loop.
cancel(), cancel_all() and stop() are safe to call from other threads.
"""

import asyncio
import contextlib
import logging
import threading
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass

from ..core.errors import (
    EmptyOutput,
    ExecutorNonZeroExit,
    ExecutorSpawnError,
    PersistenceError,
    WorkspaceNotFound,
)
from ..core.ports import Executor, ProcessHandle, WorkspaceResolver
from .task_events import TaskCompleted, TaskEventBus, TaskFailed, TaskRetry, TaskStarted
from .task_executor import DEFAULT_AGENT_COMMAND, ProcessOutcome, build_command
from .task_models import Task, TaskPatch, TaskStatus
from .task_queue import TaskQueue, now_ts

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


def backoff_delay(base_seconds: float, retries: int) -> float:
    """Delay before retry number retries+1: base * 2**retries."""
    return float(base_seconds) * (2 ** max(0, int(retries)))


def classify_outcome(outcome: ProcessOutcome) -> str | None:
    """Return None for success, otherwise the failure reason."""
    if outcome.exit_code == 0 and outcome.output:
        return None
    if outcome.exit_code == 0:
        return str(EmptyOutput())
    return str(ExecutorNonZeroExit(outcome.exit_code, outcome.stderr))


@dataclass(slots=True, frozen=True)
class ProcessorStatus:
    is_processing: bool
    current_task: Task | None
    queue_stats: dict[str, int]


class TaskProcessor:
    def __init__(
        self,
        queue: TaskQueue,
        executor: Executor,
        resolver: WorkspaceResolver,
        events: TaskEventBus,
        *,
        command_template: str = DEFAULT_AGENT_COMMAND,
        max_retries: int = 3,
        backoff_base_seconds: float = 1.0,
        poll_interval_seconds: float = 1.0,
        cleanup_max_age_seconds: float = 24 * 3600.0,
        cleanup_interval_seconds: float = 0.0,
        env: Mapping[str, str] | None = None,
        sleep: SleepFn | None = None,
    ) -> None:
        self._queue = queue
        self._executor = executor
        self._resolver = resolver
        self._events = events
        self._command_template = command_template
        self._max_retries = max(0, int(max_retries))
        self._backoff_base = max(0.0, float(backoff_base_seconds))
        self._poll_interval = max(0.01, float(poll_interval_seconds))
        self._cleanup_max_age = float(cleanup_max_age_seconds)
        self._cleanup_interval = float(cleanup_interval_seconds)
        self._env = dict(env) if env else None
        self._sleep_fn = sleep

        self._running = False
        self._stop_requested = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._wake: asyncio.Event | None = None
        self._current_task_id: str | None = None
        self._current_handle: ProcessHandle | None = None
        self._cancel_requested: set[str] = set()
        self._last_cleanup: float | None = None

    @property
    def is_processing(self) -> bool:
        return self._running

    @property
    def current_task_id(self) -> str | None:
        return self._current_task_id

    def status(self) -> ProcessorStatus:
        current = self._current_task_id
        return ProcessorStatus(
            is_processing=self._running,
            current_task=self._queue.get(current) if current else None,
            queue_stats=self._queue.stats(),
        )

    # ---- loop ----

    async def run(self) -> None:
        """Process tasks until stop() is called."""
        if self._running:
            logger.warning("Task processor already running")
            return

        self._loop = asyncio.get_running_loop()
        self._wake = asyncio.Event()
        self._running = True
        if self._stop_requested:
            # stop() arrived before the loop started.
            self._running = False
        logger.info(
            "Task processor started (max_retries=%d backoff_base=%.3fs poll=%.3fs)",
            self._max_retries,
            self._backoff_base,
            self._poll_interval,
        )

        try:
            while self._running:
                with self._queue.transaction():
                    # Registered under the same lock so a concurrent cancel() sees the claim.
                    task = self._queue.claim_next()
                    if task is not None:
                        self._current_task_id = task.id
                if task is None:
                    self._maybe_cleanup()
                    await self._sleep(self._poll_interval)
                    continue

                try:
                    await self.process_task(task)
                except Exception as e:
                    logger.exception("Unexpected error while processing task %s", task.id)
                    await self._abort(task, f"Internal error: {e}")
        finally:
            self._running = False
            self._kill_current()
            logger.info("Task processor stopped")

    def stop(self) -> None:
        """Stop dispatching, kill the active process and wake the loop."""
        self._stop_requested = True
        if not self._running:
            return
        self._running = False
        logger.info("Task processor stop requested")
        self._call_in_loop(self._interrupt)

    async def process_task(self, task: Task) -> None:
        """Run one task already claimed as running."""
        self._current_task_id = task.id
        try:
            await self._execute(task)
        finally:
            self._current_task_id = None
            self._current_handle = None
            self._cancel_requested.discard(task.id)

    async def _execute(self, task: Task) -> None:
        if self._cancelled_before_spawn(task):
            return

        try:
            cwd = self._resolver.resolve(task.workspace)
        except WorkspaceNotFound:
            logger.error("Unknown workspace %r for task %s", task.workspace, task.id)
            await self._fail_permanently(task, f"Unknown workspace: {task.workspace}")
            return

        logger.info(
            "Task started id=%s workspace=%s (%s) prompt=%r",
            task.id,
            task.workspace,
            cwd,
            task.instruction[:100],
        )
        self._persist()
        await self._events.publish(TaskStarted(task=task))

        try:
            argv = build_command(self._command_template, task.instruction)
        except ValueError as e:
            logger.error("Cannot build agent command: %s", e)
            await self._fail_permanently(task, f"Invalid agent command: {e}")
            return

        if self._cancelled_before_spawn(task):
            return

        try:
            handle = await self._executor.run(argv, cwd, env=self._env)
        except ExecutorSpawnError as e:
            logger.error("Process error task=%s: %s", task.id, e)
            await self._handle_failure(task, str(e))
            return

        self._current_handle = handle
        if task.id in self._cancel_requested or not self._running:
            handle.kill()

        async for chunk in handle.chunks():
            logger.debug("Task %s %s: %d chars", task.id, chunk.stream, len(chunk.text))
        outcome = await handle.wait()
        self._current_handle = None

        logger.info(
            "Process closed task=%s code=%s signal=%s stdout=%d stderr=%d killed=%s",
            task.id,
            outcome.exit_code,
            outcome.signal,
            len(outcome.stdout),
            len(outcome.stderr),
            outcome.killed,
        )

        if task.id in self._cancel_requested:
            self._mark_cancelled(task)
            return
        if outcome.killed:
            # Killed by stop(): leave the task exactly as it is.
            logger.warning("Task %s interrupted by shutdown; left as running", task.id)
            return

        error = classify_outcome(outcome)
        if error is None:
            await self._handle_complete(task, outcome.output)
        else:
            logger.error("Command failed task=%s: %s", task.id, error[:500])
            await self._handle_failure(task, error)

    def _cancelled_before_spawn(self, task: Task) -> bool:
        if task.id in self._cancel_requested:
            self._mark_cancelled(task)
            return True
        current = self._queue.get(task.id)
        if current is None or current.status != TaskStatus.RUNNING:
            logger.info("Task %s is no longer running; not spawning", task.id)
            return True
        return False

    # ---- transitions ----

    async def _handle_complete(self, task: Task, output: str) -> None:
        updated = self._apply(
            task.id,
            TaskPatch(status=TaskStatus.COMPLETED, completed_at=now_ts(), result=output),
        )
        if updated is None:
            return
        self._persist()

        self._queue.remove(task.id)
        self._persist()

        logger.info("Task completed id=%s output=%d chars", task.id, len(output))
        await self._events.publish(TaskCompleted(task=updated, output=output))

    async def _handle_failure(self, task: Task, error: str) -> None:
        current = self._queue.get(task.id)
        if current is None:
            logger.warning("Task %s vanished from the queue before failure handling", task.id)
            return
        if current.status.is_terminal:
            logger.info("Task %s already %s; ignoring failure", task.id, current.status.value)
            return

        if current.retries < self._max_retries:
            delay = backoff_delay(self._backoff_base, current.retries)
            attempt = current.retries + 1
            updated = self._apply(
                task.id,
                TaskPatch(
                    status=TaskStatus.PENDING,
                    retries=attempt,
                    error=f"Failed: {error}. Retrying...",
                ),
            )
            if updated is None:
                return
            self._persist()
            logger.info(
                "Retrying task %s in %.3fs (attempt %d/%d)",
                task.id,
                delay,
                attempt,
                self._max_retries,
            )
            await self._events.publish(TaskRetry(task=updated, attempt=attempt, delay_seconds=delay))
            if self._running:
                await self._sleep(delay)
            return

        await self._fail_permanently(task, error)

    async def _fail_permanently(self, task: Task, error: str) -> None:
        updated = self._apply(
            task.id,
            TaskPatch(status=TaskStatus.FAILED, completed_at=now_ts(), error=error),
        )
        if updated is None:
            return
        self._persist()
        logger.error("Task %s failed permanently after %d retries", task.id, updated.retries)
        await self._events.publish(TaskFailed(task=updated, error=error))

    def _mark_cancelled(self, task: Task) -> None:
        updated = self._apply(
            task.id,
            TaskPatch(status=TaskStatus.CANCELLED, completed_at=now_ts()),
        )
        if updated is not None:
            self._persist()
            logger.info("Task %s cancelled while running", task.id)

    async def _abort(self, task: Task, error: str) -> None:
        """Last resort after an unexpected error: never leave a task stuck as running."""
        current = self._queue.get(task.id)
        if current is None or current.status != TaskStatus.RUNNING:
            return
        try:
            await self._fail_permanently(task, error)
        except Exception:
            logger.exception("Failed to mark task %s as failed", task.id)

    def _apply(self, task_id: str, patch: TaskPatch) -> Task | None:
        with self._queue.transaction():
            current = self._queue.get(task_id)
            if current is None:
                logger.warning("Task %s is no longer in the queue; skipping update", task_id)
                return None
            if current.status.is_terminal:
                logger.info("Task %s already %s; skipping update", task_id, current.status.value)
                return None
            return self._queue.update(task_id, patch)

    def _persist(self) -> bool:
        try:
            self._queue.save()
            return True
        except PersistenceError as e:
            logger.error("Failed to persist queue state: %s", e)
            return False

    # ---- cancellation ----

    def cancel(self, task_id: str) -> bool:
        """
        Cancel a pending or running task.

        Running: the process is killed and the task ends as cancelled (no retry).
        Pending: cancelled immediately. Terminal or unknown ids return False.
        """
        with self._queue.transaction():
            task = self._queue.get(task_id)
            if task is None or task.status.is_terminal:
                return False

            if task.status == TaskStatus.RUNNING and task_id == self._current_task_id:
                self._cancel_requested.add(task_id)
                self._call_in_loop(self._kill_current)
                logger.info("Killing running task %s", task_id)
                return True

            # Pending, or a stale running entry with no process behind it.
            self._queue.update(
                task_id,
                TaskPatch(status=TaskStatus.CANCELLED, completed_at=now_ts()),
            )
        self._persist()
        logger.info("Cancelled %s task %s", task.status.value, task_id)
        return True

    def cancel_all(self) -> int:
        """Cancel the running task and every pending one. Returns how many."""
        n = 0
        with self._queue.transaction():
            for task in self._queue.all_tasks():
                if task.status in (TaskStatus.PENDING, TaskStatus.RUNNING) and self.cancel(task.id):
                    n += 1
        logger.info("Cancelled %d task(s)", n)
        return n

    # ---- loop helpers ----

    def _kill_current(self) -> None:
        handle = self._current_handle
        if handle is not None:
            handle.kill()

    def _interrupt(self) -> None:
        self._kill_current()
        if self._wake is not None:
            self._wake.set()

    def _call_in_loop(self, fn: Callable[[], None]) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            fn()
            return
        try:
            current = asyncio.get_running_loop()
        except RuntimeError:
            current = None
        if current is loop:
            fn()
        else:
            loop.call_soon_threadsafe(fn)

    async def _sleep(self, seconds: float) -> None:
        if self._sleep_fn is not None:
            await self._sleep_fn(seconds)
            return
        wake = self._wake
        if wake is None:
            await asyncio.sleep(seconds)
            return
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(wake.wait(), timeout=seconds)

    def _maybe_cleanup(self) -> None:
        if self._cleanup_interval <= 0:
            return
        now = time.monotonic()
        if self._last_cleanup is not None and now - self._last_cleanup < self._cleanup_interval:
            return
        self._last_cleanup = now
        if self._queue.cleanup(self._cleanup_max_age):
            self._persist()


@dataclass
class ProcessorRunner:
    thread: threading.Thread
    loop: asyncio.AbstractEventLoop
    processor: TaskProcessor

    def stop(self) -> None:
        self.processor.stop()

    def join(self, timeout: float | None = None) -> None:
        self.thread.join(timeout=timeout)


def start_processor_in_background(processor: TaskProcessor) -> ProcessorRunner | None:
    """
    Run the processor loop in a background thread with its own event loop.

    The console REPL blocks the main thread on input(), so the loop lives elsewhere.
    """
    ready = threading.Event()
    holder: dict[str, object] = {}

    def runner() -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        holder["loop"] = loop
        ready.set()

        try:
            loop.run_until_complete(processor.run())
        except Exception:
            logger.exception("Task processor crashed")
        finally:
            with contextlib.suppress(Exception):
                loop.run_until_complete(loop.shutdown_asyncgens())
            with contextlib.suppress(Exception):
                loop.close()

    t = threading.Thread(target=runner, name="task-processor", daemon=True)
    t.start()

    ready.wait(timeout=5.0)
    loop = holder.get("loop")
    if not isinstance(loop, asyncio.AbstractEventLoop):
        logger.error("Task processor thread did not initialize properly")
        return None

    logger.info("Task processor background thread started")
    return ProcessorRunner(thread=t, loop=loop, processor=processor)
