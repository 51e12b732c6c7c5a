# tests/test_task_processor.py

from __future__ import annotations

import asyncio

import pytest

from prompt_relay.core.errors import ExecutorSpawnError
from prompt_relay.tasks.task_events import TaskCompleted, TaskFailed, TaskRetry, TaskStarted
from prompt_relay.tasks.task_executor import ProcessOutcome, build_command
from prompt_relay.tasks.task_models import TaskPatch, TaskStatus
from prompt_relay.tasks.task_processor import backoff_delay, classify_outcome, start_processor_in_background
from prompt_relay.tasks.task_queue import TaskQueue, now_ts
from prompt_relay.tasks.task_store import TaskStore

from .conftest import AGENT_TEMPLATE
from .fakes import FakeHandle, fail, ok, wait_until, wait_until_sync


def _idle(queue: TaskQueue) -> bool:
    s = queue.stats()
    return s["pending"] == 0 and s["running"] == 0


async def _run_until_idle(processor, queue: TaskQueue) -> None:
    runner = asyncio.create_task(processor.run())
    try:
        await wait_until(lambda: processor.is_processing)
        await wait_until(lambda: _idle(queue))
    finally:
        processor.stop()
        await asyncio.wait_for(runner, timeout=2.0)


def test_backoff_doubles_from_base() -> None:
    assert [backoff_delay(1.0, r) for r in range(4)] == [1.0, 2.0, 4.0, 8.0]
    assert backoff_delay(0.5, 2) == 2.0


def test_classify_outcome() -> None:
    assert classify_outcome(ok("hello")) is None
    assert classify_outcome(ProcessOutcome(exit_code=0, signal=None, stdout="", stderr="warn")) is None
    assert classify_outcome(ok("  \n")) == "Empty output"
    assert classify_outcome(fail("bad thing\n")) == "bad thing"
    assert classify_outcome(fail("", code=2)) == "Exit code 2"


@pytest.mark.asyncio
async def test_tasks_run_in_fifo_order_and_are_removed_on_success(
    state, queue, executor, sink, make_processor, workspaces
) -> None:
    executor.script = [ok("out-A"), ok("out-B"), ok("out-C")]
    processor = make_processor()
    queue.set_active_workspace("alpha")
    ids = [queue.enqueue(instruction=p).id for p in ("A", "B", "C")]

    await _run_until_idle(processor, queue)

    assert [c.argv for c in executor.calls] == [build_command(AGENT_TEMPLATE, p) for p in ("A", "B", "C")]
    assert all(c.cwd == workspaces["alpha"] for c in executor.calls)
    assert sink.kinds == ["task:started", "task:completed"] * 3
    completed = sink.of(TaskCompleted)
    assert [e.task.id for e in completed] == ids
    assert [e.output for e in completed] == ["out-A", "out-B", "out-C"]
    assert all(e.task.status == TaskStatus.COMPLETED for e in completed)
    assert queue.all_tasks() == []


@pytest.mark.asyncio
async def test_failures_retry_with_exponential_backoff_then_succeed(
    queue, executor, sink, sleep, make_processor
) -> None:
    executor.script = [fail("boom"), fail("boom"), ok("finally")]
    processor = make_processor(max_retries=3, base=1.0)
    queue.set_active_workspace("alpha")
    queue.enqueue(instruction="flaky")

    await _run_until_idle(processor, queue)

    retries = sink.of(TaskRetry)
    assert [(e.attempt, e.delay_seconds) for e in retries] == [(1, 1.0), (2, 2.0)]
    assert retries[0].task.error == "Failed: boom. Retrying..."
    assert [d for d in sleep.calls if d >= 1.0] == [1.0, 2.0]
    assert len(sink.of(TaskStarted)) == 3
    assert sink.of(TaskCompleted)[0].output == "finally"
    assert sink.of(TaskFailed) == []
    assert queue.all_tasks() == []


@pytest.mark.asyncio
async def test_exhausted_retries_leave_task_failed(queue, executor, sink, make_processor) -> None:
    executor.default = fail("still broken")
    processor = make_processor(max_retries=2)
    queue.set_active_workspace("alpha")
    t = queue.enqueue(instruction="doomed")

    await _run_until_idle(processor, queue)

    final = queue.get(t.id)
    assert final.status == TaskStatus.FAILED
    assert final.retries == 2
    assert final.error == "still broken"
    assert final.completed_at is not None
    assert len(executor.calls) == 3
    assert [e.task.id for e in sink.of(TaskFailed)] == [t.id]
    assert len(sink.of(TaskRetry)) == 2


@pytest.mark.asyncio
async def test_empty_output_is_a_failure(queue, executor, sink, make_processor) -> None:
    executor.default = ok("   ")
    processor = make_processor(max_retries=0)
    queue.set_active_workspace("alpha")
    t = queue.enqueue(instruction="quiet")

    await _run_until_idle(processor, queue)

    assert queue.get(t.id).status == TaskStatus.FAILED
    assert sink.of(TaskFailed)[0].error == "Empty output"


@pytest.mark.asyncio
async def test_spawn_error_goes_through_retry_path(queue, executor, sink, make_processor) -> None:
    executor.script = [ExecutorSpawnError("failed to execute command 'agent'"), ok("recovered")]
    processor = make_processor(max_retries=1)
    queue.set_active_workspace("alpha")
    queue.enqueue(instruction="A")

    await _run_until_idle(processor, queue)

    assert [e.attempt for e in sink.of(TaskRetry)] == [1]
    assert "failed to execute" in sink.of(TaskRetry)[0].task.error
    assert sink.of(TaskCompleted)[0].output == "recovered"


@pytest.mark.asyncio
async def test_unknown_workspace_fails_without_retry(state, executor, sink, make_processor, store) -> None:
    # A queue without a resolver accepts any workspace key, like a stale state file would.
    loose = TaskQueue(store)
    processor = make_processor(queue=loose)
    t = loose.enqueue(instruction="A", workspace="gone")

    await _run_until_idle(processor, loose)

    final = loose.get(t.id)
    assert final.status == TaskStatus.FAILED
    assert final.retries == 0
    assert final.error == "Unknown workspace: gone"
    assert executor.calls == []
    assert sink.of(TaskRetry) == []


@pytest.mark.asyncio
async def test_cancel_pending_while_another_task_runs(queue, executor, sink, make_processor) -> None:
    running = FakeHandle(ok("A done"), block=True)
    executor.script = [running]
    processor = make_processor()
    queue.set_active_workspace("alpha")
    a = queue.enqueue(instruction="A")
    b = queue.enqueue(instruction="B")

    runner = asyncio.create_task(processor.run())
    await wait_until(lambda: len(executor.calls) == 1)

    assert processor.current_task_id == a.id
    assert processor.cancel(b.id) is True
    assert queue.get(b.id).status == TaskStatus.CANCELLED
    assert queue.get(b.id).completed_at is not None

    running.release()
    await wait_until(lambda: queue.get(a.id) is None)
    processor.stop()
    await asyncio.wait_for(runner, timeout=2.0)

    assert len(executor.calls) == 1
    assert [e.task.id for e in sink.of(TaskStarted)] == [a.id]
    assert queue.get(b.id).status == TaskStatus.CANCELLED


@pytest.mark.asyncio
async def test_cancel_running_task_kills_process_without_retry(queue, executor, sink, make_processor) -> None:
    running = FakeHandle(ok("never"), block=True)
    executor.script = [running]
    processor = make_processor()
    queue.set_active_workspace("alpha")
    a = queue.enqueue(instruction="A")

    runner = asyncio.create_task(processor.run())
    await wait_until(lambda: len(executor.calls) == 1)

    assert processor.cancel(a.id) is True
    await wait_until(lambda: queue.get(a.id).status == TaskStatus.CANCELLED)
    processor.stop()
    await asyncio.wait_for(runner, timeout=2.0)

    assert running.killed
    final = queue.get(a.id)
    assert final.retries == 0
    assert final.completed_at is not None
    assert sink.kinds == ["task:started"]
    assert len(executor.calls) == 1


@pytest.mark.asyncio
async def test_cancel_all_cancels_running_and_pending(queue, executor, make_processor) -> None:
    running = FakeHandle(block=True)
    executor.script = [running]
    processor = make_processor()
    queue.set_active_workspace("alpha")
    ids = [queue.enqueue(instruction=p).id for p in ("A", "B", "C")]

    runner = asyncio.create_task(processor.run())
    await wait_until(lambda: len(executor.calls) == 1)

    assert processor.cancel_all() == 3
    await wait_until(lambda: all(queue.get(i).status == TaskStatus.CANCELLED for i in ids))
    processor.stop()
    await asyncio.wait_for(runner, timeout=2.0)

    assert len(executor.calls) == 1


@pytest.mark.asyncio
async def test_terminal_tasks_cannot_be_cancelled(queue, executor, make_processor) -> None:
    executor.default = fail("nope")
    processor = make_processor(max_retries=0)
    queue.set_active_workspace("alpha")
    t = queue.enqueue(instruction="A")

    await _run_until_idle(processor, queue)

    assert processor.cancel(t.id) is False
    assert processor.cancel("unknown") is False
    assert queue.get(t.id).status == TaskStatus.FAILED


@pytest.mark.asyncio
async def test_failing_sink_does_not_abort_processing(state, queue, executor, sink, make_processor) -> None:
    def broken(event) -> None:
        raise RuntimeError("sink down")

    state.events.subscribe(broken)
    processor = make_processor()
    queue.set_active_workspace("alpha")
    queue.enqueue(instruction="A")
    queue.enqueue(instruction="B")

    await _run_until_idle(processor, queue)

    assert len(sink.of(TaskCompleted)) == 2
    assert queue.all_tasks() == []


@pytest.mark.asyncio
async def test_stop_leaves_running_task_untouched(queue, executor, sink, make_processor) -> None:
    running = FakeHandle(block=True)
    executor.script = [running]
    processor = make_processor()
    queue.set_active_workspace("alpha")
    a = queue.enqueue(instruction="A")

    runner = asyncio.create_task(processor.run())
    await wait_until(lambda: len(executor.calls) == 1)
    processor.stop()
    await asyncio.wait_for(runner, timeout=2.0)

    assert running.killed
    assert not processor.is_processing
    final = queue.get(a.id)
    assert final.status == TaskStatus.RUNNING
    assert final.retries == 0
    assert sink.kinds == ["task:started"]


@pytest.mark.asyncio
async def test_state_is_persisted_after_each_transition(settings, queue, executor, make_processor) -> None:
    executor.default = fail("x")
    processor = make_processor(max_retries=1)
    queue.set_active_workspace("alpha")
    t = queue.enqueue(instruction="A")

    await _run_until_idle(processor, queue)

    on_disk = TaskStore(settings.state_file).load()
    assert on_disk.active_workspace == "alpha"
    [stored] = on_disk.tasks
    assert stored.id == t.id
    assert stored.status == TaskStatus.FAILED
    assert stored.retries == 1


@pytest.mark.asyncio
async def test_status_reports_current_task(queue, executor, make_processor) -> None:
    running = FakeHandle(block=True)
    executor.script = [running]
    processor = make_processor()
    queue.set_active_workspace("alpha")
    a = queue.enqueue(instruction="A")
    queue.enqueue(instruction="B")

    runner = asyncio.create_task(processor.run())
    await wait_until(lambda: len(executor.calls) == 1)

    st = processor.status()
    assert st.is_processing
    assert st.current_task.id == a.id
    assert st.queue_stats["running"] == 1
    assert st.queue_stats["pending"] == 1

    processor.stop()
    await asyncio.wait_for(runner, timeout=2.0)


@pytest.mark.asyncio
async def test_cancel_right_after_claim_never_runs_the_task(queue, executor, sink, make_processor, monkeypatch) -> None:
    processor = make_processor()
    queue.set_active_workspace("alpha")
    a = queue.enqueue(instruction="A")
    results: list[bool] = []
    claim = queue.claim_next

    def claim_then_cancel():
        task = claim()
        if task is not None:
            results.append(processor.cancel(task.id))
        return task

    monkeypatch.setattr(queue, "claim_next", claim_then_cancel)
    await _run_until_idle(processor, queue)

    assert results == [True]
    assert executor.calls == []
    assert sink.kinds == []
    assert queue.get(a.id).status == TaskStatus.CANCELLED


@pytest.mark.asyncio
async def test_finished_task_is_not_overwritten_by_late_outcome(queue, executor, sink, make_processor) -> None:
    running = FakeHandle(fail("late failure"), block=True)
    executor.script = [running]
    processor = make_processor()
    queue.set_active_workspace("alpha")
    a = queue.enqueue(instruction="A")

    runner = asyncio.create_task(processor.run())
    await wait_until(lambda: len(executor.calls) == 1)
    # Marked terminal behind the processor's back while the process is still alive.
    queue.update(a.id, TaskPatch(status=TaskStatus.CANCELLED))
    running.release()
    await wait_until(lambda: processor.current_task_id is None)
    processor.stop()
    await asyncio.wait_for(runner, timeout=2.0)

    final = queue.get(a.id)
    assert final.status == TaskStatus.CANCELLED
    assert final.retries == 0
    assert sink.kinds == ["task:started"]


@pytest.mark.asyncio
async def test_stop_before_run_starts_is_honored(queue, executor, make_processor) -> None:
    processor = make_processor()
    queue.set_active_workspace("alpha")
    a = queue.enqueue(instruction="A")

    processor.stop()
    await asyncio.wait_for(processor.run(), timeout=2.0)

    assert not processor.is_processing
    assert executor.calls == []
    assert queue.get(a.id).status == TaskStatus.PENDING


@pytest.mark.asyncio
async def test_idle_loop_sweeps_old_finished_tasks_on_interval(settings, queue, executor, sleep, make_processor) -> None:
    processor = make_processor(cleanup_interval=3600.0, cleanup_max_age=60.0)
    queue.set_active_workspace("alpha")
    old = queue.enqueue(instruction="old")
    recent = queue.enqueue(instruction="recent")
    queue.update(old.id, TaskPatch(status=TaskStatus.COMPLETED, completed_at=now_ts() - 600))
    queue.update(recent.id, TaskPatch(status=TaskStatus.FAILED, completed_at=now_ts()))

    runner = asyncio.create_task(processor.run())
    try:
        await wait_until(lambda: queue.get(old.id) is None)
        assert [t.id for t in TaskStore(settings.state_file).load().tasks] == [recent.id]

        # The next sweep is an hour away, so a newly aged task survives idle polls.
        later = queue.enqueue(instruction="later")
        queue.update(later.id, TaskPatch(status=TaskStatus.COMPLETED, completed_at=now_ts() - 600))
        polls = len(sleep.calls)
        await wait_until(lambda: len(sleep.calls) >= polls + 5)
        assert queue.get(later.id) is not None
    finally:
        processor.stop()
        await asyncio.wait_for(runner, timeout=2.0)
    assert executor.calls == []


def test_background_runner_handles_cancel_and_stop_from_another_thread(queue, executor, make_processor) -> None:
    running = FakeHandle(block=True)
    executor.script = [running]
    processor = make_processor(real_sleep=True)
    queue.set_active_workspace("alpha")
    a = queue.enqueue(instruction="A")
    b = queue.enqueue(instruction="B")

    runner = start_processor_in_background(processor)
    assert runner is not None
    try:
        wait_until_sync(lambda: len(executor.calls) == 1)
        assert processor.cancel(a.id)
        # B runs with the default outcome and is removed on success.
        wait_until_sync(lambda: queue.get(b.id) is None)
        assert running.killed
        assert queue.get(a.id).status == TaskStatus.CANCELLED
    finally:
        runner.stop()
        runner.join(timeout=5.0)

    assert not runner.thread.is_alive()
    assert not processor.is_processing
    assert len(executor.calls) == 2
