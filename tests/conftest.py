# tests/conftest.py

from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace

import pytest

from prompt_relay.cli.bootstrap import create_initial_state
from prompt_relay.core.state import AppState
from prompt_relay.core.workspaces import StaticWorkspaceResolver
from prompt_relay.tasks.task_processor import TaskProcessor
from prompt_relay.tasks.task_queue import TaskQueue
from prompt_relay.tasks.task_store import TaskStore

from .fakes import FakeExecutor, RecordingSink, RecordingSleep

AGENT_TEMPLATE = "agent -p {prompt}"
POLL_SECONDS = 0.01


@pytest.fixture()
def workspaces(tmp_path: Path) -> dict[str, Path]:
    out = {}
    for name in ("alpha", "beta"):
        d = tmp_path / "ws" / name
        d.mkdir(parents=True)
        out[name] = d
    return out


@pytest.fixture()
def settings(tmp_path: Path, workspaces: dict[str, Path]) -> SimpleNamespace:
    """
    Minimal settings object compatible with AppState and bootstrap.

    We intentionally use a SimpleNamespace rather than importing real config,
    to keep unit tests isolated from the environment and any local .env.
    """
    data_dir = tmp_path / "data"
    return SimpleNamespace(
        app_name="prompt-relay-test",
        log_level="DEBUG",
        console_enabled=False,
        matrix_enabled=False,
        workspaces=dict(workspaces),
        default_workspace=None,
        agent_command=AGENT_TEMPLATE,
        max_retries=3,
        retry_backoff_base_ms=1000,
        poll_interval_ms=10,
        cleanup_max_age_hours=24,
        cleanup_interval_minutes=0,
        recover_orphans=True,
        message_max_chars=4000,
        matrix_rooms=[],
        data_dir=data_dir,
        state_file=data_dir / "queue_state.json",
        matrix_store_path=data_dir / "matrix_store",
    )


@pytest.fixture()
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture()
def state(settings: SimpleNamespace, executor: FakeExecutor) -> AppState:
    """AppState wired by the real bootstrap, with the process executor faked."""
    return create_initial_state(settings=settings, executor=executor)


@pytest.fixture()
def queue(state: AppState) -> TaskQueue:
    return state.queue


@pytest.fixture()
def store(settings: SimpleNamespace) -> TaskStore:
    return TaskStore(settings.state_file)


@pytest.fixture()
def resolver(workspaces: dict[str, Path]) -> StaticWorkspaceResolver:
    return StaticWorkspaceResolver(workspaces)


@pytest.fixture()
def sink(state: AppState) -> RecordingSink:
    rec = RecordingSink()
    state.events.subscribe(rec)
    return rec


@pytest.fixture()
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture()
def make_processor(state: AppState, executor: FakeExecutor, sleep: RecordingSleep):
    """
    Build a TaskProcessor over the state's queue with instant sleeps.

    The new processor replaces state.processor so task_api helpers use it too.
    """

    def _make(
        *,
        queue: TaskQueue | None = None,
        max_retries: int = 3,
        base: float = 1.0,
        cleanup_interval: float = 0.0,
        cleanup_max_age: float = 24 * 3600.0,
        real_sleep: bool = False,
    ) -> TaskProcessor:
        processor = TaskProcessor(
            queue or state.queue,
            executor,
            state.resolver,
            state.events,
            command_template=AGENT_TEMPLATE,
            max_retries=max_retries,
            backoff_base_seconds=base,
            poll_interval_seconds=POLL_SECONDS,
            cleanup_interval_seconds=cleanup_interval,
            cleanup_max_age_seconds=cleanup_max_age,
            sleep=None if real_sleep else sleep,
        )
        state.processor = processor
        return processor

    return _make
