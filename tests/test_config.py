# tests/test_config.py

from __future__ import annotations

from pathlib import Path

import pytest

from prompt_relay.config import Settings
from prompt_relay.core.errors import WorkspaceNotFound
from prompt_relay.core.workspaces import StaticWorkspaceResolver, parse_workspaces


@pytest.fixture()
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    import os

    for name in list(os.environ):
        if name.startswith("PROMPT_RELAY_") or name in ("MAX_RETRIES", "RETRY_BACKOFF_BASE", "MATRIX_ROOMS"):
            monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_parse_workspaces() -> None:
    parsed = parse_workspaces("Web=/srv/web, api=/srv/api  junk =nopath bad")
    assert parsed == {"web": Path("/srv/web"), "api": Path("/srv/api")}
    assert parse_workspaces(["x=/tmp/x", "y"]) == {"x": Path("/tmp/x")}
    assert parse_workspaces("") == {}


def test_resolver_is_case_insensitive() -> None:
    r = StaticWorkspaceResolver({"Web": "/srv/web"})
    assert r.resolve("WEB") == Path("/srv/web")
    assert "web" in r and "other" not in r and 3 not in r
    assert r.keys() == ["web"]
    with pytest.raises(WorkspaceNotFound):
        r.resolve("other")


def test_defaults(clean_env, tmp_path: Path) -> None:
    clean_env.chdir(tmp_path)
    s = Settings.from_env()
    assert s.max_retries == 3
    assert s.retry_backoff_base_ms == 1000
    assert s.retry_backoff_base_seconds == 1.0
    assert s.poll_interval_seconds == 1.0
    assert s.console_enabled is True
    assert s.matrix_enabled is False
    assert "{prompt}" in s.agent_command
    assert s.state_file == s.data_dir / "queue_state.json"
    assert s.workspaces == {}


def test_prefixed_values_and_legacy_fallbacks(clean_env, tmp_path: Path) -> None:
    clean_env.setenv("MAX_RETRIES", "5")
    clean_env.setenv("RETRY_BACKOFF_BASE", "250")
    clean_env.setenv("PROMPT_RELAY_WORKSPACES", f"app={tmp_path}")
    clean_env.setenv("PROMPT_RELAY_DEFAULT_WORKSPACE", "APP")
    clean_env.setenv("PROMPT_RELAY_MATRIX_ENABLED", "yes")
    clean_env.setenv("PROMPT_RELAY_DATA_DIR", str(tmp_path / "data"))

    s = Settings.from_env()
    assert s.max_retries == 5
    assert s.retry_backoff_base_seconds == 0.25
    assert s.workspaces == {"app": tmp_path}
    assert s.default_workspace == "app"
    assert s.matrix_enabled is True
    assert s.state_file == tmp_path / "data" / "queue_state.json"

    clean_env.setenv("PROMPT_RELAY_MAX_RETRIES", "1")
    assert Settings.from_env().max_retries == 1
