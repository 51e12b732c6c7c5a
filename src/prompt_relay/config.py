# src/prompt_relay/config.py

"""Centralized settings loaded from environment variables (+ optional .env).

Design goals:
- One Settings object for the whole app.
- No secrets required at import time.
- Legacy un-prefixed names (MAX_RETRIES, RETRY_BACKOFF_BASE) still work as fallbacks.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import load_dotenv

from .core.workspaces import parse_workspaces
from .tasks.task_executor import DEFAULT_AGENT_COMMAND

ENV_PREFIX = "PROMPT_RELAY"


def _k(suffix: str) -> str:
    """Build env var name with the project prefix."""
    return f"{ENV_PREFIX}_{suffix}"


# Local .env never overrides variables already set in the environment.
load_dotenv(override=False)


def _env(name: str, default: str = "") -> str:
    v = os.getenv(name)
    return default if v is None else v


def _first_env(*names: str, default: str | None = None) -> str | None:
    for n in names:
        v = os.getenv(n)
        if v is not None and v.strip() != "":
            return v
    return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_list(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return list(default)
    parts = [p.strip() for p in raw.replace(",", " ").split() if p.strip()]
    return parts


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return Path(raw).expanduser()


@dataclass(frozen=True, slots=True)
class Settings:
    # ---- App / logging ----
    app_name: str
    log_level: str

    # ---- Connector flags ----
    console_enabled: bool
    matrix_enabled: bool

    # ---- Workspaces / agent ----
    workspaces: Dict[str, Path]
    default_workspace: Optional[str]
    agent_command: str

    # ---- Processor tuning ----
    max_retries: int
    retry_backoff_base_ms: int
    poll_interval_ms: int
    cleanup_max_age_hours: int
    cleanup_interval_minutes: int
    recover_orphans: bool
    message_max_chars: int

    # ---- Matrix ----
    matrix_homeserver: str
    matrix_user_id: str
    matrix_password: str
    matrix_rooms: List[str]

    # ---- Local data paths (ignored by git) ----
    data_dir: Path
    state_file: Path
    matrix_store_path: Path

    @property
    def retry_backoff_base_seconds(self) -> float:
        return self.retry_backoff_base_ms / 1000.0

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval_ms / 1000.0

    @staticmethod
    def from_env() -> "Settings":
        app_name = _env(_k("APP_NAME"), "prompt-relay") or "prompt-relay"
        log_level = _env(_k("LOG_LEVEL"), "INFO")

        console_enabled = _env_bool(_k("CONSOLE_ENABLED"), True)
        matrix_enabled = _env_bool(_k("MATRIX_ENABLED"), False)

        workspaces = parse_workspaces(_env(_k("WORKSPACES"), ""))
        default_workspace = (_first_env(_k("DEFAULT_WORKSPACE"), default="") or "").strip().lower() or None
        agent_command = _env(_k("AGENT_COMMAND"), DEFAULT_AGENT_COMMAND)

        # Un-prefixed names kept for state files/envs written by older deployments.
        max_retries = _env_int(_k("MAX_RETRIES"), _env_int("MAX_RETRIES", 3))
        retry_backoff_base_ms = _env_int(
            _k("RETRY_BACKOFF_BASE_MS"),
            _env_int("RETRY_BACKOFF_BASE", 1000),
        )
        poll_interval_ms = _env_int(_k("POLL_INTERVAL_MS"), 1000)
        cleanup_max_age_hours = _env_int(_k("CLEANUP_MAX_AGE_HOURS"), 24)
        cleanup_interval_minutes = _env_int(_k("CLEANUP_INTERVAL_MINUTES"), 60)
        recover_orphans = _env_bool(_k("RECOVER_ORPHANS"), True)
        message_max_chars = _env_int(_k("MESSAGE_MAX_CHARS"), 4000)

        matrix_homeserver = (_first_env(_k("MATRIX_HOMESERVER"), "MATRIX_HOMESERVER", default="") or "").strip()
        matrix_user_id = (_first_env(_k("MATRIX_USER_ID"), "MATRIX_USER_ID", default="") or "").strip()
        matrix_password = (_first_env(_k("MATRIX_PASSWORD"), "MATRIX_PASSWORD", default="") or "").strip()
        matrix_rooms = _env_list(_k("MATRIX_ROOMS"), _env_list("MATRIX_ROOMS", []))

        data_dir = _env_path(_k("DATA_DIR"), Path(".local/prompt-relay"))
        state_file = _env_path(_k("STATE_FILE"), data_dir / "queue_state.json")
        matrix_store_path = _env_path(_k("MATRIX_STORE_PATH"), data_dir / "matrix_store")

        return Settings(
            app_name=app_name,
            log_level=log_level,
            console_enabled=console_enabled,
            matrix_enabled=matrix_enabled,
            workspaces=workspaces,
            default_workspace=default_workspace,
            agent_command=agent_command,
            max_retries=max(0, max_retries),
            retry_backoff_base_ms=max(0, retry_backoff_base_ms),
            poll_interval_ms=max(10, poll_interval_ms),
            cleanup_max_age_hours=max(0, cleanup_max_age_hours),
            cleanup_interval_minutes=max(0, cleanup_interval_minutes),
            recover_orphans=recover_orphans,
            message_max_chars=max(100, message_max_chars),
            matrix_homeserver=matrix_homeserver,
            matrix_user_id=matrix_user_id,
            matrix_password=matrix_password,
            matrix_rooms=matrix_rooms,
            data_dir=data_dir,
            state_file=state_file,
            matrix_store_path=matrix_store_path,
        )


SETTINGS = Settings.from_env()


def get_settings() -> Settings:
    return SETTINGS
