# src/prompt_relay/connectors/matrix_client.py

from __future__ import annotations

import contextlib
import json
import logging
import os
from pathlib import Path
from typing import Any

from nio import AsyncClient, AsyncClientConfig, LoginResponse

logger = logging.getLogger(__name__)

_REQUIRED_SESSION_KEYS = ("access_token", "user_id", "device_id")


def session_path(store_dir: Path) -> Path:
    return store_dir / "session.json"


def read_session(path: Path) -> dict[str, str] | None:
    """Return a stored session if it has every required field, else None."""
    try:
        data: Any = json.loads(path.read_text("utf-8"))
    except (OSError, ValueError):
        logger.warning("Unreadable Matrix session file %s", path)
        return None
    if not isinstance(data, dict):
        return None
    if not all(data.get(k) for k in _REQUIRED_SESSION_KEYS):
        logger.warning("Matrix session file %s is missing required fields", path)
        return None
    return {k: str(data[k]) for k in _REQUIRED_SESSION_KEYS}


def write_session(path: Path, data: dict[str, str]) -> None:
    tmp = path.with_suffix(".tmp")
    tmp.write_text(json.dumps(data, ensure_ascii=False), "utf-8")
    os.replace(tmp, path)
    with contextlib.suppress(OSError):
        # Holds an access token.
        os.chmod(path, 0o600)


async def create_matrix_client(settings) -> AsyncClient | None:
    """
    Create a Matrix AsyncClient for the bot account.

    The access token is persisted in <matrix_store_path>/session.json so restarts
    do not need a password login. Rooms are expected to be unencrypted.
    """
    homeserver = (getattr(settings, "matrix_homeserver", "") or "").strip()
    user_id = (getattr(settings, "matrix_user_id", "") or "").strip()
    password = (getattr(settings, "matrix_password", "") or "").strip()
    store_dir = Path(getattr(settings, "matrix_store_path", Path(".local/prompt-relay/matrix_store")))

    if not homeserver or not user_id:
        logger.error(
            "Matrix is not configured: set PROMPT_RELAY_MATRIX_HOMESERVER and PROMPT_RELAY_MATRIX_USER_ID"
        )
        return None

    store_dir.mkdir(parents=True, exist_ok=True)
    session_file = session_path(store_dir)

    client = AsyncClient(
        homeserver,
        user_id,
        config=AsyncClientConfig(encryption_enabled=False, store_sync_tokens=True),
    )

    if session_file.exists():
        session = read_session(session_file)
        if session is not None:
            client.access_token = session["access_token"]
            client.user_id = session["user_id"]
            client.device_id = session["device_id"]
            logger.info("Matrix session restored for %s", client.user_id)
            return client

    if not password:
        logger.error(
            "Matrix session.json not found and password is not set. "
            "Set PROMPT_RELAY_MATRIX_PASSWORD once to bootstrap a session."
        )
        await client.close()
        return None

    device_name = f"{getattr(settings, 'app_name', 'prompt-relay')} (Python)"
    logger.info("Logging in to Matrix to bootstrap a new session (device_name=%r)...", device_name)
    resp = await client.login(password=password, device_name=device_name)

    if not isinstance(resp, LoginResponse):
        logger.error("Matrix login failed: %r", resp)
        await client.close()
        return None

    try:
        write_session(
            session_file,
            {"access_token": resp.access_token, "user_id": resp.user_id, "device_id": resp.device_id},
        )
        logger.info("Matrix session saved to %s (user=%s)", session_file, resp.user_id)
    except OSError:
        # The client is logged in; only the next restart will need the password again.
        logger.exception("Failed to write Matrix session file %s", session_file)

    return client
