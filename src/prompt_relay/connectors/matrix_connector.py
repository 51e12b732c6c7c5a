# src/prompt_relay/connectors/matrix_connector.py

from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from nio import AsyncClient, MatrixRoom, RoomMessageText

from ..cli.commands import registry as command_registry
from ..core.errors import InvalidTaskSpec
from ..core.ports import OutboundMessenger
from ..core.state import AppState
from ..tasks.task_api import format_event, submit_instruction
from ..tasks.task_events import TaskEvent, TaskStarted
from .matrix_client import create_matrix_client

logger = logging.getLogger(__name__)


def _ms_now() -> int:
    return int(time.time() * 1000)


def _room_allowlist(settings_rooms: list[str]) -> set[str] | None:
    rooms = [r.strip() for r in (settings_rooms or []) if str(r).strip()]
    return set(rooms) if rooms else None


class MatrixMessenger:
    """OutboundMessenger over a nio AsyncClient."""

    def __init__(self, client: AsyncClient, *, default_room: str | None = None) -> None:
        self._client = client
        self._default_room = default_room

    async def send_text(
        self,
        *,
        text: str,
        room_id: str | None = None,
        reply_to: str | None = None,
    ) -> None:
        room = (room_id or self._default_room or "").strip()
        if not room:
            logger.warning("No room to send to; message dropped")
            return

        content: dict[str, Any] = {"msgtype": "m.text", "body": text}
        if reply_to:
            content["m.relates_to"] = {"m.in_reply_to": {"event_id": reply_to}}

        await self._client.room_send(
            room_id=room,
            message_type="m.room.message",
            content=content,
            ignore_unverified_devices=True,
        )


def make_matrix_sink(
    state: AppState,
    messenger: OutboundMessenger,
    loop: asyncio.AbstractEventLoop,
    *,
    owns_chat: Callable[[str], bool] = lambda chat_id: chat_id.startswith("!"),
):
    """
    Event sink that reports task outcomes back into the room the task came from.

    Events are published on the processor's thread; sending is scheduled onto
    the Matrix event loop. "started" is not reported (the submit reply covers it).
    """
    max_chars = int(getattr(state.settings, "message_max_chars", 4000))
    max_retries = getattr(state.settings, "max_retries", None)

    def sink(event: TaskEvent) -> None:
        if isinstance(event, TaskStarted):
            return
        room_id = event.task.chat_id
        if not room_id or not owns_chat(room_id):
            return
        text = format_event(event, max_chars=max_chars, max_retries=max_retries)
        future = asyncio.run_coroutine_threadsafe(
            messenger.send_text(text=text, room_id=room_id, reply_to=event.task.message_id),
            loop,
        )
        future.add_done_callback(_log_send_failure)

    return sink


def _log_send_failure(future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.error("Failed to deliver task notification: %r", exc)


def handle_room_message(state: AppState, body: str, *, room_id: str, sender: str, event_id: str | None) -> str:
    """Commands go to the registry; anything else is queued as a prompt."""
    if body.startswith("/"):
        try:
            resp = command_registry.handle(state, body, user_id=sender, room_id=room_id)
        except Exception:
            logger.exception("Command handler crashed.")
            resp = "Internal error while handling a command."
        return resp or ""

    try:
        res = submit_instruction(state, body, chat_id=room_id, message_id=event_id)
    except InvalidTaskSpec as e:
        return f"⚠️ {e}. Use /repos and /use <name> first."
    return f"📝 Queued (position {res.position}) in {res.task.workspace}\nID: {res.task.id}"


async def _run_matrix_bot(state: AppState, stop_event: asyncio.Event) -> None:
    """
    Matrix connector (async):

    init -> event sink -> callbacks -> sync loop

    Shutdown model:
    - main thread sets stop_event via loop.call_soon_threadsafe(stop_event.set)
    - we run a manual sync loop so we can exit promptly.
    """
    settings = state.settings

    startup_ts = _ms_now()
    allowed_rooms = _room_allowlist(getattr(settings, "matrix_rooms", []) or [])
    logger.info("Matrix allowed_rooms=%s", allowed_rooms if allowed_rooms is not None else "ALL")

    client = await create_matrix_client(settings)
    if client is None:
        logger.error("Matrix client creation failed; connector will stop.")
        return

    default_room = next(iter(allowed_rooms)) if allowed_rooms else None
    messenger = MatrixMessenger(client, default_room=default_room)
    unsubscribe = state.events.subscribe(
        make_matrix_sink(state, messenger, asyncio.get_running_loop())
    )

    async def message_callback(room: MatrixRoom, event: RoomMessageText) -> None:
        # 1) Ignore messages sent before bot startup.
        ts = getattr(event, "server_timestamp", None)
        if ts is not None and ts <= startup_ts:
            return

        # 2) Ignore own messages.
        if event.sender == client.user_id:
            return

        # 3) Room allowlist filter.
        if allowed_rooms is not None and room.room_id not in allowed_rooms:
            return

        body = (event.body or "").strip()
        if not body:
            return

        logger.info("Matrix <%s> %s: %r", room.display_name, event.sender, body[:200])

        reply = handle_room_message(
            state,
            body,
            room_id=room.room_id,
            sender=event.sender,
            event_id=getattr(event, "event_id", None),
        )
        if not reply:
            return
        try:
            await messenger.send_text(text=reply, room_id=room.room_id)
        except Exception:
            logger.exception("Failed to send reply to %s.", room.room_id)

    client.add_event_callback(message_callback, RoomMessageText)

    try:
        logger.info("Matrix initial sync...")
        await client.sync(timeout=30000, full_state=True)
        logger.info("Matrix initial sync done. Joined rooms: %d", len(client.rooms))

        while not stop_event.is_set():
            await client.sync(timeout=30000, full_state=False)

    except asyncio.CancelledError:
        logger.info("Matrix connector cancelled.")
    except Exception:
        logger.exception("Matrix connector crashed.")
    finally:
        unsubscribe()
        with contextlib.suppress(Exception):
            await client.close()
        logger.info("Matrix connector stopped.")


@dataclass
class MatrixBackgroundRunner:
    thread: threading.Thread
    loop: asyncio.AbstractEventLoop
    stop_event: asyncio.Event

    def stop(self) -> None:
        try:
            self.loop.call_soon_threadsafe(self.stop_event.set)
        except RuntimeError:
            logger.debug("Failed to signal Matrix stop.", exc_info=True)

    def join(self, timeout: float | None = None) -> None:
        self.thread.join(timeout=timeout)


def start_matrix_in_background(state: AppState) -> MatrixBackgroundRunner | None:
    """
    Start the Matrix connector in a background thread with its own event loop,
    so the console REPL and the task processor can run in parallel.
    """
    settings = state.settings
    if not getattr(settings, "matrix_enabled", False):
        logger.info("Matrix connector disabled, not starting.")
        return None

    ready = threading.Event()
    holder: dict[str, object] = {}

    def runner() -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        stop_event = asyncio.Event()

        holder["loop"] = loop
        holder["stop_event"] = stop_event
        ready.set()

        try:
            loop.run_until_complete(_run_matrix_bot(state, stop_event))
        finally:
            with contextlib.suppress(Exception):
                loop.close()

    t = threading.Thread(target=runner, name="matrix-connector", daemon=True)
    t.start()

    ready.wait(timeout=5.0)
    loop = holder.get("loop")
    stop_event = holder.get("stop_event")

    if not isinstance(loop, asyncio.AbstractEventLoop) or not isinstance(stop_event, asyncio.Event):
        logger.error("Matrix thread did not initialize properly.")
        return None

    logger.info("Matrix background thread started.")
    return MatrixBackgroundRunner(thread=t, loop=loop, stop_event=stop_event)
