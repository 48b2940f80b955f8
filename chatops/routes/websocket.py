"""WebSocket route handler."""

import asyncio
import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from ..auth import require_ws_auth
from ..frontend import claim_thread, forget_client
from ..chat import ChatEvent

log = logging.getLogger(__name__)

router = APIRouter()

# Turns started from WebSocket messages; kept so they aren't garbage collected.
_turns: set[asyncio.Task] = set()


async def _run_turn(event: ChatEvent):
    from ..server import supervisor

    if supervisor is None or supervisor.generation is None:
        log.warning(f"Dropping message on thread {event.thread_id}: chat not initialized")
        return
    try:
        await supervisor.generation.chat.handle(event)
    except Exception:
        log.exception(f"Chat turn on thread {event.thread_id} failed")


def _start_turn(data: dict, ws: WebSocket):
    client_id = id(ws)
    text = data.get("text")
    if not isinstance(text, str) or not text.strip():
        return
    event = ChatEvent(
        thread_id=str(data.get("thread_id") or f"ws-{client_id}"),
        user_id=str(data.get("user_id") or f"ws-{client_id}"),
        text=text,
    )
    claim_thread(event.thread_id, ws)
    task = asyncio.create_task(_run_turn(event))
    _turns.add(task)
    task.add_done_callback(_turns.discard)


@router.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    await ws.accept()
    if not await require_ws_auth(ws):
        await ws.close(code=4001, reason="Unauthorized")
        return
    client_id = id(ws)
    try:
        while True:
            msg = await ws.receive()
            if msg["type"] == "websocket.disconnect":
                break
            if not msg.get("text"):
                continue
            try:
                data = json.loads(msg["text"])
            except ValueError:
                log.debug(f"Ignoring non-JSON WebSocket message from {client_id}")
                continue
            if isinstance(data, dict) and data.get("action") == "chat":
                _start_turn(data, ws)
    except WebSocketDisconnect:
        pass
    finally:
        forget_client(ws)
