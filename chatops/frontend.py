"""The chat front-end: routes replies to the WebSocket client that owns each thread."""

import json
import logging

from fastapi import WebSocket

log = logging.getLogger(__name__)

# thread id -> the client that last sent a chat message on it
thread_owners: dict[str, WebSocket] = {}


def claim_thread(thread_id: str, ws: WebSocket):
    thread_owners[thread_id] = ws


def forget_client(ws: WebSocket):
    """Drop every thread a disconnected client owns."""
    for thread_id in [t for t, owner in thread_owners.items() if owner is ws]:
        del thread_owners[thread_id]


async def deliver(thread_id: str, message: dict):
    """Send a JSON message to the client that owns the thread, if any."""
    ws = thread_owners.get(thread_id)
    if ws is None:
        log.debug(f"No WebSocket client owns thread {thread_id}, not pushing {message['action']}")
        return
    try:
        await ws.send_text(json.dumps(message))
    except Exception:
        log.debug(f"Dropping WebSocket client that failed to receive on thread {thread_id}")
        forget_client(ws)


class WebSocketFrontend:
    """Delivers replies and transient status messages to the client that asked.

    Threads started over plain HTTP have no owner; their replies travel in the
    HTTP response only.
    """

    async def send(self, thread_id: str, text: str) -> None:
        await deliver(thread_id, {"action": "chat", "thread_id": thread_id, "content": text})

    async def send_status(self, thread_id: str, text: str) -> None:
        await deliver(thread_id, {"action": "status", "thread_id": thread_id, "content": text})
