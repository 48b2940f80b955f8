"""Chat route handlers."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from ..auth import require_auth
from ..chat import ChatEvent

log = logging.getLogger(__name__)

router = APIRouter()


class ChatRequest(BaseModel):
    text: str
    thread_id: str = "web"
    user_id: str = "web"


class ClearRequest(BaseModel):
    thread_id: str = "web"


def current_chat():
    from ..server import supervisor

    if supervisor is None or supervisor.generation is None:
        raise HTTPException(status_code=503, detail="Chat not initialized")
    return supervisor.generation.chat


@router.post("/api/chat", dependencies=[Depends(require_auth)])
async def api_chat(req: ChatRequest):
    chat = current_chat()
    response = await chat.handle(ChatEvent(req.thread_id, req.user_id, req.text))
    return {"response": response}


@router.post("/api/chat/clear", dependencies=[Depends(require_auth)])
async def api_chat_clear(req: ClearRequest):
    cleared = current_chat().clear_history(req.thread_id)
    return {"status": "ok", "cleared": cleared}
