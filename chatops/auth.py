"""API-key authentication for the HTTP and WebSocket front-end."""

from __future__ import annotations

import hmac
import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, HTTPException, Request, WebSocket
from pydantic import BaseModel

if TYPE_CHECKING:
    from .config import AuthConfig

log = logging.getLogger(__name__)

_enabled: bool = False
_api_key: str = ""

router = APIRouter(prefix="/api/auth", tags=["auth"])


def init_auth(config: AuthConfig):
    """Initialize auth settings from config (an enabled config always has a key)."""
    global _enabled, _api_key
    _enabled = config.enabled
    _api_key = config.api_key
    log.info(f"Authentication {'enabled' if _enabled else 'disabled'}")


def verify_token(token: str) -> bool:
    if not _enabled:
        return True
    return bool(token) and hmac.compare_digest(token, _api_key)


def _bearer(header: str) -> str:
    scheme, _, token = header.partition(" ")
    return token.strip() if scheme.lower() == "bearer" else ""


def request_token(request: Request) -> str:
    """Token from ``Authorization: Bearer ...`` or ``X-API-Key``."""
    return _bearer(request.headers.get("Authorization", "")) or request.headers.get(
        "X-API-Key", ""
    )


async def require_auth(request: Request):
    """FastAPI dependency that enforces authentication on routes."""
    if not verify_token(request_token(request)):
        raise HTTPException(status_code=401, detail="Unauthorized")


async def require_ws_auth(websocket: WebSocket) -> bool:
    """Check WebSocket auth from the ``token`` query param or the Authorization header."""
    token = websocket.query_params.get("token", "") or _bearer(
        websocket.headers.get("Authorization", "")
    )
    return verify_token(token)


class LoginRequest(BaseModel):
    api_key: str


@router.post("/login")
async def login(req: LoginRequest):
    if not _enabled:
        return {"token": "", "auth_enabled": False}
    if not verify_token(req.api_key):
        raise HTTPException(status_code=401, detail="Invalid API key")
    return {"token": _api_key}


@router.get("/check")
async def check_auth(request: Request):
    if not _enabled:
        return {"authenticated": True, "auth_enabled": False}
    if verify_token(request_token(request)):
        return {"authenticated": True}
    raise HTTPException(status_code=401, detail="Unauthorized")


@router.get("/status")
async def auth_status():
    """Public endpoint: tells clients whether auth is enabled."""
    return {"auth_enabled": _enabled}
