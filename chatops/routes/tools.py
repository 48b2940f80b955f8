"""Tool catalog, server status and reload routes."""

from fastapi import APIRouter, Depends, HTTPException

from ..auth import require_auth

router = APIRouter()


def current_supervisor():
    from ..server import supervisor

    if supervisor is None or supervisor.generation is None:
        raise HTTPException(status_code=503, detail="Runtime not initialized")
    return supervisor


@router.get("/api/tools", dependencies=[Depends(require_auth)])
async def api_tools():
    generation = current_supervisor().generation
    return {"tools": generation.manager.registry.describe_all()}


@router.get("/api/servers", dependencies=[Depends(require_auth)])
async def api_servers():
    generation = current_supervisor().generation
    return {"generation": generation.number, "servers": generation.manager.server_status()}


@router.post("/api/reload", dependencies=[Depends(require_auth)])
async def api_reload():
    sup = current_supervisor()
    if not await sup.reload("api"):
        raise HTTPException(status_code=503, detail="Shutting down")
    generation = sup.generation
    return {"status": "ok", "generation": generation.number, "tools": len(generation.manager.registry)}
