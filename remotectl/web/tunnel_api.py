# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Tunnel token, setup and status endpoints."""

import logging
from typing import Dict

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import PlainTextResponse

from remotectl.store import ServerRecord
from remotectl.tunnel.integration import autossh_command, setup_script, systemd_unit
from remotectl.web.context import AppContext

logger = logging.getLogger(__name__)

router = APIRouter()


def _ctx(request: Request) -> AppContext:
    return request.app.state.ctx


def _tunnel_server(ctx: AppContext, server_id: str) -> ServerRecord:
    server = ctx.store.get_server(server_id)
    if not server.is_tunnel:
        raise HTTPException(status_code=400, detail=f"Server {server_id} is not a tunnel server")
    return server


def _public_host(ctx: AppContext, request: Request) -> str:
    return ctx.config.model.tunnel.public_host or request.url.hostname or "localhost"


@router.post("/api/tunnel/servers/{server_id}/token")
async def get_or_rotate_token(request: Request, server_id: str, rotate: bool = False) -> Dict:
    """Return the server's tunnel token; rotate=true replaces it and kicks the agent."""
    ctx = _ctx(request)
    server = _tunnel_server(ctx, server_id)

    if rotate:
        token = ctx.tunnel_tokens.rotate(server_id)
        evicted = ctx.tunnel_sessions.evict(server_id)
        if evicted is not None:
            ctx.tunnel_hooks.on_disconnect(server_id)
        ctx.audit.record(
            "tunnel.token_rotated", "server", server_id, server.name, disconnected=evicted is not None
        )
        logger.info(f"Rotated tunnel token for {server_id}")
        return {"token": token, "rotated": True, "created": False}

    token, created = ctx.tunnel_tokens.get_or_create(server_id)
    return {"token": token, "rotated": False, "created": created}


@router.get("/api/tunnel/servers/{server_id}/setup")
async def tunnel_setup(request: Request, server_id: str) -> Dict:
    ctx = _ctx(request)
    _tunnel_server(ctx, server_id)
    token, _ = ctx.tunnel_tokens.get_or_create(server_id)
    host = _public_host(ctx, request)
    port = ctx.config.tunnel_public_port
    services = ctx.tunnel_services
    return {
        "token": token,
        "host": host,
        "port": port,
        "autossh_cmd": autossh_command(token, host, port, services),
        "systemd_unit": systemd_unit(token, host, port, services),
        "setup_script_url": str(request.url_for("tunnel_setup_script", token=token)),
    }


@router.get("/tunnel/setup/{token}", name="tunnel_setup_script")
async def tunnel_setup_script(request: Request, token: str) -> PlainTextResponse:
    ctx = _ctx(request)
    if ctx.tunnel_tokens.lookup(token) is None:
        raise HTTPException(status_code=404, detail="Unknown token")
    host = _public_host(ctx, request)
    script = setup_script(token, host, ctx.config.tunnel_public_port, ctx.tunnel_services)
    return PlainTextResponse(script)


@router.get("/api/tunnel/servers/{server_id}/status")
async def tunnel_status(request: Request, server_id: str) -> Dict:
    """Live registry first, persisted status otherwise."""
    ctx = _ctx(request)
    server = _tunnel_server(ctx, server_id)
    session = ctx.tunnel_sessions.get(server_id)
    if session is not None:
        return {
            "status": "online",
            "connected_at": session.connected_at,
            "services": [svc.to_dict() for svc in session.services],
            "live": True,
        }
    return {
        "status": server.tunnel_status,
        "last_seen": server.tunnel_last_seen,
        "services": server.tunnel_services,
        "live": False,
    }


@router.get("/api/tunnel/sessions")
async def tunnel_sessions(request: Request) -> Dict:
    ctx = _ctx(request)
    result: Dict = {"sessions": [s.to_dict() for s in ctx.tunnel_sessions.all()]}
    if ctx.broker is not None:
        result["stats"] = ctx.broker.get_stats()
    return result


@router.delete("/api/tunnel/servers/{server_id}")
async def tunnel_release(request: Request, server_id: str) -> Dict:
    """Disconnect the agent and free the server's forwarded ports."""
    ctx = _ctx(request)
    evicted = ctx.tunnel_sessions.evict(server_id)
    if evicted is not None:
        ctx.tunnel_hooks.on_disconnect(server_id)
    freed = ctx.pool.release(server_id)
    ctx.audit.record("tunnel.release", "server", server_id, ports=freed)
    return {"disconnected": evicted is not None, "released_ports": freed}
