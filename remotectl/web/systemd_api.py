# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""systemd service management on managed servers."""

import logging
from typing import Dict

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from remotectl.audit import STATUS_FAILED, STATUS_SUCCESS
from remotectl.errors import RemoteCommandError
from remotectl.resolver import resolve_server_config
from remotectl.terminal.connector import ConnectorConfig
from remotectl.terminal.systemd import LOG_LINES_DEFAULT, normalize_service_name
from remotectl.web.context import AppContext

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/terminal/server/{server_id}/systemd")


class ActionBody(BaseModel):
    action: str


class UnitBody(BaseModel):
    content: str


def _context(request: Request) -> AppContext:
    return request.app.state.ctx


def _resolve(ctx: AppContext, server_id: str) -> ConnectorConfig:
    return resolve_server_config(ctx.store, ctx.cipher, server_id, ctx.pool)


def _audit(
    ctx: AppContext, action: str, server_id: str, status: str = STATUS_SUCCESS, **details
) -> None:
    ctx.audit.record(f"terminal.systemd.{action}", "server", server_id, status=status, **details)


@router.get("/services")
async def list_services(request: Request, server_id: str, keyword: str = "") -> Dict:
    ctx = _context(request)
    units = await ctx.systemd.list_services(_resolve(ctx, server_id), keyword)
    _audit(ctx, "services", server_id, count=len(units), keyword=keyword)
    return {"server_id": server_id, "services": [u.to_dict() for u in units]}


@router.get("/{service}/status")
async def service_status(request: Request, server_id: str, service: str) -> Dict:
    ctx = _context(request)
    result = await ctx.systemd.status(_resolve(ctx, server_id), service)
    _audit(ctx, "status", server_id, service=result["service"])
    return {"server_id": server_id, **result}


@router.get("/{service}/logs")
async def service_logs(
    request: Request, server_id: str, service: str, lines: str = str(LOG_LINES_DEFAULT)
) -> Dict:
    ctx = _context(request)
    result = await ctx.systemd.logs(_resolve(ctx, server_id), service, lines)
    _audit(ctx, "logs", server_id, service=result["service"], lines=result["lines"])
    return {"server_id": server_id, **result}


@router.get("/{service}/content")
async def service_content(request: Request, server_id: str, service: str) -> Dict:
    ctx = _context(request)
    service = normalize_service_name(service)
    content = await ctx.systemd.content(_resolve(ctx, server_id), service)
    _audit(ctx, "content", server_id, service=service)
    return {"server_id": server_id, "service": service, "content": content}


@router.post("/{service}/action")
async def service_action(request: Request, server_id: str, service: str, body: ActionBody):
    ctx = _context(request)
    config = _resolve(ctx, server_id)
    try:
        output = await ctx.systemd.action(config, service, body.action)
    except RemoteCommandError as e:
        _audit(
            ctx,
            "action",
            server_id,
            STATUS_FAILED,
            service=service,
            action=body.action,
            output=e.output,
        )
        return JSONResponse(status_code=502, content={"detail": str(e), "output": e.output})
    _audit(ctx, "action", server_id, service=service, action=body.action, output=output)
    return {
        "server_id": server_id,
        "service": service,
        "action": body.action,
        "status": "accepted",
        "output": output,
    }


@router.get("/{service}/unit")
async def read_unit(request: Request, server_id: str, service: str) -> Dict:
    ctx = _context(request)
    result = await ctx.systemd.read_unit(_resolve(ctx, server_id), service)
    return {"server_id": server_id, "service": service, **result}


@router.put("/{service}/unit")
async def write_unit(request: Request, server_id: str, service: str, body: UnitBody) -> Dict:
    ctx = _context(request)
    result = await ctx.systemd.write_unit(_resolve(ctx, server_id), service, body.content)
    _audit(ctx, "unit.write", server_id, service=service, path=result["path"])
    return {"server_id": server_id, "service": service, "status": "saved", **result}


@router.post("/{service}/unit/verify")
async def verify_unit(request: Request, server_id: str, service: str):
    ctx = _context(request)
    config = _resolve(ctx, server_id)
    try:
        result = await ctx.systemd.verify_unit(config, service)
    except RemoteCommandError as e:
        _audit(
            ctx, "unit.verify", server_id, STATUS_FAILED, service=service, verify_output=e.output
        )
        return JSONResponse(status_code=400, content={"detail": str(e), "verify_output": e.output})
    _audit(ctx, "unit.verify", server_id, service=service, path=result["path"])
    return {"server_id": server_id, "service": service, "status": "valid", **result}


@router.post("/{service}/unit/apply")
async def apply_unit(request: Request, server_id: str, service: str):
    ctx = _context(request)
    config = _resolve(ctx, server_id)
    try:
        result = await ctx.systemd.apply_unit(config, service)
    except RemoteCommandError as e:
        _audit(ctx, "unit.apply", server_id, STATUS_FAILED, service=service, output=e.output)
        return JSONResponse(status_code=502, content={"detail": str(e), "output": e.output})
    _audit(ctx, "unit.apply", server_id, service=service, **result)
    return {"server_id": server_id, "service": service, "status": "applied", **result}
