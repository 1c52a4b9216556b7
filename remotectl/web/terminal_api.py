# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Terminal WebSockets, SFTP operations and power actions."""

import asyncio
import json
import logging
import uuid
from typing import Dict, Optional

from fastapi import APIRouter, File, HTTPException, Request, UploadFile, WebSocket
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from remotectl.audit import STATUS_FAILED, STATUS_SUCCESS
from remotectl.errors import ConnectorError, RemotectlError
from remotectl.resolver import resolve_server_config
from remotectl.terminal.connector import (
    Connector,
    ConnectorConfig,
    container_exec_config,
    validate_container_id,
    validate_docker_shell,
)
from remotectl.terminal.relay import RelayStats, TerminalRelay, WebSocketTransport, error_frame
from remotectl.terminal.session import Session
from remotectl.web.context import AppContext

logger = logging.getLogger(__name__)

router = APIRouter()

WS_CLOSE_INTERNAL_ERROR = 1011
UPLOAD_CHUNK_SIZE = 64 * 1024


def _resolve(ctx: AppContext, server_id: str) -> ConnectorConfig:
    return resolve_server_config(ctx.store, ctx.cipher, server_id, ctx.pool)


# Interactive terminals


async def _reject(transport: WebSocketTransport, message: str) -> None:
    try:
        await transport.send_bytes(error_frame(message))
    finally:
        await transport.close(WS_CLOSE_INTERNAL_ERROR)


async def _open_and_relay(
    ctx: AppContext,
    websocket: WebSocket,
    kind: str,
    target: str,
    connector: Connector,
    build_config,
) -> None:
    await websocket.accept()
    transport = WebSocketTransport(websocket)
    terminal = ctx.config.model.terminal

    try:
        config = build_config()
        session: Session = await connector.connect(config, timeout=terminal.dial_timeout)
    except (RemotectlError, ValueError) as e:
        logger.warning(f"{kind} terminal for {target} failed: {e}")
        ctx.audit.record(f"terminal.{kind}.connect", kind, target, status=STATUS_FAILED, error=str(e))
        await _reject(transport, str(e))
        return

    session_id = uuid.uuid4().hex
    ctx.terminal_sessions.register(session_id, session, kind=kind, target=target)
    ctx.audit.record(f"terminal.{kind}.connect", kind, target, session_id=session_id)
    logger.info(f"{kind} terminal {session_id} opened for {target}")

    def on_close(stats: RelayStats) -> None:
        ctx.audit.record(
            f"terminal.{kind}.disconnect",
            kind,
            target,
            status=STATUS_SUCCESS,
            session_id=session_id,
            **stats.to_dict(),
        )
        logger.info(
            f"{kind} terminal {session_id} closed "
            f"(in={stats.bytes_in}B out={stats.bytes_out}B, {stats.duration:.0f}s)"
        )

    relay = TerminalRelay(
        session,
        transport,
        registry=ctx.terminal_sessions,
        session_id=session_id,
        chunk_size=terminal.chunk_size,
        on_close=on_close,
    )
    await relay.run()


@router.websocket("/api/terminal/ssh/{server_id}")
async def ssh_terminal(websocket: WebSocket, server_id: str):
    ctx: AppContext = websocket.app.state.ctx
    await _open_and_relay(
        ctx, websocket, "ssh", server_id, ctx.ssh_connector, lambda: _resolve(ctx, server_id)
    )


@router.websocket("/api/terminal/docker/{container_id}")
async def docker_terminal(
    websocket: WebSocket,
    container_id: str,
    shell: str = "/bin/sh",
    server_id: Optional[str] = None,
):
    """Exec into a container, locally or on a remote server through SSH."""
    ctx: AppContext = websocket.app.state.ctx
    allowed = ctx.config.model.terminal.docker_shells

    if server_id:

        def build() -> ConnectorConfig:
            return container_exec_config(_resolve(ctx, server_id), container_id, shell, allowed)

        connector = ctx.ssh_connector
        target = f"{server_id}/{container_id}"
    else:

        def build() -> ConnectorConfig:
            return ConnectorConfig(
                host=validate_container_id(container_id),
                shell=validate_docker_shell(shell, allowed),
            )

        connector = ctx.docker_connector
        target = container_id

    await _open_and_relay(ctx, websocket, "docker", target, connector, build)


@router.websocket("/api/terminal/local")
async def local_terminal(websocket: WebSocket):
    """Shell on the host running remotectl."""
    ctx: AppContext = websocket.app.state.ctx

    def build() -> ConnectorConfig:
        if not ctx.config.model.terminal.local_enabled:
            raise ConnectorError(
                "Local terminal is disabled", hint="Set terminal.local_enabled in the config"
            )
        return ConnectorConfig(host="localhost")

    await _open_and_relay(ctx, websocket, "local", "localhost", ctx.local_connector, build)


@router.get("/api/terminal/sessions")
async def terminal_sessions(request: Request) -> Dict:
    ctx: AppContext = request.app.state.ctx
    return {"sessions": [entry.to_dict() for entry in ctx.terminal_sessions.all()]}


@router.delete("/api/terminal/sessions/{session_id}")
async def close_terminal_session(request: Request, session_id: str) -> Dict:
    ctx: AppContext = request.app.state.ctx
    if not ctx.terminal_sessions.disconnect(session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    return {"closed": True}


# SFTP


class PathBody(BaseModel):
    server_id: str
    path: str
    parents: bool = True


class WriteBody(BaseModel):
    server_id: str
    path: str
    content: str


class RenameBody(BaseModel):
    server_id: str
    source: str
    target: str


class ChmodBody(BaseModel):
    server_id: str
    path: str
    mode: str  # octal, e.g. "755"
    recursive: bool = False


class ChownBody(BaseModel):
    server_id: str
    path: str
    owner: str = ""
    group: str = ""
    recursive: bool = False


class SymlinkBody(BaseModel):
    server_id: str
    target: str
    link_path: str


def _sftp_ctx(request: Request) -> AppContext:
    return request.app.state.ctx


@router.get("/api/terminal/sftp/list")
async def sftp_list(request: Request, server_id: str, path: str = "/") -> Dict:
    ctx = _sftp_ctx(request)
    entries = await ctx.sftp.list_dir(_resolve(ctx, server_id), path)
    return {"path": path, "entries": [e.to_dict() for e in entries]}


@router.get("/api/terminal/sftp/stat")
async def sftp_stat(request: Request, server_id: str, path: str) -> Dict:
    ctx = _sftp_ctx(request)
    return (await ctx.sftp.stat(_resolve(ctx, server_id), path)).to_dict()


@router.get("/api/terminal/sftp/read")
async def sftp_read(request: Request, server_id: str, path: str) -> Dict:
    ctx = _sftp_ctx(request)
    data = await ctx.sftp.read_file(_resolve(ctx, server_id), path)
    return {"path": path, "size": len(data), "content": data.decode("utf-8", errors="replace")}


@router.get("/api/terminal/sftp/download")
async def sftp_download(request: Request, server_id: str, path: str) -> StreamingResponse:
    ctx = _sftp_ctx(request)
    config = _resolve(ctx, server_id)
    filename = path.rstrip("/").rsplit("/", 1)[-1] or "download"
    return StreamingResponse(
        ctx.sftp.download(config, path),
        media_type="application/octet-stream",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/api/terminal/sftp/search")
async def sftp_search(request: Request, server_id: str, path: str, query: str) -> Dict:
    ctx = _sftp_ctx(request)
    if not query:
        raise HTTPException(status_code=400, detail="query must not be empty")
    results = await ctx.sftp.search(_resolve(ctx, server_id), path, query)
    return {"path": path, "query": query, "results": [e.to_dict() for e in results]}


@router.post("/api/terminal/sftp/write")
async def sftp_write(request: Request, body: WriteBody) -> Dict:
    ctx = _sftp_ctx(request)
    written = await ctx.sftp.write_file(
        _resolve(ctx, body.server_id), body.path, body.content.encode("utf-8")
    )
    ctx.audit.record("sftp.write", "server", body.server_id, path=body.path, size=written)
    return {"path": body.path, "size": written}


@router.get("/api/terminal/sftp/constraints")
async def sftp_constraints(request: Request) -> Dict:
    sftp = _sftp_ctx(request).config.model.sftp
    return {
        "max_upload_files": sftp.max_upload_files,
        "max_upload_bytes": sftp.max_upload_bytes,
        "max_read_bytes": sftp.max_read_bytes,
        "max_write_bytes": sftp.max_write_bytes,
    }


@router.post("/api/terminal/sftp/upload")
async def sftp_upload(
    request: Request, server_id: str, path: str, file: UploadFile = File(...)
) -> Dict:
    """Upload one multipart file into the directory ``path``."""
    ctx = _sftp_ctx(request)
    config = _resolve(ctx, server_id)

    async def chunks():
        while True:
            chunk = await file.read(UPLOAD_CHUNK_SIZE)
            if not chunk:
                break
            yield chunk

    try:
        target, size = await ctx.sftp.upload(config, path, file.filename or "", chunks())
    except RemotectlError as e:
        ctx.audit.record(
            "sftp.upload", "server", server_id, status=STATUS_FAILED, path=path, error=str(e)
        )
        raise
    finally:
        await file.close()
    ctx.audit.record("sftp.upload", "server", server_id, path=target, size=size)
    return {"path": target, "size": size}


@router.post("/api/terminal/sftp/mkdir")
async def sftp_mkdir(request: Request, body: PathBody) -> Dict:
    ctx = _sftp_ctx(request)
    await ctx.sftp.mkdir(_resolve(ctx, body.server_id), body.path, parents=body.parents)
    return {"path": body.path}


@router.post("/api/terminal/sftp/rename")
async def sftp_rename(request: Request, body: RenameBody) -> Dict:
    ctx = _sftp_ctx(request)
    await ctx.sftp.rename(_resolve(ctx, body.server_id), body.source, body.target)
    ctx.audit.record(
        "sftp.rename", "server", body.server_id, source=body.source, target=body.target
    )
    return {"source": body.source, "target": body.target}


@router.post("/api/terminal/sftp/chmod")
async def sftp_chmod(request: Request, body: ChmodBody) -> Dict:
    ctx = _sftp_ctx(request)
    try:
        mode = int(body.mode, 8)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid mode: {body.mode!r}")
    if not 0 <= mode <= 0o7777:
        raise HTTPException(status_code=400, detail=f"Invalid mode: {body.mode!r}")
    changed = await ctx.sftp.chmod(
        _resolve(ctx, body.server_id), body.path, mode, recursive=body.recursive
    )
    ctx.audit.record(
        "sftp.chmod", "server", body.server_id, path=body.path, mode=body.mode, changed=changed
    )
    return {"path": body.path, "mode": body.mode, "changed": changed}


@router.post("/api/terminal/sftp/chown")
async def sftp_chown(request: Request, body: ChownBody) -> Dict:
    ctx = _sftp_ctx(request)
    if not body.owner and not body.group:
        raise HTTPException(status_code=400, detail="owner or group is required")
    uid, gid = await ctx.sftp.chown_by_name(
        _resolve(ctx, body.server_id),
        body.path,
        owner=body.owner,
        group=body.group,
        recursive=body.recursive,
    )
    ctx.audit.record(
        "sftp.chown", "server", body.server_id, path=body.path, owner=body.owner, group=body.group
    )
    return {"path": body.path, "uid": uid, "gid": gid}


@router.post("/api/terminal/sftp/symlink")
async def sftp_symlink(request: Request, body: SymlinkBody) -> Dict:
    ctx = _sftp_ctx(request)
    await ctx.sftp.symlink(_resolve(ctx, body.server_id), body.target, body.link_path)
    return {"target": body.target, "link_path": body.link_path}


@router.post("/api/terminal/sftp/copy")
async def sftp_copy(request: Request, body: RenameBody) -> Dict:
    ctx = _sftp_ctx(request)
    copied = await ctx.sftp.copy(_resolve(ctx, body.server_id), body.source, body.target)
    ctx.audit.record("sftp.copy", "server", body.server_id, source=body.source, target=body.target)
    return {"source": body.source, "target": body.target, "bytes_copied": copied}


def _sse(event: str, data: Dict) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


@router.get("/api/terminal/sftp/copy-stream")
async def sftp_copy_stream(
    request: Request, server_id: str, source: str, target: str
) -> StreamingResponse:
    """Copy with progress as Server-Sent Events (progress, done or error)."""
    ctx = _sftp_ctx(request)
    config = _resolve(ctx, server_id)
    queue: asyncio.Queue = asyncio.Queue()

    def progress(copied: int, total: int) -> None:
        queue.put_nowait(("progress", {"copied": copied, "total": total}))

    async def run_copy() -> None:
        try:
            copied = await ctx.sftp.copy(config, source, target, progress)
            queue.put_nowait(("done", {"copied": copied}))
            ctx.audit.record("sftp.copy", "server", server_id, source=source, target=target)
        except RemotectlError as e:
            queue.put_nowait(
                ("error", {"message": str(e), "copied": getattr(e, "bytes_copied", 0)})
            )
        finally:
            queue.put_nowait(None)

    async def events():
        task = asyncio.create_task(run_copy())
        try:
            while True:
                item = await queue.get()
                if item is None:
                    break
                yield _sse(*item)
        finally:
            if not task.done():
                task.cancel()

    return StreamingResponse(events(), media_type="text/event-stream")


@router.delete("/api/terminal/sftp/delete")
async def sftp_delete(request: Request, server_id: str, path: str) -> Dict:
    ctx = _sftp_ctx(request)
    await ctx.sftp.delete(_resolve(ctx, server_id), path)
    ctx.audit.record("sftp.delete", "server", server_id, path=path)
    return {"path": path, "deleted": True}


# Power


class PowerBody(BaseModel):
    action: str


@router.post("/api/terminal/server/{server_id}/power")
async def server_power(request: Request, server_id: str, body: PowerBody) -> Dict:
    ctx = _sftp_ctx(request)
    config = _resolve(ctx, server_id)
    try:
        await ctx.power_runner(config, body.action)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except RemotectlError as e:
        ctx.audit.record(
            f"server.power.{body.action}", "server", server_id, status=STATUS_FAILED, error=str(e)
        )
        raise
    ctx.audit.record(f"server.power.{body.action}", "server", server_id)
    return {"server_id": server_id, "action": body.action, "accepted": True}
