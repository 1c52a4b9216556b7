# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""FastAPI application for the remotectl host service."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from remotectl import __version__
from remotectl.errors import (
    AuthenticationFailedError,
    ConnectorError,
    ContainerNotFoundError,
    CredentialDecryptError,
    FileTooLargeError,
    HostUnreachableError,
    InvalidCredentialError,
    RecordNotFoundError,
    RemoteCommandError,
    RemotectlError,
    SFTPOperationError,
    SystemdError,
    TransportError,
    TunnelUnavailableError,
    UnsupportedAuthTypeError,
)
from remotectl.web import systemd_api, terminal_api, tunnel_api
from remotectl.web.context import AppContext

logger = logging.getLogger(__name__)

JANITOR_INTERVAL = 60

# Most specific first
ERROR_STATUS = (
    (RecordNotFoundError, 404),
    (FileTooLargeError, 413),
    (SFTPOperationError, 400),
    (SystemdError, 400),
    (UnsupportedAuthTypeError, 400),
    (InvalidCredentialError, 400),
    (AuthenticationFailedError, 401),
    (CredentialDecryptError, 403),
    (ContainerNotFoundError, 404),
    (HostUnreachableError, 502),
    (TunnelUnavailableError, 409),
    (RemoteCommandError, 502),
    (ConnectorError, 502),
    (TransportError, 502),
)


def status_for(exc: RemotectlError) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status
    return 500


async def _idle_janitor(context: AppContext, interval: float = JANITOR_INTERVAL) -> None:
    """Close terminal sessions that have been idle past the configured timeout."""
    timeout = context.config.model.terminal.idle_timeout
    while True:
        try:
            await asyncio.sleep(interval)
            for session_id in context.terminal_sessions.idle_sessions(timeout):
                if context.terminal_sessions.disconnect(session_id):
                    logger.info(f"Closed idle terminal session {session_id}")
        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.exception(f"Error in idle session janitor: {e}")


def create_app(context: AppContext) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if context.broker is not None:
            await context.broker.start()
        janitor: Optional[asyncio.Task] = None
        if context.config.model.terminal.idle_timeout > 0:
            janitor = asyncio.create_task(_idle_janitor(context))
            logger.info("Idle terminal janitor started")
        yield
        if janitor is not None:
            janitor.cancel()
            try:
                await janitor
            except asyncio.CancelledError:
                pass
        if context.broker is not None:
            await context.broker.stop()
        context.audit.close()

    app = FastAPI(title="remotectl", version=__version__, lifespan=lifespan)
    app.state.ctx = context

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RemotectlError)
    async def remotectl_error_handler(request: Request, exc: RemotectlError):
        status = status_for(exc)
        if status >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        else:
            logger.debug(f"{request.method} {request.url.path} rejected: {exc}")
        return JSONResponse(status_code=status, content={"detail": str(exc), "hint": exc.hint})

    @app.get("/health")
    async def health():
        broker = context.broker
        return {
            "ok": True,
            "version": __version__,
            "tunnel": broker.running if broker is not None else False,
            "terminal_sessions": len(context.terminal_sessions),
            "tunnel_sessions": len(context.tunnel_sessions),
        }

    app.include_router(tunnel_api.router)
    app.include_router(terminal_api.router)
    app.include_router(systemd_api.router)
    return app
