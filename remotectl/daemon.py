# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""remotectl daemon: HTTP API plus the reverse tunnel broker."""

import asyncio
from typing import Optional

import uvicorn

from remotectl.host_config import HostConfig
from remotectl.utils.logging import configure_logging, get_daemon_logger
from remotectl.web.app import create_app
from remotectl.web.context import build_context

logger = get_daemon_logger("daemon")


def run_daemon(
    config: Optional[HostConfig] = None,
    host: Optional[str] = None,
    port: Optional[int] = None,
    debug: bool = False,
) -> None:
    """Serve until interrupted. The broker runs inside the app lifespan."""
    configure_logging(debug=debug, daemon=True, force=True)
    config = config or HostConfig()
    web = config.model.web_server
    host = host or web.host
    port = port or web.port

    context = build_context(config)
    app = create_app(context)

    if context.broker is not None:
        logger.info(
            f"Tunnel broker enabled on {config.model.tunnel.listen_host}:"
            f"{config.model.tunnel.listen_port}"
        )
    else:
        logger.info("Tunnel broker disabled")

    async def serve():
        logger.info(f"Starting remotectl API on {host}:{port}")
        server_config = uvicorn.Config(app, host=host, port=port, log_level=web.log_level)
        server = uvicorn.Server(server_config)
        await server.serve()

    asyncio.run(serve())
