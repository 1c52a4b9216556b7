# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Container exec sessions on the local Docker engine.

The exec is started with a TTY and attached through the raw hijacked
socket returned by ``exec_start(socket=True)``. Socket reads block, so they
run in the default executor with a short select timeout.
"""

from __future__ import annotations

import asyncio
import logging
import select
import socket
from typing import Any, Callable, Optional

import docker
from docker.errors import APIError, DockerException, NotFound

from remotectl.errors import ConnectorError, ContainerNotFoundError, HostUnreachableError
from remotectl.terminal.connector import (
    DEFAULT_DIAL_TIMEOUT,
    TERM_TYPE,
    Connector,
    ConnectorConfig,
    validate_container_id,
)
from remotectl.terminal.session import Session

logger = logging.getLogger(__name__)

READ_POLL_INTERVAL = 0.1
RECV_SIZE = 8192


class DockerExecSession(Session):
    """TTY exec attached through the Docker socket."""

    def __init__(self, client: Any, exec_id: str, sock: Any):
        self._client = client
        self.exec_id = exec_id
        self._socket = sock
        # docker-py wraps the hijacked connection; _sock is the real socket
        self._raw_socket = getattr(sock, "_sock", sock)
        self._closed = False

    def _blocking_read(self, n: int) -> Optional[bytes]:
        """Returns data, b"" on poll timeout, or None once the socket ended."""
        if self._closed:
            return None
        try:
            ready, _, _ = select.select([self._raw_socket], [], [], READ_POLL_INTERVAL)
            if not ready:
                return b""
            data = self._raw_socket.recv(n)
            return data or None
        except BlockingIOError:
            return b""
        except (OSError, ValueError):
            # ValueError: select on a socket closed by another task
            return None

    async def read(self, n: int) -> bytes:
        loop = asyncio.get_running_loop()
        size = min(n, RECV_SIZE)
        while True:
            data = await loop.run_in_executor(None, self._blocking_read, size)
            if data is None:
                return b""
            if data:
                return data

    async def write(self, data: bytes) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._raw_socket.sendall, data)

    async def resize(self, rows: int, cols: int) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None, lambda: self._client.api.exec_resize(self.exec_id, height=rows, width=cols)
        )

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._raw_socket.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        try:
            self._socket.close()
        except OSError as e:
            logger.debug(f"Closing exec socket {self.exec_id} failed: {e}")


class DockerExecConnector(Connector):
    """Starts a shell inside a container. ``config.host`` is the container id."""

    kind = "docker"

    def __init__(self, client_factory: Callable[[], Any] = docker.from_env):
        self._client_factory = client_factory
        self._client: Any = None

    def _get_client(self) -> Any:
        if self._client is None:
            try:
                self._client = self._client_factory()
            except DockerException as e:
                raise HostUnreachableError(
                    f"Docker engine not available: {e}",
                    hint="Is the Docker daemon running and is its socket accessible?",
                ) from e
        return self._client

    def _start(self, container: str, shell: str) -> DockerExecSession:
        client = self._get_client()
        try:
            exec_create = client.api.exec_create(
                container,
                cmd=[shell],
                stdin=True,
                stdout=True,
                stderr=True,
                tty=True,
                environment={"TERM": TERM_TYPE},
            )
            exec_id = exec_create["Id"]
            sock = client.api.exec_start(exec_id, tty=True, socket=True, demux=False)
        except NotFound as e:
            raise ContainerNotFoundError(f"Container not found: {container}") from e
        except APIError as e:
            raise ConnectorError(f"Docker exec in {container} failed: {e.explanation or e}") from e
        except DockerException as e:
            raise HostUnreachableError(f"Docker engine not available: {e}") from e
        return DockerExecSession(client, exec_id, sock)

    async def connect(
        self, config: ConnectorConfig, timeout: float = DEFAULT_DIAL_TIMEOUT
    ) -> Session:
        container = validate_container_id(config.host)
        shell = config.shell or "/bin/sh"
        loop = asyncio.get_running_loop()
        try:
            session = await asyncio.wait_for(
                loop.run_in_executor(None, self._start, container, shell), timeout=timeout
            )
        except asyncio.TimeoutError as e:
            raise HostUnreachableError(f"Timed out starting exec in {container}") from e
        logger.info(f"Exec session started in {container} ({shell})")
        return session
