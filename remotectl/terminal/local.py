# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Shell sessions on the host running remotectl itself.

The shell is forked onto a fresh pseudo-terminal. Reads on the PTY master
block, so like container exec sessions they run in the default executor
with a short select timeout.
"""

from __future__ import annotations

import asyncio
import fcntl
import logging
import os
import pty
import select
import signal
import struct
import termios
from typing import Optional

from remotectl.errors import ConnectorError
from remotectl.terminal.connector import (
    DEFAULT_COLS,
    DEFAULT_DIAL_TIMEOUT,
    DEFAULT_ROWS,
    TERM_TYPE,
    Connector,
    ConnectorConfig,
)
from remotectl.terminal.session import Session

logger = logging.getLogger(__name__)

DEFAULT_LOCAL_SHELL = "/bin/bash"
READ_POLL_INTERVAL = 0.1
RECV_SIZE = 8192
EXIT_GRACE = 2.0


def set_window_size(fd: int, rows: int, cols: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


class LocalSession(Session):
    """A login shell on a local PTY."""

    def __init__(self, pid: int, master_fd: int):
        self.pid = pid
        self._fd = master_fd
        self._closed = False
        self._exit_status: Optional[int] = None

    def _blocking_read(self, n: int) -> Optional[bytes]:
        """Returns data, b"" on poll timeout, or None once the shell is gone."""
        if self._closed:
            return None
        try:
            ready, _, _ = select.select([self._fd], [], [], READ_POLL_INTERVAL)
            if not ready:
                return b""
            data = os.read(self._fd, n)
            return data or None
        except BlockingIOError:
            return b""
        except (OSError, ValueError):
            # EIO once the slave side is closed
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

    def _write_all(self, data: bytes) -> None:
        view = memoryview(data)
        while view:
            try:
                written = os.write(self._fd, view)
            except BlockingIOError:
                select.select([], [self._fd], [], READ_POLL_INTERVAL)
                continue
            view = view[written:]

    async def write(self, data: bytes) -> None:
        if self._closed:
            return
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._write_all, data)

    async def resize(self, rows: int, cols: int) -> None:
        if not self._closed:
            set_window_size(self._fd, rows, cols)

    def _reap(self) -> bool:
        if self._exit_status is not None:
            return True
        try:
            pid, status = os.waitpid(self.pid, os.WNOHANG)
        except ChildProcessError:
            self._exit_status = -1
            return True
        if pid == 0:
            return False
        self._exit_status = status
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if not self._reap():
            try:
                os.kill(self.pid, signal.SIGHUP)
            except ProcessLookupError:
                pass
        try:
            os.close(self._fd)
        except OSError as e:
            logger.debug(f"Closing PTY for local shell {self.pid} failed: {e}")

    async def wait_closed(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + EXIT_GRACE
        while not self._reap():
            if loop.time() > deadline:
                logger.warning(f"Local shell {self.pid} ignored SIGHUP, killing it")
                try:
                    os.kill(self.pid, signal.SIGKILL)
                except ProcessLookupError:
                    pass
                deadline = loop.time() + EXIT_GRACE
            await asyncio.sleep(0.05)


def spawn_shell(shell: str) -> LocalSession:
    """Fork ``shell -l`` onto a new PTY."""
    if not os.access(shell, os.X_OK):
        raise ConnectorError(f"Local shell {shell} is not executable")

    pid, master_fd = pty.fork()
    if pid == 0:
        env = dict(os.environ, TERM=TERM_TYPE)
        try:
            os.execve(shell, [shell, "-l"], env)
        finally:
            os._exit(127)

    flags = fcntl.fcntl(master_fd, fcntl.F_GETFL)
    fcntl.fcntl(master_fd, fcntl.F_SETFL, flags | os.O_NONBLOCK)
    set_window_size(master_fd, DEFAULT_ROWS, DEFAULT_COLS)
    return LocalSession(pid, master_fd)


class LocalConnector(Connector):
    """Starts a shell on this host. ``config.shell`` overrides the default."""

    kind = "local"

    def __init__(self, shell: str = DEFAULT_LOCAL_SHELL):
        self.shell = shell

    async def connect(
        self, config: ConnectorConfig, timeout: float = DEFAULT_DIAL_TIMEOUT
    ) -> Session:
        shell = config.shell or self.shell
        try:
            session = spawn_shell(shell)
        except OSError as e:
            raise ConnectorError(f"Cannot start local shell {shell}: {e}") from e
        logger.info(f"Local shell {shell} started (pid {session.pid})")
        return session
