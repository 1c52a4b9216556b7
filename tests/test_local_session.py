# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Tests for local PTY shell sessions (real /bin/sh)."""

import asyncio
import fcntl
import os
import struct
import termios

import pytest

from remotectl.errors import ConnectorError
from remotectl.terminal.connector import ConnectorConfig
from remotectl.terminal.local import LocalConnector

pytestmark = pytest.mark.skipif(not os.path.exists("/bin/sh"), reason="needs /bin/sh")


async def read_until(session, marker, timeout=5.0):
    seen = b""

    async def collect():
        nonlocal seen
        while marker not in seen:
            chunk = await session.read(1024)
            if not chunk:
                break
            seen += chunk

    await asyncio.wait_for(collect(), timeout)
    return seen


@pytest.mark.asyncio
async def test_shell_runs_commands():
    session = await LocalConnector("/bin/sh").connect(ConnectorConfig(host="localhost"))
    try:
        await session.write(b"echo remote$((40+2))\n")
        output = await read_until(session, b"remote42")
        assert b"remote42" in output
    finally:
        session.close()
        await asyncio.wait_for(session.wait_closed(), 5)


@pytest.mark.asyncio
async def test_resize_sets_window_size():
    session = await LocalConnector("/bin/sh").connect(ConnectorConfig(host="localhost"))
    try:
        await session.resize(50, 132)
        winsize = fcntl.ioctl(session._fd, termios.TIOCGWINSZ, b"\0" * 8)
        assert struct.unpack("HHHH", winsize)[:2] == (50, 132)
    finally:
        session.close()
        await asyncio.wait_for(session.wait_closed(), 5)


@pytest.mark.asyncio
async def test_exit_ends_stream():
    session = await LocalConnector("/bin/sh").connect(ConnectorConfig(host="localhost"))
    await session.write(b"exit\n")

    async def drain():
        while await session.read(1024):
            pass

    await asyncio.wait_for(drain(), 5)
    session.close()
    await asyncio.wait_for(session.wait_closed(), 5)
    session.close()


@pytest.mark.asyncio
async def test_missing_shell_is_connector_error(tmp_path):
    with pytest.raises(ConnectorError):
        await LocalConnector(str(tmp_path / "nosh")).connect(ConnectorConfig(host="localhost"))
