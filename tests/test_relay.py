# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Tests for the terminal relay and its control frames."""

import asyncio
import json

import anyio
import pytest

from remotectl.terminal.relay import (
    FRAME_BINARY,
    FRAME_CLOSE,
    FRAME_TEXT,
    ControlMessage,
    Frame,
    TerminalRelay,
    encode_control_frame,
    error_frame,
    parse_control_frame,
)
from remotectl.terminal.session import Session, TerminalSessionRegistry


class EchoSession(Session):
    """Loopback shell: everything written comes back out."""

    def __init__(self):
        self.output: asyncio.Queue = asyncio.Queue()
        self.resizes = []
        self.closed = 0

    async def read(self, n):
        data = await self.output.get()
        return data

    async def write(self, data):
        await self.output.put(bytes(data))

    async def resize(self, rows, cols):
        self.resizes.append((rows, cols))

    def close(self):
        self.closed += 1
        self.output.put_nowait(b"")


class QueueTransport:
    """In-memory browser side."""

    def __init__(self):
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.sent = []
        self.closed_with = []

    async def receive(self):
        return await self.incoming.get()

    async def send_bytes(self, data):
        self.sent.append(data)

    async def send_text(self, text):
        self.sent.append(text.encode())

    async def close(self, code=1000):
        self.closed_with.append(code)

    def push(self, kind, data=b""):
        self.incoming.put_nowait(Frame(kind, data))


async def settle():
    for _ in range(20):
        await asyncio.sleep(0)


class TestControlFrames:
    def test_parse_sentinel_frame(self):
        msg = parse_control_frame(b'\x00{"type": "resize", "rows": 40, "cols": 120}')
        assert msg == ControlMessage("resize", 40, 120)
        assert msg.is_valid_resize

    def test_parse_plain_json(self):
        assert parse_control_frame(b'{"type": "ping"}') == ControlMessage("ping")

    @pytest.mark.parametrize(
        "payload",
        [b"\x00{bad json", b"\x00[1, 2]", b'\x00{"rows": 3}', b"\x00\xff\xfe"],
    )
    def test_malformed_frames_are_none(self, payload):
        assert parse_control_frame(payload) is None

    @pytest.mark.parametrize(
        "rows,cols",
        [(0, 80), (24, 0), (-1, 80), (24, 70000), (True, 80), ("24", 80), (24.5, 80)],
    )
    def test_invalid_dimensions(self, rows, cols):
        payload = json.dumps({"type": "resize", "rows": rows, "cols": cols}).encode()
        assert not parse_control_frame(payload).is_valid_resize

    def test_error_frame(self):
        frame = error_frame("no route to host")
        assert frame[:1] == b"\x00"
        assert json.loads(frame[1:]) == {"type": "error", "message": "no route to host"}
        assert encode_control_frame("resize", rows=1, cols=2)[1:] == b'{"type": "resize", "rows": 1, "cols": 2}'


class TestTerminalRelay:
    @pytest.mark.asyncio
    async def test_round_trip_preserves_order(self):
        session = EchoSession()
        transport = QueueTransport()
        relay = TerminalRelay(session, transport)
        task = asyncio.create_task(relay.run())

        for chunk in (b"ls\n", b"pwd\n", b"exit\n"):
            transport.push(FRAME_BINARY, chunk)
        await settle()
        transport.push(FRAME_CLOSE)
        stats = await asyncio.wait_for(task, 1)

        assert b"".join(transport.sent) == b"ls\npwd\nexit\n"
        assert stats.bytes_in == 12
        assert stats.bytes_out == 12
        assert stats.ended_at >= stats.started_at

    @pytest.mark.asyncio
    async def test_large_output_is_chunked(self):
        session = EchoSession()
        transport = QueueTransport()
        relay = TerminalRelay(session, transport, chunk_size=4)
        task = asyncio.create_task(relay.run())

        await session.output.put(b"0123456789")
        await settle()
        transport.push(FRAME_CLOSE)
        await asyncio.wait_for(task, 1)

        assert transport.sent == [b"0123", b"4567", b"89"]

    @pytest.mark.asyncio
    async def test_resize_and_bad_control_frames(self):
        session = EchoSession()
        transport = QueueTransport()
        task = asyncio.create_task(TerminalRelay(session, transport).run())

        transport.push(FRAME_BINARY, b'\x00{"type": "resize", "rows": 0, "cols": 80}')
        transport.push(FRAME_BINARY, b"\x00{bad json")
        transport.push(FRAME_TEXT, b'{"type": "resize", "rows": 50, "cols": 132}')
        transport.push(FRAME_BINARY, b"echo hi\n")
        await settle()
        transport.push(FRAME_CLOSE)
        stats = await asyncio.wait_for(task, 1)

        assert session.resizes == [(50, 132)]
        # Control frames never reach the shell
        assert b"".join(transport.sent) == b"echo hi\n"
        assert stats.bytes_in == len(b"echo hi\n")

    @pytest.mark.asyncio
    async def test_session_end_closes_transport_once(self):
        session = EchoSession()
        transport = QueueTransport()
        registry = TerminalSessionRegistry()
        registry.register("s1", session)
        closed = []
        relay = TerminalRelay(
            session, transport, registry=registry, session_id="s1", on_close=closed.append
        )
        task = asyncio.create_task(relay.run())

        await session.output.put(b"bye\n")
        await session.output.put(b"")
        stats = await asyncio.wait_for(task, 1)
        relay._release()

        assert transport.sent == [b"bye\n"]
        assert transport.closed_with == [1000]
        assert session.closed == 1
        assert closed == [stats]
        assert registry.get("s1") is None

    @pytest.mark.asyncio
    async def test_failing_on_close_does_not_raise(self):
        session = EchoSession()
        transport = QueueTransport()

        def boom(stats):
            raise RuntimeError("callback failed")

        task = asyncio.create_task(TerminalRelay(session, transport, on_close=boom).run())
        transport.push(FRAME_CLOSE)
        await asyncio.wait_for(task, 1)
        assert session.closed == 1

    @pytest.mark.asyncio
    async def test_input_touches_registry(self):
        now = [100.0]
        registry = TerminalSessionRegistry(clock=lambda: now[0])
        session = EchoSession()
        registry.register("s1", session)
        transport = QueueTransport()
        task = asyncio.create_task(
            TerminalRelay(session, transport, registry=registry, session_id="s1").run()
        )

        now[0] = 200.0
        transport.push(FRAME_BINARY, b"x")
        await settle()
        assert registry.get("s1").last_activity == 200.0
        assert registry.idle_sessions(50) == []

        transport.push(FRAME_CLOSE)
        await asyncio.wait_for(task, 1)

    def test_chunk_size_must_be_positive(self):
        with pytest.raises(ValueError):
            TerminalRelay(EchoSession(), QueueTransport(), chunk_size=0)

    @pytest.mark.asyncio
    async def test_cancelled_relay_still_tears_down(self):
        session = EchoSession()
        transport = QueueTransport()
        registry = TerminalSessionRegistry()
        registry.register("s1", session)
        closed = []
        relay = TerminalRelay(
            session, transport, registry=registry, session_id="s1", on_close=closed.append
        )

        async with anyio.create_task_group() as tg:
            tg.start_soon(relay.run)
            await settle()
            tg.cancel_scope.cancel()

        assert registry.get("s1") is None
        assert session.closed == 1
        assert len(closed) == 1

        await asyncio.wait_for(relay._closing, 1)
        assert transport.closed_with == [1000]
