# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Full-duplex relay between a terminal Session and a framed transport.

Wire format (browser side):
- Binary frames are raw stdin/stdout bytes
- A text frame, or a binary frame starting with 0x00, is a control frame:
  the 0x00 is stripped and the rest is JSON {"type": ..., ...}
- Only {"type": "resize", "rows": >0, "cols": >0} acts on the session;
  malformed or unknown control frames are ignored
- The server sends {"type": "error", "message": ...} as a 0x00 control
  frame before closing when the session could not be opened
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

from remotectl.terminal.session import Session, TerminalSessionRegistry

logger = logging.getLogger(__name__)

CONTROL_SENTINEL = b"\x00"
DEFAULT_CHUNK_SIZE = 4096
MAX_TERMINAL_DIMENSION = 65535
CLOSE_TIMEOUT = 5.0

FRAME_TEXT = "text"
FRAME_BINARY = "binary"
FRAME_CLOSE = "close"


@dataclass
class Frame:
    kind: str
    data: bytes = b""


class Transport(Protocol):
    async def receive(self) -> Frame: ...

    async def send_bytes(self, data: bytes) -> None: ...

    async def send_text(self, text: str) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


class WebSocketTransport:
    """Transport over a Starlette/FastAPI WebSocket."""

    def __init__(self, websocket: Any):
        self.websocket = websocket
        self._closed = False

    async def receive(self) -> Frame:
        message = await self.websocket.receive()
        if message.get("type") == "websocket.disconnect":
            return Frame(FRAME_CLOSE)
        if message.get("bytes") is not None:
            return Frame(FRAME_BINARY, message["bytes"])
        if message.get("text") is not None:
            return Frame(FRAME_TEXT, message["text"].encode("utf-8"))
        return Frame(FRAME_CLOSE)

    async def send_bytes(self, data: bytes) -> None:
        await self.websocket.send_bytes(data)

    async def send_text(self, text: str) -> None:
        await self.websocket.send_text(text)

    async def close(self, code: int = 1000) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self.websocket.close(code=code)
        except RuntimeError:
            # Already closed by the peer
            pass


@dataclass
class ControlMessage:
    type: str
    rows: int = 0
    cols: int = 0

    @property
    def is_valid_resize(self) -> bool:
        return (
            self.type == "resize"
            and 0 < self.rows <= MAX_TERMINAL_DIMENSION
            and 0 < self.cols <= MAX_TERMINAL_DIMENSION
        )


def _as_dimension(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        return 0
    return value


def parse_control_frame(payload: bytes) -> Optional[ControlMessage]:
    """Parse a control payload (sentinel optional). None if malformed."""
    if payload[:1] == CONTROL_SENTINEL:
        payload = payload[1:]
    try:
        message = json.loads(payload)
    except (ValueError, UnicodeDecodeError):
        return None
    if not isinstance(message, dict) or not isinstance(message.get("type"), str):
        return None
    return ControlMessage(
        type=message["type"],
        rows=_as_dimension(message.get("rows")),
        cols=_as_dimension(message.get("cols")),
    )


def encode_control_frame(msg_type: str, **fields: Any) -> bytes:
    body = {"type": msg_type}
    body.update(fields)
    return CONTROL_SENTINEL + json.dumps(body).encode("utf-8")


def error_frame(message: str) -> bytes:
    return encode_control_frame("error", message=message)


@dataclass
class RelayStats:
    bytes_in: int = 0
    bytes_out: int = 0
    started_at: float = 0.0
    ended_at: float = 0.0

    @property
    def duration(self) -> float:
        return max(0.0, self.ended_at - self.started_at)

    def to_dict(self) -> dict:
        return {
            "bytes_in": self.bytes_in,
            "bytes_out": self.bytes_out,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
        }


class TerminalRelay:
    """Runs the two pumps of one interactive session.

    ``run`` returns when either direction ends. Teardown (unregister, close
    session, close transport, ``on_close``) happens exactly once.
    """

    def __init__(
        self,
        session: Session,
        transport: Transport,
        registry: Optional[TerminalSessionRegistry] = None,
        session_id: Optional[str] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        on_close: Optional[Callable[[RelayStats], None]] = None,
    ):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.session = session
        self.transport = transport
        self.registry = registry
        self.session_id = session_id
        self.chunk_size = chunk_size
        self.on_close = on_close
        self.stats = RelayStats()
        self._done = asyncio.Event()
        self._torn_down = False
        self._closing: Optional[asyncio.Future] = None

    async def run(self) -> RelayStats:
        self.stats.started_at = time.time()
        tasks = [
            asyncio.create_task(self._guard("output", self._pump_output())),
            asyncio.create_task(self._guard("input", self._pump_input())),
        ]
        try:
            await self._done.wait()
        finally:
            for task in tasks:
                task.cancel()
            self._release()
            # The caller may be cancelled again while we wait here
            self._closing = asyncio.ensure_future(self._settle(tasks))
            await asyncio.shield(self._closing)
        return self.stats

    async def _guard(self, name: str, pump) -> None:
        try:
            await pump
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug(f"Relay {self.session_id or ''} {name} pump ended: {e}")
        finally:
            self._done.set()

    async def _pump_output(self) -> None:
        while True:
            data = await self.session.read(self.chunk_size)
            if not data:
                return
            # Sessions may hand back more than asked for
            for offset in range(0, len(data), self.chunk_size):
                chunk = data[offset : offset + self.chunk_size]
                await self.transport.send_bytes(chunk)
                self.stats.bytes_out += len(chunk)

    async def _pump_input(self) -> None:
        while True:
            frame = await self.transport.receive()
            if frame.kind == FRAME_CLOSE:
                return
            if self.registry is not None and self.session_id:
                self.registry.touch(self.session_id)

            if frame.kind == FRAME_TEXT or frame.data[:1] == CONTROL_SENTINEL:
                await self._handle_control(frame.data)
                continue

            if frame.data:
                await self.session.write(frame.data)
                self.stats.bytes_in += len(frame.data)

    async def _handle_control(self, payload: bytes) -> None:
        message = parse_control_frame(payload)
        if message is None or not message.is_valid_resize:
            return
        try:
            await self.session.resize(message.rows, message.cols)
        except Exception as e:
            logger.debug(f"Resize to {message.cols}x{message.rows} failed: {e}")

    def _release(self) -> None:
        """Synchronous half of teardown. Runs once, even under cancellation."""
        if self._torn_down:
            return
        self._torn_down = True
        self.stats.ended_at = time.time()

        if self.registry is not None and self.session_id:
            self.registry.unregister(self.session_id)

        try:
            self.session.close()
        except Exception as e:
            logger.debug(f"Session close failed: {e}")

        if self.on_close is not None:
            try:
                self.on_close(self.stats)
            except Exception as e:
                logger.error(f"Relay close callback failed: {e}")

    async def _settle(self, tasks) -> None:
        await asyncio.gather(*tasks, return_exceptions=True)
        try:
            await asyncio.wait_for(self.session.wait_closed(), timeout=CLOSE_TIMEOUT)
        except Exception as e:
            logger.debug(f"Session close did not settle: {e}")

        try:
            await self.transport.close()
        except Exception as e:
            logger.debug(f"Transport close failed: {e}")
