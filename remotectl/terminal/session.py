# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Interactive session interface and the live-session registry."""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


class Session(ABC):
    """A byte stream to an interactive shell (SSH PTY or container exec)."""

    @abstractmethod
    async def read(self, n: int) -> bytes:
        """Read up to n bytes. Returns b"" once the stream has ended."""

    @abstractmethod
    async def write(self, data: bytes) -> None: ...

    @abstractmethod
    async def resize(self, rows: int, cols: int) -> None: ...

    @abstractmethod
    def close(self) -> None:
        """Start closing without waiting. Safe to call more than once."""

    async def wait_closed(self) -> None:
        return None


@dataclass
class TerminalSessionEntry:
    session_id: str
    session: Session
    kind: str  # "ssh", "docker" or "local"
    target: str
    created_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "kind": self.kind,
            "target": self.target,
            "created_at": self.created_at,
            "last_activity": self.last_activity,
        }


class TerminalSessionRegistry:
    """Thread-safe map of session_id to live terminal sessions.

    ``touch`` timestamps are bookkeeping only; idle eviction is up to the
    caller (see ``idle_sessions``).
    """

    def __init__(self, clock=time.time):
        self._entries: Dict[str, TerminalSessionEntry] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def register(
        self, session_id: str, session: Session, kind: str = "ssh", target: str = ""
    ) -> TerminalSessionEntry:
        now = self._clock()
        entry = TerminalSessionEntry(session_id, session, kind, target, now, now)
        with self._lock:
            old = self._entries.get(session_id)
            self._entries[session_id] = entry
        if old is not None and old.session is not session:
            logger.debug(f"Closing displaced terminal session {session_id}")
            old.session.close()
        return entry

    def get(self, session_id: str) -> Optional[TerminalSessionEntry]:
        with self._lock:
            return self._entries.get(session_id)

    def unregister(self, session_id: str) -> Optional[TerminalSessionEntry]:
        with self._lock:
            return self._entries.pop(session_id, None)

    def disconnect(self, session_id: str) -> bool:
        """Close a live session without waiting for the remote side."""
        entry = self.unregister(session_id)
        if entry is None:
            return False
        entry.session.close()
        return True

    def touch(self, session_id: str) -> bool:
        with self._lock:
            entry = self._entries.get(session_id)
            if entry is None:
                return False
            entry.last_activity = self._clock()
            return True

    def idle_sessions(self, timeout: float) -> List[str]:
        """IDs of sessions with no activity for longer than ``timeout`` seconds."""
        cutoff = self._clock() - timeout
        with self._lock:
            return [sid for sid, e in self._entries.items() if e.last_activity < cutoff]

    def all(self) -> List[TerminalSessionEntry]:
        with self._lock:
            return list(self._entries.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
