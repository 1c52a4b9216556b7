# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Live tunnel sessions, one per server."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from remotectl.tunnel.portpool import Service
from remotectl.utils.logging import get_daemon_logger

logger = get_daemon_logger("tunnel.registry")


@dataclass
class TunnelSession:
    """An authenticated tunnel agent connection."""

    server_id: str
    conn: Any  # asyncssh.SSHServerConnection
    services: List[Service] = field(default_factory=list)
    connected_at: float = field(default_factory=time.time)
    listeners: List[Any] = field(default_factory=list)

    def service(self, name: str) -> Optional[Service]:
        for svc in self.services:
            if svc.name == name:
                return svc
        return None

    def close(self) -> None:
        """Close listeners and the SSH connection without waiting."""
        for listener in self.listeners:
            try:
                listener.close()
            except Exception as e:
                logger.debug(f"Listener close failed for {self.server_id}: {e}")
        if self.conn is not None:
            try:
                self.conn.close()
            except Exception as e:
                logger.debug(f"Connection close failed for {self.server_id}: {e}")

    def to_dict(self) -> dict:
        return {
            "server_id": self.server_id,
            "connected_at": self.connected_at,
            "services": [svc.to_dict() for svc in self.services],
        }


class SessionRegistry:
    """Thread-safe map of server_id to its live TunnelSession.

    Sockets are closed outside the lock.
    """

    def __init__(self):
        self._sessions: Dict[str, TunnelSession] = {}
        self._lock = threading.Lock()

    def get(self, server_id: str) -> Optional[TunnelSession]:
        with self._lock:
            return self._sessions.get(server_id)

    def register(self, server_id: str, session: TunnelSession) -> Optional[TunnelSession]:
        """Insert a session, evicting and closing any previous one."""
        with self._lock:
            old = self._sessions.get(server_id)
            self._sessions[server_id] = session

        if old is not None and old is not session:
            logger.info(f"Closing previous tunnel session for {server_id}")
            old.close()
            return old
        return None

    def evict(self, server_id: str) -> Optional[TunnelSession]:
        """Remove and close the session for server_id, if any."""
        with self._lock:
            old = self._sessions.pop(server_id, None)
        if old is not None:
            old.close()
        return old

    def unregister(self, server_id: str) -> Optional[TunnelSession]:
        with self._lock:
            return self._sessions.pop(server_id, None)

    def unregister_conn(self, server_id: str, conn: Any) -> bool:
        """Remove the entry only if it still belongs to ``conn``."""
        with self._lock:
            stored = self._sessions.get(server_id)
            if stored is None or stored.conn is not conn:
                return False
            del self._sessions[server_id]
            return True

    def disconnect(self, server_id: str) -> bool:
        """Force-close a live session. The entry is dropped by its own teardown."""
        session = self.get(server_id)
        if session is None:
            return False
        session.close()
        return True

    def all(self) -> List[TunnelSession]:
        with self._lock:
            return list(self._sessions.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
