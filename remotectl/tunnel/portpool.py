# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Allocation of forwarded tunnel ports.

Every (server, service) pair that a tunnel agent forwards gets a port on the
broker host from a fixed range. Ports are sticky: a reconnecting agent gets
the port it had last time unless something else took it, in which case the
lowest free port is used and a ConflictResolution is reported.
"""

from __future__ import annotations

import socket
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from remotectl.errors import PoolExhaustedError
from remotectl.utils.logging import get_daemon_logger

logger = get_daemon_logger("tunnel.portpool")

DEFAULT_PORT_START = 40000
DEFAULT_PORT_END = 50000  # exclusive


@dataclass(frozen=True)
class Service:
    """A forwarded capability of a tunnel agent."""

    name: str
    tunnel_port: int = 0
    local_port: int = 0

    def to_dict(self) -> dict:
        return {
            "service_name": self.name,
            "tunnel_port": self.tunnel_port,
            "local_port": self.local_port,
        }

    @classmethod
    def from_dict(cls, data: Mapping) -> "Service":
        return cls(
            name=str(data.get("service_name") or data.get("name") or ""),
            tunnel_port=int(data.get("tunnel_port") or 0),
            local_port=int(data.get("local_port") or 0),
        )


@dataclass(frozen=True)
class ConflictResolution:
    """A preferred port could not be kept and was replaced."""

    service_name: str
    old_port: int
    new_port: int

    def to_dict(self) -> dict:
        return {
            "service_name": self.service_name,
            "old_port": self.old_port,
            "new_port": self.new_port,
        }


def port_is_free(port: int) -> bool:
    """Check whether 127.0.0.1:<port> can be bound right now."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind(("127.0.0.1", port))
        return True
    except OSError:
        return False
    finally:
        sock.close()


Owner = Tuple[str, str]


class PortPool:
    """Process-wide mapping of forwarded ports to (server_id, service_name).

    All reads and writes go through one lock; ``allocate`` checks and commits
    inside a single critical section so two racing agents cannot both win
    the same port.
    """

    def __init__(
        self,
        start: int = DEFAULT_PORT_START,
        end: int = DEFAULT_PORT_END,
        probe: Optional[Callable[[int], bool]] = None,
    ):
        if not (0 < start < end <= 65536):
            raise ValueError(f"Invalid port range {start}-{end}")
        self.start = start
        self.end = end
        self._probe = probe or port_is_free
        self._lock = threading.Lock()
        self._owners: Dict[int, Owner] = {}
        self._by_server: Dict[str, List[Service]] = {}

    def _in_range(self, port: int) -> bool:
        return self.start <= port < self.end

    def load_existing(self, records: Mapping[str, Iterable[Service]]) -> None:
        """Seed the pool from persisted service lists.

        History is trusted as-is; nothing is probed and no conflicts are
        reported. Entries that cannot be honoured are skipped.
        """
        with self._lock:
            for server_id, services in records.items():
                kept: List[Service] = []
                for svc in services:
                    if not svc.tunnel_port:
                        continue
                    if not self._in_range(svc.tunnel_port):
                        logger.warning(
                            f"Skipping stored port {svc.tunnel_port} for {server_id}/{svc.name}: "
                            f"outside {self.start}-{self.end - 1}"
                        )
                        continue
                    owner = self._owners.get(svc.tunnel_port)
                    if owner and owner != (server_id, svc.name):
                        logger.warning(
                            f"Skipping stored port {svc.tunnel_port} for {server_id}/{svc.name}: "
                            f"already held by {owner[0]}/{owner[1]}"
                        )
                        continue
                    self._owners[svc.tunnel_port] = (server_id, svc.name)
                    kept.append(svc)
                if kept:
                    self._by_server[server_id] = kept
            logger.debug(f"Port pool seeded with {len(self._owners)} ports")

    def _preferred_port(self, server_id: str, svc: Service) -> int:
        if svc.tunnel_port:
            return svc.tunnel_port
        for previous in self._by_server.get(server_id, []):
            if previous.name == svc.name:
                return previous.tunnel_port
        return 0

    def _usable(self, port: int, server_id: str, name: Optional[str], taken: Set[int]) -> bool:
        if not self._in_range(port) or port in taken:
            return False
        owner = self._owners.get(port)
        if owner is not None and owner[0] != server_id:
            return False
        if owner == (server_id, name):
            return True
        return self._probe(port)

    def _lowest_free(self, server_id: str, taken: Set[int]) -> int:
        for port in range(self.start, self.end):
            if self._usable(port, server_id, None, taken):
                return port
        raise PoolExhaustedError(self.start, self.end)

    def allocate(
        self, server_id: str, requested: Iterable[Service]
    ) -> Tuple[List[Service], List[ConflictResolution]]:
        """Assign ports for a server's services.

        Replaces the server's previous mapping. Raises PoolExhaustedError
        without changing any state when the range runs out.
        """
        assigned: List[Service] = []
        conflicts: List[ConflictResolution] = []

        with self._lock:
            taken: Set[int] = set()
            for svc in requested:
                preferred = self._preferred_port(server_id, svc)
                if preferred and self._usable(preferred, server_id, svc.name, taken):
                    port = preferred
                else:
                    port = self._lowest_free(server_id, taken)
                    if preferred:
                        conflicts.append(ConflictResolution(svc.name, preferred, port))
                taken.add(port)
                assigned.append(Service(svc.name, port, svc.local_port))

            for old in self._by_server.pop(server_id, []):
                if self._owners.get(old.tunnel_port, ("",))[0] == server_id:
                    del self._owners[old.tunnel_port]
            for svc in assigned:
                self._owners[svc.tunnel_port] = (server_id, svc.name)
            self._by_server[server_id] = list(assigned)

        for conflict in conflicts:
            logger.warning(
                f"Port conflict for {server_id}/{conflict.service_name}: "
                f"{conflict.old_port} -> {conflict.new_port}"
            )
        return assigned, conflicts

    def release(self, server_id: str) -> List[int]:
        """Free every port held by a server. Returns the freed ports."""
        with self._lock:
            freed = [port for port, owner in self._owners.items() if owner[0] == server_id]
            for port in freed:
                del self._owners[port]
            self._by_server.pop(server_id, None)
        if freed:
            logger.debug(f"Released ports {sorted(freed)} for {server_id}")
        return sorted(freed)

    def services_for(self, server_id: str) -> List[Service]:
        with self._lock:
            return list(self._by_server.get(server_id, []))

    def owner(self, port: int) -> Optional[Owner]:
        with self._lock:
            return self._owners.get(port)

    def snapshot(self) -> Dict[int, Owner]:
        with self._lock:
            return dict(self._owners)
