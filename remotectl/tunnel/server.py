# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Reverse-tunnel SSH broker using AsyncSSH.

Unattended agents on private machines dial this server with a bearer token
and request remote forwards, typically via autossh:

    autossh -N -R 0:localhost:22 -R 0:localhost:80 <token>@<host> -p 2222

Per connection:
- Dialed: throttled by a connection rate limit and a pending-handshake cap
- Authenticating: the token arrives as the SSH username (or the password)
- Authenticated: the previous session for the server is evicted, then the
  configured services get ports from the PortPool
- Active: the session is registered and SessionHooks.on_connect fires;
  each tcpip-forward request is bound to the next assigned service on
  127.0.0.1:<tunnel_port>
- Closed: listeners are closed; on_disconnect fires only if this connection
  still owned the registry slot
"""

from __future__ import annotations

import asyncio
import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

import asyncssh

from remotectl.errors import PoolExhaustedError, TunnelError
from remotectl.tunnel.portpool import ConflictResolution, PortPool, Service
from remotectl.tunnel.registry import SessionRegistry, TunnelSession
from remotectl.utils.logging import get_daemon_logger

logger = get_daemon_logger("tunnel")

# Constants
SERVER_VERSION = "remotectl-tunnel"
FORWARD_LISTEN_ADDRESS = "127.0.0.1"
FORWARD_BIND_ATTEMPTS = 5
FORWARD_BIND_BACKOFF = 0.025  # seconds, multiplied by attempt
PROXY_CHUNK_SIZE = 32 * 1024
DEFAULT_RATE_LIMIT = 10.0  # new connections per second
DEFAULT_MAX_PENDING = 50  # concurrent unauthenticated handshakes
DEFAULT_HANDSHAKE_TIMEOUT = 15.0
SSH_KEEPALIVE_INTERVAL = 30
SSH_KEEPALIVE_COUNT_MAX = 2


@dataclass(frozen=True)
class ServiceSpec:
    """A service agents forward, in the order of their -R arguments."""

    name: str
    local_port: int


DEFAULT_SERVICES = (ServiceSpec("ssh", 22), ServiceSpec("http", 80))


class TokenValidator(Protocol):
    def validate(self, token: str) -> Optional[str]:
        """Return the server_id the token belongs to, or None."""


class SessionHooks(Protocol):
    def on_connect(
        self, server_id: str, services: List[Service], conflicts: List[ConflictResolution]
    ) -> None: ...

    def on_disconnect(self, server_id: str) -> None: ...


class RateLimiter:
    """Token bucket: ``rate`` events per second, bursts up to ``burst``."""

    def __init__(self, rate: float, burst: Optional[int] = None, clock=time.monotonic):
        self.rate = rate
        self.burst = burst if burst is not None else max(1, int(rate))
        self._clock = clock
        self._tokens = float(self.burst)
        self._updated = clock()
        self._lock = threading.Lock()

    def allow(self) -> bool:
        if self.rate <= 0:
            return True
        with self._lock:
            now = self._clock()
            self._tokens = min(self.burst, self._tokens + (now - self._updated) * self.rate)
            self._updated = now
            if self._tokens < 1:
                return False
            self._tokens -= 1
            return True


def load_or_create_host_key(path: Path) -> asyncssh.SSHKey:
    """Load the broker host key, generating an ed25519 key on first start.

    Agents pin this key in known_hosts, so it must survive restarts.
    """
    path = Path(path)
    if path.exists():
        try:
            return asyncssh.read_private_key(str(path))
        except (asyncssh.KeyImportError, OSError) as e:
            raise TunnelError(
                f"Cannot read tunnel host key {path}: {e}",
                hint="Fix or remove the file; agents will need to re-trust a new key",
            ) from e

    path.parent.mkdir(parents=True, exist_ok=True)
    key = asyncssh.generate_private_key("ssh-ed25519")
    key.write_private_key(str(path))
    os.chmod(path, 0o600)
    logger.info(f"Generated tunnel host key at {path}")
    return key


async def _pipe(reader: Any, writer: Any) -> None:
    try:
        while True:
            data = await reader.read(PROXY_CHUNK_SIZE)
            if not data:
                break
            writer.write(data)
            await writer.drain()
        if writer.can_write_eof():
            writer.write_eof()
    except (ConnectionError, OSError, asyncssh.Error):
        pass


class ForwardListener:
    """Local TCP listener for one forwarded service.

    Returned to AsyncSSH from ``server_requested``; AsyncSSH uses
    ``get_port`` for the forward reply and ``close`` on cancel or disconnect.
    """

    def __init__(self, conn: Any, service: Service, listen_host: str, listen_port: int):
        self._conn = conn
        self.service = service
        # The agent matches forwarded-tcpip channels against what it asked for
        self._reply_host = listen_host
        self._reply_port = listen_port or service.tunnel_port
        self._server: Optional[asyncio.AbstractServer] = None
        self._clients: set = set()

    async def start(self) -> None:
        last_error: Optional[OSError] = None
        for attempt in range(1, FORWARD_BIND_ATTEMPTS + 1):
            try:
                self._server = await asyncio.start_server(
                    self._handle_client, FORWARD_LISTEN_ADDRESS, self.service.tunnel_port
                )
                return
            except OSError as e:
                last_error = e
                await asyncio.sleep(FORWARD_BIND_BACKOFF * attempt)
        raise last_error

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        peer = writer.get_extra_info("peername") or ("127.0.0.1", 0)
        self._clients.add(writer)
        try:
            chan_reader, chan_writer = await self._conn.open_connection(
                self._reply_host, self._reply_port, peer[0], peer[1]
            )
        except (asyncssh.Error, OSError) as e:
            logger.warning(f"Cannot open {self.service.name} channel to agent: {e}")
            self._clients.discard(writer)
            writer.close()
            return

        try:
            await asyncio.gather(_pipe(reader, chan_writer), _pipe(chan_reader, writer))
        finally:
            self._clients.discard(writer)
            chan_writer.close()
            writer.close()

    def get_port(self) -> int:
        return self.service.tunnel_port

    def close(self) -> None:
        if self._server is not None:
            self._server.close()
        for writer in list(self._clients):
            writer.close()

    async def wait_closed(self) -> None:
        if self._server is not None:
            await self._server.wait_closed()


class TunnelServerConnection(asyncssh.SSHServer):
    """Handler for a single tunnel agent connection."""

    def __init__(self, broker: "TunnelBroker"):
        self.broker = broker
        self.server_id: Optional[str] = None
        self._conn: Optional[asyncssh.SSHServerConnection] = None
        self._pending = False
        self._session: Optional[TunnelSession] = None
        self._next_forward = 0
        self._unknown_user = False

    def connection_made(self, conn: asyncssh.SSHServerConnection) -> None:
        self._conn = conn
        if not self.broker._admit():
            conn.close()
            return
        self._pending = True

    def _finish_handshake(self) -> None:
        if self._pending:
            self._pending = False
            self.broker._release_pending()

    def connection_lost(self, exc: Optional[Exception]) -> None:
        self._finish_handshake()
        if self._unknown_user:
            # Never got as far as a password attempt
            self._unknown_user = False
            self.broker._count("auth_rejected")
        if self._session is None:
            return

        for listener in self._session.listeners:
            listener.close()

        if self.broker.sessions.unregister_conn(self.server_id, self._conn):
            logger.info(f"Tunnel for {self.server_id} disconnected")
            self.broker._fire_disconnect(self.server_id)
        else:
            logger.debug(f"Replaced tunnel connection for {self.server_id} closed")

    async def begin_auth(self, username: str) -> bool:
        server_id = await self.broker._validate(username)
        if server_id:
            self.server_id = server_id
            return False
        # Fall through to password auth with the token as password
        self._unknown_user = True
        return True

    def password_auth_supported(self) -> bool:
        return True

    async def validate_password(self, username: str, password: str) -> bool:
        server_id = await self.broker._validate(password)
        self._unknown_user = False
        if server_id:
            self.server_id = server_id
            return True
        self.broker._count("auth_rejected")
        self._conn.close()
        return False

    def public_key_auth_supported(self) -> bool:
        return False

    def kbdint_auth_supported(self) -> bool:
        return False

    def auth_completed(self) -> None:
        self._finish_handshake()
        self._session = self.broker._activate(self.server_id, self._conn)

    def session_requested(self) -> bool:
        # Forward-only: no shells on the broker
        return False

    def connection_requested(
        self, dest_host: str, dest_port: int, orig_host: str, orig_port: int
    ) -> bool:
        logger.debug(f"Rejected direct-tcpip from {self.server_id} to {dest_host}:{dest_port}")
        return False

    async def server_requested(self, listen_host: str, listen_port: int):
        session = self._session
        if session is None:
            return False

        if self._next_forward >= len(session.services):
            logger.warning(
                f"Rejected extra forward {listen_host or '*'}:{listen_port} from {self.server_id}"
            )
            return False
        service = session.services[self._next_forward]
        self._next_forward += 1

        listener = ForwardListener(self._conn, service, listen_host, listen_port)
        try:
            await listener.start()
        except OSError as e:
            logger.error(
                f"Cannot bind {service.name} forward for {self.server_id} "
                f"on port {service.tunnel_port}: {e}"
            )
            return False

        session.listeners.append(listener)
        logger.info(
            f"Forward {self.server_id}/{service.name}: "
            f"{FORWARD_LISTEN_ADDRESS}:{service.tunnel_port} -> agent:{service.local_port}"
        )
        return listener


class TunnelBroker:
    """SSH server accepting token-authenticated reverse tunnels."""

    def __init__(
        self,
        listen_host: str,
        listen_port: int,
        host_key_path: Path,
        validator: Optional[TokenValidator],
        pool: Optional[PortPool],
        sessions: Optional[SessionRegistry],
        hooks: Optional[SessionHooks],
        services: Sequence[ServiceSpec] = DEFAULT_SERVICES,
        rate_limit: float = DEFAULT_RATE_LIMIT,
        max_pending: int = DEFAULT_MAX_PENDING,
        handshake_timeout: float = DEFAULT_HANDSHAKE_TIMEOUT,
        keepalive_interval: float = SSH_KEEPALIVE_INTERVAL,
        keepalive_count_max: int = SSH_KEEPALIVE_COUNT_MAX,
        error_handler: Optional[Callable[[str, Exception], None]] = None,
    ):
        self.listen_host = listen_host
        self.listen_port = listen_port
        self.host_key_path = Path(host_key_path)
        self.validator = validator
        self.pool = pool
        self.sessions = sessions
        self.hooks = hooks
        self.services = list(services)
        self.max_pending = max_pending
        self.handshake_timeout = handshake_timeout
        self.keepalive_interval = keepalive_interval
        self.keepalive_count_max = keepalive_count_max
        self.error_handler = error_handler

        self._limiter = RateLimiter(rate_limit)
        self._pending = 0
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = {
            "accepted": 0,
            "throttled": 0,
            "auth_rejected": 0,
            "allocation_failed": 0,
        }
        self._acceptor: Optional[asyncssh.SSHAcceptor] = None

    # Lifecycle

    def _check_dependencies(self) -> None:
        missing = [
            name
            for name, dep in (
                ("token validator", self.validator),
                ("port pool", self.pool),
                ("session registry", self.sessions),
                ("session hooks", self.hooks),
            )
            if dep is None
        ]
        if missing:
            raise TunnelError(f"Tunnel broker is missing: {', '.join(missing)}")

    async def start(self) -> None:
        if self._acceptor is not None:
            return
        self._check_dependencies()
        host_key = load_or_create_host_key(self.host_key_path)

        self._acceptor = await asyncssh.listen(
            self.listen_host,
            self.listen_port,
            server_factory=lambda: TunnelServerConnection(self),
            server_host_keys=[host_key],
            server_version=SERVER_VERSION,
            login_timeout=self.handshake_timeout,
            keepalive_interval=self.keepalive_interval,
            keepalive_count_max=self.keepalive_count_max,
            allow_pty=False,
            encoding=None,
        )
        logger.info(f"Tunnel broker listening on {self.listen_host}:{self.port}")

    async def stop(self) -> None:
        if self._acceptor is None:
            return
        self._acceptor.close()
        await self._acceptor.wait_closed()
        self._acceptor = None

        for session in self.sessions.all():
            if self.sessions.evict(session.server_id) is not None:
                self._fire_disconnect(session.server_id)
        logger.info("Tunnel broker stopped")

    @property
    def running(self) -> bool:
        return self._acceptor is not None

    @property
    def port(self) -> int:
        """Bound port, resolved once listening when listen_port is 0."""
        if self._acceptor is not None:
            return self._acceptor.get_port()
        return self.listen_port

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            stats: Dict[str, Any] = dict(self._counters)
            stats["pending_handshakes"] = self._pending
        stats["active_sessions"] = len(self.sessions) if self.sessions is not None else 0
        return stats

    # Connection admission

    def _count(self, name: str) -> None:
        with self._lock:
            self._counters[name] = self._counters.get(name, 0) + 1

    def _admit(self) -> bool:
        with self._lock:
            if self._pending >= self.max_pending or not self._limiter.allow():
                self._counters["throttled"] += 1
                return False
            self._pending += 1
            self._counters["accepted"] += 1
            return True

    def _release_pending(self) -> None:
        with self._lock:
            self._pending = max(0, self._pending - 1)

    async def _validate(self, token: str) -> Optional[str]:
        if not token:
            return None
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, self.validator.validate, token)
        except Exception as e:
            logger.error(f"Token validation failed: {e}")
            return None

    # Session activation

    def _activate(self, server_id: str, conn: Any) -> Optional[TunnelSession]:
        """Evict the old session, allocate ports, register and announce."""
        evicted = self.sessions.evict(server_id)
        if evicted is not None:
            logger.info(f"Replacing tunnel session for {server_id}")

        requested = [Service(spec.name, 0, spec.local_port) for spec in self.services]
        try:
            services, conflicts = self.pool.allocate(server_id, requested)
        except PoolExhaustedError as e:
            self._count("allocation_failed")
            conn.close()
            self._report_error(server_id, e)
            if evicted is not None:
                self._fire_disconnect(server_id)
            return None

        session = TunnelSession(server_id=server_id, conn=conn, services=services)
        self.sessions.register(server_id, session)
        logger.info(
            f"Tunnel for {server_id} active: "
            + ", ".join(f"{svc.name}={svc.tunnel_port}" for svc in services)
        )
        self._fire_connect(server_id, services, conflicts)
        return session

    def _report_error(self, server_id: str, exc: Exception) -> None:
        if self.error_handler is None:
            logger.error(f"Rejected tunnel for {server_id}", exc=exc)
            return
        try:
            self.error_handler(server_id, exc)
        except Exception as e:
            logger.error(f"Tunnel error handler failed: {e}")

    def _fire_connect(
        self, server_id: str, services: List[Service], conflicts: List[ConflictResolution]
    ) -> None:
        try:
            self.hooks.on_connect(server_id, services, conflicts)
        except Exception as e:
            logger.error(f"Connect hook failed for {server_id}: {e}")

    def _fire_disconnect(self, server_id: str) -> None:
        try:
            self.hooks.on_disconnect(server_id)
        except Exception as e:
            logger.error(f"Disconnect hook failed for {server_id}: {e}")
