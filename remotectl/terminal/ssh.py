# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Direct SSH connections: PTY sessions and the shared dial helper."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import asyncssh

from remotectl.errors import (
    AuthenticationFailedError,
    ConnectorError,
    HostUnreachableError,
    InvalidCredentialError,
    UnsupportedAuthTypeError,
)
from remotectl.terminal.connector import (
    AUTH_KEY,
    AUTH_PASSWORD,
    AUTH_PRIVATE_KEY,
    DEFAULT_COLS,
    DEFAULT_DIAL_TIMEOUT,
    DEFAULT_ROWS,
    TERM_TYPE,
    Connector,
    ConnectorConfig,
    HostKeyPolicy,
)
from remotectl.terminal.session import Session

logger = logging.getLogger(__name__)

_SHELL_ERRORS = (asyncssh.Error, OSError)


def _auth_options(config: ConnectorConfig) -> Dict[str, Any]:
    if config.auth_type == AUTH_PASSWORD:
        return {"password": config.secret, "client_keys": None}
    if config.auth_type in (AUTH_PRIVATE_KEY, AUTH_KEY):
        try:
            key = asyncssh.import_private_key(config.secret)
        except (asyncssh.KeyImportError, ValueError) as e:
            raise InvalidCredentialError(
                f"Cannot parse private key for {config.user}@{config.host}: {e}",
                hint="The key must be an unencrypted OpenSSH or PEM private key",
            ) from e
        return {"client_keys": [key], "password": None}
    raise UnsupportedAuthTypeError(config.auth_type)


def _known_hosts_option(policy: HostKeyPolicy, config: ConnectorConfig) -> Any:
    files = policy.existing_files()
    if files:
        return files
    if policy.required:
        raise ConnectorError(
            f"No known_hosts file available to verify {config.address}",
            hint="Set terminal.known_hosts or disable terminal.require_host_key",
        )
    return None


async def open_ssh_connection(
    config: ConnectorConfig,
    timeout: float = DEFAULT_DIAL_TIMEOUT,
    host_key_policy: Optional[HostKeyPolicy] = None,
) -> asyncssh.SSHClientConnection:
    """Dial and authenticate, mapping failures onto connector errors.

    Raises:
        UnsupportedAuthTypeError: before any network traffic
        InvalidCredentialError: the private key could not be parsed
        HostUnreachableError: DNS, TCP or handshake timeout failures
        AuthenticationFailedError: the host rejected the credentials
        ConnectorError: any other SSH-level failure
    """
    options = _auth_options(config)
    options["known_hosts"] = _known_hosts_option(host_key_policy or HostKeyPolicy(), config)

    try:
        return await asyncio.wait_for(
            asyncssh.connect(
                config.host,
                port=config.port,
                username=config.user or None,
                agent_path=None,
                **options,
            ),
            timeout=timeout,
        )
    except asyncio.TimeoutError as e:
        raise HostUnreachableError(f"Timed out connecting to {config.address}") from e
    except asyncssh.PermissionDenied as e:
        raise AuthenticationFailedError(
            f"Authentication failed for {config.user}@{config.address}",
            hint="Check the server's credential",
        ) from e
    except asyncssh.HostKeyNotVerifiable as e:
        raise ConnectorError(f"Host key for {config.address} not trusted: {e}") from e
    except asyncssh.Error as e:
        raise ConnectorError(f"SSH error from {config.address}: {e}") from e
    except OSError as e:
        raise HostUnreachableError(f"Cannot reach {config.address}: {e}") from e


class SSHSession(Session):
    """Interactive shell on an SSH PTY channel."""

    def __init__(self, conn: asyncssh.SSHClientConnection, process: asyncssh.SSHClientProcess):
        self._conn = conn
        self._process = process
        self._closed = False

    async def read(self, n: int) -> bytes:
        return await self._process.stdout.read(n)

    async def write(self, data: bytes) -> None:
        self._process.stdin.write(data)
        await self._process.stdin.drain()

    async def resize(self, rows: int, cols: int) -> None:
        self._process.change_terminal_size(cols, rows)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._process.close()
        self._conn.close()

    async def wait_closed(self) -> None:
        await self._conn.wait_closed()


class SSHConnector(Connector):
    """Opens a PTY shell over a direct SSH connection."""

    kind = "ssh"

    def __init__(self, host_key_policy: Optional[HostKeyPolicy] = None):
        self.host_key_policy = host_key_policy or HostKeyPolicy()

    async def connect(
        self, config: ConnectorConfig, timeout: float = DEFAULT_DIAL_TIMEOUT
    ) -> Session:
        conn = await open_ssh_connection(config, timeout, self.host_key_policy)
        try:
            process = await self._start_shell(conn, config)
        except BaseException:
            conn.close()
            raise
        return SSHSession(conn, process)

    async def _start_shell(
        self, conn: asyncssh.SSHClientConnection, config: ConnectorConfig
    ) -> asyncssh.SSHClientProcess:
        options = dict(term_type=TERM_TYPE, term_size=(DEFAULT_COLS, DEFAULT_ROWS), encoding=None)
        if config.shell:
            try:
                return await conn.create_process(config.shell, **options)
            except asyncssh.ChannelOpenError as e:
                logger.warning(
                    f"Shell {config.shell!r} failed on {config.address}, using login shell: {e}"
                )
            except _SHELL_ERRORS as e:
                raise ConnectorError(f"Cannot start shell on {config.address}: {e}") from e
        try:
            return await conn.create_process(**options)
        except (asyncssh.ChannelOpenError, *_SHELL_ERRORS) as e:
            raise ConnectorError(f"Cannot start shell on {config.address}: {e}") from e
