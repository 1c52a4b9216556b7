# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Non-interactive remote commands and power actions."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

import asyncssh

from remotectl.errors import HostUnreachableError, RemoteCommandError, TransportError
from remotectl.terminal.connector import DEFAULT_DIAL_TIMEOUT, ConnectorConfig, HostKeyPolicy
from remotectl.terminal.ssh import open_ssh_connection

logger = logging.getLogger(__name__)

COMMAND_TIMEOUT = 20.0

POWER_COMMANDS = {
    "restart": "sudo -n systemctl reboot || sudo -n reboot || reboot",
    "shutdown": "sudo -n systemctl poweroff || sudo -n poweroff || poweroff",
}

# Fallback only; exception types are checked first
_EXPECTED_DISCONNECT_MESSAGES = (
    "connection reset",
    "broken pipe",
    "use of closed network connection",
    "unexpected eof",
)


def is_expected_disconnect(exc: BaseException) -> bool:
    """True if ``exc`` looks like the peer dropping us mid-session.

    This is what a reboot or shutdown looks like from our side. A host that
    never accepted the connection (refused, unreachable, timed out) is not an
    expected disconnect.
    """
    if isinstance(exc, (HostUnreachableError, ConnectionRefusedError, asyncio.TimeoutError)):
        return False
    if isinstance(exc, (ConnectionResetError, BrokenPipeError, asyncssh.ConnectionLost)):
        return True
    if isinstance(exc, asyncssh.DisconnectError):
        return exc.code == asyncssh.DISC_CONNECTION_LOST
    if isinstance(exc, TransportError) and exc.__cause__ is not None:
        return is_expected_disconnect(exc.__cause__)

    message = str(exc).lower()
    return any(pattern in message for pattern in _EXPECTED_DISCONNECT_MESSAGES)


async def execute_command(
    config: ConnectorConfig,
    command: str,
    timeout: float = COMMAND_TIMEOUT,
    dial_timeout: float = DEFAULT_DIAL_TIMEOUT,
    host_key_policy: Optional[HostKeyPolicy] = None,
    connect: Callable[..., Awaitable[Any]] = open_ssh_connection,
) -> str:
    """Run ``command`` and return its combined output.

    Raises connector errors for dial/auth problems, RemoteCommandError for a
    non-zero exit or timeout, and TransportError if the connection drops.
    """
    conn = await connect(config, dial_timeout, host_key_policy)
    try:
        result = await asyncio.wait_for(
            conn.run(command, check=False, stderr=asyncssh.STDOUT), timeout=timeout
        )
    except asyncio.TimeoutError as e:
        raise RemoteCommandError(command, timed_out=True) from e
    except (asyncssh.Error, OSError) as e:
        raise TransportError(f"Connection to {config.address} lost: {e}") from e
    finally:
        conn.close()

    output = str(result.stdout or "")
    if result.exit_status not in (0, None):
        raise RemoteCommandError(command, result.exit_status, output)
    return output


async def run_power_action(
    config: ConnectorConfig,
    action: str,
    runner: Callable[..., Awaitable[str]] = execute_command,
    **kwargs: Any,
) -> str:
    """Restart or shut down the host. A dropped connection counts as success."""
    command = POWER_COMMANDS.get(action)
    if command is None:
        raise ValueError(f"Unknown power action: {action!r}")
    try:
        return await runner(config, command, **kwargs)
    except (TransportError, RemoteCommandError) as e:
        cause = e.__cause__ if e.__cause__ is not None else e
        if is_expected_disconnect(cause):
            logger.info(f"{config.address} dropped the connection after {action}")
            return ""
        raise
