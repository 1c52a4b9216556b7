# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Exception hierarchy for remotectl.

Every error carries an optional ``hint`` that the CLI and the web layer
show next to the message.

Categories:
- Authentication: bad tunnel token, credential that cannot be decrypted
- Exhaustion: no free port left in the tunnel pool
- Connector: dial, auth and session-start failures for terminals and SFTP
- Transport: a live connection dropped
- Systemd: service names and unit files
"""

from typing import Optional


class RemotectlError(Exception):
    """Base class for all remotectl errors."""

    def __init__(self, message: str, hint: Optional[str] = None):
        super().__init__(message)
        self.hint = hint


# Authentication


class AuthenticationError(RemotectlError):
    """Raised when an identity or credential is rejected."""


class CredentialDecryptError(AuthenticationError):
    """Raised when a stored credential cannot be decrypted."""


# Resource exhaustion


class PoolExhaustedError(RemotectlError):
    """Raised when the tunnel port range has no free port left."""

    def __init__(self, start: int, end: int):
        self.start = start
        self.end = end
        super().__init__(
            f"Tunnel port pool exhausted ({start}-{end - 1})",
            hint="Widen tunnel.port_range or release ports of deleted servers",
        )


# Connectors


class ConnectorError(RemotectlError):
    """Raised when a terminal or SFTP connection cannot be established."""


class HostUnreachableError(ConnectorError):
    """Raised when the target host cannot be reached at all."""


class AuthenticationFailedError(ConnectorError):
    """Raised when the remote host rejects the supplied credentials."""


class UnsupportedAuthTypeError(ConnectorError):
    """Raised for an auth_type no connector knows how to use."""

    def __init__(self, auth_type: str):
        self.auth_type = auth_type
        super().__init__(
            f"Unsupported auth_type: {auth_type!r}",
            hint="Use 'password' or 'private_key'",
        )


class InvalidCredentialError(ConnectorError):
    """Raised when a credential is present but unusable (e.g. unparsable key)."""


class ContainerNotFoundError(ConnectorError):
    """Raised when the exec target container does not exist."""


# Transport and remote commands


class TransportError(RemotectlError):
    """Raised when an established connection fails."""


class RemoteCommandError(RemotectlError):
    """Raised when a remote command fails or times out."""

    def __init__(
        self,
        command: str,
        exit_status: Optional[int] = None,
        output: str = "",
        timed_out: bool = False,
    ):
        self.command = command
        self.exit_status = exit_status
        self.output = output
        self.timed_out = timed_out
        if timed_out:
            message = f"Command timed out: {command}"
        else:
            message = f"Command exited with status {exit_status}: {command}"
        super().__init__(message)


class SystemdError(RemotectlError):
    """Raised for an invalid service name, a missing unit file or bad unit content."""


# SFTP


class SFTPOperationError(RemotectlError):
    """Raised when an SFTP operation fails.

    Carries the operation name and the path it was applied to.
    """

    def __init__(
        self,
        operation: str,
        path: str,
        cause: Optional[BaseException] = None,
        bytes_copied: int = 0,
        message: Optional[str] = None,
    ):
        self.operation = operation
        self.path = path
        self.cause = cause
        self.bytes_copied = bytes_copied
        if message is None:
            message = f"{operation} {path} failed"
            if cause is not None:
                message = f"{message}: {cause}"
        super().__init__(message)


class FileTooLargeError(SFTPOperationError):
    """Raised when a file exceeds the read or write cap."""

    def __init__(self, operation: str, path: str, limit: int):
        self.limit = limit
        super().__init__(
            operation, path, message=f"{path} exceeds the {limit} byte limit for {operation}"
        )


# Records


class RecordNotFoundError(RemotectlError):
    """Raised when a server or secret record does not exist."""

    def __init__(self, kind: str, record_id: str):
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} not found: {record_id}")


# Tunnel


class TunnelError(RemotectlError):
    """Raised when the tunnel broker cannot be configured or started."""


class TunnelUnavailableError(RemotectlError):
    """Raised when a tunnel server has no forwarded SSH port to connect through."""
