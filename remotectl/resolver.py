# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Turn a server record into connection settings."""

from typing import Optional

from remotectl.crypto import SecretCipher
from remotectl.errors import TunnelUnavailableError
from remotectl.store import RecordStore
from remotectl.terminal.connector import DEFAULT_SSH_PORT, ConnectorConfig
from remotectl.tunnel.portpool import PortPool

TUNNEL_HOST = "127.0.0.1"
SSH_SERVICE = "ssh"


def resolve_server_config(
    store: RecordStore,
    cipher: SecretCipher,
    server_id: str,
    pool: Optional[PortPool] = None,
) -> ConnectorConfig:
    """Build the ConnectorConfig for a server.

    Tunnel servers are reached through the locally forwarded SSH port.

    Raises:
        RecordNotFoundError: unknown server or credential
        CredentialDecryptError: the credential cannot be decrypted
        TunnelUnavailableError: a tunnel server has no forwarded ssh port yet
    """
    server = store.get_server(server_id)
    secret = ""
    if server.credential:
        secret = cipher.decrypt(store.get_secret(server.credential).value)

    config = ConnectorConfig(
        host=server.host,
        port=server.port or DEFAULT_SSH_PORT,
        user=server.user,
        auth_type=server.auth_type,
        secret=secret,
        shell=server.shell,
    )

    if server.is_tunnel:
        services = server.services()
        if not services and pool is not None:
            services = pool.services_for(server_id)
        ssh = next((svc for svc in services if svc.name == SSH_SERVICE and svc.tunnel_port), None)
        if ssh is None:
            raise TunnelUnavailableError(
                f"Server {server.name or server_id} has no tunnel ssh port",
                hint="Start the tunnel agent on the server first",
            )
        config.host = TUNNEL_HOST
        config.port = ssh.tunnel_port
    return config
