# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Record-store backed token validation, lifecycle hooks and agent setup."""

from __future__ import annotations

import time
from typing import List, Optional, Sequence, Tuple

from remotectl.audit import STATUS_SUCCESS, AuditLog
from remotectl.crypto import SecretCipher
from remotectl.errors import CredentialDecryptError, RecordNotFoundError
from remotectl.store import TUNNEL_OFFLINE, TUNNEL_ONLINE, RecordStore, SecretRecord
from remotectl.tunnel.portpool import ConflictResolution, Service
from remotectl.tunnel.registry import SessionRegistry
from remotectl.tunnel.server import ServiceSpec
from remotectl.tunnel.token import (
    TOKEN_SECRET_TYPE,
    generate_token,
    server_id_from_secret_name,
    token_secret_name,
    tokens_match,
)
from remotectl.utils.logging import get_daemon_logger

logger = get_daemon_logger("tunnel.integration")

UNIT_NAME = "remotectl-tunnel"


class TunnelTokens:
    """Per-server tunnel tokens, stored encrypted as secret records."""

    def __init__(self, store: RecordStore, cipher: SecretCipher):
        self.store = store
        self.cipher = cipher

    def _record(self, server_id: str) -> Optional[SecretRecord]:
        matches = self.store.find_secrets(type=TOKEN_SECRET_TYPE, name=token_secret_name(server_id))
        return matches[0] if matches else None

    def get(self, server_id: str) -> Optional[str]:
        record = self._record(server_id)
        if record is None:
            return None
        return self.cipher.decrypt(record.value)

    def get_or_create(self, server_id: str) -> Tuple[str, bool]:
        """Return (token, created)."""
        record = self._record(server_id)
        if record is not None:
            try:
                return self.cipher.decrypt(record.value), False
            except CredentialDecryptError:
                logger.warning(f"Stored tunnel token for {server_id} is unreadable, rotating")
        return self.rotate(server_id), True

    def rotate(self, server_id: str) -> str:
        token = generate_token()
        record = self._record(server_id) or SecretRecord(
            name=token_secret_name(server_id), type=TOKEN_SECRET_TYPE
        )
        record.value = self.cipher.encrypt(token)
        self.store.save_secret(record)
        return token

    def lookup(self, token: str) -> Optional[str]:
        """Find the server a token belongs to.

        Decrypts every stored token; linear in the number of tunnel servers.
        """
        if not token:
            return None
        for record in self.store.find_secrets(type=TOKEN_SECRET_TYPE):
            server_id = server_id_from_secret_name(record.name)
            if not server_id:
                continue
            try:
                stored = self.cipher.decrypt(record.value)
            except CredentialDecryptError:
                logger.debug(f"Skipping unreadable token record {record.id}")
                continue
            if tokens_match(token, stored):
                return server_id
        return None


class StoreTokenValidator:
    """TokenValidator accepting tokens of existing tunnel-type servers."""

    def __init__(self, tokens: TunnelTokens):
        self.tokens = tokens

    def validate(self, token: str) -> Optional[str]:
        server_id = self.tokens.lookup(token)
        if server_id is None:
            return None
        try:
            server = self.tokens.store.get_server(server_id)
        except RecordNotFoundError:
            return None
        return server_id if server.is_tunnel else None


class StoreSessionHooks:
    """Persists tunnel status and writes audit entries."""

    def __init__(self, store: RecordStore, audit: AuditLog, sessions: SessionRegistry):
        self.store = store
        self.audit = audit
        self.sessions = sessions

    def on_connect(
        self, server_id: str, services: List[Service], conflicts: List[ConflictResolution]
    ) -> None:
        label = self._update(server_id, TUNNEL_ONLINE, services)
        for conflict in conflicts:
            self.audit.record(
                "tunnel.port_conflict_resolved",
                "server",
                server_id,
                label,
                STATUS_SUCCESS,
                **conflict.to_dict(),
            )
        self.audit.record(
            "tunnel.connect",
            "server",
            server_id,
            label,
            STATUS_SUCCESS,
            services=[svc.to_dict() for svc in services],
        )

    def on_disconnect(self, server_id: str) -> None:
        if self.sessions.get(server_id) is not None:
            # A newer session owns the slot
            return
        label = self._update(server_id, TUNNEL_OFFLINE)
        self.audit.record("tunnel.disconnect", "server", server_id, label, STATUS_SUCCESS)

    def _update(
        self, server_id: str, status: str, services: Optional[Sequence[Service]] = None
    ) -> str:
        try:
            server = self.store.get_server(server_id)
        except RecordNotFoundError:
            logger.warning(f"Tunnel status update for unknown server {server_id}")
            return ""
        server.tunnel_status = status
        server.tunnel_last_seen = time.time()
        if services is not None:
            server.tunnel_services = [svc.to_dict() for svc in services]
        self.store.save_server(server)
        return server.name


def load_pool_history(store: RecordStore) -> dict:
    """Persisted services of every tunnel server, for PortPool.load_existing."""
    return {
        server.id: server.services()
        for server in store.find_servers(connect_type="tunnel")
        if server.tunnel_services
    }


# Agent setup material


def _ssh_args(token: str, host: str, port: int, services: Sequence[ServiceSpec]) -> List[str]:
    args = ["-M", "0", "-N"]
    for spec in services:
        args += ["-R", f"0:localhost:{spec.local_port}"]
    args += [
        "-p",
        str(port),
        f"{token}@{host}",
        "-o",
        "ServerAliveInterval=30",
        "-o",
        "ServerAliveCountMax=3",
        "-o",
        "ExitOnForwardFailure=yes",
        "-o",
        "StrictHostKeyChecking=accept-new",
    ]
    return args


def autossh_command(token: str, host: str, port: int, services: Sequence[ServiceSpec]) -> str:
    return "autossh " + " ".join(_ssh_args(token, host, port, services))


def systemd_unit(token: str, host: str, port: int, services: Sequence[ServiceSpec]) -> str:
    return f"""[Unit]
Description=remotectl reverse tunnel
After=network-online.target
Wants=network-online.target

[Service]
Environment=AUTOSSH_GATETIME=0
ExecStart=/usr/bin/autossh {" ".join(_ssh_args(token, host, port, services))}
Restart=always
RestartSec=5

[Install]
WantedBy=multi-user.target
"""


def setup_script(token: str, host: str, port: int, services: Sequence[ServiceSpec]) -> str:
    """Shell script that installs autossh and the tunnel unit on the agent."""
    autossh_args = " ".join(_ssh_args(token, host, port, services))
    # plain ssh has no -M option
    ssh_args = " ".join(_ssh_args(token, host, port, services)[2:])
    return f"""#!/bin/sh
set -e

if [ "$(id -u)" -ne 0 ]; then
  echo "Run as root" >&2
  exit 1
fi

if ! command -v autossh >/dev/null 2>&1; then
  echo "Installing autossh..."
  if command -v apt-get >/dev/null 2>&1; then apt-get install -y autossh || true
  elif command -v dnf >/dev/null 2>&1; then dnf install -y autossh || true
  elif command -v yum >/dev/null 2>&1; then yum install -y autossh || true
  elif command -v apk >/dev/null 2>&1; then apk add autossh || true
  fi
fi

if command -v autossh >/dev/null 2>&1; then
  EXEC_START="$(command -v autossh) {autossh_args}"
else
  echo "autossh unavailable, falling back to ssh" >&2
  EXEC_START="$(command -v ssh) {ssh_args}"
fi

cat > /etc/systemd/system/{UNIT_NAME}.service <<EOF
[Unit]
Description=remotectl reverse tunnel
After=network-online.target
Wants=network-online.target

[Service]
Environment=AUTOSSH_GATETIME=0
ExecStart=$EXEC_START
Restart=always
RestartSec=5

[Install]
WantedBy=multi-user.target
EOF

systemctl daemon-reload
systemctl enable --now {UNIT_NAME}
echo "{UNIT_NAME} enabled. Check with: systemctl status {UNIT_NAME}"
"""
