# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Explicitly wired application state shared by the HTTP handlers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from remotectl.audit import AuditLog
from remotectl.crypto import SecretCipher, load_cipher
from remotectl.host_config import HostConfig
from remotectl.paths import HostPaths
from remotectl.store import RecordStore
from remotectl.terminal.connector import Connector, HostKeyPolicy
from remotectl.terminal.docker_exec import DockerExecConnector
from remotectl.terminal.local import LocalConnector
from remotectl.terminal.remote_exec import run_power_action
from remotectl.terminal.session import TerminalSessionRegistry
from remotectl.terminal.sftp import SFTPService
from remotectl.terminal.ssh import SSHConnector
from remotectl.terminal.systemd import SystemdManager
from remotectl.tunnel.integration import (
    StoreSessionHooks,
    StoreTokenValidator,
    TunnelTokens,
    load_pool_history,
)
from remotectl.tunnel.portpool import PortPool
from remotectl.tunnel.registry import SessionRegistry
from remotectl.tunnel.server import ServiceSpec, TunnelBroker


@dataclass
class AppContext:
    config: HostConfig
    store: RecordStore
    cipher: SecretCipher
    audit: AuditLog
    pool: PortPool
    tunnel_sessions: SessionRegistry
    tunnel_tokens: TunnelTokens
    tunnel_hooks: StoreSessionHooks
    terminal_sessions: TerminalSessionRegistry
    ssh_connector: Connector
    docker_connector: Connector
    sftp: SFTPService
    local_connector: Connector
    systemd: SystemdManager
    broker: Optional[TunnelBroker] = None
    power_runner: Callable[..., Any] = run_power_action

    @property
    def tunnel_services(self) -> List[ServiceSpec]:
        return [ServiceSpec(s.name, s.local_port) for s in self.config.model.tunnel.services]


def build_context(
    config: HostConfig,
    store: Optional[RecordStore] = None,
    cipher: Optional[SecretCipher] = None,
    audit: Optional[AuditLog] = None,
    pool: Optional[PortPool] = None,
    ssh_connector: Optional[Connector] = None,
    docker_connector: Optional[Connector] = None,
    sftp: Optional[SFTPService] = None,
    local_connector: Optional[Connector] = None,
    systemd: Optional[SystemdManager] = None,
    with_broker: bool = True,
) -> AppContext:
    """Wire up every component from configuration. Any piece can be injected."""
    model = config.model
    data_dir = config.data_dir

    store = store or RecordStore(HostPaths.store_file(data_dir))
    cipher = cipher or load_cipher(model.security.secret_key, data_dir)
    audit = audit or AuditLog(HostPaths.audit_log_file(data_dir))
    if pool is None:
        pool = PortPool(model.tunnel.port_range.start, model.tunnel.port_range.end)
        pool.load_existing(load_pool_history(store))

    host_keys = HostKeyPolicy(
        known_hosts=list(model.terminal.known_hosts), required=model.terminal.require_host_key
    )
    tunnel_sessions = SessionRegistry()
    tokens = TunnelTokens(store, cipher)
    hooks = StoreSessionHooks(store, audit, tunnel_sessions)

    context = AppContext(
        config=config,
        store=store,
        cipher=cipher,
        audit=audit,
        pool=pool,
        tunnel_sessions=tunnel_sessions,
        tunnel_tokens=tokens,
        tunnel_hooks=hooks,
        terminal_sessions=TerminalSessionRegistry(),
        ssh_connector=ssh_connector or SSHConnector(host_keys),
        docker_connector=docker_connector or DockerExecConnector(),
        sftp=sftp
        or SFTPService(
            dial_timeout=model.terminal.dial_timeout,
            host_key_policy=host_keys,
            max_read_bytes=model.sftp.max_read_bytes,
            max_write_bytes=model.sftp.max_write_bytes,
            search_max_results=model.sftp.search_max_results,
            max_upload_bytes=model.sftp.max_upload_bytes,
        ),
        local_connector=local_connector or LocalConnector(model.terminal.local_shell),
        systemd=systemd
        or SystemdManager(dial_timeout=model.terminal.dial_timeout, host_key_policy=host_keys),
    )

    if with_broker and model.tunnel.enabled:
        context.broker = TunnelBroker(
            listen_host=model.tunnel.listen_host,
            listen_port=model.tunnel.listen_port,
            host_key_path=HostPaths.host_key_file(data_dir),
            validator=StoreTokenValidator(tokens),
            pool=pool,
            sessions=tunnel_sessions,
            hooks=hooks,
            services=context.tunnel_services,
            rate_limit=model.tunnel.rate_limit,
            max_pending=model.tunnel.max_pending,
            handshake_timeout=model.tunnel.handshake_timeout,
            keepalive_interval=model.tunnel.keepalive_interval,
            keepalive_count_max=model.tunnel.keepalive_count_max,
        )
    return context
