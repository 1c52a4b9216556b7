# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Connector interface and connection settings.

A Connector turns a ConnectorConfig into a live Session. Variants:
SSHConnector (remotectl.terminal.ssh), DockerExecConnector
(remotectl.terminal.docker_exec) and LocalConnector
(remotectl.terminal.local). A container on a remote host is reached with
an SSHConnector whose shell runs ``docker exec`` (container_exec_config).
"""

from __future__ import annotations

import re
import shlex
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import List, Optional, Sequence

from remotectl.terminal.session import Session

DEFAULT_SSH_PORT = 22
DEFAULT_DIAL_TIMEOUT = 10.0
TERM_TYPE = "xterm-256color"
DEFAULT_ROWS = 24
DEFAULT_COLS = 80

AUTH_PASSWORD = "password"
AUTH_PRIVATE_KEY = "private_key"
AUTH_KEY = "key"
SUPPORTED_AUTH_TYPES = (AUTH_PASSWORD, AUTH_PRIVATE_KEY, AUTH_KEY)

DEFAULT_DOCKER_SHELL = "/bin/sh"
ALLOWED_DOCKER_SHELLS = ("/bin/sh", "/bin/bash", "/bin/zsh")
CONTAINER_ID_RE = re.compile(r"^[a-zA-Z0-9_.-]+$")


@dataclass
class ConnectorConfig:
    """Resolved connection settings for one request. Never persisted."""

    host: str
    port: int = DEFAULT_SSH_PORT
    user: str = ""
    auth_type: str = AUTH_PASSWORD
    secret: str = field(default="", repr=False)
    shell: str = ""

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass
class HostKeyPolicy:
    """Host key verification for outgoing SSH connections.

    With no known_hosts files, verification is skipped unless ``required``.
    """

    known_hosts: List[str] = field(default_factory=list)
    required: bool = False

    def existing_files(self) -> List[str]:
        return [p for p in (str(Path(k).expanduser()) for k in self.known_hosts) if Path(p).exists()]


class Connector(ABC):
    """Opens interactive sessions."""

    kind: str = ""

    @abstractmethod
    async def connect(
        self, config: ConnectorConfig, timeout: float = DEFAULT_DIAL_TIMEOUT
    ) -> Session: ...


def validate_container_id(container: str) -> str:
    if not container or not CONTAINER_ID_RE.match(container):
        raise ValueError(f"Invalid container id: {container!r}")
    return container


def validate_docker_shell(shell: Optional[str], allowed: Sequence[str] = ALLOWED_DOCKER_SHELLS) -> str:
    shell = shell or DEFAULT_DOCKER_SHELL
    if shell not in allowed:
        raise ValueError(f"Shell not allowed: {shell!r}")
    return shell


def container_exec_config(
    base: ConnectorConfig,
    container: str,
    shell: Optional[str] = None,
    allowed_shells: Sequence[str] = ALLOWED_DOCKER_SHELLS,
) -> ConnectorConfig:
    """SSH settings that land in ``container`` on the remote host."""
    container = validate_container_id(container)
    shell = validate_docker_shell(shell, allowed_shells)
    command = f"docker exec -it {shlex.quote(container)} {shlex.quote(shell)}"
    return replace(base, shell=command)
