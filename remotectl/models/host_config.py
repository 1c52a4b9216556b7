# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Pydantic model for ~/.config/remotectl/config.yml."""

from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class WebServerConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8090
    log_level: str = "info"


class PortRangeConfig(BaseModel):
    """Forwarded-port range, end exclusive."""

    start: int = 40000
    end: int = 50000

    @model_validator(mode="after")
    def _check_bounds(self) -> "PortRangeConfig":
        if not (0 < self.start < self.end <= 65536):
            raise ValueError(f"invalid port range {self.start}-{self.end}")
        return self


class TunnelServiceConfig(BaseModel):
    """A service the agent forwards, in -R order."""

    name: str
    local_port: int


class TunnelConfig(BaseModel):
    enabled: bool = True
    listen_host: str = "0.0.0.0"
    listen_port: int = 2222
    # Address agents dial; shown in setup commands
    public_host: Optional[str] = None
    public_port: Optional[int] = None
    port_range: PortRangeConfig = Field(default_factory=PortRangeConfig)
    rate_limit: float = 10.0
    max_pending: int = 50
    handshake_timeout: float = 15.0
    keepalive_interval: float = 30.0
    keepalive_count_max: int = 2
    services: List[TunnelServiceConfig] = Field(
        default_factory=lambda: [
            TunnelServiceConfig(name="ssh", local_port=22),
            TunnelServiceConfig(name="http", local_port=80),
        ]
    )


class TerminalConfig(BaseModel):
    idle_timeout: float = 1800.0
    chunk_size: int = 4096
    dial_timeout: float = 10.0
    known_hosts: List[str] = Field(default_factory=list)
    require_host_key: bool = False
    docker_shells: List[str] = Field(default_factory=lambda: ["/bin/sh", "/bin/bash", "/bin/zsh"])
    local_enabled: bool = True
    local_shell: str = "/bin/bash"

    @field_validator("chunk_size")
    @classmethod
    def _positive_chunk(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("chunk_size must be positive")
        return v


class SFTPConfig(BaseModel):
    max_read_bytes: int = 2 * 1024 * 1024
    max_write_bytes: int = 2 * 1024 * 1024
    search_max_results: int = 500
    max_upload_bytes: int = 50 * 1024 * 1024
    max_upload_files: int = 10


class PathsConfig(BaseModel):
    data_dir: Optional[str] = None


class SecurityConfig(BaseModel):
    # Fernet key; REMOTECTL_SECRET_KEY takes precedence
    secret_key: Optional[str] = None


class HostConfigModel(BaseModel):
    """Root of the host configuration file."""

    web_server: WebServerConfig = Field(default_factory=WebServerConfig)
    tunnel: TunnelConfig = Field(default_factory=TunnelConfig)
    terminal: TerminalConfig = Field(default_factory=TerminalConfig)
    sftp: SFTPConfig = Field(default_factory=SFTPConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
