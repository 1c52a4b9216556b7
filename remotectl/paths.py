# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Centralized path definitions for remotectl.

Usage:
    from remotectl.paths import HostPaths

    config_file = HostPaths.config_file()
    host_key = HostPaths.host_key_file()
"""

import os
from pathlib import Path
from typing import Optional


class HostPaths:
    """Paths on the management host where the remotectl daemon runs."""

    # XDG config directory
    @staticmethod
    def config_dir() -> Path:
        """~/.config/remotectl/"""
        return Path.home() / ".config" / "remotectl"

    @staticmethod
    def config_file() -> Path:
        """~/.config/remotectl/config.yml"""
        return HostPaths.config_dir() / "config.yml"

    # XDG data directory
    @staticmethod
    def data_dir(override: Optional[str] = None) -> Path:
        """~/.local/share/remotectl/ (REMOTECTL_DATA_DIR or override wins)."""
        if override:
            return Path(override).expanduser()
        env_dir = os.getenv("REMOTECTL_DATA_DIR")
        if env_dir:
            return Path(env_dir).expanduser()
        return Path.home() / ".local" / "share" / "remotectl"

    @staticmethod
    def host_key_file(data_dir: Optional[Path] = None) -> Path:
        """Persisted ed25519 host key of the tunnel broker."""
        return (data_dir or HostPaths.data_dir()) / "tunnel_host_key"

    @staticmethod
    def secret_key_file(data_dir: Optional[Path] = None) -> Path:
        """Fernet key used to decrypt stored credentials."""
        return (data_dir or HostPaths.data_dir()) / "secret.key"

    @staticmethod
    def store_file(data_dir: Optional[Path] = None) -> Path:
        """YAML file holding server and secret records."""
        return (data_dir or HostPaths.data_dir()) / "records.yml"

    @staticmethod
    def log_dir(data_dir: Optional[Path] = None) -> Path:
        return (data_dir or HostPaths.data_dir()) / "logs"

    @staticmethod
    def audit_log_file(data_dir: Optional[Path] = None) -> Path:
        return HostPaths.log_dir(data_dir) / "audit.log"
