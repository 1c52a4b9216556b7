# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Host-side configuration for the remotectl daemon."""

import logging
import os
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml
from pydantic import ValidationError

from remotectl.models.host_config import HostConfigModel
from remotectl.paths import HostPaths

logger = logging.getLogger(__name__)


def _deep_merge(base: dict, override: dict) -> dict:
    """Deep merge override into base."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _env_int(env: Mapping[str, str], *names: str) -> Optional[int]:
    for name in names:
        raw = env.get(name, "").strip()
        if not raw:
            continue
        try:
            return int(raw)
        except ValueError:
            logger.warning(f"Ignoring non-numeric {name}={raw!r}")
    return None


class HostConfig:
    """Configuration loaded from ~/.config/remotectl/config.yml.

    Invalid sections fall back to their defaults with a warning, so one typo
    does not take the whole daemon down. Environment overrides are applied
    last.
    """

    def __init__(self, path: Optional[Path] = None, env: Optional[Mapping[str, str]] = None):
        self.config_path = Path(path) if path else HostPaths.config_file()
        self._env = os.environ if env is None else env
        self.model = self._load()
        self._apply_env()

    def _load(self) -> HostConfigModel:
        if not self.config_path.exists():
            return HostConfigModel()

        try:
            with open(self.config_path) as f:
                raw_config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Failed to load config from {self.config_path}: {e}")
            return HostConfigModel()

        if not isinstance(raw_config, dict):
            logger.warning(f"Ignoring {self.config_path}: top level must be a mapping")
            return HostConfigModel()

        try:
            return HostConfigModel.model_validate(raw_config)
        except ValidationError as e:
            logger.warning(f"Config validation errors: {e}")

        # Keep every section that validates on its own
        merged = HostConfigModel().model_dump()
        for section, value in raw_config.items():
            if section not in merged or not isinstance(value, dict):
                continue
            candidate = _deep_merge(merged, {section: value})
            try:
                HostConfigModel.model_validate(candidate)
            except ValidationError:
                logger.warning(f"Using defaults for config section '{section}'")
                continue
            merged = candidate
        return HostConfigModel.model_validate(merged)

    def _apply_env(self) -> None:
        tunnel = self.model.tunnel
        port = _env_int(self._env, "REMOTECTL_TUNNEL_PORT", "TUNNEL_SSH_PORT")
        if port:
            tunnel.listen_port = port
        public_host = self._env.get("REMOTECTL_TUNNEL_PUBLIC_HOST")
        if public_host:
            tunnel.public_host = public_host
        data_dir = self._env.get("REMOTECTL_DATA_DIR")
        if data_dir:
            self.model.paths.data_dir = data_dir

    @property
    def data_dir(self) -> Path:
        return HostPaths.data_dir(self.model.paths.data_dir)

    @property
    def tunnel_public_port(self) -> int:
        """Port agents dial; defaults to the listen port."""
        return self.model.tunnel.public_port or self.model.tunnel.listen_port

    def get(self, *keys, default=None) -> Any:
        """Get nested config value.

        Example: config.get("tunnel", "port_range", "start")
        """
        value: Any = self.model
        for key in keys:
            if hasattr(value, key):
                value = getattr(value, key)
            elif isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default
        if hasattr(value, "model_dump"):
            return value.model_dump()
        return value
