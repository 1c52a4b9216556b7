# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""systemd service management over one-shot SSH commands.

Every operation runs ``systemctl``, ``journalctl`` or ``systemd-analyze``
through execute_command. Mutating commands try ``sudo -n`` first and fall
back to running as the login user.
"""

from __future__ import annotations

import base64
import logging
import re
import shlex
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Dict, List

from remotectl.errors import RemoteCommandError, SystemdError
from remotectl.terminal.connector import ConnectorConfig
from remotectl.terminal.remote_exec import execute_command

logger = logging.getLogger(__name__)

QUERY_TIMEOUT = 20.0
CHANGE_TIMEOUT = 25.0

LOG_LINES_DEFAULT = 200
LOG_LINES_MIN = 20
LOG_LINES_MAX = 1000

MAX_UNIT_CONTENT_BYTES = 64 * 1024

SERVICE_ACTIONS = ("start", "stop", "restart", "enable", "disable")

STATUS_PROPERTIES = (
    "Id",
    "Description",
    "LoadState",
    "ActiveState",
    "SubState",
    "UnitFileState",
    "MainPID",
    "ExecMainStatus",
    "ExecMainCode",
    "StateChangeTimestamp",
)

_SERVICE_NAME = re.compile(r"^[a-zA-Z0-9@._-]+(?:\.service)?$")

Runner = Callable[..., Awaitable[str]]


def normalize_service_name(name: str) -> str:
    """Validate a unit name and add the ``.service`` suffix when missing."""
    name = (name or "").strip()
    if not name or not _SERVICE_NAME.match(name):
        raise SystemdError(
            f"Invalid service name: {name!r}",
            hint="Use letters, digits and @ . _ - only",
        )
    if not name.endswith(".service"):
        name += ".service"
    return name


def clamp_log_lines(lines: Any) -> int:
    try:
        value = int(lines)
    except (TypeError, ValueError):
        return LOG_LINES_DEFAULT
    return max(LOG_LINES_MIN, min(LOG_LINES_MAX, value))


def _sudo(command: str) -> str:
    return f"(sudo -n {command} || {command})"


@dataclass
class ServiceUnit:
    name: str
    load_state: str
    active_state: str
    sub_state: str
    description: str

    def to_dict(self) -> dict:
        return asdict(self)


def parse_unit_list(raw: str, keyword: str = "") -> List[ServiceUnit]:
    """Parse ``systemctl list-units --no-legend`` output, filtered by keyword."""
    keyword = keyword.strip().lower()
    units: List[ServiceUnit] = []
    for line in raw.splitlines():
        parts = line.split()
        # systemctl marks failed units with a leading bullet
        if parts and parts[0] in ("●", "*"):
            parts = parts[1:]
        if len(parts) < 5:
            continue
        unit = ServiceUnit(parts[0], parts[1], parts[2], parts[3], " ".join(parts[4:]))
        if keyword and keyword not in unit.name.lower() and keyword not in unit.description.lower():
            continue
        units.append(unit)
    return units


def parse_properties(raw: str) -> Dict[str, str]:
    """Parse ``systemctl show`` key=value lines."""
    properties: Dict[str, str] = {}
    for line in raw.splitlines():
        key, sep, value = line.strip().partition("=")
        if sep and key:
            properties[key] = value
    return properties


class SystemdManager:
    """Runs systemd commands on a resolved server.

    ``runner`` has the signature of execute_command and raises
    RemoteCommandError for a non-zero exit.
    """

    def __init__(self, runner: Runner = execute_command, **runner_kwargs: Any):
        self._runner = runner
        self._runner_kwargs = runner_kwargs

    async def _run(self, config: ConnectorConfig, command: str, timeout: float) -> str:
        return await self._runner(config, command, timeout=timeout, **self._runner_kwargs)

    # Queries

    async def list_services(self, config: ConnectorConfig, keyword: str = "") -> List[ServiceUnit]:
        raw = await self._run(
            config,
            "systemctl list-units --type=service --all --no-legend --no-pager",
            QUERY_TIMEOUT,
        )
        return parse_unit_list(raw, keyword)

    async def status(self, config: ConnectorConfig, service: str) -> Dict[str, Any]:
        service = normalize_service_name(service)
        raw = await self._run(
            config,
            f"systemctl show {service} --no-pager --property={','.join(STATUS_PROPERTIES)}",
            QUERY_TIMEOUT,
        )
        # systemctl status exits non-zero for inactive units; keep what it printed
        try:
            status_text = await self._run(
                config, f"systemctl status {service} --no-pager --full --lines=40", QUERY_TIMEOUT
            )
        except RemoteCommandError as e:
            status_text = e.output
            logger.debug(f"systemctl status {service}: {e}")
        return {"service": service, "status": parse_properties(raw), "status_text": status_text}

    async def logs(
        self, config: ConnectorConfig, service: str, lines: Any = LOG_LINES_DEFAULT
    ) -> Dict[str, Any]:
        service = normalize_service_name(service)
        count = clamp_log_lines(lines)
        raw = await self._run(
            config,
            f"journalctl -u {service} -n {count} --no-pager --output=short-iso",
            CHANGE_TIMEOUT,
        )
        entries = [line for line in raw.splitlines() if line.strip()]
        return {"service": service, "lines": count, "entries": entries, "raw": raw}

    async def content(self, config: ConnectorConfig, service: str) -> str:
        service = normalize_service_name(service)
        return await self._run(config, f"systemctl cat {service} --no-pager", QUERY_TIMEOUT)

    # Changes

    async def action(self, config: ConnectorConfig, service: str, action: str) -> str:
        service = normalize_service_name(service)
        action = (action or "").strip().lower()
        if action not in SERVICE_ACTIONS:
            raise SystemdError(f"Action must be one of: {', '.join(SERVICE_ACTIONS)}")
        logger.info(f"systemctl {action} {service} on {config.address}")
        return await self._run(config, _sudo(f"systemctl {action} {service}"), CHANGE_TIMEOUT)

    # Unit files

    async def unit_path(self, config: ConnectorConfig, service: str) -> str:
        service = normalize_service_name(service)
        raw = await self._run(
            config,
            f"systemctl show {service} --property=FragmentPath --value --no-pager",
            QUERY_TIMEOUT,
        )
        path = raw.strip()
        if not path or path == "/dev/null":
            raise SystemdError(f"Unit file not found for {service}")
        return path

    async def read_unit(self, config: ConnectorConfig, service: str) -> Dict[str, str]:
        path = await self.unit_path(config, service)
        content = await self._run(config, f"cat {shlex.quote(path)}", QUERY_TIMEOUT)
        return {"path": path, "content": content}

    async def write_unit(
        self, config: ConnectorConfig, service: str, content: str
    ) -> Dict[str, str]:
        if not content.strip():
            raise SystemdError("Unit content is required")
        if len(content.encode("utf-8")) > MAX_UNIT_CONTENT_BYTES:
            raise SystemdError(f"Unit content too large (max {MAX_UNIT_CONTENT_BYTES // 1024}KB)")
        path = await self.unit_path(config, service)
        encoded = base64.b64encode(content.encode("utf-8")).decode("ascii")
        target = shlex.quote(path)
        command = (
            f"printf '%s' '{encoded}' | base64 -d | "
            f"(sudo -n tee {target} >/dev/null || tee {target} >/dev/null)"
        )
        output = await self._run(config, command, CHANGE_TIMEOUT)
        logger.info(f"Wrote unit file {path} on {config.address}")
        return {"path": path, "output": output}

    async def verify_unit(self, config: ConnectorConfig, service: str) -> Dict[str, str]:
        """Run systemd-analyze verify. A failing verify raises RemoteCommandError."""
        path = await self.unit_path(config, service)
        output = await self._run(
            config, _sudo(f"systemd-analyze verify {shlex.quote(path)}"), CHANGE_TIMEOUT
        )
        return {"path": path, "verify_output": output}

    async def apply_unit(self, config: ConnectorConfig, service: str) -> Dict[str, str]:
        """daemon-reload, then restart the service if it is running."""
        service = normalize_service_name(service)
        reload_output = await self._run(config, _sudo("systemctl daemon-reload"), QUERY_TIMEOUT)
        apply_output = await self._run(
            config, _sudo(f"systemctl try-restart {service}"), CHANGE_TIMEOUT
        )
        return {"reload_output": reload_output, "apply_output": apply_output}
