# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Server and secret records.

A small keyed store, persisted as YAML when given a path and kept in memory
otherwise. Secret values are stored encrypted (see remotectl.crypto).
"""

import logging
import threading
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from remotectl.errors import RecordNotFoundError
from remotectl.tunnel.portpool import Service

logger = logging.getLogger(__name__)

CONNECT_DIRECT = "direct"
CONNECT_TUNNEL = "tunnel"

TUNNEL_ONLINE = "online"
TUNNEL_OFFLINE = "offline"


def _new_id() -> str:
    return uuid.uuid4().hex[:15]


class ServerRecord(BaseModel):
    id: str = Field(default_factory=_new_id)
    name: str = ""
    host: str = ""
    port: int = 22
    user: str = ""
    auth_type: str = "password"
    credential: str = ""  # SecretRecord id
    shell: str = ""
    connect_type: str = CONNECT_DIRECT
    tunnel_status: str = TUNNEL_OFFLINE
    tunnel_last_seen: Optional[float] = None
    tunnel_services: List[Dict[str, Any]] = Field(default_factory=list)

    @property
    def is_tunnel(self) -> bool:
        return self.connect_type == CONNECT_TUNNEL

    def services(self) -> List[Service]:
        return [Service.from_dict(item) for item in self.tunnel_services]


class SecretRecord(BaseModel):
    id: str = Field(default_factory=_new_id)
    name: str = ""
    type: str = "password"
    value: str = ""  # encrypted


def _matches(record: BaseModel, filters: Dict[str, Any]) -> bool:
    return all(getattr(record, key, None) == value for key, value in filters.items())


class RecordStore:
    """Keyed CRUD for servers and secrets."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else None
        self._lock = threading.Lock()
        self._servers: Dict[str, ServerRecord] = {}
        self._secrets: Dict[str, SecretRecord] = {}
        if self.path and self.path.exists():
            self._load()

    def _load(self) -> None:
        try:
            with open(self.path) as f:
                raw = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Failed to load records from {self.path}: {e}")
            return

        for kind, model, target in (
            ("servers", ServerRecord, self._servers),
            ("secrets", SecretRecord, self._secrets),
        ):
            for item in raw.get(kind) or []:
                try:
                    record = model.model_validate(item)
                except ValidationError as e:
                    logger.warning(f"Skipping invalid {kind} record: {e}")
                    continue
                target[record.id] = record

    def _flush(self) -> None:
        # Caller holds the lock
        if self.path is None:
            return
        data = {
            "servers": [r.model_dump() for r in self._servers.values()],
            "secrets": [r.model_dump() for r in self._secrets.values()],
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        with open(tmp, "w") as f:
            yaml.safe_dump(data, f, sort_keys=False)
        tmp.replace(self.path)

    # Servers

    def get_server(self, server_id: str) -> ServerRecord:
        with self._lock:
            record = self._servers.get(server_id)
            if record is None:
                raise RecordNotFoundError("server", server_id)
            return record.model_copy(deep=True)

    def save_server(self, record: ServerRecord) -> ServerRecord:
        with self._lock:
            self._servers[record.id] = record.model_copy(deep=True)
            self._flush()
        return record

    def find_servers(self, **filters: Any) -> List[ServerRecord]:
        with self._lock:
            return [r.model_copy(deep=True) for r in self._servers.values() if _matches(r, filters)]

    def count_servers(self, **filters: Any) -> int:
        return len(self.find_servers(**filters))

    def delete_server(self, server_id: str) -> None:
        with self._lock:
            if self._servers.pop(server_id, None) is None:
                raise RecordNotFoundError("server", server_id)
            self._flush()

    # Secrets

    def get_secret(self, secret_id: str) -> SecretRecord:
        with self._lock:
            record = self._secrets.get(secret_id)
            if record is None:
                raise RecordNotFoundError("secret", secret_id)
            return record.model_copy(deep=True)

    def save_secret(self, record: SecretRecord) -> SecretRecord:
        with self._lock:
            self._secrets[record.id] = record.model_copy(deep=True)
            self._flush()
        return record

    def find_secrets(self, **filters: Any) -> List[SecretRecord]:
        with self._lock:
            return [r.model_copy(deep=True) for r in self._secrets.values() if _matches(r, filters)]

    def count_secrets(self, **filters: Any) -> int:
        return len(self.find_secrets(**filters))
