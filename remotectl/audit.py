# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Best-effort audit trail.

Entries are JSON lines on the ``remotectl.audit`` logger, optionally also
written to their own rotating file. Writing never raises.
"""

import json
import logging
import time
from dataclasses import asdict, dataclass, field
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"

AUDIT_LOGGER = "remotectl.audit"


@dataclass
class AuditEntry:
    action: str
    resource_type: str
    resource_id: str = ""
    resource_label: str = ""
    status: str = STATUS_SUCCESS
    details: Dict[str, Any] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)

    def to_json(self) -> str:
        return json.dumps(asdict(self), default=str, sort_keys=True)


class AuditLog:
    """Writes audit entries; keeps the last few in memory for inspection."""

    def __init__(self, path: Optional[Path] = None, keep: int = 200):
        self._logger = logging.getLogger(AUDIT_LOGGER)
        self._logger.setLevel(logging.INFO)
        self._keep = keep
        self.recent: List[AuditEntry] = []
        self._handler: Optional[logging.Handler] = None
        if path is not None:
            try:
                Path(path).parent.mkdir(parents=True, exist_ok=True)
                handler = RotatingFileHandler(
                    path, maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8"
                )
                handler.setFormatter(logging.Formatter("%(message)s"))
                self._logger.addHandler(handler)
                self._handler = handler
            except OSError as e:
                logger.warning(f"Audit file {path} unavailable: {e}")

    def write(self, entry: AuditEntry) -> None:
        try:
            line = entry.to_json()
            self._logger.info(line)
        except Exception as e:
            logger.error(f"Failed to write audit entry {entry.action}: {e}")
            return
        self.recent.append(entry)
        if len(self.recent) > self._keep:
            del self.recent[: len(self.recent) - self._keep]

    def close(self) -> None:
        if self._handler is not None:
            self._logger.removeHandler(self._handler)
            self._handler.close()
            self._handler = None

    def record(
        self,
        action: str,
        resource_type: str,
        resource_id: str = "",
        resource_label: str = "",
        status: str = STATUS_SUCCESS,
        **details: Any,
    ) -> AuditEntry:
        entry = AuditEntry(action, resource_type, resource_id, resource_label, status, details)
        self.write(entry)
        return entry
