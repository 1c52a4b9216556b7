# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Shared fixtures: in-memory records, a throwaway key, audit log and a scripted command runner."""

import pytest

from remotectl.audit import AuditLog
from remotectl.crypto import SecretCipher, generate_key
from remotectl.store import CONNECT_TUNNEL, RecordStore, SecretRecord, ServerRecord


@pytest.fixture
def cipher():
    return SecretCipher(generate_key())


@pytest.fixture
def store():
    return RecordStore()


@pytest.fixture
def audit():
    log = AuditLog()
    yield log
    log.close()


@pytest.fixture
def direct_server(store, cipher):
    """A password server reached directly at 10.0.0.5:2200."""
    secret = store.save_secret(SecretRecord(name="web-pw", value=cipher.encrypt("hunter2")))
    return store.save_server(
        ServerRecord(
            id="direct1",
            name="web",
            host="10.0.0.5",
            port=2200,
            user="deploy",
            credential=secret.id,
        )
    )


@pytest.fixture
def tunnel_server(store, cipher):
    """A tunnel server with no forwarded ports yet."""
    secret = store.save_secret(SecretRecord(name="edge-pw", value=cipher.encrypt("s3cret")))
    return store.save_server(
        ServerRecord(
            id="tunnel1",
            name="edge",
            user="root",
            credential=secret.id,
            connect_type=CONNECT_TUNNEL,
        )
    )


class ScriptedRunner:
    """Replaces execute_command: replies by command prefix, records every call."""

    def __init__(self):
        self.replies = {}
        self.calls = []

    async def __call__(self, config, command, timeout=20.0, **kwargs):
        self.calls.append((config, command, timeout))
        for prefix, reply in self.replies.items():
            if command.startswith(prefix):
                if isinstance(reply, Exception):
                    raise reply
                return reply
        return ""

    @property
    def commands(self):
        return [command for _, command, _ in self.calls]


@pytest.fixture
def runner():
    return ScriptedRunner()
