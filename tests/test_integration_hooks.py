# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Tests for store-backed tokens, validation and lifecycle hooks."""

from unittest.mock import Mock

from remotectl.crypto import SecretCipher, generate_key
from remotectl.store import TUNNEL_OFFLINE, TUNNEL_ONLINE
from remotectl.tunnel.integration import (
    StoreSessionHooks,
    StoreTokenValidator,
    TunnelTokens,
    autossh_command,
    load_pool_history,
    setup_script,
    systemd_unit,
)
from remotectl.tunnel.portpool import ConflictResolution, Service
from remotectl.tunnel.registry import SessionRegistry, TunnelSession
from remotectl.tunnel.server import ServiceSpec


class TestTunnelTokens:
    def test_get_or_create_is_stable(self, store, cipher, tunnel_server):
        tokens = TunnelTokens(store, cipher)

        token, created = tokens.get_or_create(tunnel_server.id)
        again, created_again = tokens.get_or_create(tunnel_server.id)

        assert created is True
        assert created_again is False
        assert token == again
        assert tokens.get(tunnel_server.id) == token

    def test_token_is_stored_encrypted(self, store, cipher, tunnel_server):
        token, _ = TunnelTokens(store, cipher).get_or_create(tunnel_server.id)

        [record] = store.find_secrets(type="tunnel_token")
        assert token not in record.value
        assert cipher.decrypt(record.value) == token

    def test_rotate_replaces_token(self, store, cipher, tunnel_server):
        tokens = TunnelTokens(store, cipher)
        old, _ = tokens.get_or_create(tunnel_server.id)

        new = tokens.rotate(tunnel_server.id)

        assert new != old
        assert tokens.lookup(old) is None
        assert tokens.lookup(new) == tunnel_server.id
        assert store.count_secrets(type="tunnel_token") == 1

    def test_unreadable_token_is_replaced(self, store, cipher, tunnel_server):
        TunnelTokens(store, SecretCipher(generate_key())).get_or_create(tunnel_server.id)

        token, created = TunnelTokens(store, cipher).get_or_create(tunnel_server.id)
        assert created is True
        assert TunnelTokens(store, cipher).lookup(token) == tunnel_server.id

    def test_lookup_unknown(self, store, cipher):
        tokens = TunnelTokens(store, cipher)
        assert tokens.lookup("") is None
        assert tokens.lookup("NOPE") is None


class TestStoreTokenValidator:
    def test_accepts_tunnel_server_token(self, store, cipher, tunnel_server):
        tokens = TunnelTokens(store, cipher)
        token, _ = tokens.get_or_create(tunnel_server.id)

        assert StoreTokenValidator(tokens).validate(token) == tunnel_server.id

    def test_rejects_deleted_server(self, store, cipher, tunnel_server):
        tokens = TunnelTokens(store, cipher)
        token, _ = tokens.get_or_create(tunnel_server.id)
        store.delete_server(tunnel_server.id)

        assert StoreTokenValidator(tokens).validate(token) is None

    def test_rejects_direct_server(self, store, cipher, direct_server):
        tokens = TunnelTokens(store, cipher)
        token, _ = tokens.get_or_create(direct_server.id)

        assert StoreTokenValidator(tokens).validate(token) is None


class TestStoreSessionHooks:
    def test_connect_persists_status_and_audits(self, store, audit, tunnel_server):
        hooks = StoreSessionHooks(store, audit, SessionRegistry())
        services = [Service("ssh", 40002, 22)]

        hooks.on_connect(tunnel_server.id, services, [ConflictResolution("ssh", 40000, 40002)])

        record = store.get_server(tunnel_server.id)
        assert record.tunnel_status == TUNNEL_ONLINE
        assert record.tunnel_last_seen is not None
        assert record.services() == services
        actions = [entry.action for entry in audit.recent]
        assert actions == ["tunnel.port_conflict_resolved", "tunnel.connect"]
        assert audit.recent[0].details == {
            "service_name": "ssh",
            "old_port": 40000,
            "new_port": 40002,
        }

    def test_disconnect_marks_offline(self, store, audit, tunnel_server):
        hooks = StoreSessionHooks(store, audit, SessionRegistry())
        hooks.on_connect(tunnel_server.id, [Service("ssh", 40000, 22)], [])

        hooks.on_disconnect(tunnel_server.id)

        record = store.get_server(tunnel_server.id)
        assert record.tunnel_status == TUNNEL_OFFLINE
        # Ports are kept for the next connect
        assert record.services() == [Service("ssh", 40000, 22)]
        assert audit.recent[-1].action == "tunnel.disconnect"

    def test_disconnect_skipped_while_newer_session_is_live(self, store, audit, tunnel_server):
        sessions = SessionRegistry()
        hooks = StoreSessionHooks(store, audit, sessions)
        hooks.on_connect(tunnel_server.id, [Service("ssh", 40000, 22)], [])
        sessions.register(tunnel_server.id, TunnelSession(tunnel_server.id, Mock()))

        hooks.on_disconnect(tunnel_server.id)

        assert store.get_server(tunnel_server.id).tunnel_status == TUNNEL_ONLINE
        assert audit.recent[-1].action == "tunnel.connect"

    def test_unknown_server_is_ignored(self, store, audit):
        hooks = StoreSessionHooks(store, audit, SessionRegistry())
        hooks.on_disconnect("ghost")
        assert audit.recent[-1].resource_label == ""

    def test_pool_history(self, store, audit, tunnel_server, direct_server):
        StoreSessionHooks(store, audit, SessionRegistry()).on_connect(
            tunnel_server.id, [Service("ssh", 40004, 22)], []
        )
        assert load_pool_history(store) == {tunnel_server.id: [Service("ssh", 40004, 22)]}


class TestSetupMaterial:
    SERVICES = [ServiceSpec("ssh", 22), ServiceSpec("http", 80)]

    def test_autossh_command(self):
        cmd = autossh_command("TOKEN", "broker.example.com", 2222, self.SERVICES)

        assert cmd.startswith("autossh -M 0 -N -R 0:localhost:22 -R 0:localhost:80 ")
        assert "-p 2222 TOKEN@broker.example.com" in cmd
        assert "ExitOnForwardFailure=yes" in cmd

    def test_systemd_unit(self):
        unit = systemd_unit("TOKEN", "broker.example.com", 2222, self.SERVICES)
        assert "ExecStart=/usr/bin/autossh -M 0 -N" in unit
        assert "Restart=always" in unit

    def test_setup_script_has_ssh_fallback(self):
        script = setup_script("TOKEN", "broker.example.com", 2222, self.SERVICES)

        assert script.startswith("#!/bin/sh")
        assert "systemctl enable --now remotectl-tunnel" in script
        assert '$(command -v ssh) -N -R 0:localhost:22' in script
