# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""HTTP and WebSocket API tests with fake connectors and SFTP."""

import asyncio
import json
from unittest.mock import AsyncMock, Mock

import pytest
from fastapi import WebSocketDisconnect
from fastapi.testclient import TestClient

from remotectl.errors import (
    FileTooLargeError,
    HostUnreachableError,
    RemoteCommandError,
    SFTPOperationError,
)
from remotectl.host_config import HostConfig
from remotectl.terminal.remote_exec import run_power_action
from remotectl.terminal.session import Session
from remotectl.terminal.sftp import FileEntry, SFTPService
from remotectl.terminal.systemd import SystemdManager
from remotectl.tunnel.portpool import PortPool, Service
from remotectl.tunnel.registry import TunnelSession
from remotectl.web.app import create_app, status_for
from remotectl.web.context import build_context


class EchoSession(Session):
    """Echoes input; "exit\n" ends the shell."""

    def __init__(self):
        self.output = asyncio.Queue()

    async def read(self, n):
        return await self.output.get()

    async def write(self, data):
        await self.output.put(bytes(data))
        if data == b"exit\n":
            await self.output.put(b"")

    async def resize(self, rows, cols):
        pass

    def close(self):
        self.output.put_nowait(b"")


class FakeConnector:
    def __init__(self, error=None):
        self.error = error
        self.configs = []

    async def connect(self, config, timeout=10.0):
        self.configs.append(config)
        if self.error is not None:
            raise self.error
        return EchoSession()


@pytest.fixture
def sftp():
    fake = Mock(spec=SFTPService)
    for name in (
        "list_dir",
        "stat",
        "read_file",
        "search",
        "write_file",
        "mkdir",
        "rename",
        "delete",
        "chmod",
        "chown_by_name",
        "symlink",
        "copy",
        "upload",
    ):
        setattr(fake, name, AsyncMock())
    return fake


@pytest.fixture
def ctx(tmp_path, store, cipher, audit, sftp, runner, direct_server, tunnel_server):
    config = HostConfig(tmp_path / "config.yml", env={"REMOTECTL_DATA_DIR": str(tmp_path)})
    return build_context(
        config,
        store=store,
        cipher=cipher,
        audit=audit,
        pool=PortPool(40000, 40010, probe=lambda port: True),
        ssh_connector=FakeConnector(),
        docker_connector=FakeConnector(),
        sftp=sftp,
        local_connector=FakeConnector(),
        systemd=SystemdManager(runner=runner),
        with_broker=False,
    )


@pytest.fixture
def client(ctx):
    with TestClient(create_app(ctx)) as test_client:
        yield test_client


def actions(ctx):
    return [entry.action for entry in ctx.audit.recent]


class TestHealthAndErrors:
    def test_health(self, client):
        body = client.get("/health").json()
        assert body["ok"] is True
        assert body["tunnel"] is False

    def test_status_mapping(self):
        assert status_for(FileTooLargeError("read", "/x", 10)) == 413
        assert status_for(SFTPOperationError("list", "/x")) == 400
        assert status_for(HostUnreachableError("down")) == 502


class TestTunnelAPI:
    def test_token_is_created_once(self, client):
        first = client.post("/api/tunnel/servers/tunnel1/token").json()
        second = client.post("/api/tunnel/servers/tunnel1/token").json()

        assert first["created"] is True
        assert second["created"] is False
        assert first["token"] == second["token"]

    def test_rotate_kicks_live_session(self, client, ctx):
        old = client.post("/api/tunnel/servers/tunnel1/token").json()["token"]
        conn = Mock()
        ctx.tunnel_sessions.register("tunnel1", TunnelSession("tunnel1", conn))

        body = client.post("/api/tunnel/servers/tunnel1/token", params={"rotate": "true"}).json()

        assert body["rotated"] is True
        assert body["token"] != old
        conn.close.assert_called_once()
        assert ctx.tunnel_sessions.get("tunnel1") is None
        assert ctx.store.get_server("tunnel1").tunnel_status == "offline"
        assert "tunnel.token_rotated" in actions(ctx)
        assert ctx.tunnel_tokens.lookup(old) is None

    def test_token_for_direct_server_rejected(self, client):
        assert client.post("/api/tunnel/servers/direct1/token").status_code == 400

    def test_unknown_server_is_404(self, client):
        response = client.post("/api/tunnel/servers/ghost/token")
        assert response.status_code == 404
        assert "ghost" in response.json()["detail"]

    def test_setup_material(self, client):
        body = client.get("/api/tunnel/servers/tunnel1/setup").json()

        assert body["port"] == 2222
        assert f"{body['token']}@testserver" in body["autossh_cmd"]
        assert "-R 0:localhost:22 -R 0:localhost:80" in body["autossh_cmd"]
        assert body["setup_script_url"].endswith(f"/tunnel/setup/{body['token']}")

    def test_setup_script_by_token(self, client):
        token = client.post("/api/tunnel/servers/tunnel1/token").json()["token"]

        response = client.get(f"/tunnel/setup/{token}")
        assert response.status_code == 200
        assert response.text.startswith("#!/bin/sh")
        assert token in response.text
        assert client.get("/tunnel/setup/WRONG").status_code == 404

    def test_status_live_and_persisted(self, client, ctx):
        persisted = client.get("/api/tunnel/servers/tunnel1/status").json()
        assert persisted == {"status": "offline", "last_seen": None, "services": [], "live": False}

        ctx.tunnel_sessions.register(
            "tunnel1", TunnelSession("tunnel1", Mock(), [Service("ssh", 40000, 22)], connected_at=5.0)
        )
        live = client.get("/api/tunnel/servers/tunnel1/status").json()
        assert live["live"] is True
        assert live["services"][0]["tunnel_port"] == 40000

        sessions = client.get("/api/tunnel/sessions").json()["sessions"]
        assert [s["server_id"] for s in sessions] == ["tunnel1"]

    def test_release(self, client, ctx):
        ctx.pool.allocate("tunnel1", [Service("ssh", 0, 22)])
        ctx.tunnel_sessions.register("tunnel1", TunnelSession("tunnel1", Mock()))

        body = client.delete("/api/tunnel/servers/tunnel1").json()

        assert body == {"disconnected": True, "released_ports": [40000]}
        assert ctx.pool.snapshot() == {}


class TestSFTPAPI:
    def test_list(self, client, sftp):
        sftp.list_dir.return_value = [FileEntry(name="etc", path="/etc", type="dir")]

        body = client.get("/api/terminal/sftp/list", params={"server_id": "direct1", "path": "/"}).json()

        assert body["entries"][0]["name"] == "etc"
        config, path = sftp.list_dir.call_args.args
        assert (config.host, config.port, config.secret, path) == ("10.0.0.5", 2200, "hunter2", "/")

    def test_tunnel_server_goes_through_forwarded_port(self, client, ctx, sftp):
        sftp.list_dir.return_value = []
        ctx.pool.allocate("tunnel1", [Service("ssh", 0, 22)])

        client.get("/api/terminal/sftp/list", params={"server_id": "tunnel1"})

        config, _ = sftp.list_dir.call_args.args
        assert (config.host, config.port) == ("127.0.0.1", 40000)

    def test_tunnel_without_port_is_409(self, client):
        response = client.get("/api/terminal/sftp/list", params={"server_id": "tunnel1"})
        assert response.status_code == 409
        assert response.json()["hint"]

    @pytest.mark.parametrize(
        "error,status",
        [
            (FileTooLargeError("read", "/big", 10), 413),
            (SFTPOperationError("read", "/missing"), 400),
            (HostUnreachableError("no route"), 502),
        ],
    )
    def test_read_errors(self, client, sftp, error, status):
        sftp.read_file.side_effect = error
        response = client.get("/api/terminal/sftp/read", params={"server_id": "direct1", "path": "/x"})
        assert response.status_code == status

    def test_read_returns_text(self, client, sftp):
        sftp.read_file.return_value = b"hello\n"
        body = client.get("/api/terminal/sftp/read", params={"server_id": "direct1", "path": "/x"}).json()
        assert body == {"path": "/x", "size": 6, "content": "hello\n"}

    def test_write_is_audited(self, client, ctx, sftp):
        sftp.write_file.return_value = 2
        response = client.post(
            "/api/terminal/sftp/write",
            json={"server_id": "direct1", "path": "/tmp/a", "content": "hi"},
        )

        assert response.json()["size"] == 2
        assert sftp.write_file.call_args.args[2] == b"hi"
        assert "sftp.write" in actions(ctx)

    def test_chmod_parses_octal(self, client, sftp):
        sftp.chmod.return_value = 1
        ok = client.post(
            "/api/terminal/sftp/chmod", json={"server_id": "direct1", "path": "/x", "mode": "755"}
        )
        bad = client.post(
            "/api/terminal/sftp/chmod", json={"server_id": "direct1", "path": "/x", "mode": "9z"}
        )

        assert ok.status_code == 200
        assert sftp.chmod.call_args.args[2] == 0o755
        assert bad.status_code == 400

    def test_chown_requires_a_name(self, client):
        response = client.post("/api/terminal/sftp/chown", json={"server_id": "direct1", "path": "/x"})
        assert response.status_code == 400

    def test_delete(self, client, sftp):
        response = client.delete(
            "/api/terminal/sftp/delete", params={"server_id": "direct1", "path": "/tmp/x"}
        )
        assert response.json()["deleted"] is True
        sftp.delete.assert_awaited_once()

    def test_copy_stream_events(self, client, sftp):
        async def copy(config, source, target, progress=None):
            progress(5, 10)
            progress(10, 10)
            return 10

        sftp.copy.side_effect = copy
        response = client.get(
            "/api/terminal/sftp/copy-stream",
            params={"server_id": "direct1", "source": "/a", "target": "/b"},
        )

        events = [line[len("event: ") :] for line in response.text.splitlines() if line.startswith("event: ")]
        assert events == ["progress", "progress", "done"]
        assert '"copied": 10' in response.text

    def test_copy_stream_error_event(self, client, sftp):
        sftp.copy.side_effect = SFTPOperationError("copy", "/a", bytes_copied=3)
        response = client.get(
            "/api/terminal/sftp/copy-stream",
            params={"server_id": "direct1", "source": "/a", "target": "/b"},
        )

        assert "event: error" in response.text
        data = [line for line in response.text.splitlines() if line.startswith("data: ")][-1]
        assert json.loads(data[len("data: ") :])["copied"] == 3

    def test_upload_streams_file_into_directory(self, client, ctx, sftp):
        received = []

        async def upload(config, directory, filename, chunks):
            data = b"".join([chunk async for chunk in chunks])
            received.append((config.host, directory, filename, data))
            return f"{directory}/{filename}", len(data)

        sftp.upload.side_effect = upload
        response = client.post(
            "/api/terminal/sftp/upload",
            params={"server_id": "direct1", "path": "/srv/app"},
            files={"file": ("notes.txt", b"hello world", "text/plain")},
        )

        assert response.status_code == 200
        assert response.json() == {"path": "/srv/app/notes.txt", "size": 11}
        assert received == [("10.0.0.5", "/srv/app", "notes.txt", b"hello world")]
        assert ctx.audit.recent[-1].action == "sftp.upload"

    def test_oversized_upload_is_413(self, client, ctx, sftp):
        sftp.upload.side_effect = FileTooLargeError("upload", "/srv/app/big.iso", 10)
        response = client.post(
            "/api/terminal/sftp/upload",
            params={"server_id": "direct1", "path": "/srv/app"},
            files={"file": ("big.iso", b"x" * 20)},
        )

        assert response.status_code == 413
        assert ctx.audit.recent[-1].status == "failed"

    def test_upload_needs_a_file(self, client):
        response = client.post(
            "/api/terminal/sftp/upload", params={"server_id": "direct1", "path": "/srv"}
        )
        assert response.status_code == 422

    def test_constraints(self, client):
        body = client.get("/api/terminal/sftp/constraints").json()
        assert body["max_upload_files"] == 10
        assert body["max_upload_bytes"] == 50 * 1024 * 1024


class TestPowerAPI:
    def test_restart(self, client, ctx):
        runner = AsyncMock(return_value="")
        ctx.power_runner = lambda config, action: run_power_action(config, action, runner=runner)

        response = client.post("/api/terminal/server/direct1/power", json={"action": "restart"})

        assert response.status_code == 200
        assert runner.await_args.args[0].host == "10.0.0.5"
        assert "server.power.restart" in actions(ctx)

    def test_unknown_action(self, client, ctx):
        ctx.power_runner = lambda config, action: run_power_action(config, action, runner=AsyncMock())
        response = client.post("/api/terminal/server/direct1/power", json={"action": "hibernate"})
        assert response.status_code == 400


class TestSystemdAPI:
    base = "/api/terminal/server/direct1/systemd"

    def test_list_services(self, client, ctx, runner):
        runner.replies["systemctl list-units"] = (
            "nginx.service loaded active running Web server\n"
            "cron.service loaded active running Cron daemon\n"
        )

        body = client.get(f"{self.base}/services", params={"keyword": "web"}).json()

        assert body["server_id"] == "direct1"
        assert [s["name"] for s in body["services"]] == ["nginx.service"]
        assert runner.calls[0][0].host == "10.0.0.5"
        assert actions(ctx)[-1] == "terminal.systemd.services"

    def test_status(self, client, runner):
        runner.replies["systemctl show"] = "ActiveState=active\nSubState=running\n"
        runner.replies["systemctl status"] = "nginx.service - Web server"

        body = client.get(f"{self.base}/nginx/status").json()

        assert body["service"] == "nginx.service"
        assert body["status"] == {"ActiveState": "active", "SubState": "running"}
        assert body["status_text"] == "nginx.service - Web server"

    def test_invalid_service_name(self, client, runner):
        response = client.get(f"{self.base}/bad$name/logs")
        assert response.status_code == 400
        assert runner.calls == []

    def test_action_accepted(self, client, ctx):
        response = client.post(f"{self.base}/nginx/action", json={"action": "restart"})

        assert response.json()["status"] == "accepted"
        assert ctx.audit.recent[-1].action == "terminal.systemd.action"

    def test_failed_action_keeps_output(self, client, ctx, runner):
        runner.replies["(sudo -n systemctl"] = RemoteCommandError("restart", 1, "Access denied")

        response = client.post(f"{self.base}/nginx/action", json={"action": "restart"})

        assert response.status_code == 502
        assert response.json()["output"] == "Access denied"
        assert ctx.audit.recent[-1].status == "failed"

    def test_unit_write_verify_apply(self, client, ctx, runner):
        runner.replies["systemctl show"] = "/etc/systemd/system/app.service\n"

        saved = client.put(f"{self.base}/app/unit", json={"content": "[Service]\n"}).json()
        valid = client.post(f"{self.base}/app/unit/verify").json()
        applied = client.post(f"{self.base}/app/unit/apply").json()

        assert saved["status"] == "saved"
        assert saved["path"] == "/etc/systemd/system/app.service"
        assert valid["status"] == "valid"
        assert applied["status"] == "applied"
        assert actions(ctx)[-3:] == [
            "terminal.systemd.unit.write",
            "terminal.systemd.unit.verify",
            "terminal.systemd.unit.apply",
        ]

    def test_failed_verify_is_400_with_output(self, client, runner):
        runner.replies["systemctl show"] = "/etc/systemd/system/app.service\n"
        runner.replies["(sudo -n systemd-analyze"] = RemoteCommandError(
            "verify", 1, "Unknown key name 'ExecStrat'"
        )

        response = client.post(f"{self.base}/app/unit/verify")

        assert response.status_code == 400
        assert "ExecStrat" in response.json()["verify_output"]

    def test_empty_unit_content_rejected(self, client, runner):
        response = client.put(f"{self.base}/app/unit", json={"content": " "})
        assert response.status_code == 400
        assert runner.calls == []

    def test_unknown_server(self, client):
        assert client.get("/api/terminal/server/ghost/systemd/services").status_code == 404


class TestTerminalWebSockets:
    def test_ssh_connect_failure_sends_error_frame(self, client, ctx):
        ctx.ssh_connector = FakeConnector(error=HostUnreachableError("no route to host"))

        with client.websocket_connect("/api/terminal/ssh/direct1") as ws:
            frame = ws.receive_bytes()
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_bytes()

        assert frame[:1] == b"\x00"
        assert json.loads(frame[1:]) == {"type": "error", "message": "no route to host"}
        assert exc_info.value.code == 1011
        assert ctx.audit.recent[-1].status == "failed"

    def test_ssh_echo_session(self, client, ctx):
        with client.websocket_connect("/api/terminal/ssh/direct1") as ws:
            ws.send_bytes(b"whoami\n")
            assert ws.receive_bytes() == b"whoami\n"
            assert len(ctx.terminal_sessions) == 1

            ws.send_bytes(b"exit\n")
            assert ws.receive_bytes() == b"exit\n"
            with pytest.raises(WebSocketDisconnect):
                ws.receive_bytes()

        assert ctx.ssh_connector.configs[0].user == "deploy"
        assert len(ctx.terminal_sessions) == 0
        assert actions(ctx)[-2:] == ["terminal.ssh.connect", "terminal.ssh.disconnect"]

    def test_docker_shell_not_allowed(self, client, ctx):
        with client.websocket_connect("/api/terminal/docker/web-1?shell=/usr/bin/python3") as ws:
            frame = ws.receive_bytes()
        assert b"Shell not allowed" in frame
        assert ctx.docker_connector.configs == []

    def test_docker_on_remote_server_uses_ssh(self, client, ctx):
        with client.websocket_connect("/api/terminal/docker/web-1?shell=/bin/bash&server_id=direct1") as ws:
            ws.send_bytes(b"ls\n")
            assert ws.receive_bytes() == b"ls\n"
            ws.send_bytes(b"exit\n")
            assert ws.receive_bytes() == b"exit\n"
            with pytest.raises(WebSocketDisconnect):
                ws.receive_bytes()

        [config] = ctx.ssh_connector.configs
        assert config.shell == "docker exec -it web-1 /bin/bash"
        assert ctx.docker_connector.configs == []

    def test_local_terminal(self, client, ctx):
        with client.websocket_connect("/api/terminal/local") as ws:
            ws.send_bytes(b"uptime\n")
            assert ws.receive_bytes() == b"uptime\n"
            ws.send_bytes(b"exit\n")
            assert ws.receive_bytes() == b"exit\n"
            with pytest.raises(WebSocketDisconnect):
                ws.receive_bytes()

        assert [c.host for c in ctx.local_connector.configs] == ["localhost"]
        assert actions(ctx)[-2:] == ["terminal.local.connect", "terminal.local.disconnect"]

    def test_local_terminal_disabled(self, client, ctx):
        ctx.config.model.terminal.local_enabled = False

        with client.websocket_connect("/api/terminal/local") as ws:
            frame = ws.receive_bytes()

        assert b"Local terminal is disabled" in frame
        assert ctx.local_connector.configs == []
