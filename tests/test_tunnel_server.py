"""Tests for the remote tunnel server artifact"""

import json
import os
import time
from unittest.mock import Mock, patch

import pytest

from vpntunnel.agent import tunnel_server


CONFIG = {
    'private_key': "cHJpdmF0ZQ==",
    'public_key': "cHVibGlj",
    'listen_port': 51821,
    'interface': "wgs51821",
    'server_address': "10.99.0.5",
    'network': "10.99.0.4/30",
    'target_addresses': ["10.1.2.3"],
    'heartbeat_timeout': 12,
}


@pytest.fixture
def commands():
    issued = []

    def run(args, check=True):
        issued.append(list(args))
        return Mock(returncode=0, stdout="", stderr="")

    with patch.object(tunnel_server, "run", side_effect=run):
        yield issued


class TestTunnelServer:
    """Test interface setup and cleanup"""

    def test_setup_and_teardown(self, commands, tmp_path):
        server = tunnel_server.TunnelServer(CONFIG, str(tmp_path))
        with patch.object(tunnel_server.TunnelServer, "_enable_forwarding"):
            server.setup()

        assert ["ip", "link", "add", "dev", "wgs51821", "type", "wireguard"] in commands
        assert ["ip", "address", "add", "10.99.0.5/30", "dev", "wgs51821"] in commands
        assert [
            "iptables", "-t", "nat", "-A", "POSTROUTING",
            "-s", "10.99.0.4/30", "-d", "10.1.2.3", "-j", "MASQUERADE"
        ] in commands
        key_file = tmp_path / "server.key"
        assert key_file.read_text().strip() == "cHJpdmF0ZQ=="
        assert os.stat(key_file).st_mode & 0o777 == 0o600

        commands.clear()
        server.teardown()

        assert commands[0][:4] == ["iptables", "-t", "nat", "-D"]
        assert commands[-1] == ["ip", "link", "delete", "dev", "wgs51821"]
        assert not key_file.exists()

    def test_heartbeat_age(self, tmp_path):
        heartbeat = tmp_path / "heartbeat"
        started = time.time() - 30

        assert tunnel_server.heartbeat_age(str(heartbeat), started) >= 30

        heartbeat.write_text(f"{int(time.time())}\n")
        assert tunnel_server.heartbeat_age(str(heartbeat), started) < 5

    def test_exits_on_stale_heartbeat(self, tmp_path):
        config_file = tmp_path / "server-config.json"
        config_file.write_text(json.dumps(dict(CONFIG, heartbeat_timeout=1)))
        heartbeat = tmp_path / "heartbeat"
        heartbeat.write_text("0\n")
        pid_file = tmp_path / "server.pid"

        with patch.object(tunnel_server, "TunnelServer") as mock_server, \
                patch.object(tunnel_server, "CHECK_INTERVAL", 0.01), \
                patch.object(tunnel_server.signal, "signal"):
            status = tunnel_server.main([
                "--config", str(config_file),
                "--heartbeat-file", str(heartbeat),
                "--pid-file", str(pid_file),
            ])

        assert status == 2
        mock_server.return_value.setup.assert_called_once()
        mock_server.return_value.teardown.assert_called_once()
        assert not pid_file.exists()
