"""Tests for the local tunnel client"""

import os
import subprocess
from unittest.mock import MagicMock, Mock, patch

import pytest

from vpntunnel.client import TunnelClient, render_config
from vpntunnel.errors import PrivilegeError, ProvisioningError, TunnelUnreachableError
from vpntunnel.models import ClientConfig, KeyPair
from vpntunnel.network import allocate_network


@pytest.fixture
def config():
    return ClientConfig(
        keys=KeyPair(private_key="cHJpdmF0ZQ==", public_key="cHVibGlj"),
        server_public_key="c2VydmVy",
        server_endpoint="203.0.113.10:51821",
        network=allocate_network(1, "10.99.0.0/16"),
        target_addresses=("10.1.2.3",),
        interface_name="wgc51821"
    )


@pytest.fixture
def client(tmp_path):
    return TunnelClient("workstation", progress=MagicMock(), work_dir=str(tmp_path))


def wg_quick(up=None, down=None):
    """subprocess.run stand-in keyed on the wg-quick action."""
    calls = []

    def run(args, **kwargs):
        calls.append(args)
        if "wg-quick" in args:
            action = args[args.index("wg-quick") + 1]
            result = up if action == "up" else down
            if isinstance(result, Exception):
                raise result
            if result is not None:
                return result
        return Mock(returncode=0, stdout="", stderr="")

    run.calls = calls
    return run


def wg_quick_calls(run, action):
    return [args for args in run.calls if "wg-quick" in args and action in args]


class TestRenderConfig:
    """Test wg-quick config rendering"""

    def test_contents(self, config):
        text = render_config(config)
        assert "PrivateKey = cHJpdmF0ZQ==" in text
        assert "Address = 10.99.0.6/32" in text
        assert "Endpoint = 203.0.113.10:51821" in text
        assert "AllowedIPs = 10.99.0.5/32, 10.1.2.3/32" in text
        assert "PersistentKeepalive = 25" in text


class TestConnect:
    """Test bringing the tunnel up"""

    @patch("vpntunnel.client.subprocess.run")
    def test_connect(self, mock_run, client, config):
        mock_run.side_effect = run = wg_quick()

        client.connect(config, "pw")

        assert client.is_connected
        path = client.work_dir / "wgc51821.conf"
        assert path.exists()
        assert os.stat(path).st_mode & 0o777 == 0o600
        up = wg_quick_calls(run, "up")
        assert up == [["sudo", "-S", "-p", "", "wg-quick", "up", str(path)]]
        assert client.status()['connected_at'] is not None

    @patch("vpntunnel.client.subprocess.run")
    def test_connect_twice_rejected(self, mock_run, client, config):
        mock_run.side_effect = wg_quick()
        client.connect(config)
        with pytest.raises(ProvisioningError, match="already connected"):
            client.connect(config)

    @patch("vpntunnel.client.subprocess.run")
    def test_password_rejected(self, mock_run, client, config):
        mock_run.side_effect = wg_quick(
            up=Mock(returncode=1, stdout="", stderr="sudo: 1 incorrect password attempt")
        )

        with pytest.raises(PrivilegeError):
            client.connect(config, "wrong")

        assert not client.is_connected
        assert not (client.work_dir / "wgc51821.conf").exists()

    @patch("vpntunnel.client.subprocess.run")
    def test_wg_quick_failure(self, mock_run, client, config):
        mock_run.side_effect = wg_quick(
            up=Mock(returncode=1, stdout="", stderr="RTNETLINK answers: File exists")
        )
        with pytest.raises(ProvisioningError, match="File exists"):
            client.connect(config)
        assert not client.is_connected

    @patch("vpntunnel.client.subprocess.run")
    def test_wg_quick_timeout(self, mock_run, client, config):
        mock_run.side_effect = wg_quick(up=subprocess.TimeoutExpired(cmd="wg-quick", timeout=60))
        with pytest.raises(ProvisioningError):
            client.connect(config)

    @patch("vpntunnel.client.shutil.which")
    def test_tools_missing(self, mock_which):
        mock_which.side_effect = lambda tool: None if tool == "wg" else "/usr/bin/" + tool
        with pytest.raises(ProvisioningError, match="wg"):
            TunnelClient.check_wireguard_installed()


class TestDisconnect:
    """Test tearing the tunnel down"""

    @patch("vpntunnel.client.subprocess.run")
    def test_disconnect_is_idempotent(self, mock_run, client, config):
        mock_run.side_effect = run = wg_quick()
        client.connect(config, "pw")

        client.disconnect()
        client.disconnect()

        assert not client.is_connected
        assert len(wg_quick_calls(run, "down")) == 1
        assert not (client.work_dir / "wgc51821.conf").exists()

    @patch("vpntunnel.client.subprocess.run")
    def test_disconnect_secret_overrides_remembered(self, mock_run, client, config):
        mock_run.side_effect = wg_quick()
        client.connect(config, "old")

        client.disconnect("new")

        inputs = [c.kwargs['input'] for c in mock_run.call_args_list if "down" in c.args[0]]
        assert inputs == ["new\n"]

    @patch("vpntunnel.client.subprocess.run")
    def test_disconnect_uses_connect_secret(self, mock_run, client, config):
        mock_run.side_effect = wg_quick()
        client.connect(config, "pw")

        client.disconnect()

        inputs = [c.kwargs['input'] for c in mock_run.call_args_list if "down" in c.args[0]]
        assert inputs == ["pw\n"]

    @patch("vpntunnel.client.subprocess.run")
    def test_disconnect_without_connect(self, mock_run, client):
        client.disconnect()
        mock_run.assert_not_called()

    @patch("vpntunnel.client.subprocess.run")
    def test_disconnect_tolerates_interface_gone(self, mock_run, client, config):
        mock_run.side_effect = wg_quick(
            down=Mock(returncode=1, stdout="", stderr="wg-quick: `wgc51821' is not a WireGuard interface")
        )
        client.connect(config)

        client.disconnect()
        assert not client.is_connected

        # a fresh connect still works afterwards
        client.connect(config)
        assert client.is_connected

    @patch("vpntunnel.client.subprocess.run")
    def test_disconnect_tolerates_errors(self, mock_run, client, config):
        mock_run.side_effect = wg_quick(down=OSError("sudo vanished"))
        client.connect(config)
        client.disconnect()
        assert not client.is_connected


class TestHealth:
    """Test the across-tunnel probe"""

    def test_not_connected(self, client):
        with pytest.raises(TunnelUnreachableError):
            client.check_tunnel_health()

    @patch("vpntunnel.client.socket.create_connection")
    @patch("vpntunnel.client.subprocess.run")
    def test_gateway_reachable(self, mock_run, mock_connect, client, config):
        mock_run.side_effect = wg_quick()
        client.connect(config)

        client.check_tunnel_health()
        assert mock_connect.call_args[0][0] == ("10.99.0.5", 22)

    @patch("vpntunnel.client.socket.create_connection")
    @patch("vpntunnel.client.subprocess.run")
    def test_gateway_unreachable(self, mock_run, mock_connect, client, config):
        mock_run.side_effect = wg_quick()
        mock_connect.side_effect = OSError("timed out")
        client.connect(config)

        with pytest.raises(TunnelUnreachableError, match="10.99.0.5:22"):
            client.check_tunnel_health()
