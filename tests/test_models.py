"""Tests for data models"""

import pytest

from vpntunnel.errors import TargetError
from vpntunnel.models import (
    ClientConfig,
    KeyPair,
    ServerConfig,
    SSHTarget,
    TargetAddressSet,
)
from vpntunnel.network import allocate_network


class TestSSHTarget:
    """Test SSH target validation"""

    def test_valid_with_password(self):
        target = SSHTarget(host="203.0.113.10", username="ops", password="secret")
        assert target.address == "203.0.113.10:22"
        assert "secret" not in repr(target)

    def test_valid_with_key(self):
        target = SSHTarget(host="gw", port=2222, username="ops", key_path="/keys/id_ed25519")
        assert target.address == "gw:2222"

    @pytest.mark.parametrize("kwargs", [
        {"host": "", "username": "ops", "password": "x"},
        {"host": "gw", "username": "", "password": "x"},
        {"host": "gw", "username": "ops", "password": "x", "port": 0},
        {"host": "gw", "username": "ops"},
    ])
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            SSHTarget(**kwargs)


class TestTargetAddressSet:
    """Test target address validation"""

    def test_single_address(self):
        targets = TargetAddressSet.from_address(" 10.1.2.3 ")
        assert targets.addresses == ("10.1.2.3",)
        assert targets.describe() == "10.1.2.3"

    @pytest.mark.parametrize("address", ["", "   ", None])
    def test_empty_address(self, address):
        with pytest.raises(TargetError):
            TargetAddressSet.from_address(address)

    def test_invalid_address(self):
        with pytest.raises(TargetError, match="Invalid IP"):
            TargetAddressSet.from_address("10.1.2")

    def test_empty_pool(self):
        with pytest.raises(TargetError, match="no addresses"):
            TargetAddressSet.from_pool("web", [])

    def test_pool_skips_invalid_members(self):
        targets = TargetAddressSet.from_pool("web", ["10.0.0.1", "bogus", "10.0.0.2"])
        assert targets.addresses == ("10.0.0.1", "10.0.0.2")
        assert targets.pool_name == "web"
        assert targets.describe() == "pool 'web' (2 addresses)"

    def test_pool_without_valid_members(self):
        with pytest.raises(TargetError, match="valid address"):
            TargetAddressSet.from_pool("web", ["bogus"])

    def test_direct_construction_validates(self):
        with pytest.raises(TargetError):
            TargetAddressSet(addresses=())


class TestTunnelConfigs:
    """Test server and client configs"""

    def setup_method(self):
        self.network = allocate_network(1, "10.99.0.0/16")
        self.keys = KeyPair(private_key="priv", public_key="pub")

    def test_server_config_dict(self):
        config = ServerConfig(
            keys=self.keys,
            listen_port=51821,
            network=self.network,
            target_addresses=("10.1.2.3",),
            interface_name="wgs51821"
        )
        data = config.to_dict()
        assert data['listen_port'] == 51821
        assert data['server_address'] == "10.99.0.5"
        assert data['network'] == "10.99.0.4/30"
        assert data['target_addresses'] == ["10.1.2.3"]
        assert data['heartbeat_timeout'] == 12

    def test_client_allowed_ips(self):
        config = ClientConfig(
            keys=self.keys,
            server_public_key="srv",
            server_endpoint="203.0.113.10:51821",
            network=self.network,
            target_addresses=("10.1.2.3", "10.1.2.4"),
            interface_name="wgc51821"
        )
        assert config.allowed_ips == ("10.99.0.5/32", "10.1.2.3/32", "10.1.2.4/32")
