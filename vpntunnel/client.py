"""Local WireGuard tunnel endpoint driven through wg-quick."""

import logging
import os
import shutil
import socket
import subprocess
import sys
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional

from .config import Config
from .errors import (
    PrivilegeError,
    ProvisioningError,
    TunnelUnreachableError,
)
from .logging import ProgressLog, TaggedProgress
from .models import ClientConfig


WG_QUICK_TIMEOUT = 60

PASSWORD_MARKERS = (
    "incorrect password",
    "a password is required",
    "sorry, try again",
    "a terminal is required",
)


def render_config(config: ClientConfig) -> str:
    """Render a wg-quick configuration for the client endpoint."""
    lines = [
        "[Interface]",
        f"PrivateKey = {config.keys.private_key}",
        f"Address = {config.network.client_address}/32",
        "",
        "[Peer]",
        f"PublicKey = {config.server_public_key}",
        f"Endpoint = {config.server_endpoint}",
        f"AllowedIPs = {', '.join(config.allowed_ips)}",
        f"PersistentKeepalive = {config.persistent_keepalive}",
        "",
    ]
    return "\n".join(lines)


class TunnelClient:
    """Brings the local tunnel interface up and down for one session."""

    def __init__(self, host_label: str, progress: Optional[TaggedProgress] = None,
                 work_dir: str = None, probe_port: int = None):  # type: ignore
        self.host_label = host_label
        self.progress = progress or ProgressLog(sys.stdout).tagged("vpn client")
        self.work_dir = Path(work_dir or Config.LOCAL_WORK_DIR) / host_label
        self.probe_port = probe_port or Config.HEALTH_PROBE_PORT
        self.logger = logging.getLogger(__name__)

        self.config: Optional[ClientConfig] = None
        self.config_path: Optional[Path] = None
        self.connected_at: Optional[datetime] = None
        self._secret = ""
        self._lock = threading.Lock()

    @property
    def is_connected(self) -> bool:
        return self.connected_at is not None

    @staticmethod
    def check_wireguard_installed():
        """Raise ProvisioningError unless wg-quick and wg are on PATH."""
        missing = [tool for tool in ("wg-quick", "wg") if shutil.which(tool) is None]
        if missing:
            raise ProvisioningError(
                f"WireGuard tools not found locally ({', '.join(missing)}).\n"
                f"Install them from https://www.wireguard.com/install/"
            )

    def connect(self, config: ClientConfig, secret: str = ""):
        """
        Write the interface config and bring the tunnel up.

        Args:
            config: client endpoint parameters
            secret: sudo password; empty when sudo needs none
        """
        with self._lock:
            if self.connected_at is not None:
                raise ProvisioningError("local tunnel is already connected")

            self.progress(f"Bringing up local interface {config.interface_name}")
            self._delete_stale_link(config.interface_name, secret)

            config_path = self._write_config(config)

            try:
                result = self._wg_quick("up", config_path, secret)
            except (OSError, subprocess.TimeoutExpired) as e:
                self._remove_config(config_path)
                raise ProvisioningError(f"wg-quick up failed: {e}") from e

            if result.returncode != 0:
                stderr = result.stderr.strip()
                self._remove_config(config_path)
                if any(marker in stderr.lower() for marker in PASSWORD_MARKERS):
                    raise PrivilegeError(f"sudo refused to run wg-quick: {stderr}")
                raise ProvisioningError(f"wg-quick up failed: {stderr or result.stdout.strip()}")

            self.config = config
            self.config_path = config_path
            self.connected_at = datetime.now()
            self._secret = secret

        self.progress(
            f"Tunnel up\n"
            f"  Interface: {config.interface_name}\n"
            f"  Address: {config.network.client_address}\n"
            f"  Gateway: {config.network.server_address}\n"
            f"  Routes: {', '.join(config.allowed_ips)}"
        )

    def disconnect(self, secret: Optional[str] = None):
        """
        Tear the tunnel down. Redundant calls are no-ops.

        Args:
            secret: sudo password; defaults to the one given to connect()
        """
        with self._lock:
            config_path = self.config_path
            config = self.config
            if secret is None:
                secret = self._secret

            self.config = None
            self.config_path = None
            self.connected_at = None
            self._secret = ""

        if config_path is None or config is None:
            return

        try:
            result = self._wg_quick("down", config_path, secret)
            if result.returncode != 0:
                self.logger.warning(f"wg-quick down reported: {result.stderr.strip()}")
        except (OSError, subprocess.TimeoutExpired) as e:
            self.logger.warning(f"wg-quick down failed: {e}")

        self._remove_config(config_path)
        self.progress(f"Local interface {config.interface_name} removed")

    def status(self) -> dict:
        """Snapshot of the local endpoint."""
        with self._lock:
            config = self.config
            return {
                'connected': self.connected_at is not None,
                'connected_at': self.connected_at,
                'interface': config.interface_name if config else None,
                'client_address': str(config.network.client_address) if config else None,
                'server_address': str(config.network.server_address) if config else None,
                'endpoint': config.server_endpoint if config else None,
            }

    def check_tunnel_health(self):
        """TCP probe of the remote gateway across the tunnel."""
        config = self.config
        if config is None:
            raise TunnelUnreachableError("local tunnel is not connected")

        gateway = str(config.network.server_address)
        try:
            with socket.create_connection((gateway, self.probe_port), timeout=Config.HEALTH_CHECK_TIMEOUT):
                pass
        except OSError as e:
            raise TunnelUnreachableError(
                f"gateway {gateway}:{self.probe_port} unreachable through tunnel: {e}"
            ) from e

    def _write_config(self, config: ClientConfig) -> Path:
        self.work_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
        config_path = self.work_dir / f"{config.interface_name}.conf"

        fd = os.open(str(config_path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as config_file:
            config_file.write(render_config(config))
        os.chmod(config_path, 0o600)

        self.logger.info(f"Wrote client config {config_path}")
        return config_path

    def _remove_config(self, config_path: Path):
        try:
            config_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            self.logger.warning(f"Could not remove {config_path}: {e}")

    def _delete_stale_link(self, interface: str, secret: str):
        try:
            subprocess.run(
                ["sudo", "-S", "-p", "", "ip", "link", "delete", interface],
                input=secret + "\n",
                capture_output=True,
                text=True,
                timeout=WG_QUICK_TIMEOUT
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            self.logger.debug(f"Stale link cleanup skipped: {e}")

    def _wg_quick(self, action: str, config_path: Path, secret: str) -> subprocess.CompletedProcess:
        return subprocess.run(
            ["sudo", "-S", "-p", "", "wg-quick", action, str(config_path)],
            input=secret + "\n",
            capture_output=True,
            text=True,
            timeout=WG_QUICK_TIMEOUT
        )
