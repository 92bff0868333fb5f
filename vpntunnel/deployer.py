"""Remote deployment of the tunnel server over SSH."""

import codecs
import json
import logging
import random
import select
import shlex
import socket
import sys
import threading
import time
from typing import Optional, Sequence, Tuple

import paramiko

from .config import Config
from .errors import (
    ConnectivityError,
    ProvisioningError,
    RemoteCommandError,
    RemoteProcessExited,
    TargetError,
    VpnTunnelError,
)
from .logging import ProgressLog, TaggedProgress
from .models import DeploymentConfig, ServerConfig, SSHTarget
from .network import PortAllocator, server_interface_name


ARTIFACT_NAME = "tunnel-server.py"
CONFIG_NAME = "server-config.json"
HEARTBEAT_NAME = "heartbeat"
LOG_NAME = "server.log"
PID_NAME = "server.pid"

SUDO_REMEDIATION = """sudo requires password authentication on {host}.

Please configure passwordless sudo for your user on the remote server:
  1. SSH to the remote: ssh {user}@{host}
  2. Edit sudoers: sudo visudo
  3. Add this line: {user} ALL=(ALL) NOPASSWD: ALL

Or configure sudo for specific commands only.
After configuring, try connecting again."""

INSTALL_COMMANDS = {
    "debian": "sudo -n apt-get update -qq && sudo -n apt-get install -y wireguard-tools",
    "rhel": "sudo -n yum install -y epel-release elrepo-release && "
            "sudo -n yum install -y kmod-wireguard wireguard-tools",
}

KERNEL_MODULE_CHECK = (
    "sudo -n modprobe wireguard 2>/dev/null; "
    "sudo -n ip link add name wgprobe0 type wireguard 2>/dev/null && "
    "sudo -n ip link del wgprobe0 2>/dev/null"
)


def remote_path(work_dir: str, name: str) -> str:
    return f"{work_dir.rstrip('/')}/{name}"


class RemoteDeployer:
    """Owns the SSH session used to deploy and supervise the tunnel server."""

    def __init__(self, progress: Optional[TaggedProgress] = None,
                 connect_timeout: int = None, command_timeout: int = None,  # type: ignore
                 health_timeout: int = None, heartbeat_interval: float = None,  # type: ignore
                 stop_timeout: float = None, remote_python: str = None,  # type: ignore
                 artifact_path: str = None):  # type: ignore
        """Initialize the deployer; unset values come from Config."""
        self.progress = progress or ProgressLog(sys.stdout).tagged("vpn deployer")
        self.connect_timeout = connect_timeout or Config.SSH_CONNECT_TIMEOUT
        self.command_timeout = command_timeout or Config.COMMAND_TIMEOUT
        self.health_timeout = health_timeout or Config.HEALTH_CHECK_TIMEOUT
        self.heartbeat_interval = heartbeat_interval or Config.HEARTBEAT_INTERVAL
        self.stop_timeout = Config.SERVER_STOP_TIMEOUT if stop_timeout is None else stop_timeout
        self.remote_python = remote_python or Config.REMOTE_PYTHON
        self.artifact_path = artifact_path or Config.SERVER_ARTIFACT

        self.logger = logging.getLogger(__name__)
        self.ssh_client: Optional[paramiko.SSHClient] = None
        self.target: Optional[SSHTarget] = None
        self.probe_addresses: Tuple[str, ...] = ()

        self.heartbeat_stop: Optional[threading.Event] = None
        self.heartbeat_thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # SSH session
    # ------------------------------------------------------------------

    def connect(self, target: SSHTarget):
        """Open the SSH session and verify it with a trivial command."""
        self.progress(f"Connecting to remote host: {target.address}")

        ssh_client = paramiko.SSHClient()
        ssh_client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        try:
            ssh_client.connect(
                hostname=target.host,
                port=target.port,
                username=target.username,
                password=target.password or None,
                key_filename=target.key_path or None,
                timeout=self.connect_timeout,
                banner_timeout=self.connect_timeout,
                auth_timeout=self.connect_timeout,
                allow_agent=False,
                look_for_keys=False
            )
        except paramiko.AuthenticationException as e:
            ssh_client.close()
            raise ConnectivityError(
                f"SSH authentication failed for {target.username}@{target.address}: {e}"
            ) from e
        except (paramiko.SSHException, OSError) as e:
            ssh_client.close()
            raise ConnectivityError(f"failed to connect via SSH to {target.address}: {e}") from e

        self.ssh_client = ssh_client
        self.target = target
        self.logger.info(f"SSH connection established to {target.address}")

        try:
            self.run_command("echo health_check", timeout=self.health_timeout)
        except VpnTunnelError as e:
            self.disconnect()
            raise ConnectivityError(f"SSH connection verification failed: {e}") from e

        self.progress("SSH connection established and verified")

    def disconnect(self):
        """Stop the heartbeat and close the SSH session."""
        self.stop_heartbeat()

        if self.ssh_client is not None:
            try:
                self.ssh_client.close()
                self.logger.info("SSH connection closed")
            except Exception as e:
                self.logger.warning(f"Error closing SSH connection: {e}")
            finally:
                self.ssh_client = None

    def is_connected(self) -> bool:
        if self.ssh_client is None:
            return False
        transport = self.ssh_client.get_transport()
        return transport is not None and transport.is_active()

    def run_command(self, command: str, timeout: float = None, check: bool = True) -> Tuple[int, str]:  # type: ignore
        """
        Execute a command on the remote host.

        Args:
            command: shell command line
            timeout: bound in seconds (defaults to the command timeout)
            check: raise RemoteCommandError on a non-zero exit status

        Returns:
            Tuple of (exit_status, combined_output)
        """
        if self.ssh_client is None:
            raise ConnectivityError("not connected to remote host")

        try:
            stdin, stdout, stderr = self.ssh_client.exec_command(
                command, timeout=timeout or self.command_timeout
            )
            stdin.close()
            output = stdout.read().decode("utf-8", errors="replace")
            output += stderr.read().decode("utf-8", errors="replace")
            status = stdout.channel.recv_exit_status()
        except (paramiko.SSHException, socket.timeout, OSError) as e:
            raise ConnectivityError(f"remote command '{command}' failed: {e}") from e

        if check and status != 0:
            raise RemoteCommandError(command, status, output)

        return status, output

    # ------------------------------------------------------------------
    # Port allocation
    # ------------------------------------------------------------------

    def is_port_in_use(self, port: int) -> bool:
        """Check whether a UDP port is bound on the remote host."""
        _, output = self.run_command(
            f"ss -ulnH | grep -q ':{port} ' && echo in-use || echo available",
            check=False
        )
        return output.strip() == "in-use"

    def allocate_port(self, low: int, high: int, allocator: Optional[PortAllocator] = None) -> int:
        """Find a port in [low, high] that is free on the remote host."""
        if self.ssh_client is None:
            raise ConnectivityError("not connected to remote host")

        allocator = allocator or PortAllocator(low, high)
        port = allocator.allocate(self.is_port_in_use)
        self.progress(f"Allocated listen port {port}")
        return port

    # ------------------------------------------------------------------
    # Deployment
    # ------------------------------------------------------------------

    def deploy(self, config: DeploymentConfig, server_config: ServerConfig):
        """Create the session directory and upload the server and its config."""
        if self.ssh_client is None:
            raise ConnectivityError("not connected to remote host")

        work_dir = config.remote_work_dir
        self.progress("=== Starting Deployment ===")

        self.ensure_wireguard()
        self.stop_stale_server(work_dir)

        try:
            self.run_command(f"mkdir -p -m 700 {shlex.quote(work_dir)}")
        except RemoteCommandError as e:
            raise ProvisioningError(f"failed to create remote directory {work_dir}: {e}") from e

        artifact = remote_path(work_dir, ARTIFACT_NAME)
        config_file = remote_path(work_dir, CONFIG_NAME)
        payload = json.dumps(server_config.to_dict(), indent=2)

        try:
            sftp = self.ssh_client.open_sftp()
            try:
                sftp.put(self.artifact_path, artifact)
                sftp.chmod(artifact, 0o755)

                with sftp.open(config_file, "w") as remote_file:
                    remote_file.write(payload)
                sftp.chmod(config_file, 0o600)
            finally:
                sftp.close()
        except (paramiko.SSHException, OSError) as e:
            raise ProvisioningError(f"failed to upload tunnel server: {e}") from e

        self.progress(
            f"Deployment completed successfully\n"
            f"  Server: {artifact}\n"
            f"  Config: {config_file}"
        )

    def ensure_wireguard(self):
        """Make sure the remote host can run a WireGuard interface."""
        self.progress("Checking WireGuard availability...")

        if self._wireguard_available():
            return

        _, os_release = self.run_command("cat /etc/os-release 2>/dev/null", check=False)
        family = detect_os_family(os_release)
        if family is None:
            raise ProvisioningError(
                "WireGuard not found and OS not supported for auto-installation.\n"
                "Please install WireGuard manually (https://www.wireguard.com/install/)"
            )

        install = INSTALL_COMMANDS[family]
        self.progress(f"WireGuard not found, installing ({family})...")
        self.progress("--- Installation Output ---")
        status, output = self.run_command(install, timeout=600, check=False)
        self.progress.raw(output)
        self.progress("--- Installation Complete ---")

        if status != 0:
            raise ProvisioningError(
                f"WireGuard installation failed (status {status}).\n"
                f"Please install WireGuard manually:\n    {install}"
            )

        if not self._wireguard_available():
            raise ProvisioningError(
                "WireGuard tools were installed but no WireGuard implementation works "
                "(kernel module missing and wireguard-go not found)"
            )

    def _wireguard_available(self) -> bool:
        status, _ = self.run_command("command -v wg", check=False)
        if status != 0:
            return False

        status, _ = self.run_command(KERNEL_MODULE_CHECK, check=False)
        if status == 0:
            self.progress("✓ WireGuard kernel module available")
            return True

        status, _ = self.run_command("command -v wireguard-go", check=False)
        if status == 0:
            self.progress("✓ wireguard-go available")
            return True

        return False

    def stop_stale_server(self, work_dir: str):
        """Stop a server left running from this session directory."""
        if self.get_server_status(work_dir) is None:
            self.progress("No existing server process found")
            return

        self.progress("Found running server process, stopping it...")
        self._stop_server(work_dir)

    # ------------------------------------------------------------------
    # Server process
    # ------------------------------------------------------------------

    def start_server(self, cancel: threading.Event, work_dir: str, server_config: ServerConfig):
        """
        Run the tunnel server and stream its output until cancelled.

        This call blocks. It returns after a cancellation-driven shutdown and
        raises RemoteProcessExited if the server exits on its own.
        """
        if self.ssh_client is None:
            raise ConnectivityError("not connected to remote host")

        self.progress(f"Starting tunnel server on remote host (port: {server_config.listen_port})")

        self.progress("Checking sudo access...")
        status, _ = self.run_command("sudo -n true", check=False)
        if status != 0:
            raise ProvisioningError(SUDO_REMEDIATION.format(
                host=self.target.host if self.target else "remote",
                user=self.target.username if self.target else "user"
            ))
        self.progress("✓ Sudo access confirmed")

        artifact = remote_path(work_dir, ARTIFACT_NAME)
        status, _ = self.run_command(f"test -f {shlex.quote(artifact)}", check=False)
        if status != 0:
            raise ProvisioningError(f"tunnel server not found: {artifact}")

        command = self._server_command(work_dir)

        try:
            transport = self.ssh_client.get_transport()
            if transport is None or not transport.is_active():
                raise ConnectivityError("SSH session is not active")
            channel = transport.open_session(timeout=self.command_timeout)
            channel.set_combine_stderr(True)
            channel.exec_command(command)
        except (paramiko.SSHException, OSError) as e:
            raise ConnectivityError(f"failed to start tunnel server: {e}") from e

        self.progress(f"Server log file: {remote_path(work_dir, LOG_NAME)}")
        self.progress("--- Server Output ---")

        try:
            exit_status = self._stream_channel(channel, cancel)
        finally:
            channel.close()

        if exit_status is None:
            self.progress("--- Server context cancelled, stopping server ---")
            self._stop_server(work_dir)
            return

        self.progress(f"--- Server exited (status {exit_status}) ---")
        raise RemoteProcessExited(f"tunnel server exited with status {exit_status}")

    def _server_command(self, work_dir: str) -> str:
        quoted = {
            name: shlex.quote(remote_path(work_dir, name))
            for name in (ARTIFACT_NAME, CONFIG_NAME, HEARTBEAT_NAME, LOG_NAME, PID_NAME)
        }
        return (
            f"exec setsid sudo -n env PATH=$PATH {shlex.quote(self.remote_python)} "
            f"{quoted[ARTIFACT_NAME]} "
            f"--config {quoted[CONFIG_NAME]} "
            f"--heartbeat-file {quoted[HEARTBEAT_NAME]} "
            f"--log-file {quoted[LOG_NAME]} "
            f"--pid-file {quoted[PID_NAME]}"
        )

    def _stream_channel(self, channel: paramiko.Channel, cancel: threading.Event) -> Optional[int]:
        """Relay channel output until exit (returns status) or cancel (returns None)."""
        buffer_size = 4096
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending = ""

        def relay(data: bytes, final: bool = False):
            nonlocal pending
            text = pending + decoder.decode(data, final)
            if final:
                pending = ""
                if text:
                    self.progress.raw(text)
                return
            # only complete lines are written
            complete, newline, pending = text.rpartition("\n")
            if newline:
                self.progress.raw(complete + newline)

        try:
            while not cancel.is_set():
                ready, _, _ = select.select([channel], [], [], 0.5)

                if ready:
                    data = channel.recv(buffer_size)
                    if data:
                        relay(data)
                        continue

                if channel.exit_status_ready():
                    while channel.recv_ready():
                        relay(channel.recv(buffer_size))
                    return channel.recv_exit_status()

            return None
        finally:
            relay(b"", final=True)

    def _stop_server(self, work_dir: str):
        """SIGTERM the session's server, then SIGKILL after the stop timeout."""
        if not self.is_connected():
            self.logger.warning("SSH session gone, relying on heartbeat expiry to stop server")
            return

        pid_file = shlex.quote(remote_path(work_dir, PID_NAME))
        try:
            self.run_command(
                f"sudo -n kill -TERM $(cat {pid_file}) 2>/dev/null; exit 0",
                timeout=self.health_timeout
            )

            waited = 0.0
            while waited < self.stop_timeout:
                if self.get_server_status(work_dir) is None:
                    self.progress("Server stopped gracefully")
                    return
                time.sleep(0.5)
                waited += 0.5

            self.progress("Server did not stop gracefully, sending SIGKILL...")
            self.run_command(
                f"sudo -n kill -KILL $(cat {pid_file}) 2>/dev/null; exit 0",
                timeout=self.health_timeout
            )
        except VpnTunnelError as e:
            self.logger.warning(f"Failed to stop remote server: {e}")

    def get_server_status(self, work_dir: str) -> Optional[str]:
        """PID of the session's running server, or None."""
        pid_file = shlex.quote(remote_path(work_dir, PID_NAME))
        status, output = self.run_command(
            f"test -f {pid_file} && sudo -n kill -0 $(cat {pid_file}) 2>/dev/null && cat {pid_file}",
            check=False
        )
        pid = output.strip().splitlines()[0] if output.strip() else ""
        if status != 0 or not pid:
            return None
        return pid

    def get_server_logs(self, work_dir: str, lines: int = 50) -> str:
        """Tail of the remote server log."""
        log_file = shlex.quote(remote_path(work_dir, LOG_NAME))
        _, output = self.run_command(
            f"tail -n {int(lines)} {log_file} 2>/dev/null || echo 'No logs available'",
            check=False
        )
        return output

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------

    def start_heartbeat(self, work_dir: str, cancel: Optional[threading.Event] = None):
        """
        Refresh the remote heartbeat file until cancelled.

        The server exits once the file is older than its heartbeat timeout.
        """
        if self.ssh_client is None:
            raise ConnectivityError("not connected to remote host")

        self.stop_heartbeat()

        heartbeat_file = remote_path(work_dir, HEARTBEAT_NAME)
        self.send_heartbeat(heartbeat_file)

        stop = cancel if cancel is not None else threading.Event()
        self.heartbeat_stop = stop
        self.heartbeat_thread = threading.Thread(
            target=self._heartbeat_loop,
            args=(heartbeat_file, stop),
            name="vpn-heartbeat",
            daemon=True
        )
        self.heartbeat_thread.start()
        self.progress(f"Heartbeat monitoring started (interval: {self.heartbeat_interval:g}s)")

    def _heartbeat_loop(self, heartbeat_file: str, stop: threading.Event):
        while not stop.wait(self.heartbeat_interval):
            try:
                self.send_heartbeat(heartbeat_file)
            except VpnTunnelError as e:
                self.logger.warning(f"Heartbeat failed: {e}")
        self.logger.info("Heartbeat monitoring stopped")

    def send_heartbeat(self, heartbeat_file: str):
        """Write the remote clock's current time into the heartbeat file."""
        self.run_command(f"date +%s > {shlex.quote(heartbeat_file)}", timeout=self.health_timeout)

    def stop_heartbeat(self):
        if self.heartbeat_stop is not None:
            self.heartbeat_stop.set()
        thread = self.heartbeat_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.health_timeout)
        self.heartbeat_stop = None
        self.heartbeat_thread = None

    # ------------------------------------------------------------------
    # Peers and health
    # ------------------------------------------------------------------

    def register_peer(self, client_public_key: str, client_address: str, port: int):
        """Allow the client key on the server interface serving port."""
        interface = server_interface_name(port)
        self.progress(
            f"Registering client peer on server\n"
            f"  Public Key: {client_public_key}\n"
            f"  Client IP: {client_address}\n"
            f"  Interface: {interface}"
        )

        try:
            self.run_command(
                f"sudo -n wg set {interface} peer {shlex.quote(client_public_key)} "
                f"allowed-ips {client_address}/32"
            )
        except RemoteCommandError as e:
            raise ProvisioningError(f"failed to register peer: {e}") from e

        self.progress("Client peer registered successfully")

    def set_probe_addresses(self, addresses: Sequence[str]):
        """Target addresses pinged by the SSH health check."""
        self.probe_addresses = tuple(addresses)

    def check_ssh_health(self):
        """
        Round-trip probe of the SSH session.

        When target addresses are known, a random one is pinged from the
        remote host so end-to-end reachability is covered too.
        """
        if self.ssh_client is None:
            raise ConnectivityError("SSH client not initialized")
        if not self.is_connected():
            raise ConnectivityError("SSH connection dead")

        if self.probe_addresses:
            address = random.choice(self.probe_addresses)
            status, _ = self.run_command(
                f"ping -c 1 -W 2 {shlex.quote(address)} > /dev/null 2>&1",
                timeout=self.health_timeout,
                check=False
            )
            if status != 0:
                raise ConnectivityError(f"target address {address} unreachable from remote host")
        else:
            self.run_command("echo health_check", timeout=self.health_timeout)

    def probe_address(self, address: str):
        """Ping a target address from the remote host (spot-check)."""
        self.progress(f"Testing reachability of {address} from remote host")
        status, output = self.run_command(
            f"ping -c 2 -W 2 {shlex.quote(address)}",
            timeout=self.command_timeout,
            check=False
        )
        self.logger.debug(output)
        if status != 0:
            raise TargetError(f"ping to {address} from {self.target.host if self.target else 'remote'} failed")
        self.progress(f"✓ {address} is reachable")


def detect_os_family(os_release: str) -> Optional[str]:
    """Map /etc/os-release content to an installer family."""
    lower = os_release.lower()
    if "ubuntu" in lower or "debian" in lower:
        return "debian"
    if any(name in lower for name in ("centos", "rocky", "red hat", "rhel", "almalinux")):
        return "rhel"
    return None
