"""Main entry point for the VPN tunnel manager."""

import sys
import signal
import argparse
import getpass
import threading
from pathlib import Path

from .client import TunnelClient
from .config import Config
from .controller import SessionController
from .credentials import CredentialGate
from .db import Database, SecretStore
from .errors import (
    InvalidSecretError,
    SecretRequiredError,
    VpnTunnelError,
)
from .logging import ProgressLog, setup_logging
from .models import SessionState, SSHTarget
from .notify import Notifier


MAX_SECRET_ATTEMPTS = 3


class VpnTunnelMain:
    """Main application class for the tunnel manager."""

    def __init__(self):
        """Initialize the tunnel manager application."""
        self.logger = setup_logging()
        self.database = None
        self.controller = None
        self.shutdown_event = threading.Event()

    def setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown."""
        def signal_handler(signum, frame):
            self.logger.info(f"Received signal {signum}, shutting down...")
            self.shutdown_event.set()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    def build_controller(self) -> SessionController:
        self.database = Database()
        return SessionController(
            registry=self.database,
            resolver=self.database,
            gate=CredentialGate(store=SecretStore(self.database)),
            notifier=Notifier(),
            progress=ProgressLog(sys.stdout)
        )

    def connect(self, connection_id: int, address: str = None, pool: str = None,  # type: ignore
                assume_yes: bool = False) -> bool:
        """Deploy a tunnel and keep it up until interrupted or broken."""
        try:
            Config.validate()
            self.controller = self.build_controller()
            targets = self.controller.submit_target(connection_id, address=address, pool=pool)
        except (VpnTunnelError, ValueError) as e:
            self.logger.error(f"Cannot accept target: {e}")
            print(f"Error: {e}", file=sys.stderr)
            return False

        if not assume_yes and not confirm(f"Deploy tunnel to {targets.describe()}? [y/N] "):
            print("Aborted.")
            return False

        try:
            self.run_pipeline()
        except VpnTunnelError as e:
            print(f"Error: {e}", file=sys.stderr)
            return False
        except KeyboardInterrupt:
            self.logger.info("Interrupted during deployment, cleaning up...")
            self.controller.reset()
            raise

        self.setup_signal_handlers()
        return self.supervise()

    def run_pipeline(self):
        """Deploy, prompting for the sudo password if the pipeline suspends."""
        controller = self.controller
        try:
            controller.deploy()
            return
        except SecretRequiredError:
            pass

        for _ in range(MAX_SECRET_ATTEMPTS):
            secret = getpass.getpass("[sudo] password for local user: ")
            try:
                controller.resume_with_secret(secret)
                return
            except InvalidSecretError as e:
                print(f"{e}, try again.", file=sys.stderr)
            except SecretRequiredError:
                continue

        controller.reset()
        raise VpnTunnelError("sudo password not accepted")

    def supervise(self) -> bool:
        """Relay notifications until the operator interrupts or the session drops."""
        controller = self.controller
        print("Tunnel connected. Press Ctrl+C to disconnect.")

        while not self.shutdown_event.is_set():
            notification = controller.notifier.get(timeout=1.0)
            if notification is not None:
                print(f"Error: {notification}", file=sys.stderr)
            if controller.state is not SessionState.CONNECTED:
                self.logger.error("Session lost")
                return False

        try:
            controller.disconnect()
        except VpnTunnelError as e:
            self.logger.error(f"Error during disconnect: {e}")
            return False
        return True

    def add_connection(self, name: str, host: str, username: str, port: int = 22,
                       key_path: str = None, ask_password: bool = False) -> bool:  # type: ignore
        """Add an SSH connection to the database."""
        try:
            password = getpass.getpass(f"SSH password for {username}@{host}: ") if ask_password else None
            if key_path:
                key_path = str(Path(key_path).expanduser())

            target = SSHTarget(
                host=host,
                port=port,
                username=username,
                password=password,
                key_path=key_path
            )
            connection_id = Database().add_ssh_connection(name, target)
            print(f"Added SSH connection {name} (id {connection_id})")
            self.logger.info(f"Added SSH connection {name} -> {target.address}")
            return True

        except Exception as e:
            self.logger.error(f"Error adding SSH connection: {e}")
            print(f"Error: {e}", file=sys.stderr)
            return False

    def list_connections(self):
        """List stored SSH connections."""
        for connection_id, name, address in Database().list_ssh_connections():
            print(f"{connection_id:>4}  {name:<20} {address}")

    def add_pool(self, name: str, addresses) -> bool:
        """Add addresses to a named address pool."""
        try:
            added = Database().add_pool_members(name, list(addresses))
            print(f"Added {added} address(es) to pool {name}")
            return True
        except Exception as e:
            self.logger.error(f"Error adding pool members: {e}")
            return False

    def forget_secret(self):
        """Remove the stored sudo password."""
        CredentialGate(store=SecretStore(Database())).reject()
        print("Stored sudo password removed")

    def test_config(self):
        """Test configuration, database and local tooling."""
        try:
            Config.validate()
            self.logger.info("Configuration validation passed")

            database = Database()
            database.list_ssh_connections()
            self.logger.info("Database connectivity test passed")

            artifact = Path(Config.SERVER_ARTIFACT)
            if not artifact.exists():
                raise FileNotFoundError(f"Tunnel server artifact missing: {artifact}")
            self.logger.info(f"Tunnel server artifact: {artifact}")

            TunnelClient.check_wireguard_installed()
            self.logger.info("Local WireGuard tools found")

            print("Configuration test completed successfully")

        except Exception as e:
            self.logger.error(f"Configuration test failed: {e}")
            print(f"Configuration test failed: {e}", file=sys.stderr)
            sys.exit(1)


def confirm(prompt: str) -> bool:
    try:
        return input(prompt).strip().lower() in ("y", "yes")
    except EOFError:
        return False


def main():
    """Main function with command line argument parsing."""
    parser = argparse.ArgumentParser(description="SSH-deployed WireGuard tunnel manager")
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    # Connect command
    connect_parser = subparsers.add_parser('connect', help='Deploy a tunnel and connect')
    connect_parser.add_argument('connection_id', type=int, help='SSH connection id')
    target_group = connect_parser.add_mutually_exclusive_group(required=True)
    target_group.add_argument('--ip', help='Single target IP address')
    target_group.add_argument('--pool', help='Named address pool')
    connect_parser.add_argument('-y', '--yes', action='store_true', help='Do not ask for confirmation')

    # Add SSH connection command
    add_conn_parser = subparsers.add_parser('add-connection', help='Add SSH connection to database')
    add_conn_parser.add_argument('name', help='Connection name')
    add_conn_parser.add_argument('host', help='Remote host IP/hostname')
    add_conn_parser.add_argument('username', help='SSH username')
    add_conn_parser.add_argument('--port', type=int, default=22, help='SSH port (default: 22)')
    add_conn_parser.add_argument('--key', dest='key_path', help='Private key file')
    add_conn_parser.add_argument('--password', action='store_true', help='Prompt for an SSH password')

    # List connections command
    subparsers.add_parser('list-connections', help='List SSH connections')

    # Add pool command
    pool_parser = subparsers.add_parser('add-pool', help='Add addresses to an address pool')
    pool_parser.add_argument('name', help='Pool name')
    pool_parser.add_argument('addresses', nargs='+', help='Member IP addresses')

    # Forget secret command
    subparsers.add_parser('forget-secret', help='Remove the stored sudo password')

    # Test configuration command
    subparsers.add_parser('test', help='Test configuration and local tooling')

    args = parser.parse_args()

    app = VpnTunnelMain()

    if args.command == 'connect':
        success = app.connect(args.connection_id, address=args.ip, pool=args.pool, assume_yes=args.yes)
        sys.exit(0 if success else 1)

    elif args.command == 'add-connection':
        success = app.add_connection(
            args.name,
            args.host,
            args.username,
            args.port,
            args.key_path,
            args.password
        )
        sys.exit(0 if success else 1)

    elif args.command == 'list-connections':
        app.list_connections()

    elif args.command == 'add-pool':
        success = app.add_pool(args.name, args.addresses)
        sys.exit(0 if success else 1)

    elif args.command == 'forget-secret':
        app.forget_secret()

    elif args.command == 'test':
        app.test_config()

    else:
        parser.print_help()
        sys.exit(1)


if __name__ == '__main__':
    main()
