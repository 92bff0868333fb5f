"""Session controller: sequences deployment, supervision and teardown."""

import logging
import random
import re
import socket
import sys
import threading
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from .client import TunnelClient
from .config import Config
from .credentials import CredentialGate
from .deployer import RemoteDeployer
from .errors import (
    DeploymentError,
    PrivilegeError,
    SecretRequiredError,
    SessionBusyError,
    TargetError,
    VpnTunnelError,
)
from .health import HealthMonitor
from .keys import generate_keypair
from .logging import (
    ProgressLog,
    log_session_closed,
    log_session_connected,
    log_step,
    log_step_failed,
)
from .models import (
    ClientConfig,
    DeploymentConfig,
    KeyPair,
    ServerConfig,
    SessionState,
    SSHTarget,
    TargetAddressSet,
    TunnelNetwork,
)
from .network import (
    PortAllocator,
    allocate_network,
    client_interface_name,
    server_interface_name,
)
from .notify import Notifier


@dataclass
class Session:
    """Per-session entities; dropped as a whole on teardown."""

    target: SSHTarget
    addresses: TargetAddressSet
    deployer: RemoteDeployer
    client: TunnelClient
    cancel: threading.Event = field(default_factory=threading.Event)
    port: Optional[int] = None
    identity: Optional[int] = None
    network: Optional[TunnelNetwork] = None
    work_dir: Optional[str] = None
    server_keys: Optional[KeyPair] = None
    client_keys: Optional[KeyPair] = None
    server_config: Optional[ServerConfig] = None
    client_config: Optional[ClientConfig] = None
    server_thread: Optional[threading.Thread] = None
    monitor: Optional[HealthMonitor] = None
    # set by the server stream when the server fails before CONNECTED
    failure: Optional[Exception] = None


START_SERVER_STEP = "start tunnel server"


def local_hostname() -> str:
    """Hostname usable as a path component."""
    name = re.sub(r"[^A-Za-z0-9._-]", "_", socket.gethostname() or "localhost")
    return name or "localhost"


class SessionController:
    """
    Drives one tunnel session at a time through its lifecycle.

    All state transitions happen under a single lock. The deployment
    pipeline runs in the caller's thread; the remote server stream, the
    heartbeat and the health monitor run in background threads that report
    asynchronous failures through the notifier.
    """

    def __init__(self, registry, resolver=None, gate: Optional[CredentialGate] = None,
                 notifier: Optional[Notifier] = None, progress: Optional[ProgressLog] = None,
                 port_allocator: Optional[PortAllocator] = None,
                 deployer_factory: Optional[Callable[..., RemoteDeployer]] = None,
                 client_factory: Optional[Callable[..., TunnelClient]] = None,
                 settle_delay: float = None, health_interval: float = None,  # type: ignore
                 remote_base_dir: str = None, hostname: str = None):  # type: ignore
        """
        Initialize the controller.

        Args:
            registry: connection registry with get_ssh_connection(id) -> SSHTarget
            resolver: pool resolver with get_pool_members(name) -> list of addresses
            gate: credential gate for the local sudo password
            notifier: channel for asynchronous failures
            progress: operator-visible progress sink
            port_allocator: listen-port allocator shared by this controller's sessions
            deployer_factory: builds a RemoteDeployer from a tagged progress writer
            client_factory: builds a TunnelClient from (host_label, tagged progress)
            settle_delay: grace period around server start, in seconds
            health_interval: seconds between health probes
            remote_base_dir: parent of session-scoped remote directories
            hostname: local host label used in remote and local paths
        """
        self.registry = registry
        self.resolver = resolver
        self.gate = gate or CredentialGate()
        self.notifier = notifier or Notifier()
        self.progress = progress or ProgressLog(sys.stdout)
        self.port_allocator = port_allocator or PortAllocator()
        self.deployer_factory = deployer_factory or (lambda progress: RemoteDeployer(progress=progress))
        self.client_factory = client_factory or (lambda host, progress: TunnelClient(host, progress=progress))
        self.settle_delay = Config.SERVER_SETTLE_DELAY if settle_delay is None else settle_delay
        self.health_interval = health_interval or Config.HEALTH_CHECK_INTERVAL
        self.remote_base_dir = (remote_base_dir or Config.REMOTE_BASE_DIR).rstrip("/")
        self.hostname = hostname or local_hostname()

        self.logger = logging.getLogger(__name__)
        self.say = self.progress.tagged("vpn session")

        self._lock = threading.RLock()
        self._state = SessionState.IDLE
        self._session: Optional[Session] = None
        self._pending: Optional[Tuple[SSHTarget, TargetAddressSet]] = None
        self._resume_index: Optional[int] = None
        self._last_error: Optional[Exception] = None

        self._steps: List[Tuple[str, Callable[[Session], None]]] = [
            ("check local tools", self._step_check_local_tools),
            ("connect to remote host", self._step_connect),
            ("allocate port", self._step_allocate_port),
            ("generate server keys", self._step_server_keys),
            ("deploy tunnel server", self._step_deploy),
            (START_SERVER_STEP, self._step_start_server),
            ("start heartbeat", self._step_start_heartbeat),
            ("generate client keys", self._step_client_keys),
            ("register client peer", self._step_register_peer),
            ("connect local tunnel", self._step_connect_local),
        ]

    # ------------------------------------------------------------------
    # Public state
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def awaiting_secret(self) -> bool:
        """True while the pipeline is suspended on the sudo password."""
        return self._resume_index is not None

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def last_error(self) -> Optional[Exception]:
        return self._last_error

    def status(self) -> dict:
        """Snapshot for display."""
        with self._lock:
            session = self._session
            info = {
                'state': self._state.value,
                'awaiting_secret': self.awaiting_secret,
                'last_error': str(self._last_error) if self._last_error else None,
            }
            if session is not None:
                info.update({
                    'host': session.target.address,
                    'targets': session.addresses.describe(),
                    'port': session.port,
                    'network': str(session.network.subnet) if session.network else None,
                    'client': session.client.status(),
                })
            return info

    def _set_state(self, state: SessionState):
        with self._lock:
            if self._state is state:
                return
            self.logger.info(f"Session state {self._state.value} -> {state.value}")
            self._state = state
        self.say(f"State: {state.value}")

    # ------------------------------------------------------------------
    # Target submission
    # ------------------------------------------------------------------

    def submit_target(self, connection_id: int, address: Optional[str] = None,
                      pool: Optional[str] = None) -> TargetAddressSet:
        """
        Accept a target for the next deployment.

        Exactly one of address or pool is given. A pool is resolved and one
        random member is pinged from the remote host before it is accepted.
        """
        with self._lock:
            if self._state in (SessionState.DEPLOYING, SessionState.CONNECTED):
                raise SessionBusyError(f"cannot accept a new target while {self._state.value}")
            stale = self._detach_locked() if self._state is not SessionState.IDLE else None
        if stale is not None:
            self._teardown(stale, "reset")
        self._set_state(SessionState.IDLE)

        if (address is None) == (pool is None):
            raise TargetError("specify exactly one of a target address or an address pool")

        target = self.registry.get_ssh_connection(connection_id)
        if target is None:
            raise TargetError(f"SSH connection {connection_id} not found")

        if pool is not None:
            addresses = self._resolve_pool(pool)
            self._spot_check(target, addresses)
        else:
            addresses = TargetAddressSet.from_address(address or "")

        with self._lock:
            if self._state is not SessionState.IDLE:
                raise SessionBusyError(f"cannot accept a new target while {self._state.value}")
            self._pending = (target, addresses)
            self._last_error = None

        self.say(f"Target accepted: {addresses.describe()} via {target.address}")
        return addresses

    def _resolve_pool(self, pool: str) -> TargetAddressSet:
        if self.resolver is None:
            raise TargetError("no address pool resolver configured")
        self.say(f"Fetching members of address pool '{pool}'...")
        members = self.resolver.get_pool_members(pool)
        addresses = TargetAddressSet.from_pool(pool, members)
        self.say(f"Found {len(addresses.addresses)} addresses in pool '{pool}'")
        return addresses

    def _spot_check(self, target: SSHTarget, addresses: TargetAddressSet):
        sample = random.choice(addresses.addresses)
        deployer = self.deployer_factory(self.progress.tagged("vpn deployer"))
        try:
            deployer.connect(target)
            deployer.probe_address(sample)
        finally:
            deployer.disconnect()

    # ------------------------------------------------------------------
    # Deployment pipeline
    # ------------------------------------------------------------------

    def deploy(self):
        """
        Run the deployment pipeline for the accepted target.

        Raises SecretRequiredError when the local sudo password is needed;
        the pipeline then stays suspended until resume_with_secret().
        """
        with self._lock:
            if self._resume_index is not None:
                raise SecretRequiredError("sudo password required to continue the deployment")
            if self._state is not SessionState.IDLE:
                raise SessionBusyError(f"cannot deploy while {self._state.value}")
            if self._pending is None:
                raise TargetError("no target submitted")

            target, addresses = self._pending
            self._pending = None
            self._session = Session(
                target=target,
                addresses=addresses,
                deployer=self.deployer_factory(self.progress.tagged("vpn deployer")),
                client=self.client_factory(self.hostname, self.progress.tagged("vpn client")),
            )
            self._set_state(SessionState.DEPLOYING)

        self.say(f"Deploying tunnel to {addresses.describe()} via {target.address}")
        self._run_pipeline(0)

    def resume_with_secret(self, secret: str):
        """
        Validate the operator's sudo password and continue the pipeline.

        An invalid password raises InvalidSecretError and leaves the
        pipeline suspended for another attempt.
        """
        with self._lock:
            index = self._resume_index
            if index is None or self._session is None:
                raise VpnTunnelError("no deployment is waiting for a sudo password")

        self.gate.submit(secret)
        self.say("Sudo password validated, resuming deployment")

        with self._lock:
            self._resume_index = None
        self._run_pipeline(index)

    def _run_pipeline(self, start: int):
        session = self._session
        if session is None:
            raise VpnTunnelError("no active session")

        for index in range(start, len(self._steps)):
            name, step = self._steps[index]
            log_step(self.logger, name)
            try:
                self._check_server(session)
                step(session)
                self._check_server(session)
            except SecretRequiredError:
                with self._lock:
                    self._resume_index = index
                self.say("Sudo password required, waiting for the operator")
                raise
            except Exception as e:
                if session.failure is not None:
                    self._fail_step(session, START_SERVER_STEP, session.failure)
                self._fail_step(session, name, e)

        if not self._enter_connected(session):
            self._fail_step(session, START_SERVER_STEP, session.failure)

    def _fail_step(self, session: Session, name: str, cause: Exception):
        log_step_failed(self.logger, name, cause)
        error = DeploymentError(name, cause)
        self._abort(session, error)
        raise error from cause

    @staticmethod
    def _check_server(session: Session):
        if session.failure is not None:
            raise session.failure

    def _abort(self, session: Session, error: DeploymentError):
        """Fail the attempt: tear down whatever exists and go back to idle."""
        self.say(f"Error: {error}")
        with self._lock:
            self._last_error = error
            self._session = None
            self._resume_index = None
            self._set_state(SessionState.FAILED)

        self._teardown(session, "deployment failed")
        self.notifier.publish("deployment", error)
        self._set_state(SessionState.IDLE)

    def _enter_connected(self, session: Session) -> bool:
        """Go CONNECTED unless the server stream already failed."""
        session.deployer.set_probe_addresses(session.addresses.addresses)
        session.monitor = HealthMonitor(
            session.deployer,
            session.client,
            on_failure=lambda error: self._on_session_failure(session, "health monitor", error),
            interval=self.health_interval
        )

        with self._lock:
            if session.failure is not None:
                return False
            self._set_state(SessionState.CONNECTED)
            session.monitor.start()

        network = session.network
        log_session_connected(
            self.logger,
            session.target.host,
            session.port or 0,
            str(network.client_address) if network else "",
            session.addresses.describe()
        )
        self.say(
            f"=== Connected ===\n"
            f"  Remote: {session.target.address} (port {session.port})\n"
            f"  Tunnel: {network.client_address if network else ''} -> "
            f"{network.server_address if network else ''}\n"
            f"  Targets: {', '.join(session.addresses.addresses)}"
        )
        return True

    # Pipeline steps -----------------------------------------------------

    def _step_check_local_tools(self, session: Session):
        self.say("Checking local WireGuard tools...")
        session.client.check_wireguard_installed()

    def _step_connect(self, session: Session):
        session.deployer.connect(session.target)

    def _step_allocate_port(self, session: Session):
        port = session.deployer.allocate_port(
            self.port_allocator.low,
            self.port_allocator.high,
            allocator=self.port_allocator
        )
        session.port = port
        session.identity = self.port_allocator.identity_for(port)
        session.network = allocate_network(session.identity)
        session.work_dir = f"{self.remote_base_dir}/{self.hostname}-port{port}"
        self.say(
            f"Session {session.identity}: port {port}, network {session.network.subnet} "
            f"(server {session.network.server_address}, client {session.network.client_address})"
        )

    def _step_server_keys(self, session: Session):
        session.server_keys = generate_keypair()
        self.say(f"Server public key: {session.server_keys.public_key}")

    def _step_deploy(self, session: Session):
        session.server_config = ServerConfig(
            keys=session.server_keys,
            listen_port=session.port,
            network=session.network,
            target_addresses=session.addresses.addresses,
            interface_name=server_interface_name(session.port),
            heartbeat_timeout=Config.HEARTBEAT_TIMEOUT
        )
        session.deployer.deploy(
            DeploymentConfig(target=session.target, remote_work_dir=session.work_dir),
            session.server_config
        )

    def _step_start_server(self, session: Session):
        session.server_thread = threading.Thread(
            target=self._run_server,
            args=(session,),
            name="vpn-server-stream",
            daemon=True
        )
        session.server_thread.start()

    def _step_start_heartbeat(self, session: Session):
        self._settle(session)
        session.deployer.start_heartbeat(session.work_dir, cancel=session.cancel)
        self._settle(session)

    def _step_client_keys(self, session: Session):
        session.client_keys = generate_keypair()
        self.say(f"Client public key: {session.client_keys.public_key}")

    def _step_register_peer(self, session: Session):
        session.deployer.register_peer(
            session.client_keys.public_key,
            str(session.network.client_address),
            session.port
        )

    def _step_connect_local(self, session: Session):
        session.client_config = ClientConfig(
            keys=session.client_keys,
            server_public_key=session.server_keys.public_key,
            server_endpoint=f"{session.target.host}:{session.port}",
            network=session.network,
            target_addresses=session.addresses.addresses,
            interface_name=client_interface_name(session.port),
            persistent_keepalive=Config.PERSISTENT_KEEPALIVE
        )

        secret = self.gate.obtain()
        try:
            session.client.connect(session.client_config, secret)
        except SecretRequiredError:
            raise
        except PrivilegeError as e:
            self.logger.warning(f"Sudo rejected the cached password: {e}")
            self.gate.reject()
            raise SecretRequiredError(str(e)) from e

    def _settle(self, session: Session):
        if self.settle_delay > 0:
            session.cancel.wait(self.settle_delay)
        if session.cancel.is_set():
            raise VpnTunnelError("session cancelled")

    # ------------------------------------------------------------------
    # Background server stream
    # ------------------------------------------------------------------

    def _run_server(self, session: Session):
        try:
            session.deployer.start_server(session.cancel, session.work_dir, session.server_config)
        except VpnTunnelError as e:
            if session.cancel.is_set():
                self.logger.info(f"Server stream ended after cancellation: {e}")
                return
            self._on_session_failure(session, "remote server", e)
        except Exception as e:
            self.logger.exception(f"Unexpected error in server stream: {e}")
            if not session.cancel.is_set():
                self._on_session_failure(session, "remote server", e)

    def _on_session_failure(self, session: Session, source: str, error: Exception):
        """Asynchronous failure: notify once and tear the session down once."""
        with self._lock:
            if self._session is not session or session.cancel.is_set():
                return
            if self._state is SessionState.DEPLOYING:
                # the pipeline reports it as a failed step
                self.logger.error(f"{source} failed during deployment: {error}")
                session.failure = error
                session.cancel.set()
                suspended = self._resume_index is not None
                if not suspended:
                    return
            else:
                suspended = False
            connected = self._state is SessionState.CONNECTED
            if connected:
                self._session = None
                self._last_error = error
                session.cancel.set()

        if suspended:
            self._abort(session, DeploymentError(START_SERVER_STEP, error))
            return

        self.notifier.publish(source, error)
        self.say(f"Error: {source}: {error}")

        if connected:
            self._teardown(session, f"{source} failure")
            self._set_state(SessionState.DISCONNECTED)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def disconnect(self):
        """Orderly teardown of the connected session, back to idle."""
        with self._lock:
            session = self._session
            if self._state is not SessionState.CONNECTED or session is None:
                raise VpnTunnelError(f"no connected session (state: {self._state.value})")
            self._session = None

        self.say("Disconnecting...")
        self._teardown(session, "operator disconnect")
        self._set_state(SessionState.DISCONNECTED)
        self._set_state(SessionState.IDLE)

    def reset(self):
        """Abandon whatever is in progress and return to idle."""
        with self._lock:
            session = self._detach_locked()
        if session is not None:
            self._teardown(session, "reset")
        self._set_state(SessionState.IDLE)

    def _detach_locked(self) -> Optional[Session]:
        session = self._session
        self._session = None
        self._pending = None
        self._resume_index = None
        return session

    def _teardown(self, session: Session, reason: str):
        """Best-effort cleanup of both ends; never raises."""
        session.cancel.set()

        if session.monitor is not None:
            session.monitor.stop()

        try:
            session.client.disconnect()
        except Exception as e:
            self.logger.warning(f"Local tunnel cleanup failed: {e}")

        thread = session.server_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=Config.SERVER_STOP_TIMEOUT + Config.COMMAND_TIMEOUT)

        try:
            session.deployer.disconnect()
        except Exception as e:
            self.logger.warning(f"Remote cleanup failed: {e}")

        if session.port is not None:
            self.port_allocator.release(session.port)

        log_session_closed(self.logger, session.target.host, session.port, reason)
        self.say(f"Session closed ({reason})")
