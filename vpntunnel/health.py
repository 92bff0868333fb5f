"""Periodic supervision of a connected session."""

import logging
import threading
from typing import Callable, Optional

from .config import Config
from .errors import VpnTunnelError


class HealthMonitor:
    """
    Probes the SSH session and the tunnel at a fixed interval.

    The first failed probe trips the monitor: on_failure is invoked exactly
    once with the error and the monitor stops probing.
    """

    def __init__(self, deployer, client, on_failure: Callable[[Exception], None],
                 interval: float = None):  # type: ignore
        """
        Initialize the monitor.

        Args:
            deployer: object exposing check_ssh_health()
            client: object exposing check_tunnel_health()
            on_failure: callback receiving the first failure
            interval: seconds between probes
        """
        self.deployer = deployer
        self.client = client
        self.on_failure = on_failure
        self.interval = interval or Config.HEALTH_CHECK_INTERVAL
        self.logger = logging.getLogger(__name__)

        self.stop_event = threading.Event()
        self.thread: Optional[threading.Thread] = None
        self.tripped = False
        self._lock = threading.Lock()

    def start(self):
        """Start probing in a background thread."""
        if self.thread is not None:
            return
        self.thread = threading.Thread(
            target=self._run,
            name="vpn-health-monitor",
            daemon=True
        )
        self.thread.start()
        self.logger.info(f"Health monitoring started (interval: {self.interval:g}s)")

    def stop(self):
        """Stop probing. Safe to call from the failure callback."""
        self.stop_event.set()
        thread = self.thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.interval)

    def _run(self):
        while not self.stop_event.wait(self.interval):
            if not self.tick():
                break
        self.logger.info("Health monitoring stopped")

    def tick(self) -> bool:
        """
        Run one probe round.

        Returns:
            True if the session is healthy, False once the monitor tripped
        """
        if self.tripped or self.stop_event.is_set():
            return False

        try:
            self.deployer.check_ssh_health()
            self.client.check_tunnel_health()
        except VpnTunnelError as e:
            self._trip(e)
            return False
        except Exception as e:
            self.logger.exception(f"Unexpected error during health check: {e}")
            self._trip(e)
            return False

        self.logger.debug("Health check passed")
        return True

    def _trip(self, error: Exception):
        with self._lock:
            if self.tripped:
                return
            self.tripped = True

        self.logger.error(f"Health check failed: {error}")
        self.on_failure(error)
