"""Logging configuration for the VPN tunnel manager."""

import logging
import logging.handlers
import sys
import threading
from datetime import datetime
from typing import Optional, TextIO

from .config import Config


class VpnTunnelLogger:
    """Custom logger for the VPN tunnel manager."""

    def __init__(self, name: str = "vpntunnel", log_file: Optional[str] = None):
        """Initialize the tunnel manager logger."""
        self.logger = logging.getLogger(name)
        self.log_file = log_file or Config.LOG_FILE
        self.log_level = getattr(logging, Config.LOG_LEVEL.upper(), logging.INFO)

        self._setup_logger()

    def _setup_logger(self):
        """Setup logger with console and file handlers."""
        # Clear existing handlers
        self.logger.handlers.clear()

        self.logger.setLevel(self.log_level)

        formatter = logging.Formatter(
            fmt='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        # Console goes to stderr; stdout carries the progress stream
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(logging.WARNING)
        console_handler.setFormatter(formatter)
        self.logger.addHandler(console_handler)

        # File handler with rotation
        try:
            file_handler = logging.handlers.RotatingFileHandler(
                self.log_file,
                maxBytes=10 * 1024 * 1024,  # 10MB
                backupCount=5
            )
            file_handler.setLevel(self.log_level)
            file_handler.setFormatter(formatter)
            self.logger.addHandler(file_handler)
        except OSError as e:
            self.logger.warning(f"Could not setup file logging: {e}")

    def get_logger(self) -> logging.Logger:
        """Get the configured logger."""
        return self.logger


def setup_logging() -> logging.Logger:
    """Setup logging for the tunnel manager application."""
    tunnel_logger = VpnTunnelLogger()
    return tunnel_logger.get_logger()


class ProgressLog:
    """
    Append-only, ordered progress sink shown to the operator.

    Lines are timestamped, tagged with the emitting component and written to
    the caller-supplied stream under a lock. Each line is mirrored to the
    Python logger so the log file keeps the same history.
    """

    def __init__(self, stream: TextIO, logger: Optional[logging.Logger] = None):
        self.stream = stream
        self.logger = logger or logging.getLogger("vpntunnel.progress")
        self._lock = threading.Lock()

    def write(self, component: str, message: str):
        """Write one or more lines tagged with component."""
        timestamp = datetime.now().strftime('%Y/%m/%d %H:%M:%S')
        lines = message.rstrip("\n").split("\n")
        with self._lock:
            for line in lines:
                self.stream.write(f"{timestamp} [{component}] {line}\n")
                self.logger.info(f"[{component}] {line}")
            flush = getattr(self.stream, 'flush', None)
            if flush:
                flush()

    def raw(self, text: str):
        """Write remote process output verbatim."""
        if not text:
            return
        with self._lock:
            self.stream.write(text if text.endswith("\n") else text + "\n")
            self.logger.debug(text.rstrip("\n"))

    def tagged(self, component: str) -> "TaggedProgress":
        return TaggedProgress(self, component)


class TaggedProgress:
    """Progress writer bound to a single component tag."""

    def __init__(self, progress: ProgressLog, component: str):
        self.progress = progress
        self.component = component

    def __call__(self, message: str):
        self.progress.write(self.component, message)

    def raw(self, text: str):
        self.progress.raw(text)


def log_step(logger: logging.Logger, step: str, detail: str = ""):
    """Log the start of a pipeline step."""
    logger.info(f"Step START - {step}" + (f" - {detail}" if detail else ""))


def log_step_failed(logger: logging.Logger, step: str, error: Exception):
    """Log a failed pipeline step."""
    logger.error(f"Step FAILED - {step} - Error: {error}")


def log_session_connected(logger: logging.Logger, host: str, port: int,
                          client_address: str, targets: str):
    """Log an established session."""
    logger.info(
        f"Session CONNECTED - Host: {host}, Port: {port}, "
        f"Client: {client_address}, Targets: {targets}"
    )


def log_session_closed(logger: logging.Logger, host: str, port: Optional[int], reason: str):
    """Log a session teardown."""
    logger.info(
        f"Session CLOSED - Host: {host}, Port: {port}, Reason: {reason}"
    )
