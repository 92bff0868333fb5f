"""Configuration module for the VPN tunnel manager."""

import os
from pathlib import Path

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


class Config:
    """Configuration class for the VPN tunnel manager."""

    # Remote listen-port window (100 concurrent sessions)
    PORT_RANGE_LOW = int(os.getenv("PORT_RANGE_LOW", "51821"))
    PORT_RANGE_HIGH = int(os.getenv("PORT_RANGE_HIGH", "51920"))

    # Address pool carved into /30 point-to-point blocks
    NETWORK_BASE = os.getenv("NETWORK_BASE", "10.99.0.0/16")

    # SSH configuration
    SSH_CONNECT_TIMEOUT = int(os.getenv("SSH_CONNECT_TIMEOUT", "30"))
    COMMAND_TIMEOUT = int(os.getenv("COMMAND_TIMEOUT", "15"))
    HEALTH_CHECK_TIMEOUT = int(os.getenv("HEALTH_CHECK_TIMEOUT", "5"))

    # Session supervision
    HEARTBEAT_INTERVAL = float(os.getenv("HEARTBEAT_INTERVAL", "5"))
    HEARTBEAT_TIMEOUT = int(os.getenv("HEARTBEAT_TIMEOUT", "12"))
    HEALTH_CHECK_INTERVAL = float(os.getenv("HEALTH_CHECK_INTERVAL", "12"))
    SERVER_SETTLE_DELAY = float(os.getenv("SERVER_SETTLE_DELAY", "3"))
    SERVER_STOP_TIMEOUT = float(os.getenv("SERVER_STOP_TIMEOUT", "5"))

    # Remote deployment
    REMOTE_BASE_DIR = os.getenv("REMOTE_BASE_DIR", "/tmp/vpntunnel")
    REMOTE_PYTHON = os.getenv("REMOTE_PYTHON", "python3")
    SERVER_ARTIFACT = os.getenv(
        "SERVER_ARTIFACT",
        str(Path(__file__).resolve().parent / "agent" / "tunnel_server.py")
    )

    # Local tunnel
    LOCAL_WORK_DIR = os.getenv("LOCAL_WORK_DIR", "/tmp/vpntunnel")
    PERSISTENT_KEEPALIVE = int(os.getenv("PERSISTENT_KEEPALIVE", "25"))
    HEALTH_PROBE_PORT = int(os.getenv("HEALTH_PROBE_PORT", "22"))

    # Notification channel capacity
    NOTIFY_QUEUE_SIZE = int(os.getenv("NOTIFY_QUEUE_SIZE", "32"))

    # Database configuration
    DB_URL = os.getenv("DB_URL", "sqlite:///vpntunnel.db")

    # Logging configuration
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    LOG_FILE = os.getenv("LOG_FILE", "vpntunnel.log")

    @classmethod
    def validate(cls):
        """Validate the configuration."""
        for port in (cls.PORT_RANGE_LOW, cls.PORT_RANGE_HIGH):
            if port < 1 or port > 65535:
                raise ValueError("Invalid port number")

        if cls.PORT_RANGE_LOW > cls.PORT_RANGE_HIGH:
            raise ValueError("Invalid port range")

        if cls.SSH_CONNECT_TIMEOUT < 1 or cls.COMMAND_TIMEOUT < 1:
            raise ValueError("Invalid SSH timeout")

        if cls.HEARTBEAT_INTERVAL <= 0 or cls.HEALTH_CHECK_INTERVAL <= 0:
            raise ValueError("Invalid supervision interval")

        if cls.HEARTBEAT_TIMEOUT <= cls.HEARTBEAT_INTERVAL:
            raise ValueError("Heartbeat timeout must exceed heartbeat interval")

        if cls.SERVER_SETTLE_DELAY < 0:
            raise ValueError("Invalid server settle delay")

        if cls.NOTIFY_QUEUE_SIZE < 1:
            raise ValueError("Invalid notification queue size")
