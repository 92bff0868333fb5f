#!/usr/bin/env python3
"""
Remote tunnel server.

Uploaded next to its JSON config into a session directory and run as root.
It materializes the WireGuard endpoint, forwards tunnel traffic to the
target addresses and removes everything it created when it stops. It stops
on SIGTERM, SIGHUP or SIGINT, and on its own once the heartbeat file has not
been refreshed for heartbeat_timeout seconds.

Only the standard library is used: the remote host gets nothing installed
besides wireguard-tools.
"""

import argparse
import json
import logging
import os
import shutil
import signal
import subprocess
import sys
import threading
import time


logger = logging.getLogger("tunnel-server")

CHECK_INTERVAL = 1.0


class CommandError(Exception):
    """A setup command failed."""


def run(args, check=True):
    """Run a command, logging it; raise CommandError on failure if check."""
    logger.debug("exec: %s", " ".join(args))
    result = subprocess.run(args, capture_output=True, text=True)
    if check and result.returncode != 0:
        raise CommandError(
            f"{' '.join(args)} exited with status {result.returncode}: {result.stderr.strip()}"
        )
    return result


class TunnelServer:
    """One WireGuard endpoint plus the forwarding rules it needs."""

    def __init__(self, config, work_dir):
        self.interface = config['interface']
        self.listen_port = int(config['listen_port'])
        self.private_key = config['private_key']
        self.server_address = config['server_address']
        self.network = config['network']
        self.targets = list(config['target_addresses'])
        self.work_dir = work_dir

        self.prefix = self.network.split("/")[1]
        self.key_file = os.path.join(work_dir, "server.key")
        self.userspace = None
        self.undo = []

    def setup(self):
        self._create_interface()
        self._write_key()

        run(["wg", "set", self.interface,
             "listen-port", str(self.listen_port),
             "private-key", self.key_file])
        run(["ip", "address", "add", f"{self.server_address}/{self.prefix}", "dev", self.interface])
        run(["ip", "link", "set", "up", "dev", self.interface])

        self._enable_forwarding()
        for target in self.targets:
            self._forward(target)

        logger.info(
            "Tunnel server ready on %s (port %d, address %s/%s, targets %s)",
            self.interface, self.listen_port, self.server_address, self.prefix,
            ", ".join(self.targets)
        )

    def _create_interface(self):
        run(["ip", "link", "delete", "dev", self.interface], check=False)

        result = run(["ip", "link", "add", "dev", self.interface, "type", "wireguard"], check=False)
        if result.returncode != 0:
            if shutil.which("wireguard-go") is None:
                raise CommandError(
                    f"cannot create WireGuard interface {self.interface}: {result.stderr.strip()}"
                )
            logger.info("Kernel WireGuard unavailable, using wireguard-go")
            self.userspace = subprocess.Popen(
                ["wireguard-go", "--foreground", self.interface],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL
            )
            self._wait_for_interface()
        self.undo.append(["ip", "link", "delete", "dev", self.interface])

    def _wait_for_interface(self, timeout=10.0):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if run(["ip", "link", "show", "dev", self.interface], check=False).returncode == 0:
                return
            time.sleep(0.2)
        raise CommandError(f"wireguard-go did not create {self.interface}")

    def _write_key(self):
        fd = os.open(self.key_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as key_file:
            key_file.write(self.private_key + "\n")

    def _enable_forwarding(self):
        path = "/proc/sys/net/ipv4/ip_forward"
        with open(path) as forward_file:
            previous = forward_file.read().strip()
        if previous != "1":
            run(["sysctl", "-q", "-w", "net.ipv4.ip_forward=1"])
            self.undo.append(["sysctl", "-q", "-w", f"net.ipv4.ip_forward={previous}"])

    def _forward(self, target):
        rules = [
            ["FORWARD", "-i", self.interface, "-s", self.network, "-d", target, "-j", "ACCEPT"],
            ["FORWARD", "-o", self.interface, "-s", target, "-d", self.network, "-j", "ACCEPT"],
        ]
        for rule in rules:
            run(["iptables", "-I", *rule])
            self.undo.append(["iptables", "-D", *rule])

        nat = ["POSTROUTING", "-s", self.network, "-d", target, "-j", "MASQUERADE"]
        run(["iptables", "-t", "nat", "-A", *nat])
        self.undo.append(["iptables", "-t", "nat", "-D", *nat])

    def teardown(self):
        while self.undo:
            command = self.undo.pop()
            result = run(command, check=False)
            if result.returncode != 0:
                logger.warning("cleanup failed: %s: %s", " ".join(command), result.stderr.strip())

        if self.userspace is not None:
            self.userspace.terminate()
            try:
                self.userspace.wait(timeout=5)
            except subprocess.TimeoutExpired:
                self.userspace.kill()
            self.userspace = None

        try:
            os.unlink(self.key_file)
        except FileNotFoundError:
            pass

        logger.info("Tunnel server cleaned up")


def heartbeat_age(path, started):
    """Seconds since the last heartbeat (or since start if none yet)."""
    try:
        with open(path) as heartbeat_file:
            stamp = float(heartbeat_file.read().strip())
    except (OSError, ValueError):
        return time.time() - started
    return time.time() - stamp


def setup_logging(log_file):
    formatter = logging.Formatter(
        fmt='%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    logger.setLevel(logging.DEBUG)

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(logging.INFO)
    console.setFormatter(formatter)
    logger.addHandler(console)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)


def main(argv=None):
    parser = argparse.ArgumentParser(description="WireGuard tunnel server")
    parser.add_argument('--config', required=True, help='JSON server config')
    parser.add_argument('--heartbeat-file', required=True, help='file refreshed by the controller')
    parser.add_argument('--log-file', help='log file')
    parser.add_argument('--pid-file', help='pid file')
    args = parser.parse_args(argv)

    setup_logging(args.log_file)

    with open(args.config) as config_file:
        config = json.load(config_file)
    timeout = float(config.get('heartbeat_timeout', 12))

    stop = threading.Event()

    def handle_signal(signum, frame):
        logger.info("Received signal %d, shutting down", signum)
        stop.set()

    for signum in (signal.SIGTERM, signal.SIGHUP, signal.SIGINT):
        signal.signal(signum, handle_signal)

    if args.pid_file:
        with open(args.pid_file, "w") as pid_file:
            pid_file.write(f"{os.getpid()}\n")

    server = TunnelServer(config, os.path.dirname(os.path.abspath(args.config)))
    status = 0
    started = time.time()
    try:
        server.setup()
        sys.stdout.flush()

        while not stop.wait(CHECK_INTERVAL):
            age = heartbeat_age(args.heartbeat_file, started)
            if age > timeout:
                logger.warning("Heartbeat stale for %.0fs, shutting down", age)
                status = 2
                break
    except (CommandError, OSError, KeyError, ValueError) as e:
        logger.error("Tunnel server failed: %s", e)
        status = 1
    finally:
        server.teardown()
        if args.pid_file:
            try:
                os.unlink(args.pid_file)
            except FileNotFoundError:
                pass

    return status


if __name__ == '__main__':
    sys.exit(main())
