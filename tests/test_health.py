"""Tests for the health monitor and the notification channel"""

import threading
from unittest.mock import MagicMock

from vpntunnel.errors import ConnectivityError, TunnelUnreachableError
from vpntunnel.health import HealthMonitor
from vpntunnel.notify import Notifier


class TestHealthMonitor:
    """Test periodic probing"""

    def test_healthy_tick(self):
        on_failure = MagicMock()
        monitor = HealthMonitor(MagicMock(), MagicMock(), on_failure, interval=60)

        assert monitor.tick() is True
        on_failure.assert_not_called()

    def test_ssh_failure_trips_once(self):
        deployer = MagicMock()
        deployer.check_ssh_health.side_effect = ConnectivityError("SSH connection dead")
        on_failure = MagicMock()
        monitor = HealthMonitor(deployer, MagicMock(), on_failure, interval=60)

        results = [monitor.tick() for _ in range(5)]

        assert results == [False] * 5
        on_failure.assert_called_once()
        assert isinstance(on_failure.call_args[0][0], ConnectivityError)

    def test_tunnel_failure_trips(self):
        client = MagicMock()
        client.check_tunnel_health.side_effect = TunnelUnreachableError("gateway down")
        on_failure = MagicMock()
        monitor = HealthMonitor(MagicMock(), client, on_failure, interval=60)

        monitor.tick()
        on_failure.assert_called_once()

    def test_unexpected_check_error_trips(self):
        deployer = MagicMock()
        deployer.check_ssh_health.side_effect = EOFError("transport gone")
        tripped = threading.Event()
        errors = []

        def on_failure(error):
            errors.append(error)
            tripped.set()

        monitor = HealthMonitor(deployer, MagicMock(), on_failure, interval=0.01)
        monitor.start()

        assert tripped.wait(2)
        monitor.thread.join(2)
        assert not monitor.thread.is_alive()
        assert len(errors) == 1
        assert isinstance(errors[0], EOFError)

    def test_concurrent_ticks_trip_once(self):
        deployer = MagicMock()
        deployer.check_ssh_health.side_effect = ConnectivityError("down")
        on_failure = MagicMock()
        monitor = HealthMonitor(deployer, MagicMock(), on_failure, interval=60)

        threads = [threading.Thread(target=monitor.tick) for _ in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        on_failure.assert_called_once()

    def test_background_loop_stops_itself_from_callback(self):
        deployer = MagicMock()
        deployer.check_ssh_health.side_effect = ConnectivityError("down")
        tripped = threading.Event()

        def on_failure(error):
            monitor.stop()
            tripped.set()

        monitor = HealthMonitor(deployer, MagicMock(), on_failure, interval=0.01)
        monitor.start()

        assert tripped.wait(2)
        monitor.thread.join(2)
        assert not monitor.thread.is_alive()

    def test_stopped_monitor_does_not_probe(self):
        deployer = MagicMock()
        monitor = HealthMonitor(deployer, MagicMock(), MagicMock(), interval=60)
        monitor.stop()

        assert monitor.tick() is False
        deployer.check_ssh_health.assert_not_called()


class TestNotifier:
    """Test the bounded notification channel"""

    def test_publish_and_get(self):
        notifier = Notifier(maxsize=4)
        assert notifier.publish("remote server", RuntimeError("exited"))

        notification = notifier.get()
        assert notification.source == "remote server"
        assert str(notification) == "[remote server] exited"

    def test_full_queue_drops(self):
        notifier = Notifier(maxsize=1)
        assert notifier.publish("a", RuntimeError("one"))
        assert not notifier.publish("b", RuntimeError("two"))
        assert notifier.dropped == 1
        assert [n.message for n in notifier.drain()] == ["one"]

    def test_get_empty(self):
        assert Notifier().get() is None
        assert Notifier().get(timeout=0.01) is None
