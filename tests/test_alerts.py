import tempfile
import unittest
from pathlib import Path

from nodewatch.alerts import (
    CATEGORY_CONNECTION,
    CATEGORY_KES,
    CATEGORY_PEERS,
    CATEGORY_STALL,
    CATEGORY_SYNC,
    AlertConfig,
    AlertEngine,
    AlertSeverity,
    default_alert_log_path,
)
from nodewatch.storage import date_to_timestamp

T0 = float(date_to_timestamp(2024, 1, 15))


class TestAlertThresholds(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = AlertEngine("relay-1")

    def test_peer_count(self) -> None:
        alert = self.engine.check_peer_count(0, now=T0)
        self.assertEqual(alert.severity, AlertSeverity.CRITICAL)
        self.assertEqual(alert.category, CATEGORY_PEERS)
        self.assertEqual(alert.title, "Low Peer Count")

        engine = AlertEngine("relay-1")
        self.assertEqual(engine.check_peer_count(1, now=T0).severity, AlertSeverity.WARNING)
        self.assertIsNone(AlertEngine("relay-1").check_peer_count(2, now=T0))
        self.assertIsNone(AlertEngine("relay-1").check_peer_count(None, now=T0))

    def test_kes_expiry(self) -> None:
        alert = self.engine.check_kes_expiry(3, now=T0)
        self.assertEqual(alert.severity, AlertSeverity.CRITICAL)
        self.assertEqual(alert.category, CATEGORY_KES)
        self.assertIn("3", alert.message)

        self.assertEqual(
            AlertEngine("bp").check_kes_expiry(4, now=T0).severity,
            AlertSeverity.CRITICAL,
        )
        self.assertIsNone(AlertEngine("bp").check_kes_expiry(5, now=T0))
        self.assertIsNone(AlertEngine("bp").check_kes_expiry(25, now=T0))
        self.assertIsNone(AlertEngine("bp").check_kes_expiry(None, now=T0))

    def test_sync_progress(self) -> None:
        self.assertEqual(
            self.engine.check_sync_progress(85.0, now=T0).severity,
            AlertSeverity.CRITICAL,
        )
        warning = AlertEngine("relay-1").check_sync_progress(92.0, now=T0)
        self.assertEqual(warning.severity, AlertSeverity.WARNING)
        self.assertEqual(warning.category, CATEGORY_SYNC)
        self.assertEqual(warning.message, "Node is 92.00% synced")
        self.assertIsNone(AlertEngine("relay-1").check_sync_progress(96.0, now=T0))

    def test_block_stall(self) -> None:
        self.assertIsNone(self.engine.check_block_stall(300, 100, now=T0))
        warning = self.engine.check_block_stall(301, 100, now=T0)
        self.assertEqual(warning.severity, AlertSeverity.WARNING)
        self.assertEqual(warning.category, CATEGORY_STALL)
        self.assertEqual(warning.message, "No new blocks for 301 seconds (height: 100)")

        critical = AlertEngine("relay-1").check_block_stall(900, None, now=T0)
        self.assertEqual(critical.severity, AlertSeverity.CRITICAL)
        self.assertIn("height: unknown", critical.message)
        self.assertIsNone(AlertEngine("relay-1").check_block_stall(None, now=T0))

    def test_connection(self) -> None:
        self.assertIsNone(self.engine.check_connection(True, now=T0))
        alert = self.engine.check_connection(False, "connection refused", now=T0)
        self.assertEqual(alert.severity, AlertSeverity.CRITICAL)
        self.assertEqual(alert.category, CATEGORY_CONNECTION)
        self.assertIn("connection refused", alert.message)

    def test_custom_thresholds(self) -> None:
        engine = AlertEngine("relay-1", config=AlertConfig(peer_min=10))
        self.assertEqual(engine.check_peer_count(8, now=T0).severity, AlertSeverity.WARNING)

    def test_severity_order(self) -> None:
        self.assertLess(AlertSeverity.INFO, AlertSeverity.WARNING)
        self.assertLess(AlertSeverity.WARNING, AlertSeverity.CRITICAL)
        self.assertEqual(AlertSeverity.CRITICAL.label, "CRITICAL")


class TestAlertCooldown(unittest.TestCase):
    def test_fires_again_only_after_cooldown(self) -> None:
        engine = AlertEngine("relay-1")
        cooldown = engine.config.peer_cooldown_seconds

        self.assertIsNotNone(engine.check_peer_count(0, now=T0))
        self.assertIsNone(engine.check_peer_count(0, now=T0 + 1))
        self.assertIsNone(engine.check_peer_count(0, now=T0 + cooldown - 1))
        self.assertIsNotNone(engine.check_peer_count(0, now=T0 + cooldown))
        self.assertEqual(len(engine.recent_alerts()), 2)

    def test_recovery_does_not_reset_cooldown(self) -> None:
        engine = AlertEngine("relay-1")
        self.assertIsNotNone(engine.check_peer_count(0, now=T0))
        self.assertIsNone(engine.check_peer_count(8, now=T0 + 10))
        self.assertIsNone(engine.check_peer_count(0, now=T0 + 20))

    def test_categories_are_independent(self) -> None:
        engine = AlertEngine("bp")
        self.assertIsNotNone(engine.check_peer_count(0, now=T0))
        self.assertIsNotNone(engine.check_kes_expiry(3, now=T0))
        self.assertIsNotNone(engine.check_connection(False, now=T0))
        self.assertEqual(
            sorted(engine.last_alert_ts),
            sorted([CATEGORY_PEERS, CATEGORY_KES, CATEGORY_CONNECTION]),
        )

    def test_clock_used_when_now_is_omitted(self) -> None:
        ticks = [T0]
        engine = AlertEngine("relay-1", clock=lambda: ticks[0])
        alert = engine.check_peer_count(0)
        self.assertEqual(alert.timestamp, T0)
        ticks[0] = T0 + 10
        self.assertIsNone(engine.check_peer_count(0))


class TestAlertLog(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.base = Path(self.tmp.name)

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def test_log_line_format(self) -> None:
        log_path = default_alert_log_path(self.base, "Relay 1")
        self.assertEqual(log_path, self.base / "alerts" / "relay_1.log")

        engine = AlertEngine("Relay 1", log_path=log_path)
        engine.check_peer_count(0, now=T0)
        engine.check_kes_expiry(3, now=T0 + 1)

        lines = log_path.read_text(encoding="utf-8").splitlines()
        self.assertEqual(
            lines[0],
            "2024-01-15T00:00:00Z | Relay 1 | CRITICAL | Low Peer Count | Only 0 peer(s) connected",
        )
        self.assertEqual(len(lines), 2)
        self.assertTrue(lines[1].startswith("2024-01-15T00:00:01Z | Relay 1 | CRITICAL | KES Expiry Critical |"))

    def test_log_failure_keeps_alert_in_memory(self) -> None:
        blocker = self.base / "blocker"
        blocker.write_text("x", encoding="utf-8")
        engine = AlertEngine("relay-1", log_path=blocker / "alerts.log")

        alert = engine.check_peer_count(0, now=T0)
        self.assertIsNotNone(alert)
        self.assertEqual(engine.recent_alerts(), [alert])
        self.assertIsNone(engine.check_peer_count(0, now=T0 + 1))


class TestRecentAlerts(unittest.TestCase):
    def test_ring_drops_oldest(self) -> None:
        engine = AlertEngine("relay-1", config=AlertConfig(max_recent=3, peer_cooldown_seconds=0))
        for index in range(5):
            engine.check_peer_count(index % 2, now=T0 + index)
        timestamps = [alert.timestamp for alert in engine.recent_alerts()]
        self.assertEqual(timestamps, [T0 + 2, T0 + 3, T0 + 4])

    def test_latest_critical_and_since(self) -> None:
        engine = AlertEngine("relay-1")
        self.assertIsNone(engine.latest_critical())

        critical = engine.check_kes_expiry(2, now=T0)
        warning = engine.check_peer_count(1, now=T0 + 5)
        self.assertEqual(engine.latest_critical(), critical)
        self.assertEqual(engine.alerts_since(T0 + 1), [warning])
        self.assertEqual(len(engine.alerts_since(T0)), 2)


if __name__ == "__main__":
    unittest.main()
