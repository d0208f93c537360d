import queue
import signal
import threading
from pathlib import Path
from typing import Dict, List, Optional

from .alerts import Alert, AlertEngine, AlertSeverity, default_alert_log_path
from .config import ServiceConfig
from .session import NodeSession, PollOutcome
from .sources import MetricsClient, spawn_poller_threads
from .storage import SnapshotStore, default_data_dir, sanitize_node_name


def build_store(config: ServiceConfig, node_name: str) -> Optional[SnapshotStore]:
    if not config.storage.enabled:
        return None
    return SnapshotStore(
        node_name,
        base_dir=_data_dir(config),
        retention_days=config.storage.retention_days,
        min_interval_seconds=config.storage.min_sample_interval_seconds,
    )


def _data_dir(config: ServiceConfig) -> Path:
    if config.storage.data_dir:
        return Path(config.storage.data_dir)
    return default_data_dir()


def build_session(config: ServiceConfig, node_name: str) -> NodeSession:
    log_path = None
    if config.storage.enabled:
        log_path = default_alert_log_path(_data_dir(config), node_name)
    return NodeSession(
        node_name,
        history_length=config.history_length,
        store=build_store(config, node_name),
        alerts=AlertEngine(node_name, config=config.alerts, log_path=log_path),
    )


def export_history(
    config: ServiceConfig, node_name: str, output_path: str, max_samples: Optional[int] = None
) -> int:
    store = build_store(config, node_name)
    if store is None:
        raise ValueError("storage is disabled; nothing to export")
    if not store.node_dir.is_dir():
        raise ValueError("no stored history for node %r" % sanitize_node_name(node_name))
    return store.export_to_csv(Path(output_path), max_samples=max_samples)


class MonitoringService:
    def __init__(self, config: ServiceConfig) -> None:
        self.config = config
        self.stop_event = threading.Event()
        self.queue: "queue.Queue[object]" = queue.Queue(maxsize=1000)
        self.sessions: List[NodeSession] = [
            build_session(config, node.name) for node in config.nodes
        ]
        self.clients: Dict[str, MetricsClient] = {
            node.name: MetricsClient(node.metrics_url, node.timeout_seconds)
            for node in config.nodes
        }
        self.finished_pollers = 0
        self.expected_pollers = 0

    def run(self) -> int:
        signal.signal(signal.SIGINT, self._handle_stop)
        signal.signal(signal.SIGTERM, self._handle_stop)

        # Storage problems surface here, once, before any polling starts.
        for session in self.sessions:
            session.start()

        self.expected_pollers = spawn_poller_threads(
            sessions=self.sessions,
            clients=self.clients,
            out_queue=self.queue,
            stop_event=self.stop_event,
            refresh_interval_seconds=self.config.refresh_interval_seconds,
            run_once=self.config.run_once,
        )
        if self.expected_pollers == 0:
            raise RuntimeError("No nodes configured.")

        print(
            "[INFO] monitoring %d node(s) on %s every %.1fs"
            % (
                self.expected_pollers,
                self.config.network,
                self.config.refresh_interval_seconds,
            ),
            flush=True,
        )

        while self.finished_pollers < self.expected_pollers:
            try:
                self._drain_queue_once()
            except queue.Empty:
                if self.stop_event.is_set():
                    break
        return 0

    def _drain_queue_once(self, wait_timeout: float = 1.0) -> None:
        item = self.queue.get(timeout=wait_timeout)
        if isinstance(item, PollOutcome):
            self._publish_outcome(item)
            return
        # (node_name, None) marks a poller that has exited.
        self.finished_pollers += 1

    def _publish_outcome(self, outcome: PollOutcome) -> None:
        for alert in outcome.alerts:
            self._publish_alert(alert)
        print(self._status_line(outcome), flush=True)

    def _publish_alert(self, alert: Alert) -> None:
        print(
            "[ALERT][%s] %s: %s - %s"
            % (alert.severity.label, alert.node_name, alert.title, alert.message),
            flush=True,
        )

    def _status_line(self, outcome: PollOutcome) -> str:
        record = outcome.record
        if not record.connected:
            return "[STATUS] %s | %s | %s" % (
                outcome.node_name,
                outcome.status_text,
                record.last_error or "no data",
            )
        return (
            "[STATUS] %s | %s | kind=%s height=%s slot=%s peers=%s sync=%s "
            "tip_age=%s health=%s saved=%s"
            % (
                outcome.node_name,
                outcome.status_text,
                record.node_kind,
                _fmt(record.block_height),
                _fmt(record.slot_num),
                _fmt(record.peers_connected),
                _fmt(record.sync_progress, "%.2f%%"),
                _fmt(outcome.tip_age, "%.0fs"),
                outcome.health.name.lower(),
                "yes" if outcome.saved else "no",
            )
        )

    def recent_alerts(self) -> List[Alert]:
        alerts = [
            alert for session in self.sessions for alert in session.alerts.recent_alerts()
        ]
        alerts.sort(key=lambda alert: alert.timestamp)
        return alerts

    def latest_critical_alerts(self) -> Dict[str, Optional[Alert]]:
        return {
            session.node_name: session.latest_critical_alert()
            for session in self.sessions
        }

    def worst_alert_since(self, ts: float) -> Optional[AlertSeverity]:
        severities = [
            alert.severity
            for session in self.sessions
            for alert in session.alerts.alerts_since(ts)
        ]
        return max(severities) if severities else None

    def _handle_stop(self, signum: int, _frame: object) -> None:
        _ = signum
        self.stop_event.set()


def _fmt(value: Optional[float], pattern: str = "%s") -> str:
    if value is None:
        return "-"
    return pattern % value
