import time
from collections import deque
from dataclasses import dataclass
from enum import IntEnum
from pathlib import Path
from typing import Callable, Deque, Dict, List, Optional, Tuple

from .storage import sanitize_node_name, timestamp_to_iso8601

DEFAULT_MAX_RECENT_ALERTS = 50

CATEGORY_KES = "kes-expiry"
CATEGORY_PEERS = "peer-count"
CATEGORY_SYNC = "sync-progress"
CATEGORY_STALL = "block-stall"
CATEGORY_CONNECTION = "connection"


class AlertSeverity(IntEnum):
    INFO = 10
    WARNING = 20
    CRITICAL = 30

    @property
    def label(self) -> str:
        return self.name


@dataclass
class AlertConfig:
    peer_min: int = 2
    kes_min_remaining: int = 5
    sync_warning_below: float = 95.0
    sync_critical_below: float = 90.0
    stall_warning_seconds: int = 300
    stall_critical_seconds: int = 900
    peer_cooldown_seconds: int = 300
    kes_cooldown_seconds: int = 3600
    sync_cooldown_seconds: int = 3600
    stall_cooldown_seconds: int = 3600
    connection_cooldown_seconds: int = 300
    max_recent: int = DEFAULT_MAX_RECENT_ALERTS


@dataclass(frozen=True)
class Alert:
    timestamp: float
    node_name: str
    severity: AlertSeverity
    category: str
    title: str
    message: str

    def display(self) -> str:
        return "[%s] %s - %s" % (self.severity.label, self.title, self.message)

    def log_line(self) -> str:
        return "%s | %s | %s | %s | %s" % (
            timestamp_to_iso8601(self.timestamp),
            self.node_name,
            self.severity.label,
            self.title,
            self.message,
        )


SeverityTable = Tuple[Tuple[float, AlertSeverity], ...]


# Rows are ordered most severe first; the first matching row wins and a value
# matching no row is healthy.
def _severity_below(value: float, table: SeverityTable) -> Optional[AlertSeverity]:
    for limit, severity in table:
        if value < limit:
            return severity
    return None


def _severity_at_least(value: float, table: SeverityTable) -> Optional[AlertSeverity]:
    for limit, severity in table:
        if value >= limit:
            return severity
    return None


def peer_severity(peers: int, config: AlertConfig) -> Optional[AlertSeverity]:
    return _severity_below(
        peers,
        ((1, AlertSeverity.CRITICAL), (config.peer_min, AlertSeverity.WARNING)),
    )


def kes_severity(remaining: int, config: AlertConfig) -> Optional[AlertSeverity]:
    return _severity_below(remaining, ((config.kes_min_remaining, AlertSeverity.CRITICAL),))


def sync_severity(progress: float, config: AlertConfig) -> Optional[AlertSeverity]:
    return _severity_below(
        progress,
        (
            (config.sync_critical_below, AlertSeverity.CRITICAL),
            (config.sync_warning_below, AlertSeverity.WARNING),
        ),
    )


def stall_severity(tip_age: float, config: AlertConfig) -> Optional[AlertSeverity]:
    if tip_age <= config.stall_warning_seconds:
        return None
    return _severity_at_least(
        tip_age,
        (
            (config.stall_critical_seconds, AlertSeverity.CRITICAL),
            (0, AlertSeverity.WARNING),
        ),
    )


def default_alert_log_path(base_dir: Path, node_name: str) -> Path:
    return base_dir / "alerts" / ("%s.log" % sanitize_node_name(node_name))


class AlertEngine:
    """Per-category cooldown gate in front of a bounded alert log.

    A category that stays unhealthy fires again every time its cooldown runs
    out; recovering does not reset anything.
    """

    def __init__(
        self,
        node_name: str,
        config: Optional[AlertConfig] = None,
        log_path: Optional[Path] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.node_name = node_name
        self.config = config or AlertConfig()
        self.log_path = Path(log_path) if log_path is not None else None
        self.clock = clock
        self._recent: Deque[Alert] = deque(maxlen=max(1, self.config.max_recent))
        self.last_alert_ts: Dict[str, float] = {}

    def check_kes_expiry(
        self, kes_remaining: Optional[int], now: Optional[float] = None
    ) -> Optional[Alert]:
        if kes_remaining is None:
            return None
        severity = kes_severity(kes_remaining, self.config)
        if severity is None:
            return None
        return self._emit(
            category=CATEGORY_KES,
            severity=severity,
            title="KES Expiry Critical",
            message="KES periods remaining: %d (renew certificate immediately)"
            % kes_remaining,
            cooldown=self.config.kes_cooldown_seconds,
            now=now,
        )

    def check_peer_count(
        self, peers: Optional[int], now: Optional[float] = None
    ) -> Optional[Alert]:
        if peers is None:
            return None
        severity = peer_severity(peers, self.config)
        if severity is None:
            return None
        return self._emit(
            category=CATEGORY_PEERS,
            severity=severity,
            title="Low Peer Count",
            message="Only %d peer(s) connected" % peers,
            cooldown=self.config.peer_cooldown_seconds,
            now=now,
        )

    def check_sync_progress(
        self, sync_progress: Optional[float], now: Optional[float] = None
    ) -> Optional[Alert]:
        if sync_progress is None:
            return None
        severity = sync_severity(sync_progress, self.config)
        if severity is None:
            return None
        return self._emit(
            category=CATEGORY_SYNC,
            severity=severity,
            title="Sync Progress Degraded",
            message="Node is %.2f%% synced" % sync_progress,
            cooldown=self.config.sync_cooldown_seconds,
            now=now,
        )

    def check_block_stall(
        self,
        tip_age: Optional[float],
        block_height: Optional[int] = None,
        now: Optional[float] = None,
    ) -> Optional[Alert]:
        if tip_age is None:
            return None
        severity = stall_severity(tip_age, self.config)
        if severity is None:
            return None
        height = "unknown" if block_height is None else str(block_height)
        return self._emit(
            category=CATEGORY_STALL,
            severity=severity,
            title="Block Height Stalled",
            message="No new blocks for %d seconds (height: %s)" % (tip_age, height),
            cooldown=self.config.stall_cooldown_seconds,
            now=now,
        )

    def check_connection(
        self, connected: bool, error: Optional[str] = None, now: Optional[float] = None
    ) -> Optional[Alert]:
        if connected:
            return None
        return self._emit(
            category=CATEGORY_CONNECTION,
            severity=AlertSeverity.CRITICAL,
            title="Node Unreachable",
            message="Metrics endpoint unavailable: %s" % (error or "no response"),
            cooldown=self.config.connection_cooldown_seconds,
            now=now,
        )

    def recent_alerts(self) -> List[Alert]:
        return list(self._recent)

    def latest_critical(self) -> Optional[Alert]:
        for alert in reversed(self._recent):
            if alert.severity == AlertSeverity.CRITICAL:
                return alert
        return None

    def alerts_since(self, timestamp: float) -> List[Alert]:
        return [alert for alert in self._recent if alert.timestamp >= timestamp]

    def _emit(
        self,
        category: str,
        severity: AlertSeverity,
        title: str,
        message: str,
        cooldown: int,
        now: Optional[float],
    ) -> Optional[Alert]:
        ts = now if now is not None else self.clock()
        previous_ts = self.last_alert_ts.get(category)
        if previous_ts is not None and (ts - previous_ts) < cooldown:
            return None

        alert = Alert(
            timestamp=ts,
            node_name=self.node_name,
            severity=severity,
            category=category,
            title=title,
            message=message,
        )
        self._recent.append(alert)
        self._append_log(alert)
        self.last_alert_ts[category] = ts
        return alert

    def _append_log(self, alert: Alert) -> None:
        if self.log_path is None:
            return
        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.log_path, "a", encoding="utf-8") as handle:
                handle.write(alert.log_line())
                handle.write("\n")
        except OSError as exc:
            print(
                "[WARN] failed to write alert log %s: %s" % (self.log_path, exc),
                flush=True,
            )
