import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, List, Optional, Tuple

from .alerts import Alert, AlertEngine
from .derive import derive_metrics
from .health import (
    HealthStatus,
    kes_health,
    memory_health,
    overall_health,
    peer_health,
    sync_health,
    tip_health,
)
from .history import DEFAULT_HISTORY_LENGTH, MetricsHistory
from .metrics import MetricsRecord, parse_prometheus_metrics
from .storage import SnapshotStore


@dataclass
class PollOutcome:
    node_name: str
    record: MetricsRecord
    saved: bool = False
    alerts: List[Alert] = field(default_factory=list)
    # Session state as of this tick, so the consumer never reads it live.
    status_text: str = "Connecting..."
    tip_age: Optional[float] = None
    health: HealthStatus = HealthStatus.CRITICAL


class NodeSession:
    """Everything one monitored node owns for the life of the process.

    ``process`` and ``process_failure`` are the only ways a tick enters the
    session, so history, storage and alerting always see the same finished
    record in the same order.
    """

    def __init__(
        self,
        node_name: str,
        history_length: int = DEFAULT_HISTORY_LENGTH,
        store: Optional[SnapshotStore] = None,
        alerts: Optional[AlertEngine] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.node_name = node_name
        self.clock = clock
        self.history = MetricsHistory(history_length)
        self.store = store
        self.alerts = alerts or AlertEngine(node_name, clock=clock)
        self.metrics = MetricsRecord()
        self.last_error: Optional[str] = None
        self.last_fetch_ts: Optional[float] = None
        self.fetch_count = 0
        self.last_block_height: Optional[int] = None
        self.last_block_ts: Optional[float] = None
        # (ts, height) of live ticks only; seeded history is hourly.
        self._tip_samples: Deque[Tuple[float, int]] = deque(maxlen=max(2, history_length))

    def start(self, now: Optional[float] = None) -> int:
        """Prepare storage and warm the history; returns samples loaded.

        Raises StorageError when the storage directory is unusable.
        """
        if self.store is None:
            return 0
        self.store.ensure_writable()
        self.store.cleanup_old_data(now=now)
        snapshots = self.store.load_history(self.history.capacity, now=now)
        self.history.seed(snapshots)
        if snapshots:
            print(
                "[INFO] loaded %d historical samples for %s"
                % (len(snapshots), self.node_name),
                flush=True,
            )
        return len(snapshots)

    def process(self, raw_text: str, now: Optional[float] = None) -> PollOutcome:
        ts = now if now is not None else self.clock()
        record = derive_metrics(parse_prometheus_metrics(raw_text), ts)
        self.last_error = None
        self.last_fetch_ts = ts
        self.fetch_count += 1
        return self._accept(record, ts)

    def process_failure(self, error: str, now: Optional[float] = None) -> PollOutcome:
        ts = now if now is not None else self.clock()
        self.last_error = error
        record = MetricsRecord(
            connected=False,
            node_kind=self.metrics.node_kind,
            last_error=error,
        )
        return self._accept(record, ts)

    def _accept(self, record: MetricsRecord, ts: float) -> PollOutcome:
        self._track_tip(record, ts)
        self.metrics = record
        self.history.update(record)

        saved = False
        if self.store is not None:
            saved = self.store.save(record, now=ts)

        tip_age = self.tip_age(ts)
        fired = [
            self.alerts.check_connection(record.connected, record.last_error, now=ts),
            self.alerts.check_kes_expiry(record.kes_remaining, now=ts),
            self.alerts.check_peer_count(record.peers_connected, now=ts),
            self.alerts.check_sync_progress(record.sync_progress, now=ts),
        ]
        if record.connected:
            fired.append(
                self.alerts.check_block_stall(
                    tip_age, record.block_height, now=ts
                )
            )
        alerts = [alert for alert in fired if alert is not None]
        return PollOutcome(
            node_name=self.node_name,
            record=record,
            saved=saved,
            alerts=alerts,
            status_text=self.status_text(),
            tip_age=tip_age,
            health=overall_health(record, tip_age),
        )

    def _track_tip(self, record: MetricsRecord, ts: float) -> None:
        if record.block_height is None:
            return
        self._tip_samples.append((ts, record.block_height))
        if self.last_block_height != record.block_height:
            self.last_block_height = record.block_height
            self.last_block_ts = ts

    def tip_age(self, now: Optional[float] = None) -> Optional[float]:
        if self.last_block_ts is None:
            return None
        ts = now if now is not None else self.clock()
        return max(0.0, ts - self.last_block_ts)

    def trend(self, name: str) -> Optional[float]:
        return self.history.trend(name)

    def blocks_per_minute(self) -> Optional[float]:
        """Block rate over the live ticks seen since this session started."""
        if len(self._tip_samples) < 2:
            return None
        first_ts, first_height = self._tip_samples[0]
        last_ts, last_height = self._tip_samples[-1]
        elapsed = last_ts - first_ts
        if elapsed <= 0:
            return None
        return (last_height - first_height) / elapsed * 60.0

    def status_text(self) -> str:
        if self.metrics.connected:
            return "Connected"
        if self.last_error is not None:
            return "Connection Error"
        return "Connecting..."

    def latest_critical_alert(self) -> Optional[Alert]:
        return self.alerts.latest_critical()

    def peer_health(self) -> HealthStatus:
        return peer_health(self.metrics.peers_connected)

    def sync_health(self) -> HealthStatus:
        return sync_health(self.metrics.sync_progress)

    def memory_health(self) -> HealthStatus:
        return memory_health(self.metrics.memory_used)

    def kes_health(self) -> HealthStatus:
        return kes_health(self.metrics.kes_remaining)

    def tip_health(self, now: Optional[float] = None) -> HealthStatus:
        return tip_health(self.tip_age(now))

    def overall_health(self, now: Optional[float] = None) -> HealthStatus:
        return overall_health(self.metrics, self.tip_age(now))
