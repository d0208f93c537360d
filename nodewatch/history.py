from collections import deque
from typing import Deque, Dict, Iterable, List, Optional

from .metrics import NUMERIC_FIELDS, MetricsRecord

DEFAULT_HISTORY_LENGTH = 60

# Snapshot fields that map onto history rings when warming up from disk.
SNAPSHOT_HISTORY_FIELDS = (
    "block_height",
    "slot_num",
    "peers_connected",
    "memory_used",
    "mempool_txs",
    "mempool_bytes",
    "sync_progress",
)


class MetricHistory:
    """Fixed-capacity ring of samples for one metric, oldest first."""

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError("history capacity must be at least 1")
        self.capacity = capacity
        self._values: Deque[float] = deque(maxlen=capacity)

    def push(self, value: float) -> None:
        self._values.append(float(value))

    def values(self) -> List[float]:
        return list(self._values)

    def sparkline(self) -> List[int]:
        return [int(value) for value in self._values]

    def oldest(self) -> Optional[float]:
        return self._values[0] if self._values else None

    def newest(self) -> Optional[float]:
        return self._values[-1] if self._values else None

    def min(self) -> Optional[float]:
        return min(self._values) if self._values else None

    def max(self) -> Optional[float]:
        return max(self._values) if self._values else None

    def avg(self) -> Optional[float]:
        if not self._values:
            return None
        return sum(self._values) / float(len(self._values))

    def trend(self) -> Optional[float]:
        if len(self._values) < 2:
            return None
        return self._values[-1] - self._values[0]

    def clear(self) -> None:
        self._values.clear()

    def __len__(self) -> int:
        return len(self._values)

    def __bool__(self) -> bool:
        return bool(self._values)


class MetricsHistory:
    def __init__(
        self,
        capacity: int = DEFAULT_HISTORY_LENGTH,
        tracked: Iterable[str] = NUMERIC_FIELDS,
    ) -> None:
        self.capacity = capacity
        self._rings: Dict[str, MetricHistory] = {
            name: MetricHistory(capacity) for name in tracked
        }

    def ring(self, name: str) -> MetricHistory:
        if name not in self._rings:
            self._rings[name] = MetricHistory(self.capacity)
        return self._rings[name]

    def names(self) -> List[str]:
        return list(self._rings)

    def update(self, record: MetricsRecord) -> int:
        """Push every present field of ``record``; returns how many were pushed."""
        pushed = 0
        for name, value in record.numeric_values().items():
            if name in self._rings:
                self._rings[name].push(value)
                pushed += 1
        return pushed

    def seed(self, snapshots: Iterable[object]) -> None:
        for snapshot in snapshots:
            for name in SNAPSHOT_HISTORY_FIELDS:
                value = getattr(snapshot, name, None)
                if value is not None:
                    self.ring(name).push(value)

    def trend(self, name: str) -> Optional[float]:
        return self.ring(name).trend()

    def snapshot(self) -> Dict[str, List[float]]:
        return {name: ring.values() for name, ring in self._rings.items() if ring}
