from enum import IntEnum
from typing import Iterable, Optional, Tuple

from .metrics import MetricsRecord


class HealthStatus(IntEnum):
    GOOD = 0
    WARNING = 1
    CRITICAL = 2


HealthTable = Tuple[Tuple[float, HealthStatus], ...]

# Rows are checked in order; values past every row are critical.
PEER_TABLE: HealthTable = ((5, HealthStatus.GOOD), (2, HealthStatus.WARNING))
SYNC_TABLE: HealthTable = ((99.9, HealthStatus.GOOD), (95.0, HealthStatus.WARNING))
# Each KES period is ~1.5 days on mainnet: 20 periods ~ 30 days, 5 ~ 7 days.
KES_TABLE: HealthTable = ((20, HealthStatus.GOOD), (5, HealthStatus.WARNING))
MEMORY_TABLE: HealthTable = (
    (12_000_000_000, HealthStatus.GOOD),
    (14_000_000_000, HealthStatus.WARNING),
)
TIP_AGE_TABLE: HealthTable = ((60, HealthStatus.GOOD), (120, HealthStatus.WARNING))


def classify_at_least(
    value: Optional[float], table: HealthTable, unknown: HealthStatus
) -> HealthStatus:
    if value is None:
        return unknown
    for minimum, status in table:
        if value >= minimum:
            return status
    return HealthStatus.CRITICAL


def classify_below(
    value: Optional[float], table: HealthTable, unknown: HealthStatus
) -> HealthStatus:
    if value is None:
        return unknown
    for maximum, status in table:
        if value < maximum:
            return status
    return HealthStatus.CRITICAL


def peer_health(peers: Optional[int]) -> HealthStatus:
    return classify_at_least(peers, PEER_TABLE, HealthStatus.WARNING)


def sync_health(progress: Optional[float]) -> HealthStatus:
    return classify_at_least(progress, SYNC_TABLE, HealthStatus.WARNING)


def kes_health(remaining: Optional[int]) -> HealthStatus:
    # Relays do not report KES at all.
    return classify_at_least(remaining, KES_TABLE, HealthStatus.GOOD)


def memory_health(memory_used: Optional[int]) -> HealthStatus:
    return classify_below(memory_used, MEMORY_TABLE, HealthStatus.GOOD)


def tip_health(tip_age: Optional[float]) -> HealthStatus:
    return classify_below(tip_age, TIP_AGE_TABLE, HealthStatus.GOOD)


def worst(statuses: Iterable[HealthStatus]) -> HealthStatus:
    return max(statuses, default=HealthStatus.GOOD)


def overall_health(record: MetricsRecord, tip_age: Optional[float]) -> HealthStatus:
    if not record.connected:
        return HealthStatus.CRITICAL
    return worst(
        (
            peer_health(record.peers_connected),
            sync_health(record.sync_progress),
            memory_health(record.memory_used),
            kes_health(record.kes_remaining),
            tip_health(tip_age),
        )
    )
