import dataclasses
from typing import Optional

from .metrics import MetricsRecord

# Mainnet era constants. Byron ran 20s slots from genesis until the Shelley
# hard fork, after which every slot is 1s.
BYRON_GENESIS_TS = 1506203091
BYRON_SLOT_SECONDS = 20
SHELLEY_START_TS = 1596059091
SHELLEY_START_SLOT = 4492800
SHELLEY_SLOT_SECONDS = 1


def expected_slot(now: float) -> Optional[float]:
    """Slot the chain tip should be at for wall-clock ``now``.

    This is an approximation built from fixed mainnet constants; it is not
    corrected against chain parameters and will be off on other networks.
    """
    if now < BYRON_GENESIS_TS:
        return None
    if now < SHELLEY_START_TS:
        return (now - BYRON_GENESIS_TS) / BYRON_SLOT_SECONDS
    return SHELLEY_START_SLOT + (now - SHELLEY_START_TS) / SHELLEY_SLOT_SECONDS


def estimate_sync_progress(slot_num: int, now: float) -> Optional[float]:
    expected = expected_slot(now)
    if not expected or expected <= 0:
        return None
    return min(100.0, max(0.0, 100.0 * slot_num / expected))


def derive_uptime(start_time: Optional[int], now: float) -> Optional[float]:
    if start_time is None or start_time > now:
        return None
    return now - start_time


def derive_peer_total(record: MetricsRecord) -> Optional[int]:
    if record.peers_connected is not None:
        return record.peers_connected
    states = [
        record.p2p_cold_peers,
        record.p2p_warm_peers,
        record.p2p_hot_peers,
    ]
    present = [count for count in states if count is not None]
    if not present:
        return None
    total = sum(present)
    return total if total > 0 else None


def derive_kes_remaining(record: MetricsRecord) -> Optional[int]:
    if record.kes_remaining is not None:
        return record.kes_remaining
    if record.kes_period is None or record.op_cert_expiry_kes_period is None:
        return None
    if record.op_cert_expiry_kes_period < record.kes_period:
        return None
    return record.op_cert_expiry_kes_period - record.kes_period


def derive_metrics(record: MetricsRecord, now: float) -> MetricsRecord:
    """Fill in the values the node does not expose directly.

    Returns a new record; the input is left untouched. A reported uptime,
    peer count, KES counter or sync progress is never overridden.
    """
    updates = {}

    if record.uptime_seconds is None:
        uptime = derive_uptime(record.node_start_time, now)
        if uptime is not None:
            updates["uptime_seconds"] = uptime

    peers = derive_peer_total(record)
    if peers is not None and record.peers_connected is None:
        updates["peers_connected"] = peers

    kes_remaining = derive_kes_remaining(record)
    if kes_remaining is not None and record.kes_remaining is None:
        updates["kes_remaining"] = kes_remaining

    if record.sync_progress is None and record.slot_num is not None:
        progress = estimate_sync_progress(record.slot_num, now)
        if progress is not None:
            updates["sync_progress"] = progress

    return dataclasses.replace(record, raw=dict(record.raw), **updates)
