import math
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Dict, Iterable, Optional, Tuple


class NodeKind(Enum):
    CARDANO_NODE = "cardano-node"
    DINGO = "dingo"
    AMARU = "amaru"
    UNKNOWN = "unknown"

    def __str__(self) -> str:
        return self.value


# First matching prefix wins.
NODE_KIND_PREFIXES: Tuple[Tuple[str, NodeKind], ...] = (
    ("dingo_", NodeKind.DINGO),
    ("amaru_", NodeKind.AMARU),
    ("cardano_node_", NodeKind.CARDANO_NODE),
)


@dataclass
class MetricsRecord:
    connected: bool = False
    node_kind: NodeKind = NodeKind.UNKNOWN

    block_height: Optional[int] = None
    slot_num: Optional[int] = None
    epoch: Optional[int] = None
    slot_in_epoch: Optional[int] = None
    density: Optional[float] = None

    peers_connected: Optional[int] = None
    p2p_cold_peers: Optional[int] = None
    p2p_warm_peers: Optional[int] = None
    p2p_hot_peers: Optional[int] = None
    incoming_conns: Optional[int] = None
    outgoing_conns: Optional[int] = None
    duplex_conns: Optional[int] = None

    memory_used: Optional[int] = None
    memory_heap: Optional[int] = None
    cpu_seconds: Optional[float] = None
    gc_minor_count: Optional[int] = None
    gc_major_count: Optional[int] = None

    mempool_txs: Optional[int] = None
    mempool_bytes: Optional[int] = None
    txs_processed: Optional[int] = None

    kes_period: Optional[int] = None
    kes_remaining: Optional[int] = None
    op_cert_start_kes_period: Optional[int] = None
    op_cert_expiry_kes_period: Optional[int] = None
    blocks_forged: Optional[int] = None
    blocks_adopted: Optional[int] = None
    slots_led: Optional[int] = None
    slots_missed: Optional[int] = None

    block_delay_seconds: Optional[float] = None
    block_delay_cdf_1s: Optional[float] = None
    block_delay_cdf_3s: Optional[float] = None
    block_delay_cdf_5s: Optional[float] = None
    blocks_served: Optional[int] = None

    node_start_time: Optional[int] = None
    uptime_seconds: Optional[float] = None
    sync_progress: Optional[float] = None

    last_error: Optional[str] = None
    raw: Dict[str, float] = field(default_factory=dict)

    def numeric_values(self) -> Dict[str, float]:
        """Present numeric fields as floats, keyed by field name."""
        values: Dict[str, float] = {}
        for name in NUMERIC_FIELDS:
            value = getattr(self, name)
            if value is not None:
                values[name] = float(value)
        return values


_NON_NUMERIC_FIELDS = {"connected", "node_kind", "last_error", "raw"}
NUMERIC_FIELDS: Tuple[str, ...] = tuple(
    item.name for item in fields(MetricsRecord) if item.name not in _NON_NUMERIC_FIELDS
)


@dataclass(frozen=True)
class FieldSpec:
    name: str
    aliases: Tuple[str, ...]
    integer: bool = True
    scale: float = 1.0
    # Only consulted when no primary alias produced a value.
    fallbacks: Tuple[str, ...] = ()


FIELD_SPECS: Tuple[FieldSpec, ...] = (
    FieldSpec(
        "block_height",
        (
            "cardano_node_metrics_blockNum_int",
            "cardano_node_metrics_blockNum_counter",
            "cardano_node_metrics_blocknum_int",
            "cardano_node_metrics_ChainDB_BlockNum",
        ),
    ),
    FieldSpec(
        "slot_num",
        (
            "cardano_node_metrics_slotNum_int",
            "cardano_node_metrics_slotNum_counter",
            "cardano_node_metrics_slotnum_int",
            "cardano_node_metrics_ChainDB_SlotNum",
        ),
    ),
    FieldSpec(
        "epoch",
        (
            "cardano_node_metrics_epoch_int",
            "cardano_node_metrics_epoch_counter",
            "cardano_node_metrics_ChainDB_Epoch",
        ),
    ),
    FieldSpec(
        "slot_in_epoch",
        (
            "cardano_node_metrics_slotInEpoch_int",
            "cardano_node_metrics_slotInEpoch_counter",
            "cardano_node_metrics_slotinepoch_int",
        ),
    ),
    FieldSpec(
        "density",
        ("cardano_node_metrics_density_real", "cardano_node_metrics_density"),
        integer=False,
    ),
    FieldSpec(
        "peers_connected",
        (
            "cardano_node_metrics_connectedPeers_int",
            "cardano_node_metrics_connectedpeers_int",
            "cardano_node_metrics_peersFromNodeKernel_int",
        ),
    ),
    FieldSpec(
        "p2p_cold_peers",
        (
            "cardano_node_metrics_peerSelection_cold",
            "cardano_node_metrics_peerSelection_Cold",
            "cardano_node_metrics_peerSelection_cold_int",
        ),
    ),
    FieldSpec(
        "p2p_warm_peers",
        (
            "cardano_node_metrics_peerSelection_warm",
            "cardano_node_metrics_peerSelection_Warm",
            "cardano_node_metrics_peerSelection_warm_int",
        ),
    ),
    FieldSpec(
        "p2p_hot_peers",
        (
            "cardano_node_metrics_peerSelection_hot",
            "cardano_node_metrics_peerSelection_Hot",
            "cardano_node_metrics_peerSelection_hot_int",
        ),
    ),
    FieldSpec(
        "incoming_conns",
        (
            "cardano_node_metrics_connectionManager_incomingConns",
            "cardano_node_metrics_connectionManager_incomingConns_int",
        ),
    ),
    FieldSpec(
        "outgoing_conns",
        (
            "cardano_node_metrics_connectionManager_outgoingConns",
            "cardano_node_metrics_connectionManager_outgoingConns_int",
        ),
    ),
    FieldSpec(
        "duplex_conns",
        (
            "cardano_node_metrics_connectionManager_duplexConns",
            "cardano_node_metrics_connectionManager_duplexConns_int",
        ),
    ),
    FieldSpec(
        "memory_used",
        (
            "cardano_node_metrics_RTS_gcLiveBytes_int",
            "cardano_node_metrics_RTS_gcLiveBytes",
            "cardano_node_metrics_rts_gclivebytes_int",
        ),
        fallbacks=("process_resident_memory_bytes",),
    ),
    FieldSpec(
        "memory_heap",
        (
            "cardano_node_metrics_RTS_gcHeapBytes_int",
            "cardano_node_metrics_RTS_gcHeapBytes",
        ),
    ),
    FieldSpec(
        "cpu_seconds",
        (
            "cardano_node_metrics_RTS_cpuNs_int",
            "cardano_node_metrics_RTS_cpuNs",
        ),
        integer=False,
        scale=1e-9,
    ),
    FieldSpec(
        "gc_minor_count",
        (
            "cardano_node_metrics_RTS_gcMinorNum_int",
            "cardano_node_metrics_RTS_gcMinorNum",
        ),
    ),
    FieldSpec(
        "gc_major_count",
        (
            "cardano_node_metrics_RTS_gcMajorNum_int",
            "cardano_node_metrics_RTS_gcMajorNum",
        ),
    ),
    FieldSpec(
        "mempool_txs",
        (
            "cardano_node_metrics_txsInMempool_int",
            "cardano_node_metrics_txsInMempool",
            "cardano_node_metrics_txsinmempool_int",
        ),
    ),
    FieldSpec(
        "mempool_bytes",
        (
            "cardano_node_metrics_mempoolBytes_int",
            "cardano_node_metrics_mempoolBytes",
            "cardano_node_metrics_mempoolbytes_int",
        ),
    ),
    FieldSpec(
        "txs_processed",
        (
            "cardano_node_metrics_txsProcessedNum_int",
            "cardano_node_metrics_txsProcessedNum_counter",
        ),
    ),
    FieldSpec(
        "kes_period",
        (
            "cardano_node_metrics_currentKESPeriod_int",
            "cardano_node_metrics_currentKESPeriod_counter",
            "cardano_node_metrics_currentKESPeriod_real",
            "cardano_node_metrics_currentkesperiod_int",
        ),
    ),
    FieldSpec(
        "kes_remaining",
        (
            "cardano_node_metrics_remainingKESPeriods_int",
            "cardano_node_metrics_remainingKESPeriods_counter",
            "cardano_node_metrics_remainingKESPeriods_real",
            "cardano_node_metrics_remainingkesperiods_int",
        ),
    ),
    FieldSpec(
        "op_cert_start_kes_period",
        (
            "cardano_node_metrics_operationalCertificateStartKESPeriod_int",
            "cardano_node_metrics_operationalCertificateStartKESPeriod_counter",
        ),
    ),
    FieldSpec(
        "op_cert_expiry_kes_period",
        (
            "cardano_node_metrics_operationalCertificateExpiryKESPeriod_int",
            "cardano_node_metrics_operationalCertificateExpiryKESPeriod_counter",
        ),
    ),
    FieldSpec(
        "blocks_forged",
        (
            "cardano_node_metrics_Forge_forged_int",
            "cardano_node_metrics_Forge_forged_counter",
            "cardano_node_metrics_blocksForgedNum_int",
        ),
    ),
    FieldSpec(
        "blocks_adopted",
        (
            "cardano_node_metrics_Forge_adopted_int",
            "cardano_node_metrics_Forge_adopted_counter",
        ),
    ),
    FieldSpec(
        "slots_led",
        (
            "cardano_node_metrics_Forge_node_is_leader_int",
            "cardano_node_metrics_Forge_node_is_leader_counter",
            "cardano_node_metrics_nodeIsLeaderNum_int",
        ),
    ),
    FieldSpec(
        "slots_missed",
        (
            "cardano_node_metrics_slotsMissedNum_int",
            "cardano_node_metrics_slotsMissed_counter",
            "cardano_node_metrics_Forge_missed_int",
        ),
    ),
    FieldSpec(
        "block_delay_seconds",
        (
            "cardano_node_metrics_blockfetchclient_blockdelay_s",
            "cardano_node_metrics_blockfetchclient_blockdelay_real",
        ),
        integer=False,
    ),
    FieldSpec(
        "block_delay_cdf_1s",
        ("cardano_node_metrics_blockfetchclient_blockdelay_cdfOne",),
        integer=False,
    ),
    FieldSpec(
        "block_delay_cdf_3s",
        ("cardano_node_metrics_blockfetchclient_blockdelay_cdfThree",),
        integer=False,
    ),
    FieldSpec(
        "block_delay_cdf_5s",
        ("cardano_node_metrics_blockfetchclient_blockdelay_cdfFive",),
        integer=False,
    ),
    FieldSpec(
        "blocks_served",
        (
            "cardano_node_metrics_served_block_count_int",
            "cardano_node_metrics_served_block_count_counter",
            "cardano_node_metrics_served_block_count",
        ),
    ),
    FieldSpec(
        "node_start_time",
        (
            "cardano_node_metrics_nodeStartTime_int",
            "cardano_node_metrics_nodeStartTime_counter",
            "cardano_node_metrics_nodestarttime_int",
        ),
        fallbacks=("process_start_time_seconds",),
    ),
    FieldSpec(
        "sync_progress",
        (
            "cardano_node_metrics_ChainSync_progress",
            "cardano_node_metrics_chainsync_progress",
        ),
        integer=False,
        scale=100.0,
    ),
)


def parse_metric_line(line: str) -> Optional[Tuple[str, float]]:
    """Split one exposition line into ``(name, value)``.

    The name ends at the first ``{`` or space, whichever comes first, so a
    label block never leaks into it. The value is the token after the last
    space. Returns None for comments, blank lines and anything whose value
    does not parse as a float.
    """
    line = line.strip()
    if not line or line.startswith("#"):
        return None

    brace = line.find("{")
    space = line.find(" ")
    candidates = [index for index in (brace, space) if index >= 0]
    if not candidates or min(candidates) == 0:
        return None
    name = line[: min(candidates)]

    if space < 0:
        return None
    value_text = line.rsplit(" ", 1)[1]
    try:
        value = float(value_text)
    except ValueError:
        return None
    return name, value


def detect_node_kind(names: Iterable[str]) -> NodeKind:
    name_list = list(names)
    for prefix, kind in NODE_KIND_PREFIXES:
        if any(name.startswith(prefix) for name in name_list):
            return kind
    return NodeKind.UNKNOWN


def _valid_value(spec: FieldSpec, alias: str, value: float) -> bool:
    if math.isfinite(value) and value >= 0:
        return True
    print(
        "[WARN] ignoring invalid value %r for %s (%s)" % (value, alias, spec.name),
        flush=True,
    )
    return False


def _resolve(spec: FieldSpec, raw: Dict[str, float]) -> Optional[float]:
    for alias in spec.aliases + spec.fallbacks:
        if alias not in raw:
            continue
        value = raw[alias]
        if not _valid_value(spec, alias, value):
            continue
        if alias in spec.aliases:
            return value * spec.scale
        # Fallback aliases are raw units.
        return value
    return None


def resolve_fields(raw: Dict[str, float]) -> Dict[str, object]:
    resolved: Dict[str, object] = {}
    for spec in FIELD_SPECS:
        value = _resolve(spec, raw)
        if value is None:
            continue
        resolved[spec.name] = int(value) if spec.integer else float(value)
    return resolved


def parse_prometheus_metrics(text: str) -> MetricsRecord:
    raw: Dict[str, float] = {}
    for line in text.splitlines():
        parsed = parse_metric_line(line)
        if parsed is None:
            continue
        name, value = parsed
        raw[name] = value

    record = MetricsRecord(connected=True, raw=raw, **resolve_fields(raw))
    record.node_kind = detect_node_kind(raw.keys())
    return record

