import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from .alerts import AlertConfig
from .history import DEFAULT_HISTORY_LENGTH
from .storage import (
    DEFAULT_RETENTION_DAYS,
    MIN_SAMPLE_INTERVAL_SECONDS,
    sanitize_node_name,
)


@dataclass
class NodeConfig:
    name: str = "Cardano Node"
    host: str = "127.0.0.1"
    port: int = 12798
    path: str = "/metrics"
    timeout_seconds: float = 3.0

    @property
    def metrics_url(self) -> str:
        return "http://%s:%d%s" % (self.host, self.port, self.path)


@dataclass
class StorageConfig:
    enabled: bool = True
    data_dir: Optional[str] = None
    retention_days: int = DEFAULT_RETENTION_DAYS
    min_sample_interval_seconds: int = MIN_SAMPLE_INTERVAL_SECONDS


@dataclass
class ServiceConfig:
    nodes: List[NodeConfig] = field(default_factory=lambda: [NodeConfig()])
    network: str = "mainnet"
    refresh_interval_seconds: float = 2.0
    history_length: int = DEFAULT_HISTORY_LENGTH
    run_once: bool = False
    storage: StorageConfig = field(default_factory=StorageConfig)
    alerts: AlertConfig = field(default_factory=AlertConfig)


def load_json_config(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as handle:
        return json.load(handle)


def apply_env_overrides(
    payload: Dict[str, Any], env: Mapping[str, str]
) -> Dict[str, Any]:
    """Layer the environment variables on top of a JSON payload.

    Node overrides only apply to the first configured node, which is the only
    node a single-node deployment has.
    """
    merged = dict(payload)
    nodes = [dict(node) for node in merged.get("nodes") or [{}]]
    first = nodes[0]

    if env.get("NODE_NAME"):
        first["name"] = env["NODE_NAME"]
    if env.get("PROM_HOST"):
        first["host"] = env["PROM_HOST"]
    if env.get("PROM_PORT"):
        first["port"] = env["PROM_PORT"]
    if env.get("PROM_TIMEOUT"):
        first["timeout_seconds"] = env["PROM_TIMEOUT"]
    merged["nodes"] = nodes

    if env.get("REFRESH_INTERVAL"):
        merged["refresh_interval_seconds"] = env["REFRESH_INTERVAL"]
    network = env.get("CARDANO_NETWORK") or env.get("NETWORK")
    if network:
        merged["network"] = network
    if env.get("NODEWATCH_DATA_DIR"):
        storage = dict(merged.get("storage") or {})
        storage["data_dir"] = env["NODEWATCH_DATA_DIR"]
        merged["storage"] = storage
    return merged


def _build_node(payload: Dict[str, Any]) -> NodeConfig:
    return NodeConfig(
        name=str(payload.get("name", NodeConfig.name)),
        host=str(payload.get("host", NodeConfig.host)),
        port=int(payload.get("port", NodeConfig.port)),
        path=str(payload.get("path", NodeConfig.path)),
        timeout_seconds=float(
            payload.get("timeout_seconds", NodeConfig.timeout_seconds)
        ),
    )


def _build_alerts(payload: Dict[str, Any]) -> AlertConfig:
    defaults = AlertConfig()
    values: Dict[str, Any] = {}
    for name, default in vars(defaults).items():
        if name in payload:
            values[name] = type(default)(payload[name])
    return AlertConfig(**values)


def build_service_config(
    raw: Optional[Dict[str, Any]], env: Optional[Mapping[str, str]] = None
) -> ServiceConfig:
    payload = apply_env_overrides(raw or {}, os.environ if env is None else env)

    nodes = [_build_node(node) for node in payload.get("nodes") or [{}]]

    storage_payload = payload.get("storage", {})
    data_dir = storage_payload.get("data_dir")
    storage = StorageConfig(
        enabled=bool(storage_payload.get("enabled", True)),
        data_dir=str(data_dir) if data_dir else None,
        retention_days=int(
            storage_payload.get("retention_days", DEFAULT_RETENTION_DAYS)
        ),
        min_sample_interval_seconds=int(
            storage_payload.get(
                "min_sample_interval_seconds", MIN_SAMPLE_INTERVAL_SECONDS
            )
        ),
    )

    return ServiceConfig(
        nodes=nodes,
        network=str(payload.get("network", "mainnet")),
        refresh_interval_seconds=float(payload.get("refresh_interval_seconds", 2.0)),
        history_length=int(payload.get("history_length", DEFAULT_HISTORY_LENGTH)),
        run_once=bool(payload.get("run_once", False)),
        storage=storage,
        alerts=_build_alerts(payload.get("alerts", {})),
    )


def validate_config(config: ServiceConfig) -> None:
    if not config.nodes:
        raise ValueError("at least one node must be configured")
    # Storage and alert logs are keyed by the sanitized name.
    names = [sanitize_node_name(node.name) for node in config.nodes]
    if len(set(names)) != len(names):
        raise ValueError("node names must be unique: %s" % ", ".join(names))
    for node in config.nodes:
        if not 0 < node.port < 65536:
            raise ValueError("invalid port for node %s: %d" % (node.name, node.port))
        if node.timeout_seconds <= 0:
            raise ValueError("timeout must be positive for node %s" % node.name)
    if config.refresh_interval_seconds <= 0:
        raise ValueError("refresh interval must be positive")
    if config.history_length < 1:
        raise ValueError("history length must be at least 1")
    if config.storage.retention_days < 1:
        raise ValueError("retention must be at least one day")
