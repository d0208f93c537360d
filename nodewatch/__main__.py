import argparse
from typing import Any, Dict

from .config import ServiceConfig, build_service_config, load_json_config, validate_config
from .service import MonitoringService, export_history
from .storage import StorageError


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Monitor Cardano node Prometheus metrics, keep history and raise alerts."
    )
    parser.add_argument("--config", help="Path to JSON config file.")
    parser.add_argument("--node-name", help="Display name of the node.")
    parser.add_argument("--host", help="Prometheus metrics host (default: 127.0.0.1).")
    parser.add_argument("--port", type=int, help="Prometheus metrics port (default: 12798).")
    parser.add_argument(
        "--timeout", type=float, help="Metrics request timeout in seconds."
    )
    parser.add_argument(
        "--refresh-interval",
        type=float,
        help="Seconds between metric polls.",
    )
    parser.add_argument("--network", help="Network label (mainnet, preprod, preview).")
    parser.add_argument(
        "--data-dir",
        help="Directory for snapshot history and alert logs.",
    )
    parser.add_argument(
        "--retention-days",
        type=int,
        help="Days of snapshot history to keep on disk.",
    )
    parser.add_argument(
        "--history-length",
        type=int,
        help="Samples kept in memory per metric.",
    )
    parser.add_argument(
        "--no-storage",
        action="store_true",
        help="Do not persist snapshots or alert logs.",
    )
    parser.add_argument(
        "--run-once",
        action="store_true",
        help="Poll every node once and exit.",
    )
    parser.add_argument(
        "--export-csv",
        metavar="PATH",
        help="Export the stored history of --node-name (or the first node) to CSV and exit.",
    )
    return parser.parse_args()


def merged_config_from_cli(args: argparse.Namespace) -> ServiceConfig:
    raw: Dict[str, Any] = {}
    if args.config:
        raw = load_json_config(args.config)

    config = build_service_config(raw)

    first = config.nodes[0]
    if args.node_name:
        first.name = args.node_name
    if args.host:
        first.host = args.host
    if args.port is not None:
        first.port = args.port
    if args.timeout is not None:
        first.timeout_seconds = args.timeout

    if args.refresh_interval is not None:
        config.refresh_interval_seconds = args.refresh_interval
    if args.network:
        config.network = args.network
    if args.history_length is not None:
        config.history_length = args.history_length
    if args.run_once:
        config.run_once = True

    if args.data_dir:
        config.storage.data_dir = args.data_dir
    if args.retention_days is not None:
        config.storage.retention_days = args.retention_days
    if args.no_storage:
        config.storage.enabled = False

    return config


def main() -> int:
    args = parse_args()
    config = merged_config_from_cli(args)
    validate_config(config)

    if args.export_csv:
        node_name = args.node_name or config.nodes[0].name
        count = export_history(config, node_name, args.export_csv)
        print("[INFO] wrote %d rows to %s" % (count, args.export_csv), flush=True)
        return 0

    service = MonitoringService(config)
    try:
        return service.run()
    except StorageError as exc:
        print("[ERROR] %s" % exc, flush=True)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
