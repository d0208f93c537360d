"""Disk persistence of hourly metric snapshots.

Layout: ``<base>/history/<node>/<YYYY>/<MM>/<DD>.json.gz``. Each daily file
holds every snapshot saved for one node on one UTC calendar day, so retention
cleanup only has to look at paths.
"""

import calendar
import contextlib
import csv
import datetime
import gzip
import json
import os
import re
import time
import zlib
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from .metrics import MetricsRecord

DEFAULT_RETENTION_DAYS = 30
MIN_SAMPLE_INTERVAL_SECONDS = 3600
SECONDS_PER_DAY = 86400

CSV_HEADER = (
    "timestamp",
    "datetime",
    "block_height",
    "slot_num",
    "epoch",
    "slot_in_epoch",
    "peers_connected",
    "memory_used_bytes",
    "mempool_txs",
    "mempool_bytes",
    "sync_progress",
    "kes_period",
    "kes_remaining",
)

_UNSAFE_NAME_CHARS = re.compile(r"[^0-9A-Za-z_\-]")
_DAILY_FILE_RE = re.compile(r"^(?P<day>\d{2})\.json\.gz$")


class StorageError(RuntimeError):
    pass


@dataclass
class MetricSnapshot:
    timestamp: int
    block_height: Optional[int] = None
    slot_num: Optional[int] = None
    epoch: Optional[int] = None
    slot_in_epoch: Optional[int] = None
    peers_connected: Optional[int] = None
    memory_used: Optional[int] = None
    mempool_txs: Optional[int] = None
    mempool_bytes: Optional[int] = None
    sync_progress: Optional[float] = None
    kes_period: Optional[int] = None
    kes_remaining: Optional[int] = None

    @classmethod
    def from_record(cls, record: MetricsRecord, timestamp: int) -> "MetricSnapshot":
        return cls(
            timestamp=timestamp,
            block_height=record.block_height,
            slot_num=record.slot_num,
            epoch=record.epoch,
            slot_in_epoch=record.slot_in_epoch,
            peers_connected=record.peers_connected,
            memory_used=record.memory_used,
            mempool_txs=record.mempool_txs,
            mempool_bytes=record.mempool_bytes,
            sync_progress=record.sync_progress,
            kes_period=record.kes_period,
            kes_remaining=record.kes_remaining,
        )

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "MetricSnapshot":
        values: Dict[str, Any] = {"timestamp": int(payload["timestamp"])}
        for item in fields(cls):
            if item.name == "timestamp":
                continue
            value = payload.get(item.name)
            if value is None:
                continue
            values[item.name] = float(value) if item.name == "sync_progress" else int(value)
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class DailySnapshots:
    node_name: str
    snapshots: List[MetricSnapshot] = field(default_factory=list)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "DailySnapshots":
        if not isinstance(payload, dict):
            raise ValueError("daily snapshot file must contain a JSON object")
        rows = payload.get("snapshots") or []
        return cls(
            node_name=str(payload.get("node_name", "")),
            snapshots=[MetricSnapshot.from_dict(row) for row in rows],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_name": self.node_name,
            "snapshots": [snapshot.to_dict() for snapshot in self.snapshots],
        }


def default_data_dir() -> Path:
    xdg = os.environ.get("XDG_DATA_HOME")
    base = Path(xdg) if xdg else Path.home() / ".local" / "share"
    return base / "nodewatch"


def sanitize_node_name(name: str) -> str:
    return _UNSAFE_NAME_CHARS.sub("_", name).lower()


def timestamp_to_date(ts: float) -> Tuple[int, int, int]:
    day = datetime.datetime.fromtimestamp(int(ts), tz=datetime.timezone.utc).date()
    return day.year, day.month, day.day


def date_to_timestamp(year: int, month: int, day: int) -> int:
    return calendar.timegm((year, month, day, 0, 0, 0))


def timestamp_to_iso8601(ts: float) -> str:
    moment = datetime.datetime.fromtimestamp(int(ts), tz=datetime.timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_date_from_path(path: Path) -> Optional[Tuple[int, int, int]]:
    match = _DAILY_FILE_RE.match(path.name)
    if not match:
        return None
    try:
        year = int(path.parent.parent.name)
        month = int(path.parent.name)
        day = int(match.group("day"))
        datetime.date(year, month, day)
    except ValueError:
        return None
    return year, month, day


def _csv_cell(value: Optional[float], precision: Optional[int] = None) -> str:
    if value is None:
        return ""
    if precision is not None:
        return "%.*f" % (precision, value)
    return str(value)


def load_daily_file(path: Path) -> DailySnapshots:
    with gzip.open(path, "rt", encoding="utf-8") as handle:
        payload = json.load(handle)
    return DailySnapshots.from_dict(payload)


def write_daily_file(path: Path, daily: DailySnapshots) -> None:
    tmp_path = path.with_name(path.name + ".tmp")
    try:
        with gzip.open(tmp_path, "wt", encoding="utf-8") as handle:
            json.dump(daily.to_dict(), handle)
        os.replace(tmp_path, path)
    except BaseException:
        with contextlib.suppress(OSError):
            tmp_path.unlink()
        raise


# Everything a truncated or garbled daily file can raise while loading.
_LOAD_ERRORS = (OSError, EOFError, zlib.error, ValueError, KeyError, TypeError)


class SnapshotStore:
    def __init__(
        self,
        node_name: str,
        base_dir: Optional[Path] = None,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        min_interval_seconds: int = MIN_SAMPLE_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.base_dir = Path(base_dir) if base_dir is not None else default_data_dir()
        self.node_name = sanitize_node_name(node_name)
        self.retention_days = int(retention_days)
        self.min_interval_seconds = int(min_interval_seconds)
        self.clock = clock
        self.last_save_timestamp: Optional[int] = None

    @property
    def node_dir(self) -> Path:
        return self.base_dir / "history" / self.node_name

    def date_dir(self, year: int, month: int) -> Path:
        return self.node_dir / ("%04d" % year) / ("%02d" % month)

    def date_file(self, year: int, month: int, day: int) -> Path:
        return self.date_dir(year, month) / ("%02d.json.gz" % day)

    def ensure_writable(self) -> None:
        try:
            self.node_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(
                "cannot create storage directory %s: %s" % (self.node_dir, exc)
            ) from exc
        if not os.access(self.node_dir, os.W_OK):
            raise StorageError("storage directory is not writable: %s" % self.node_dir)

    def save(self, record: MetricsRecord, now: Optional[float] = None) -> bool:
        ts = int(now if now is not None else self.clock())
        if (
            self.last_save_timestamp is not None
            and ts - self.last_save_timestamp < self.min_interval_seconds
        ):
            return False
        if not record.connected:
            return False

        year, month, day = timestamp_to_date(ts)
        path = self.date_file(year, month, day)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            daily = self._load_or_fresh(path)
            daily.snapshots.append(MetricSnapshot.from_record(record, ts))
            write_daily_file(path, daily)
        except OSError as exc:
            print(
                "[WARN] failed to save snapshot for %s to %s: %s"
                % (self.node_name, path, exc),
                flush=True,
            )
            return False

        self.last_save_timestamp = ts
        print(
            "[INFO] saved snapshot for %s (%d samples today)"
            % (self.node_name, len(daily.snapshots)),
            flush=True,
        )
        return True

    def _load_or_fresh(self, path: Path) -> DailySnapshots:
        if not path.exists():
            return DailySnapshots(node_name=self.node_name)
        try:
            return load_daily_file(path)
        except _LOAD_ERRORS as exc:
            print(
                "[WARN] unreadable snapshot file %s, starting fresh: %s" % (path, exc),
                flush=True,
            )
            return DailySnapshots(node_name=self.node_name)

    def load_history(
        self, max_samples: Optional[int] = None, now: Optional[float] = None
    ) -> List[MetricSnapshot]:
        ts = now if now is not None else self.clock()
        today = datetime.datetime.fromtimestamp(int(ts), tz=datetime.timezone.utc).date()
        snapshots: List[MetricSnapshot] = []

        for days_ago in range(self.retention_days):
            day = today - datetime.timedelta(days=days_ago)
            path = self.date_file(day.year, day.month, day.day)
            if not path.exists():
                continue
            try:
                daily = load_daily_file(path)
            except _LOAD_ERRORS as exc:
                print("[WARN] skipping unreadable %s: %s" % (path, exc), flush=True)
                continue
            snapshots.extend(daily.snapshots)

        snapshots.sort(key=lambda snapshot: snapshot.timestamp)
        if max_samples is not None and len(snapshots) > max_samples:
            del snapshots[: len(snapshots) - max_samples]
        return snapshots

    def cleanup_old_data(self, now: Optional[float] = None) -> int:
        ts = now if now is not None else self.clock()
        cutoff = ts - self.retention_days * SECONDS_PER_DAY
        if not self.node_dir.is_dir():
            return 0

        removed = 0
        for year_dir in _list_dir(self.node_dir):
            if not year_dir.is_dir():
                continue
            for month_dir in _list_dir(year_dir):
                if not month_dir.is_dir():
                    continue
                for day_path in _list_dir(month_dir):
                    file_date = parse_date_from_path(day_path)
                    if file_date is None:
                        continue
                    if date_to_timestamp(*file_date) >= cutoff:
                        continue
                    try:
                        day_path.unlink()
                        removed += 1
                    except OSError as exc:
                        print("[WARN] failed to remove %s: %s" % (day_path, exc), flush=True)
                _remove_if_empty(month_dir)
            _remove_if_empty(year_dir)

        if removed:
            print(
                "[INFO] removed %d expired snapshot files for %s" % (removed, self.node_name),
                flush=True,
            )
        return removed

    def export_to_csv(self, output_path: Path, max_samples: Optional[int] = None) -> int:
        snapshots = self.load_history(max_samples)
        with open(output_path, "w", encoding="utf-8", newline="") as handle:
            writer = csv.writer(handle, lineterminator="\n")
            writer.writerow(CSV_HEADER)
            for snapshot in snapshots:
                writer.writerow(
                    [
                        snapshot.timestamp,
                        timestamp_to_iso8601(snapshot.timestamp),
                        _csv_cell(snapshot.block_height),
                        _csv_cell(snapshot.slot_num),
                        _csv_cell(snapshot.epoch),
                        _csv_cell(snapshot.slot_in_epoch),
                        _csv_cell(snapshot.peers_connected),
                        _csv_cell(snapshot.memory_used),
                        _csv_cell(snapshot.mempool_txs),
                        _csv_cell(snapshot.mempool_bytes),
                        _csv_cell(snapshot.sync_progress, precision=2),
                        _csv_cell(snapshot.kes_period),
                        _csv_cell(snapshot.kes_remaining),
                    ]
                )
        print(
            "[INFO] exported %d snapshots to %s" % (len(snapshots), output_path),
            flush=True,
        )
        return len(snapshots)


def _remove_if_empty(path: Path) -> None:
    try:
        next(path.iterdir())
    except StopIteration:
        try:
            path.rmdir()
        except OSError as exc:
            print("[WARN] failed to remove %s: %s" % (path, exc), flush=True)
    except OSError:
        return


def _list_dir(path: Path) -> List[Path]:
    try:
        return sorted(path.iterdir())
    except OSError as exc:
        print("[WARN] cannot list %s, skipping: %s" % (path, exc), flush=True)
        return []
