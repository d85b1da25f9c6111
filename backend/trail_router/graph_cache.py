from __future__ import annotations

import base64
import hashlib
import json
import logging
import os
from datetime import UTC, datetime, timedelta
from pathlib import Path
from threading import Lock
from typing import Any

from pydantic import ValidationError

from .dataset import MapDataset
from .logging_utils import log_event
from .settings import settings

_LOCK = Lock()
_PREFIX = "osm-"
_SUFFIX = ".json"


def _cache_dir() -> Path:
    configured = settings.graph_cache_dir.strip()
    path = Path(configured) if configured else Path(settings.out_dir) / "graph_cache"
    path.mkdir(parents=True, exist_ok=True)
    return path


def _snapshot_path(key: str) -> Path:
    return _cache_dir() / f"{_PREFIX}{key}{_SUFFIX}"


def hash_area(lat: float, lon: float, radius: float) -> str:
    raw = f"{lat:.6f},{lon:.6f},{radius:.2f}".encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def dataset_file_key(path: str | Path) -> str | None:
    """Snapshot key for a dataset file: its resolved path, size and mtime. None if unreadable."""
    try:
        resolved = Path(path).expanduser().resolve()
        stat = resolved.stat()
    except OSError:
        return None
    raw = f"{resolved}|{stat.st_size}|{stat.st_mtime_ns}".encode("utf-8")
    return "file-" + hashlib.sha256(raw).hexdigest()[:32]


def _parse_created_at(value: object) -> datetime | None:
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _is_expired(created_at: datetime | None, *, now: datetime | None = None) -> bool:
    if created_at is None:
        return True
    ttl = timedelta(days=float(settings.graph_cache_ttl_days))
    return ((now or datetime.now(UTC)) - created_at) > ttl


def save_dataset_snapshot(
    key: str,
    dataset: MapDataset,
    *,
    area: dict[str, float] | None = None,
) -> Path | None:
    if not key:
        return None
    payload = {
        "created_at": datetime.now(UTC).isoformat(),
        "area": dict(area or {}),
        "nodes_count": len(dataset.nodes),
        "ways_count": len(dataset.ways),
        "dataset": dataset.model_dump(mode="json"),
    }
    path = _snapshot_path(key)
    tmp = path.with_suffix(".tmp")
    with _LOCK:
        tmp.write_text(json.dumps(payload), encoding="utf-8")
        os.replace(tmp, path)
    log_event("graph_snapshot_saved", key=key, nodes=len(dataset.nodes), ways=len(dataset.ways))
    return path


def load_dataset_snapshot(key: str) -> MapDataset | None:
    """Cached dataset for ``key``, or None when absent, expired or unreadable."""
    if not key:
        return None
    path = _snapshot_path(key)
    with _LOCK:
        if not path.exists():
            return None
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            log_event("graph_snapshot_unreadable", level=logging.WARNING, key=key)
            return None
    if not isinstance(raw, dict) or _is_expired(_parse_created_at(raw.get("created_at"))):
        return None
    try:
        return MapDataset.model_validate(raw.get("dataset"))
    except ValidationError:
        log_event("graph_snapshot_invalid", level=logging.WARNING, key=key)
        return None


def cleanup_expired_snapshots() -> int:
    removed = 0
    now = datetime.now(UTC)
    with _LOCK:
        for path in sorted(_cache_dir().glob(f"{_PREFIX}*{_SUFFIX}")):
            try:
                raw = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, ValueError):
                raw = None
            created_at = _parse_created_at(raw.get("created_at")) if isinstance(raw, dict) else None
            if _is_expired(created_at, now=now):
                path.unlink(missing_ok=True)
                removed += 1
    if removed:
        log_event("graph_snapshots_cleaned", removed=removed)
    return removed


def snapshot_stats() -> dict[str, Any]:
    count = 0
    total_bytes = 0
    with _LOCK:
        for path in _cache_dir().glob(f"{_PREFIX}*{_SUFFIX}"):
            count += 1
            total_bytes += path.stat().st_size
    return {
        "count": count,
        "total_bytes": total_bytes,
        "total_mb": round(total_bytes / 1024 / 1024, 4),
        "ttl_days": settings.graph_cache_ttl_days,
    }
