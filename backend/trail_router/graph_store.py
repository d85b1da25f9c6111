from __future__ import annotations

import logging
import threading
import time
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .dataset import MapDataset, load_dataset_file
from .engine_errors import EngineDataError
from .graph_cache import dataset_file_key, load_dataset_snapshot, save_dataset_snapshot
from .graph_model import Graph, build_graph
from .logging_utils import log_event
from .settings import settings


def _iso_utc_now() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


class GraphStore:
    """Holds the graph currently served, swapped atomically on reload.

    Readers take a reference via :meth:`current` and keep using that snapshot even
    if a reload swaps in a new graph while they are searching.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._graph: Graph | None = None
        self._state = "idle"  # idle | loading | ready | failed
        self._loaded_at_utc: str | None = None
        self._last_error: str | None = None
        self._last_reason_code: str | None = None
        self._last_path: str | None = None
        self._last_from_snapshot = False
        self._swaps = 0

    def current(self) -> Graph | None:
        with self._lock:
            return self._graph

    def swap(self, graph: Graph) -> Graph | None:
        with self._lock:
            previous = self._graph
            self._graph = graph
            self._state = "ready"
            self._loaded_at_utc = _iso_utc_now()
            self._last_error = None
            self._last_reason_code = None
            self._swaps += 1
        log_event(
            "graph_swapped",
            version=graph.version,
            source=graph.source,
            previous_version=previous.version if previous is not None else None,
        )
        return previous

    def clear(self) -> None:
        with self._lock:
            self._graph = None
            self._state = "idle"
            self._loaded_at_utc = None

    def load_from_file(self, path: str | Path) -> Graph:
        """Build a graph from a dataset file and make it current.

        A validated snapshot keyed on the file path, size and mtime is reused when
        present, so an unchanged file is not parsed again. On failure the previously
        served graph stays in place and the error is re-raised after being recorded
        in :meth:`status`.
        """
        started = time.perf_counter()
        with self._lock:
            self._state = "loading"
            self._last_path = str(path)
        key = dataset_file_key(path) if settings.graph_cache_enabled else None
        dataset: MapDataset | None = None
        if key:
            try:
                dataset = load_dataset_snapshot(key)
            except OSError as exc:
                log_event("graph_snapshot_unavailable", level=logging.WARNING, path=str(path), error=str(exc))
        from_snapshot = dataset is not None
        try:
            if dataset is None:
                dataset = load_dataset_file(path)
            graph = build_graph(dataset)
        except EngineDataError as exc:
            with self._lock:
                self._state = "ready" if self._graph is not None else "failed"
                self._last_error = exc.message
                self._last_reason_code = exc.reason_code
            log_event(
                "graph_load_failed",
                level=logging.ERROR,
                path=str(path),
                reason_code=exc.reason_code,
                error=exc.message,
            )
            raise
        if key and not from_snapshot:
            try:
                save_dataset_snapshot(key, dataset)
            except OSError as exc:
                log_event("graph_snapshot_save_failed", level=logging.WARNING, path=str(path), error=str(exc))
        with self._lock:
            self._last_from_snapshot = from_snapshot
        self.swap(graph)
        log_event(
            "graph_loaded",
            path=str(path),
            from_snapshot=from_snapshot,
            elapsed_ms=round((time.perf_counter() - started) * 1000.0, 2),
            nodes=len(graph.nodes),
            edges=len(graph.edges),
        )
        return graph

    def status(self) -> dict[str, Any]:
        with self._lock:
            graph = self._graph
            payload: dict[str, Any] = {
                "state": self._state,
                "loaded": graph is not None,
                "loaded_at_utc": self._loaded_at_utc,
                "last_error": self._last_error,
                "last_reason_code": self._last_reason_code,
                "last_path": self._last_path,
                "last_load_from_snapshot": self._last_from_snapshot,
                "swaps": self._swaps,
            }
        if graph is not None:
            payload["graph"] = graph.summary()
        return payload


GRAPH_STORE = GraphStore()
