from __future__ import annotations

import copy
import hashlib
import json
import time
from collections import OrderedDict
from dataclasses import asdict, replace
from threading import Lock
from typing import Any

from .loop_generator import LoopGenerationOptions, LoopGenerationResult
from .settings import settings


def loop_cache_key(graph_version: str, options: LoopGenerationOptions) -> str:
    payload = {"graph_version": graph_version, **asdict(options)}
    digest = hashlib.sha256(json.dumps(payload, sort_keys=True, default=str).encode("utf-8")).hexdigest()
    return digest[:32]


def _detached(result: LoopGenerationResult) -> LoopGenerationResult:
    # Loops are frozen; only the debug payload (and its warnings list) can be mutated by callers.
    return replace(result, debug=copy.deepcopy(result.debug))


class LoopCacheStore:
    """Loop generation results keyed by graph and options.

    Entries expire ``ttl_s`` seconds after insertion and the least recently read
    entry is dropped once ``max_entries`` is exceeded. Every ``get`` hands out its
    own copy of the debug payload, so callers cannot alter what later hits see.
    """

    def __init__(self, *, ttl_s: int, max_entries: int) -> None:
        self.ttl_s = max(1, int(ttl_s))
        self.max_entries = max(1, int(max_entries))
        self._lock = Lock()
        self._entries: OrderedDict[str, tuple[float, LoopGenerationResult]] = OrderedDict()
        self._counters = {"hits": 0, "misses": 0, "evictions": 0}

    def get(self, key: str) -> LoopGenerationResult | None:
        now = time.time()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and now - entry[0] > self.ttl_s:
                del self._entries[key]
                entry = None
            if entry is None:
                self._counters["misses"] += 1
                return None
            self._entries.move_to_end(key)
            self._counters["hits"] += 1
            stored = entry[1]
        return _detached(stored)

    def set(self, key: str, result: LoopGenerationResult) -> None:
        stored = _detached(result)
        with self._lock:
            self._entries.pop(key, None)
            self._entries[key] = (time.time(), stored)
            overflow = len(self._entries) - self.max_entries
            for _ in range(max(0, overflow)):
                self._entries.popitem(last=False)
                self._counters["evictions"] += 1

    def clear(self) -> int:
        with self._lock:
            cleared = len(self._entries)
            self._entries.clear()
        return cleared

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "size": len(self._entries),
                **self._counters,
                "ttl_s": self.ttl_s,
                "max_entries": self.max_entries,
            }


LOOP_CACHE = LoopCacheStore(ttl_s=settings.loop_cache_ttl_s, max_entries=settings.loop_cache_max_entries)
