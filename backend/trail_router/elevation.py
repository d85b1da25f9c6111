from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import httpx

from .engine_errors import ElevationUnavailableError
from .graph_model import Graph
from .loop_generator import GeneratedLoop
from .logging_utils import log_event
from .settings import settings

# Open-Elevation reports voids as large negative sentinels.
_MIN_VALID_ELEVATION_M = -1000.0
_RETRYABLE_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})


@dataclass(frozen=True)
class ElevationProfile:
    samples: tuple[float | None, ...]
    gain_m: float
    loss_m: float
    min_m: float | None
    max_m: float | None

    def as_dict(self) -> dict[str, Any]:
        return {
            "samples": list(self.samples),
            "gain_m": round(self.gain_m, 2),
            "loss_m": round(self.loss_m, 2),
            "min_m": self.min_m,
            "max_m": self.max_m,
        }


def _is_retryable_exception(exc: Exception) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        return int(exc.response.status_code) in _RETRYABLE_STATUS_CODES
    return isinstance(exc, (httpx.TimeoutException, httpx.TransportError))


def _valid_pairs(samples: Sequence[float | None]) -> list[tuple[float, float]]:
    values = [float(v) for v in samples if v is not None]
    return list(zip(values[:-1], values[1:]))


def elevation_gain(samples: Sequence[float | None]) -> float:
    return sum(b - a for a, b in _valid_pairs(samples) if b > a)


def elevation_loss(samples: Sequence[float | None]) -> float:
    return sum(a - b for a, b in _valid_pairs(samples) if a > b)


def elevation_range(samples: Sequence[float | None]) -> tuple[float | None, float | None]:
    values = [float(v) for v in samples if v is not None]
    if not values:
        return None, None
    return min(values), max(values)


class ElevationClient:
    """Batched Open-Elevation lookups with bounded retry on transient failures."""

    def __init__(
        self,
        *,
        url: str | None = None,
        batch_size: int | None = None,
        timeout_s: float | None = None,
        max_attempts: int | None = None,
        retry_backoff_ms: int | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.url = url or settings.elevation_api_url
        self.batch_size = max(1, int(batch_size or settings.elevation_batch_size))
        self.timeout_s = float(timeout_s or settings.elevation_request_timeout_s)
        self.max_attempts = max(1, int(max_attempts or settings.elevation_max_attempts))
        self.retry_backoff_ms = max(
            0, int(settings.elevation_retry_backoff_ms if retry_backoff_ms is None else retry_backoff_ms)
        )
        self._transport = transport

    def _post_batch(self, client: httpx.Client, batch: Sequence[tuple[float, float]]) -> list[float | None]:
        body = {"locations": [{"latitude": lat, "longitude": lon} for lat, lon in batch]}
        attempt = 0
        while True:
            attempt += 1
            try:
                response = client.post(self.url, json=body)
                response.raise_for_status()
                payload = response.json()
                break
            except (httpx.HTTPError, ValueError) as exc:
                retryable = isinstance(exc, httpx.HTTPError) and _is_retryable_exception(exc)
                if not retryable or attempt >= self.max_attempts:
                    log_event(
                        "elevation_request_failed",
                        level=logging.WARNING,
                        url=self.url,
                        attempts=attempt,
                        error=type(exc).__name__,
                    )
                    raise ElevationUnavailableError(
                        reason_code="elevation_unavailable",
                        message=f"elevation lookup failed: {type(exc).__name__}",
                        details={"attempts": attempt, "batch_size": len(batch)},
                    ) from exc
                time.sleep((self.retry_backoff_ms * (2 ** (attempt - 1))) / 1000.0)

        results = payload.get("results") if isinstance(payload, dict) else None
        if not isinstance(results, list) or len(results) != len(batch):
            raise ElevationUnavailableError(
                reason_code="elevation_response_invalid",
                message="elevation response does not match the requested locations",
                details={"expected": len(batch), "received": len(results) if isinstance(results, list) else None},
            )
        out: list[float | None] = []
        for item in results:
            value = item.get("elevation") if isinstance(item, dict) else None
            if isinstance(value, (int, float)) and not isinstance(value, bool) and value >= _MIN_VALID_ELEVATION_M:
                out.append(float(value))
            else:
                out.append(None)
        return out

    def lookup(self, coordinates: Sequence[tuple[float, float]]) -> list[float | None]:
        """Elevations in metres for ``(lat, lon)`` pairs; unknown points come back as None."""
        if not coordinates:
            return []
        elevations: list[float | None] = []
        with httpx.Client(timeout=self.timeout_s, transport=self._transport) as client:
            for offset in range(0, len(coordinates), self.batch_size):
                elevations.extend(self._post_batch(client, coordinates[offset : offset + self.batch_size]))
        return elevations


def loop_coordinates(loop: GeneratedLoop, graph: Graph) -> list[tuple[float, float]]:
    coords: list[tuple[float, float]] = []
    for node_id in loop.loop:
        node = graph.node(node_id)
        if node is not None:
            coords.append((node.lat, node.lon))
    return coords


def profile_loop(loop: GeneratedLoop, graph: Graph, client: ElevationClient) -> ElevationProfile:
    samples = tuple(client.lookup(loop_coordinates(loop, graph)))
    low, high = elevation_range(samples)
    return ElevationProfile(
        samples=samples,
        gain_m=elevation_gain(samples),
        loss_m=elevation_loss(samples),
        min_m=low,
        max_m=high,
    )
