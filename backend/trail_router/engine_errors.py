from __future__ import annotations

from dataclasses import dataclass
from typing import Any

FROZEN_REASON_CODES: frozenset[str] = frozenset(
    {
        "dataset_format_unknown",
        "dataset_invalid",
        "dataset_unreadable",
        "way_unknown_node",
        "node_missing_coordinates",
        "edge_unknown_node",
        "graph_empty",
        "graph_unavailable",
        "elevation_unavailable",
        "elevation_response_invalid",
    }
)


@dataclass
class EngineDataError(ValueError):
    reason_code: str
    message: str
    details: dict[str, Any] | None = None

    def __str__(self) -> str:
        return self.message


class GraphConstructionError(EngineDataError):
    """Raised when a dataset cannot be turned into a consistent graph."""


class ElevationUnavailableError(EngineDataError):
    """Raised when the elevation collaborator cannot supply samples."""


def normalize_reason_code(reason_code: str, *, default: str = "dataset_invalid") -> str:
    code = str(reason_code or "").strip()
    if code in FROZEN_REASON_CODES:
        return code
    return default
