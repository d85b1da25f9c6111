from __future__ import annotations

from typing import Any

from .graph_model import Graph
from .loop_generator import GeneratedLoop
from .settings import settings


def estimated_duration_s(distance_m: float, pace_s_per_km: float | None = None) -> float:
    pace = float(pace_s_per_km if pace_s_per_km is not None else settings.default_pace_s_per_km)
    return max(0.0, float(distance_m)) / 1000.0 * max(0.0, pace)


def loop_line_coordinates(loop: GeneratedLoop, graph: Graph) -> list[list[float]]:
    """``[lon, lat]`` pairs in loop order, skipping nodes the graph no longer has."""
    coords: list[list[float]] = []
    for node_id in loop.loop:
        node = graph.node(node_id)
        if node is not None:
            coords.append([node.lon, node.lat])
    return coords


def loop_to_geojson(
    loop: GeneratedLoop,
    graph: Graph,
    *,
    pace_s_per_km: float | None = None,
    extra_properties: dict[str, Any] | None = None,
) -> dict[str, Any]:
    properties: dict[str, Any] = {
        "distance_m": round(loop.distance, 2),
        "quality_score": round(loop.quality_score, 4),
        "bearing_deg": loop.bearing,
        "apex_node_id": loop.apex_node_id,
        "start_node_id": loop.loop[0] if loop.loop else None,
        "segments": len(loop.path_edges),
        "surface_types": dict(loop.surface_breakdown),
        "estimated_duration_s": round(estimated_duration_s(loop.distance, pace_s_per_km), 1),
    }
    if extra_properties:
        properties.update(extra_properties)
    return {
        "type": "FeatureCollection",
        "features": [
            {
                "type": "Feature",
                "geometry": {"type": "LineString", "coordinates": loop_line_coordinates(loop, graph)},
                "properties": properties,
            }
        ],
    }
