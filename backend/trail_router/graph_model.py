from __future__ import annotations

import math
from collections import deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from .dataset import MapDataset, parse_dataset
from .engine_errors import GraphConstructionError
from .geo import grid_key, haversine_m, ring_offsets
from .logging_utils import log_event
from .settings import settings

NODE_ID_PREFIX = "osm_node_"

WALKABLE_HIGHWAYS: frozenset[str] = frozenset(
    {
        "footway",
        "path",
        "track",
        "bridleway",
        "cycleway",
        "steps",
        "pedestrian",
        "residential",
        "living_street",
        "service",
        "unclassified",
    }
)
_NO_FOOT_ACCESS = frozenset({"no", "private"})

# (desirability 0..1, cost multiplier >= 1)
HIGHWAY_PROFILE: dict[str, tuple[float, float]] = {
    "path": (0.95, 1.00),
    "track": (0.90, 1.00),
    "footway": (0.85, 1.00),
    "bridleway": (0.85, 1.05),
    "pedestrian": (0.70, 1.00),
    "cycleway": (0.70, 1.05),
    "living_street": (0.55, 1.10),
    "steps": (0.50, 1.30),
    "residential": (0.45, 1.15),
    "unclassified": (0.40, 1.20),
    "service": (0.35, 1.20),
}
SURFACE_PROFILE: dict[str, tuple[float, float]] = {
    "dirt": (0.90, 1.00),
    "earth": (0.90, 1.00),
    "ground": (0.90, 1.00),
    "compacted": (0.90, 1.00),
    "fine_gravel": (0.90, 1.00),
    "grass": (0.80, 1.10),
    "unpaved": (0.80, 1.05),
    "tartan": (0.80, 1.00),
    "gravel": (0.75, 1.10),
    "wood": (0.70, 1.05),
    "paved": (0.60, 1.00),
    "pebblestone": (0.60, 1.15),
    "asphalt": (0.55, 1.00),
    "paving_stones": (0.55, 1.00),
    "rock": (0.55, 1.25),
    "concrete": (0.50, 1.00),
    "brick": (0.50, 1.00),
    "sand": (0.50, 1.35),
    "cobblestone": (0.45, 1.15),
    "metal": (0.40, 1.05),
    "mud": (0.30, 1.50),
}
_DEFAULT_HIGHWAY_PROFILE = (0.50, 1.10)
_DEFAULT_SURFACE_PROFILE = (0.60, 1.05)

PAVED_SURFACES: frozenset[str] = frozenset(
    {
        "paved",
        "asphalt",
        "concrete",
        "paving_stones",
        "sett",
        "cobblestone",
        "brick",
        "metal",
        "wood",
        "tartan",
    }
)
UNPAVED_SURFACES: frozenset[str] = frozenset(
    {
        "unpaved",
        "compacted",
        "fine_gravel",
        "gravel",
        "pebblestone",
        "rock",
        "ground",
        "dirt",
        "earth",
        "grass",
        "mud",
        "sand",
    }
)


def surface_class(surface: str) -> str:
    """``paved``, ``unpaved`` or ``unknown`` for an OSM surface tag value."""
    value = (surface or "").strip().lower()
    if value in PAVED_SURFACES:
        return "paved"
    if value in UNPAVED_SURFACES:
        return "unpaved"
    return "unknown"


def edge_id(from_id: str, to_id: str) -> str:
    return f"{from_id}->{to_id}"


def graph_node_id(source_id: str) -> str:
    return f"{NODE_ID_PREFIX}{source_id}"


@dataclass(frozen=True)
class Node:
    id: str
    source_id: str
    lat: float
    lon: float
    connections: tuple[str, ...] = ()

    @property
    def degree(self) -> int:
        return len(self.connections)

    @property
    def is_intersection(self) -> bool:
        return self.degree > 2


@dataclass(frozen=True)
class Edge:
    id: str
    source_way_id: str
    from_id: str
    to_id: str
    distance: float
    weight: float
    quality_score: float
    highway: str = ""
    surface: str = ""

    @property
    def segment_key(self) -> tuple[str, str]:
        """Direction-free identity of the physical segment this edge traverses."""
        return (self.from_id, self.to_id) if self.from_id <= self.to_id else (self.to_id, self.from_id)


@dataclass(frozen=True)
class NodeRecord:
    id: str
    lat: float
    lon: float
    source_id: str = ""


@dataclass(frozen=True)
class SegmentRecord:
    """One physical, undirected segment; becomes two directed edges."""

    from_id: str
    to_id: str
    distance: float
    source_way_id: str = ""
    weight: float | None = None
    quality_score: float = 0.5
    highway: str = ""
    surface: str = ""


@dataclass(frozen=True)
class GraphIntegrityReport:
    valid: bool
    errors: tuple[str, ...] = ()


@dataclass(frozen=True, eq=False)
class Graph:
    version: str
    source: str
    nodes: Mapping[str, Node]
    edges: Mapping[str, Edge]
    adjacency: Mapping[str, tuple[Edge, ...]]
    grid_index: Mapping[tuple[int, int], tuple[str, ...]]
    grid_bucket_deg: float
    component_by_node: Mapping[str, int]
    component_sizes: Mapping[int, int]
    heuristic_scale: float
    meta: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    def node(self, node_id: str) -> Node | None:
        return self.nodes.get(node_id)

    def edge(self, eid: str) -> Edge | None:
        return self.edges.get(eid)

    def edge_between(self, from_id: str, to_id: str) -> Edge | None:
        return self.edges.get(edge_id(from_id, to_id))

    def outgoing_edges(self, node_id: str) -> tuple[Edge, ...]:
        return self.adjacency.get(node_id, ())

    def degree(self, node_id: str) -> int:
        node = self.nodes.get(node_id)
        return node.degree if node is not None else 0

    def is_intersection(self, node_id: str) -> bool:
        node = self.nodes.get(node_id)
        return bool(node is not None and node.is_intersection)

    def component_of(self, node_id: str) -> int | None:
        return self.component_by_node.get(node_id)

    def nearest_node(
        self,
        lat: float,
        lon: float,
        *,
        max_distance_m: float | None = None,
    ) -> tuple[str, float] | None:
        """Closest node to a coordinate as ``(node_id, distance_m)``, or None."""
        if not self.grid_index:
            return None
        bucket = self.grid_bucket_deg
        center = grid_key(lat, lon, bucket)
        rows = [key[0] for key in self.grid_index]
        cols = [key[1] for key in self.grid_index]
        max_radius = max(
            abs(center[0] - min(rows)),
            abs(center[0] - max(rows)),
            abs(center[1] - min(cols)),
            abs(center[1] - max(cols)),
        )
        limit = float(max_distance_m) if max_distance_m is not None and max_distance_m > 0 else math.inf
        best: tuple[float, str] | None = None
        for radius in range(0, max_radius + 1):
            # A node in ring r is at least (r - 1) cells from the query; the 0.9 factor
            # covers meridian convergence across the ring.
            lat_span = min(89.0, abs(lat) + (radius + 1) * bucket)
            cell_m = 0.9 * bucket * 111_195.0 * max(0.01, math.cos(math.radians(lat_span)))
            ring_floor_m = max(0.0, (radius - 1) * cell_m)
            if ring_floor_m > limit:
                break
            if best is not None and ring_floor_m > best[0]:
                break
            for dy, dx in ring_offsets(radius):
                for node_id in self.grid_index.get((center[0] + dy, center[1] + dx), ()):
                    node = self.nodes[node_id]
                    dist = haversine_m(lat, lon, node.lat, node.lon)
                    if dist > limit:
                        continue
                    candidate = (dist, node_id)
                    if best is None or candidate < best:
                        best = candidate
        if best is None:
            return None
        return best[1], best[0]

    def summary(self) -> dict[str, Any]:
        intersections = sum(1 for node in self.nodes.values() if node.is_intersection)
        largest = max(self.component_sizes.values(), default=0)
        return {
            "version": self.version,
            "source": self.source,
            "nodes": len(self.nodes),
            "edges": len(self.edges),
            "segments": len(self.edges) // 2,
            "intersections": intersections,
            "components": len(self.component_sizes),
            "largest_component_nodes": largest,
            "heuristic_scale": round(self.heuristic_scale, 6),
        }


def _profile_for(tags: Mapping[str, str]) -> tuple[float, float, str, str]:
    highway = str(tags.get("highway", "")).strip().lower()
    surface = str(tags.get("surface", "unknown")).strip().lower() or "unknown"
    hw_quality, hw_penalty = HIGHWAY_PROFILE.get(highway, _DEFAULT_HIGHWAY_PROFILE)
    sf_quality, sf_penalty = SURFACE_PROFILE.get(surface, _DEFAULT_SURFACE_PROFILE)
    quality = max(0.0, min(1.0, 0.6 * hw_quality + 0.4 * sf_quality))
    return quality, hw_penalty * sf_penalty, highway, surface


def is_walkable(tags: Mapping[str, str]) -> bool:
    highway = str(tags.get("highway", "")).strip().lower()
    if highway not in WALKABLE_HIGHWAYS:
        return False
    if str(tags.get("foot", "")).strip().lower() in _NO_FOOT_ACCESS:
        return False
    return str(tags.get("access", "")).strip().lower() not in _NO_FOOT_ACCESS


def _compute_component_index(
    node_ids: Iterable[str],
    adjacency: Mapping[str, list[Edge]],
) -> tuple[dict[str, int], dict[int, int]]:
    component_by_node: dict[str, int] = {}
    component_sizes: dict[int, int] = {}
    component_idx = 0
    for node_id in node_ids:
        if node_id in component_by_node:
            continue
        component_idx += 1
        q: deque[str] = deque([node_id])
        size = 0
        while q:
            current = q.popleft()
            if current in component_by_node:
                continue
            component_by_node[current] = component_idx
            size += 1
            for edge in adjacency.get(current, ()):
                if edge.to_id not in component_by_node:
                    q.append(edge.to_id)
        component_sizes[component_idx] = size
    return component_by_node, component_sizes


def _check_segment(segment: SegmentRecord) -> tuple[float, float]:
    distance = float(segment.distance)
    if not math.isfinite(distance) or distance < 0.0:
        raise GraphConstructionError(
            reason_code="dataset_invalid",
            message=f"segment {segment.from_id}-{segment.to_id} has invalid distance",
            details={"distance": segment.distance},
        )
    weight = distance if segment.weight is None else float(segment.weight)
    if not math.isfinite(weight) or weight < distance:
        raise GraphConstructionError(
            reason_code="dataset_invalid",
            message=f"segment {segment.from_id}-{segment.to_id} weight must be >= distance",
            details={"distance": distance, "weight": segment.weight},
        )
    if not 0.0 <= float(segment.quality_score) <= 1.0:
        raise GraphConstructionError(
            reason_code="dataset_invalid",
            message=f"segment {segment.from_id}-{segment.to_id} quality score outside [0, 1]",
            details={"quality_score": segment.quality_score},
        )
    return distance, weight


def assemble_graph(
    nodes: Iterable[NodeRecord],
    segments: Iterable[SegmentRecord],
    *,
    version: str = "unknown",
    source: str = "memory",
    grid_bucket_deg: float | None = None,
    meta: Mapping[str, Any] | None = None,
) -> Graph:
    """Index node and segment records into an immutable :class:`Graph`.

    Each segment yields one edge per direction. Connections are derived from the
    stored edges, so every listed neighbour is backed by an edge. When two
    segments join the same pair of nodes the cheaper one is kept.
    """
    node_records: dict[str, NodeRecord] = {}
    for record in nodes:
        if not (-90.0 <= record.lat <= 90.0 and -180.0 <= record.lon <= 180.0):
            raise GraphConstructionError(
                reason_code="node_missing_coordinates",
                message=f"node {record.id} has coordinates outside WGS84 range",
                details={"node_id": record.id, "lat": record.lat, "lon": record.lon},
            )
        node_records[record.id] = record

    edges: dict[str, Edge] = {}
    for segment in segments:
        if segment.from_id == segment.to_id:
            continue
        for endpoint in (segment.from_id, segment.to_id):
            if endpoint not in node_records:
                raise GraphConstructionError(
                    reason_code="edge_unknown_node",
                    message=f"segment references unknown node {endpoint}",
                    details={"node_id": endpoint, "source_way_id": segment.source_way_id},
                )
        distance, weight = _check_segment(segment)
        for u, v in ((segment.from_id, segment.to_id), (segment.to_id, segment.from_id)):
            eid = edge_id(u, v)
            prior = edges.get(eid)
            if prior is not None and prior.weight <= weight:
                continue
            edges[eid] = Edge(
                id=eid,
                source_way_id=str(segment.source_way_id or ""),
                from_id=u,
                to_id=v,
                distance=distance,
                weight=weight,
                quality_score=float(segment.quality_score),
                highway=segment.highway,
                surface=segment.surface,
            )

    adjacency_mut: dict[str, list[Edge]] = {}
    connections_mut: dict[str, list[str]] = {}
    for edge in sorted(edges.values(), key=lambda e: (e.from_id, e.to_id)):
        adjacency_mut.setdefault(edge.from_id, []).append(edge)
        connections_mut.setdefault(edge.from_id, []).append(edge.to_id)

    bucket = float(grid_bucket_deg or settings.graph_grid_bucket_deg)
    node_map: dict[str, Node] = {}
    grid_mut: dict[tuple[int, int], list[str]] = {}
    for node_id, record in node_records.items():
        node_map[node_id] = Node(
            id=node_id,
            source_id=record.source_id or node_id,
            lat=float(record.lat),
            lon=float(record.lon),
            connections=tuple(connections_mut.get(node_id, ())),
        )
        grid_mut.setdefault(grid_key(record.lat, record.lon, bucket), []).append(node_id)

    heuristic_scale = 1.0
    for edge in edges.values():
        a = node_map[edge.from_id]
        b = node_map[edge.to_id]
        straight_m = haversine_m(a.lat, a.lon, b.lat, b.lon)
        if straight_m > 1e-9:
            heuristic_scale = min(heuristic_scale, edge.distance / straight_m)

    component_by_node, component_sizes = _compute_component_index(node_map.keys(), adjacency_mut)
    return Graph(
        version=version,
        source=source,
        nodes=MappingProxyType(node_map),
        edges=MappingProxyType(edges),
        adjacency=MappingProxyType({k: tuple(v) for k, v in adjacency_mut.items()}),
        grid_index=MappingProxyType({k: tuple(v) for k, v in grid_mut.items()}),
        grid_bucket_deg=bucket,
        component_by_node=MappingProxyType(component_by_node),
        component_sizes=MappingProxyType(component_sizes),
        heuristic_scale=max(0.0, heuristic_scale),
        meta=MappingProxyType(dict(meta or {})),
    )


def build_graph(dataset: MapDataset | dict[str, Any]) -> Graph:
    """Build the routable graph from an ingested node/way dataset.

    Only walkable ways contribute edges and only nodes they reference become graph
    nodes. A walkable way that references a node missing from the dataset fails the
    whole build.
    """
    data = parse_dataset(dataset)
    raw_nodes = {node.id: node for node in data.nodes}

    segments: list[SegmentRecord] = []
    used_nodes: dict[str, NodeRecord] = {}
    ways_kept = 0
    ways_skipped = 0
    for way in data.ways:
        if not is_walkable(way.tags):
            ways_skipped += 1
            continue
        refs: list[str] = []
        for ref in way.nodes:
            if ref not in raw_nodes:
                raise GraphConstructionError(
                    reason_code="way_unknown_node",
                    message=f"way {way.id} references unknown node {ref}",
                    details={"way_id": way.id, "node_ref": ref},
                )
            if not refs or refs[-1] != ref:
                refs.append(ref)
        if len(refs) < 2:
            ways_skipped += 1
            continue
        ways_kept += 1
        quality, penalty, highway, surface = _profile_for(way.tags)
        for ref in refs:
            raw = raw_nodes[ref]
            used_nodes.setdefault(ref, NodeRecord(id=graph_node_id(ref), lat=raw.lat, lon=raw.lon, source_id=ref))
        for a_ref, b_ref in zip(refs[:-1], refs[1:]):
            a = raw_nodes[a_ref]
            b = raw_nodes[b_ref]
            distance = haversine_m(a.lat, a.lon, b.lat, b.lon)
            segments.append(
                SegmentRecord(
                    from_id=graph_node_id(a_ref),
                    to_id=graph_node_id(b_ref),
                    distance=distance,
                    source_way_id=way.id,
                    weight=distance * penalty,
                    quality_score=quality,
                    highway=highway,
                    surface=surface,
                )
            )

    if not segments:
        raise GraphConstructionError(
            reason_code="graph_empty",
            message="dataset contains no walkable segments",
            details={"source": data.source, "ways": len(data.ways), "nodes": len(data.nodes)},
        )

    graph = assemble_graph(
        used_nodes.values(),
        segments,
        version=data.version,
        source=data.source,
        meta={"ways_kept": ways_kept, "ways_skipped": ways_skipped},
    )
    log_event("graph_built", **graph.summary(), ways_kept=ways_kept, ways_skipped=ways_skipped)
    return graph


def validate_graph(graph: Graph) -> GraphIntegrityReport:
    errors: list[str] = []
    for eid, edge in graph.edges.items():
        if eid != edge_id(edge.from_id, edge.to_id):
            errors.append(f"Edge {eid} id does not match its endpoints")
        if not edge.source_way_id:
            errors.append(f"Edge {eid} has no source way id")
        if edge.from_id not in graph.nodes:
            errors.append(f"Edge {eid} missing node {edge.from_id}")
        if edge.to_id not in graph.nodes:
            errors.append(f"Edge {eid} missing node {edge.to_id}")
        if edge.weight < edge.distance:
            errors.append(f"Edge {eid} weight is below its distance")
    for node_id, node in graph.nodes.items():
        for neighbour in node.connections:
            if edge_id(node_id, neighbour) not in graph.edges:
                errors.append(f"Node {node_id} connection {neighbour} has no edge")
    return GraphIntegrityReport(valid=not errors, errors=tuple(errors))
