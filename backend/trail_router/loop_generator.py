"""Closed-loop search over the trail graph.

Each sampled bearing runs an independent two-leg search: a direction-biased
outbound Dijkstra picks an apex roughly half the target away, then an A* return
leg heads home while avoiding the segments already walked. Candidates from all
bearings are scored, filtered to the acceptance window, de-duplicated and ranked.
"""

from __future__ import annotations

import logging
import math
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Literal

from .geo import evenly_spaced_bearings, heading_delta_deg, initial_bearing_deg
from .graph_model import Edge, Graph, surface_class
from .logging_utils import log_event
from .pathfinding import SearchDeadlineExceeded, dijkstra_distance_field, path_edges, shortest_path
from .settings import settings

TerrainType = Literal["paved", "unpaved", "mixed"]


@dataclass(frozen=True)
class LoopGenerationOptions:
    start_node_id: str
    target_distance: float
    num_variants: int = 3
    max_search_distance: float | None = None
    deadline_s: float | None = None
    weight_factor: float = 1.0
    bearing_offset_deg: float = 0.0
    terrain_type: TerrainType = "mixed"


@dataclass(frozen=True)
class GeneratedLoop:
    loop: tuple[str, ...]
    path_edges: tuple[str, ...]
    distance: float
    quality_score: float
    bearing: float = 0.0
    apex_node_id: str = ""
    overlap_ratio: float = 0.0
    distance_accuracy: float = 0.0
    mean_edge_quality: float = 0.0
    # surface tag -> metres walked on it
    surface_breakdown: dict[str, float] = field(default_factory=dict, hash=False, compare=False)


@dataclass(frozen=True)
class LoopGenerationResult:
    loops: tuple[GeneratedLoop, ...]
    debug: dict[str, Any] = field(default_factory=dict)

    @property
    def warnings(self) -> list[str]:
        return list(self.debug.get("warnings", []))


@dataclass(frozen=True)
class _BearingOutcome:
    bearing: float
    candidate: GeneratedLoop | None
    explored: int
    relaxed: bool
    reason: str


def _empty_result(warning: str, **stats: Any) -> LoopGenerationResult:
    return LoopGenerationResult(loops=(), debug={"warnings": [warning], **stats})


def bearing_count(num_variants: int) -> int:
    wanted = max(settings.loop_min_bearings, int(num_variants) * settings.loop_bearing_oversample)
    return min(wanted, max(settings.loop_max_bearings, settings.loop_min_bearings))


def segment_set(edges: tuple[Edge, ...] | list[Edge]) -> frozenset[tuple[str, str]]:
    return frozenset(edge.segment_key for edge in edges)


def jaccard_similarity(a: frozenset[tuple[str, str]], b: frozenset[tuple[str, str]]) -> float:
    if not a and not b:
        return 1.0
    union = len(a | b)
    return (len(a & b) / union) if union else 0.0


def distance_accuracy(distance: float, target: float) -> float:
    if target <= 0:
        return 0.0
    return max(0.0, 1.0 - abs(distance - target) / target)


def terrain_penalties(graph: Graph, terrain_type: str) -> dict[str, float]:
    """Cost multipliers for edges whose surface class contradicts the preference.

    ``mixed`` and edges with an unknown surface are never penalised.
    """
    if terrain_type not in ("paved", "unpaved"):
        return {}
    avoid = "unpaved" if terrain_type == "paved" else "paved"
    factor = float(settings.loop_terrain_mismatch_penalty)
    if factor <= 1.0:
        return {}
    return {eid: factor for eid, edge in graph.edges.items() if surface_class(edge.surface) == avoid}


def mean_edge_quality(
    edges: tuple[Edge, ...] | list[Edge],
    penalties: dict[str, float] | None = None,
) -> float:
    """Distance-weighted mean of edge quality; plain mean when every edge is zero length.

    An edge listed in ``penalties`` counts at its quality divided by its penalty.
    """
    if not edges:
        return 0.0
    penalties = penalties or {}
    qualities = [edge.quality_score / penalties.get(edge.id, 1.0) for edge in edges]
    total = sum(edge.distance for edge in edges)
    if total <= 0:
        return sum(qualities) / len(edges)
    return sum(q * edge.distance for q, edge in zip(qualities, edges)) / total


def surface_breakdown(edges: tuple[Edge, ...] | list[Edge]) -> dict[str, float]:
    metres: dict[str, float] = {}
    for edge in edges:
        key = edge.surface or "unknown"
        metres[key] = metres.get(key, 0.0) + edge.distance
    return {key: round(value, 2) for key, value in sorted(metres.items())}


def quality_score(accuracy: float, overlap: float, edge_quality: float) -> float:
    w_distance = settings.loop_quality_weight_distance
    w_overlap = settings.loop_quality_weight_overlap
    w_edges = settings.loop_quality_weight_edges
    total = w_distance + w_overlap + w_edges
    score = (w_distance * accuracy + w_overlap * (1.0 - overlap) + w_edges * edge_quality) / total
    return max(0.0, min(1.0, score))


def _assemble(
    graph: Graph,
    *,
    bearing: float,
    target: float,
    outbound_nodes: tuple[str, ...],
    return_nodes: tuple[str, ...],
    penalties: dict[str, float] | None = None,
) -> GeneratedLoop | None:
    loop = outbound_nodes + return_nodes[1:]
    outbound_edges = path_edges(graph, outbound_nodes)
    return_edges = path_edges(graph, return_nodes)
    if outbound_edges is None or return_edges is None:
        return None
    edges = outbound_edges + return_edges
    distance = sum(edge.distance for edge in edges)
    shared = segment_set(outbound_edges) & segment_set(return_edges)
    overlap = (sum(1 for edge in edges if edge.segment_key in shared) / len(edges)) if edges else 0.0
    accuracy = distance_accuracy(distance, target)
    edge_quality = mean_edge_quality(edges, penalties)
    return GeneratedLoop(
        loop=loop,
        path_edges=tuple(edge.id for edge in edges),
        distance=distance,
        quality_score=quality_score(accuracy, overlap, edge_quality),
        bearing=bearing,
        apex_node_id=outbound_nodes[-1],
        overlap_ratio=overlap,
        distance_accuracy=accuracy,
        mean_edge_quality=edge_quality,
        surface_breakdown=surface_breakdown(edges),
    )


def _search_bearing(
    graph: Graph,
    options: LoopGenerationOptions,
    bearing: float,
    deadline_monotonic_s: float,
    penalties: dict[str, float] | None = None,
) -> _BearingOutcome:
    start_id = options.start_node_id
    start = graph.nodes[start_id]
    target = float(options.target_distance)
    search_cap = float(options.max_search_distance) if options.max_search_distance else math.inf
    outbound_limit = min(settings.loop_outbound_limit_ratio * target, search_cap)
    direction_penalty = settings.loop_direction_penalty
    nodes = graph.nodes

    def heading_surcharge(edge: Edge) -> float:
        a = nodes[edge.from_id]
        b = nodes[edge.to_id]
        deviation = heading_delta_deg(initial_bearing_deg(a.lat, a.lon, b.lat, b.lon), bearing)
        return direction_penalty * edge.distance * deviation / 180.0

    try:
        outbound = dijkstra_distance_field(
            graph,
            start_id,
            outbound_limit,
            weight_factor=options.weight_factor,
            edge_penalties=penalties or None,
            extra_cost=heading_surcharge,
            deadline_monotonic_s=deadline_monotonic_s,
        )
    except SearchDeadlineExceeded:
        return _BearingOutcome(bearing, None, 0, False, "deadline")

    half = target / 2.0
    best: tuple[float, str] | None = None
    for node_id, entry in outbound.settled.items():
        if node_id == start_id or entry.distance <= 0:
            continue
        node = nodes[node_id]
        deviation = heading_delta_deg(initial_bearing_deg(start.lat, start.lon, node.lat, node.lon), bearing)
        score = abs(entry.distance - half) / half + settings.loop_apex_alignment_weight * deviation / 180.0
        if best is None or (score, node_id) < best:
            best = (score, node_id)
    if best is None:
        return _BearingOutcome(bearing, None, outbound.explored, False, "no_apex")

    apex_id = best[1]
    outbound_nodes, outbound_edge_ids = outbound.path_to(apex_id)
    outbound_distance = outbound.settled[apex_id].distance
    return_cap = min(settings.loop_max_distance_ratio * target - outbound_distance, search_cap)
    if return_cap <= 0:
        return _BearingOutcome(bearing, None, outbound.explored, False, "no_return_budget")

    reused: set[str] = set()
    for eid in outbound_edge_ids:
        edge = graph.edges[eid]
        reused.add(eid)
        reused.add(f"{edge.to_id}->{edge.from_id}")

    explored = outbound.explored
    relaxed = False
    try:
        back = shortest_path(
            graph,
            apex_id,
            start_id,
            return_cap,
            options.weight_factor,
            reused,
            algorithm="astar",
            edge_penalties=penalties or None,
            deadline_monotonic_s=deadline_monotonic_s,
        )
        if back is None:
            relaxed = True
            relaxed_penalties = dict(penalties or {})
            for eid in reused:
                relaxed_penalties[eid] = relaxed_penalties.get(eid, 1.0) * settings.loop_reuse_penalty
            back = shortest_path(
                graph,
                apex_id,
                start_id,
                return_cap,
                options.weight_factor,
                algorithm="astar",
                edge_penalties=relaxed_penalties,
                deadline_monotonic_s=deadline_monotonic_s,
            )
    except SearchDeadlineExceeded:
        return _BearingOutcome(bearing, None, explored, relaxed, "deadline")
    if back is None:
        return _BearingOutcome(bearing, None, explored, relaxed, "no_return_path")
    explored += back.explored

    candidate = _assemble(
        graph,
        bearing=bearing,
        target=target,
        outbound_nodes=outbound_nodes,
        return_nodes=back.path,
        penalties=penalties,
    )
    if candidate is None:
        return _BearingOutcome(bearing, None, explored, relaxed, "inconsistent_path")
    return _BearingOutcome(bearing, candidate, explored, relaxed, "ok")


def _run_bearings(
    graph: Graph,
    options: LoopGenerationOptions,
    bearings: tuple[float, ...],
    deadline_monotonic_s: float,
    penalties: dict[str, float] | None = None,
) -> tuple[list[_BearingOutcome], bool]:
    outcomes: list[_BearingOutcome] = []
    workers = min(settings.loop_worker_count, len(bearings))
    if workers <= 1:
        for bearing in bearings:
            if time.monotonic() >= deadline_monotonic_s:
                return outcomes, True
            outcome = _search_bearing(graph, options, bearing, deadline_monotonic_s, penalties)
            outcomes.append(outcome)
            if outcome.reason == "deadline":
                return outcomes, True
        return outcomes, False

    timed_out = False
    executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="loop-search")
    try:
        pending: set[Future[_BearingOutcome]] = {
            executor.submit(_search_bearing, graph, options, bearing, deadline_monotonic_s, penalties)
            for bearing in bearings
        }
        while pending:
            remaining = deadline_monotonic_s - time.monotonic()
            if remaining <= 0:
                timed_out = True
                break
            done, pending = wait(pending, timeout=remaining, return_when=FIRST_COMPLETED)
            for future in done:
                outcome = future.result()
                outcomes.append(outcome)
                if outcome.reason == "deadline":
                    timed_out = True
        if pending:
            timed_out = True
    finally:
        executor.shutdown(wait=False, cancel_futures=True)
    return outcomes, timed_out


def generate_loops(graph: Graph, options: LoopGenerationOptions) -> LoopGenerationResult:
    """Up to ``options.num_variants`` distinct loops from the start node, best first.

    Never raises for an unusable request: an unknown start, a non-positive target
    or an exhausted deadline all come back as warnings in ``debug``.
    """
    t0 = time.perf_counter()
    target = float(options.target_distance)
    if graph.node(options.start_node_id) is None:
        return _empty_result("start node not found", start_node_id=options.start_node_id)
    if not math.isfinite(target) or target <= 0:
        return _empty_result("target distance must be positive", target_distance=options.target_distance)
    if options.num_variants <= 0:
        return _empty_result("num_variants must be positive", num_variants=options.num_variants)

    warnings: list[str] = []
    num_variants = int(options.num_variants)
    if num_variants > settings.loop_max_variants:
        warnings.append(f"num_variants capped at {settings.loop_max_variants}")
        num_variants = settings.loop_max_variants

    low = settings.loop_min_distance_ratio * target
    high = settings.loop_max_distance_ratio * target
    bearings = evenly_spaced_bearings(bearing_count(num_variants), offset_deg=options.bearing_offset_deg)
    deadline_s = options.deadline_s if options.deadline_s and options.deadline_s > 0 else settings.loop_default_deadline_s
    deadline_monotonic_s = time.monotonic() + float(deadline_s)

    penalties = terrain_penalties(graph, options.terrain_type)

    if graph.degree(options.start_node_id) == 0:
        outcomes: list[_BearingOutcome] = []
        timed_out = False
        warnings.append("start node has no connections")
    else:
        outcomes, timed_out = _run_bearings(graph, options, bearings, deadline_monotonic_s, penalties)

    candidates = [outcome.candidate for outcome in outcomes if outcome.candidate is not None]
    in_window = [loop for loop in candidates if low <= loop.distance <= high]
    in_window.sort(key=lambda loop: (-loop.quality_score, abs(loop.distance - target), loop.bearing))

    kept: list[GeneratedLoop] = []
    kept_segments: list[frozenset[tuple[str, str]]] = []
    duplicates = 0
    for loop in in_window:
        segments = frozenset(graph.edges[eid].segment_key for eid in loop.path_edges)
        if any(jaccard_similarity(segments, other) >= settings.loop_dedupe_similarity for other in kept_segments):
            duplicates += 1
            continue
        kept.append(loop)
        kept_segments.append(segments)
    loops = tuple(kept[:num_variants])

    if timed_out:
        warnings.append("deadline exceeded; returning partial results")
        log_event(
            "loop_deadline_exceeded",
            level=logging.WARNING,
            start_node_id=options.start_node_id,
            bearings_completed=len(outcomes),
            bearings_sampled=len(bearings),
        )
    if not loops:
        warnings.append(f"no loop found within distance window [{low:.0f}, {high:.0f}] m")
    elif len(loops) < num_variants:
        warnings.append(f"found {len(loops)} of {num_variants} requested variants")

    elapsed_ms = round((time.perf_counter() - t0) * 1000.0, 2)
    debug: dict[str, Any] = {
        "warnings": warnings,
        "bearings_sampled": len(bearings),
        "bearings_completed": len(outcomes),
        "candidates_built": len(candidates),
        "rejected_out_of_window": len(candidates) - len(in_window),
        "duplicates_removed": duplicates,
        "return_relaxed": sum(1 for outcome in outcomes if outcome.relaxed),
        "explored_states": sum(outcome.explored for outcome in outcomes),
        "terrain_type": options.terrain_type,
        "terrain_penalised_edges": len(penalties),
        "deadline_exceeded": timed_out,
        "elapsed_ms": elapsed_ms,
        "target_window_m": [round(low, 3), round(high, 3)],
    }
    log_event(
        "loop_generation",
        start_node_id=options.start_node_id,
        target_distance_m=target,
        loops_returned=len(loops),
        **{k: v for k, v in debug.items() if k != "warnings"},
    )
    return LoopGenerationResult(loops=loops, debug=debug)
