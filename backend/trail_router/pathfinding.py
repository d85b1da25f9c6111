from __future__ import annotations

import heapq
import time
from collections.abc import Callable, Collection, Mapping
from dataclasses import dataclass
from typing import Literal

from .geo import haversine_m
from .graph_model import Edge, Graph

Algorithm = Literal["dijkstra", "astar"]
ExtraCostFn = Callable[[Edge], float]

MIN_EDGE_COST = 0.001
# Keeps the scaled straight-line estimate strictly below the cheapest possible edge cost.
_HEURISTIC_SLACK = 0.999
_DEADLINE_CHECK_EVERY = 64


class SearchDeadlineExceeded(TimeoutError):
    pass


@dataclass(frozen=True)
class PathResult:
    path: tuple[str, ...]
    distance: float
    cost: float = 0.0
    explored: int = 0
    edge_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class FieldEntry:
    distance: float
    cost: float
    predecessor: str | None
    edge_id: str | None


@dataclass(frozen=True)
class DistanceField:
    start_id: str
    settled: Mapping[str, FieldEntry]
    explored: int

    def path_to(self, node_id: str) -> tuple[tuple[str, ...], tuple[str, ...]]:
        """Node ids and edge ids from the field's start to ``node_id``."""
        if node_id not in self.settled:
            return (), ()
        nodes: list[str] = []
        edges: list[str] = []
        current: str | None = node_id
        while current is not None:
            nodes.append(current)
            entry = self.settled[current]
            if entry.edge_id is not None:
                edges.append(entry.edge_id)
            current = entry.predecessor
        nodes.reverse()
        edges.reverse()
        return tuple(nodes), tuple(edges)


def routing_cost(
    edge: Edge,
    weight_factor: float,
    edge_penalties: Mapping[str, float] | None = None,
) -> float:
    """Blend of real distance and terrain-weighted cost for one directed edge."""
    factor = min(1.0, max(0.0, float(weight_factor)))
    cost = edge.distance + factor * (edge.weight - edge.distance)
    if edge_penalties:
        cost *= max(1.0, float(edge_penalties.get(edge.id, 1.0)))
    return max(MIN_EDGE_COST, cost)


def _search(
    graph: Graph,
    start_id: str,
    *,
    goal_id: str | None,
    max_distance: float,
    weight_factor: float,
    forbidden_edges: Collection[str] | None,
    edge_penalties: Mapping[str, float] | None,
    extra_cost: ExtraCostFn | None,
    heuristic: Callable[[str], float] | None,
    deadline_monotonic_s: float | None,
) -> tuple[dict[str, FieldEntry], int]:
    forbidden = forbidden_edges or ()
    # label: (cost, distance, predecessor, edge id)
    labels: dict[str, tuple[float, float, str | None, str | None]] = {start_id: (0.0, 0.0, None, None)}
    settled: dict[str, FieldEntry] = {}
    h0 = heuristic(start_id) if heuristic is not None else 0.0
    heap: list[tuple[float, float, str]] = [(h0, 0.0, start_id)]
    explored = 0
    while heap:
        if deadline_monotonic_s is not None and explored % _DEADLINE_CHECK_EVERY == 0:
            if time.monotonic() >= float(deadline_monotonic_s):
                raise SearchDeadlineExceeded(f"search from {start_id} exceeded its deadline")
        _, g, node = heapq.heappop(heap)
        if node in settled:
            continue
        label = labels[node]
        if g > label[0]:
            continue
        settled[node] = FieldEntry(distance=label[1], cost=label[0], predecessor=label[2], edge_id=label[3])
        explored += 1
        if node == goal_id:
            break
        for edge in graph.outgoing_edges(node):
            nxt = edge.to_id
            if nxt in settled or edge.id in forbidden:
                continue
            new_distance = label[1] + edge.distance
            if new_distance > max_distance:
                continue
            step = routing_cost(edge, weight_factor, edge_penalties)
            if extra_cost is not None:
                step += max(0.0, float(extra_cost(edge)))
            new_cost = g + step
            prior = labels.get(nxt)
            if prior is not None:
                if new_cost > prior[0]:
                    continue
                if new_cost == prior[0]:
                    # Equal cost: the smaller predecessor id wins; queue position is unchanged.
                    if prior[2] is not None and node < prior[2]:
                        labels[nxt] = (new_cost, new_distance, node, edge.id)
                    continue
            labels[nxt] = (new_cost, new_distance, node, edge.id)
            priority = new_cost + (heuristic(nxt) if heuristic is not None else 0.0)
            heapq.heappush(heap, (priority, new_cost, nxt))
    return settled, explored


def dijkstra_distance_field(
    graph: Graph,
    start_id: str,
    max_distance: float,
    *,
    weight_factor: float = 1.0,
    forbidden_edges: Collection[str] | None = None,
    edge_penalties: Mapping[str, float] | None = None,
    extra_cost: ExtraCostFn | None = None,
    deadline_monotonic_s: float | None = None,
) -> DistanceField:
    """Settle every node reachable from ``start_id`` within ``max_distance`` metres.

    ``extra_cost`` adds a non-negative per-edge surcharge on top of the routing
    cost; the real distance bound is unaffected by it.
    """
    if graph.node(start_id) is None or max_distance <= 0:
        return DistanceField(start_id=start_id, settled={}, explored=0)
    settled, explored = _search(
        graph,
        start_id,
        goal_id=None,
        max_distance=float(max_distance),
        weight_factor=weight_factor,
        forbidden_edges=forbidden_edges,
        edge_penalties=edge_penalties,
        extra_cost=extra_cost,
        heuristic=None,
        deadline_monotonic_s=deadline_monotonic_s,
    )
    return DistanceField(start_id=start_id, settled=settled, explored=explored)


def shortest_path(
    graph: Graph,
    start_id: str,
    end_id: str,
    max_distance: float,
    weight_factor: float = 1.0,
    forbidden_edges: Collection[str] | None = None,
    *,
    algorithm: Algorithm = "dijkstra",
    edge_penalties: Mapping[str, float] | None = None,
    deadline_monotonic_s: float | None = None,
) -> PathResult | None:
    """Cheapest route from ``start_id`` to ``end_id`` whose length stays within ``max_distance``.

    Returns None when either node is unknown, the bound is not positive, or no
    route exists. Dijkstra and A* settle ties identically and return the same
    path; A* only explores less.
    """
    start = graph.node(start_id)
    end = graph.node(end_id)
    if start is None or end is None or max_distance <= 0:
        return None
    if start_id == end_id:
        return PathResult(path=(start_id,), distance=0.0)
    if graph.component_of(start_id) != graph.component_of(end_id):
        return None

    heuristic: Callable[[str], float] | None = None
    if algorithm == "astar":
        scale = graph.heuristic_scale * _HEURISTIC_SLACK
        nodes = graph.nodes

        def heuristic(node_id: str) -> float:
            node = nodes[node_id]
            return scale * haversine_m(node.lat, node.lon, end.lat, end.lon)

    elif algorithm != "dijkstra":
        raise ValueError(f"unknown algorithm: {algorithm}")

    settled, explored = _search(
        graph,
        start_id,
        goal_id=end_id,
        max_distance=float(max_distance),
        weight_factor=weight_factor,
        forbidden_edges=forbidden_edges,
        edge_penalties=edge_penalties,
        extra_cost=None,
        heuristic=heuristic,
        deadline_monotonic_s=deadline_monotonic_s,
    )
    if end_id not in settled:
        return None
    field = DistanceField(start_id=start_id, settled=settled, explored=explored)
    path, edge_ids = field.path_to(end_id)
    entry = settled[end_id]
    return PathResult(
        path=path,
        distance=entry.distance,
        cost=entry.cost,
        explored=explored,
        edge_ids=edge_ids,
    )


def path_edges(graph: Graph, path: tuple[str, ...] | list[str]) -> tuple[Edge, ...] | None:
    """Edges along a node sequence, or None if any hop has no stored edge."""
    edges: list[Edge] = []
    for u, v in zip(path[:-1], path[1:]):
        edge = graph.edge_between(u, v)
        if edge is None:
            return None
        edges.append(edge)
    return tuple(edges)
