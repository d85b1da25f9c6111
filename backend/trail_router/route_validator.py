from __future__ import annotations

from dataclasses import dataclass, field

from .graph_model import Graph
from .loop_generator import GeneratedLoop


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    stats: dict[str, int] = field(default_factory=dict)


def validate_loop(loop: GeneratedLoop, graph: Graph) -> ValidationResult:
    """Check every edge of a loop against the graph it will be served from.

    Missing edges or endpoints are errors. A missing source-way id, an open loop,
    or edges that do not follow the node sequence are reported as warnings only.
    """
    errors: list[str] = []
    warnings: list[str] = []
    valid_segments = 0
    for eid in loop.path_edges:
        edge = graph.edge(eid)
        if edge is None:
            errors.append(f"Edge {eid} not found in graph")
            continue
        missing = [node_id for node_id in (edge.from_id, edge.to_id) if graph.node(node_id) is None]
        if missing:
            for node_id in missing:
                errors.append(f"Edge {eid} references missing node {node_id}")
            continue
        if not edge.source_way_id:
            warnings.append(f"Edge {eid} has no source way id")
        valid_segments += 1

    nodes = loop.loop
    if not nodes or nodes[0] != nodes[-1]:
        warnings.append("Loop does not end at its start node")
    expected = tuple(f"{u}->{v}" for u, v in zip(nodes[:-1], nodes[1:]))
    if expected != tuple(loop.path_edges):
        warnings.append("Path edges do not follow the loop node sequence")

    total = len(loop.path_edges)
    return ValidationResult(
        valid=not errors,
        errors=tuple(errors),
        warnings=tuple(warnings),
        stats={
            "total_segments": total,
            "valid_segments": valid_segments,
            "invalid_segments": total - valid_segments,
        },
    )
