from __future__ import annotations

import argparse
import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Sequence

from trail_router.dataset import load_dataset_file
from trail_router.engine_errors import EngineDataError
from trail_router.exports import loop_to_geojson
from trail_router.graph_model import build_graph
from trail_router.loop_generator import LoopGenerationOptions, generate_loops
from trail_router.route_validator import validate_loop


def build_report(
    *,
    dataset_path: Path,
    start_node_id: str | None,
    lat: float | None,
    lon: float | None,
    distance_m: float,
    variants: int,
    deadline_s: float | None,
    snap_max_m: float | None,
    terrain_type: str = "mixed",
) -> dict[str, Any]:
    graph = build_graph(load_dataset_file(dataset_path))
    snap_distance_m: float | None = None
    if start_node_id is None:
        if lat is None or lon is None:
            raise ValueError("--lat and --lon are required without --start-node")
        snapped = graph.nearest_node(lat, lon, max_distance_m=snap_max_m)
        if snapped is None:
            return {
                "generated_at_utc": datetime.now(UTC).isoformat(),
                "dataset": str(dataset_path),
                "graph": graph.summary(),
                "loops": [],
                "warnings": ["no graph node near start coordinate"],
            }
        start_node_id, snap_distance_m = snapped

    result = generate_loops(
        graph,
        LoopGenerationOptions(
            start_node_id=start_node_id,
            target_distance=distance_m,
            num_variants=variants,
            deadline_s=deadline_s,
            terrain_type=terrain_type,
        ),
    )
    loops: list[dict[str, Any]] = []
    for loop in result.loops:
        validation = validate_loop(loop, graph)
        loops.append(
            {
                "distance_m": round(loop.distance, 2),
                "quality_score": round(loop.quality_score, 4),
                "bearing_deg": loop.bearing,
                "surface_breakdown": dict(loop.surface_breakdown),
                "valid": validation.valid,
                "validation_warnings": list(validation.warnings),
                "geojson": loop_to_geojson(loop, graph),
            }
        )
    return {
        "generated_at_utc": datetime.now(UTC).isoformat(),
        "dataset": str(dataset_path),
        "graph": graph.summary(),
        "start_node_id": start_node_id,
        "snap_distance_m": snap_distance_m,
        "target_distance_m": distance_m,
        "loops": loops,
        "warnings": result.warnings,
        "debug": {k: v for k, v in result.debug.items() if k != "warnings"},
    }


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Generate loop routes from a map dataset file.")
    parser.add_argument("--dataset", type=Path, required=True, help="Overpass or GeoJSON dataset path.")
    parser.add_argument("--start-node", default=None, help="Graph node id (e.g. osm_node_123).")
    parser.add_argument("--lat", type=float, default=None)
    parser.add_argument("--lon", type=float, default=None)
    parser.add_argument("--distance-m", type=float, required=True)
    parser.add_argument("--variants", type=int, default=3)
    parser.add_argument("--deadline-s", type=float, default=None)
    parser.add_argument("--snap-max-m", type=float, default=500.0)
    parser.add_argument("--terrain", choices=("paved", "unpaved", "mixed"), default="mixed")
    parser.add_argument("--out", type=Path, default=None, help="Write the JSON report here instead of stdout.")
    args = parser.parse_args(argv)

    try:
        report = build_report(
            dataset_path=args.dataset,
            start_node_id=args.start_node,
            lat=args.lat,
            lon=args.lon,
            distance_m=float(args.distance_m),
            variants=max(1, int(args.variants)),
            deadline_s=args.deadline_s,
            snap_max_m=args.snap_max_m,
            terrain_type=args.terrain,
        )
    except EngineDataError as exc:
        parser.exit(2, f"{exc.reason_code}: {exc.message}\n")
    except ValueError as exc:
        parser.error(str(exc))

    text = json.dumps(report, indent=2)
    if args.out is not None:
        args.out.parent.mkdir(parents=True, exist_ok=True)
        args.out.write_text(text, encoding="utf-8")
    else:
        print(text)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
