from __future__ import annotations

import hashlib
import logging
import time
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Annotated, Any

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from .elevation import ElevationClient, profile_loop
from .engine_errors import ElevationUnavailableError, EngineDataError, normalize_reason_code
from .exports import estimated_duration_s, loop_line_coordinates
from .graph_model import Graph
from .graph_store import GRAPH_STORE
from .logging_utils import log_event
from .loop_cache import LOOP_CACHE, loop_cache_key
from .loop_generator import GeneratedLoop, LoopGenerationOptions, LoopGenerationResult, generate_loops
from .models import (
    GeoJSONLineString,
    LatLng,
    LoopOption,
    LoopRequest,
    LoopResponse,
    LoopValidation,
    PathRequest,
    PathResponse,
    ReloadRequest,
)
from .pathfinding import shortest_path
from .route_validator import validate_loop
from .settings import settings


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.elevation = ElevationClient()
    if settings.graph_load_on_startup and settings.graph_dataset_path.strip():
        try:
            GRAPH_STORE.load_from_file(settings.graph_dataset_path)
        except EngineDataError as exc:
            # Serve /health and /graph/status anyway; loop requests answer 503 until a reload succeeds.
            log_event("graph_startup_load_failed", level=logging.ERROR, reason_code=exc.reason_code)
    yield


app = FastAPI(title="Trail Loop Router", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


def current_graph() -> Graph:
    graph = GRAPH_STORE.current()
    if graph is None:
        raise HTTPException(status_code=503, detail="graph not loaded")
    return graph


def elevation_client(request: Request) -> ElevationClient:
    client: ElevationClient | None = getattr(request.app.state, "elevation", None)
    return client if client is not None else ElevationClient()


GraphDep = Annotated[Graph, Depends(current_graph)]
ElevationDep = Annotated[ElevationClient, Depends(elevation_client)]


def _construction_http_error(exc: EngineDataError) -> HTTPException:
    return HTTPException(
        status_code=422,
        detail={
            "reason_code": normalize_reason_code(exc.reason_code),
            "message": exc.message,
            "details": exc.details or {},
        },
    )


def _loop_signature(loop: GeneratedLoop) -> str:
    return hashlib.sha1("|".join(loop.path_edges).encode("utf-8")).hexdigest()[:12]


def _snap(graph: Graph, point: LatLng) -> tuple[str, float] | None:
    return graph.nearest_node(point.lat, point.lon, max_distance_m=settings.snap_max_distance_m)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/graph/status")
def graph_status() -> dict[str, Any]:
    return {**GRAPH_STORE.status(), "loop_cache": LOOP_CACHE.snapshot()}


def _reload_path(requested: str | None) -> str:
    """Dataset path a reload may read: the configured dataset or a file under GRAPH_DATASET_DIR."""
    configured = settings.graph_dataset_path.strip()
    if not requested or not requested.strip():
        if not configured:
            raise HTTPException(status_code=400, detail="no dataset path given and GRAPH_DATASET_PATH is unset")
        return configured
    root_setting = settings.graph_dataset_dir.strip()
    root = Path(root_setting).expanduser().resolve() if root_setting else None
    candidate = Path(requested.strip()).expanduser()
    if not candidate.is_absolute() and root is not None:
        candidate = root / candidate
    candidate = candidate.resolve()
    if configured and candidate == Path(configured).expanduser().resolve():
        return str(candidate)
    if root is not None and candidate.is_relative_to(root):
        return str(candidate)
    raise HTTPException(status_code=403, detail="dataset path is outside GRAPH_DATASET_DIR")


@app.post("/graph/reload")
def reload_graph(req: ReloadRequest | None = None) -> dict[str, Any]:
    path = _reload_path(req.path if req is not None else None)
    try:
        graph = GRAPH_STORE.load_from_file(path)
    except EngineDataError as exc:
        raise _construction_http_error(exc) from exc
    LOOP_CACHE.clear()
    return {"status": "reloaded", "graph": graph.summary()}


def _build_option(
    idx: int,
    loop: GeneratedLoop,
    graph: Graph,
    req: LoopRequest,
    elevation: ElevationClient,
    warnings: list[str],
) -> LoopOption:
    validation: LoopValidation | None = None
    if req.validate_loops:
        result = validate_loop(loop, graph)
        validation = LoopValidation(
            valid=result.valid,
            errors=list(result.errors),
            warnings=list(result.warnings),
            stats=dict(result.stats),
        )
    profile: dict[str, Any] | None = None
    if req.include_elevation:
        try:
            profile = profile_loop(loop, graph, elevation).as_dict()
        except ElevationUnavailableError as exc:
            warnings.append(f"elevation unavailable for loop {idx}: {exc.message}")
    return LoopOption(
        id=f"loop_{idx}_{_loop_signature(loop)}",
        loop=list(loop.loop),
        path_edges=list(loop.path_edges),
        distance_m=round(loop.distance, 2),
        quality_score=loop.quality_score,
        bearing_deg=loop.bearing,
        apex_node_id=loop.apex_node_id,
        overlap_ratio=round(loop.overlap_ratio, 4),
        distance_accuracy=round(loop.distance_accuracy, 4),
        mean_edge_quality=round(loop.mean_edge_quality, 4),
        surface_breakdown=dict(loop.surface_breakdown),
        estimated_duration_s=round(estimated_duration_s(loop.distance, req.pace_s_per_km), 1),
        geometry=GeoJSONLineString(coordinates=[(c[0], c[1]) for c in loop_line_coordinates(loop, graph)]),
        validation=validation,
        elevation=profile,
    )


@app.post("/loops", response_model=LoopResponse)
def compute_loops(req: LoopRequest, graph: GraphDep, elevation: ElevationDep) -> LoopResponse:
    request_id = str(uuid.uuid4())
    t0 = time.perf_counter()

    snap_distance_m: float | None = None
    if req.start_node_id:
        start_node_id = req.start_node_id
    elif req.start is None:
        raise HTTPException(status_code=422, detail="either start_node_id or start must be provided")
    else:
        snapped = _snap(graph, req.start)
        if snapped is None:
            return LoopResponse(
                start_node_id="",
                target_distance_m=req.target_distance_m,
                loops=[],
                warnings=[f"no graph node within {settings.snap_max_distance_m:.0f} m of start"],
            )
        start_node_id, snap_distance_m = snapped

    options = LoopGenerationOptions(
        start_node_id=start_node_id,
        target_distance=req.target_distance_m,
        num_variants=req.num_variants,
        max_search_distance=req.max_search_distance_m,
        deadline_s=(req.deadline_ms / 1000.0) if req.deadline_ms else None,
        weight_factor=req.weight_factor,
        bearing_offset_deg=req.bearing_offset_deg,
        terrain_type=req.terrain_type,
    )
    cache_key = loop_cache_key(f"{graph.version}:{id(graph)}", options)
    result: LoopGenerationResult | None = LOOP_CACHE.get(cache_key)
    cached = result is not None
    if result is None:
        result = generate_loops(graph, options)
        if not result.debug.get("deadline_exceeded"):
            LOOP_CACHE.set(cache_key, result)

    warnings = list(result.warnings)
    loops = [_build_option(i, loop, graph, req, elevation, warnings) for i, loop in enumerate(result.loops)]

    log_event(
        "loops_request",
        request_id=request_id,
        start_node_id=start_node_id,
        target_distance_m=req.target_distance_m,
        num_variants=req.num_variants,
        loop_count=len(loops),
        cached=cached,
        duration_ms=round((time.perf_counter() - t0) * 1000, 2),
    )
    return LoopResponse(
        start_node_id=start_node_id,
        snap_distance_m=round(snap_distance_m, 2) if snap_distance_m is not None else None,
        target_distance_m=req.target_distance_m,
        loops=loops,
        warnings=warnings,
        debug={k: v for k, v in result.debug.items() if k != "warnings"},
        cached=cached,
    )


def _resolve_endpoint(graph: Graph, node_id: str | None, point: LatLng | None, label: str) -> str:
    if node_id:
        if graph.node(node_id) is None:
            raise HTTPException(status_code=404, detail=f"{label} node not found")
        return node_id
    if point is None:
        raise HTTPException(status_code=422, detail=f"either {label}_node_id or {label} must be provided")
    snapped = _snap(graph, point)
    if snapped is None:
        raise HTTPException(status_code=404, detail=f"no graph node near {label}")
    return snapped[0]


@app.post("/path", response_model=PathResponse)
def compute_path(req: PathRequest, graph: GraphDep) -> PathResponse:
    t0 = time.perf_counter()
    start_id = _resolve_endpoint(graph, req.start_node_id, req.start, "start")
    end_id = _resolve_endpoint(graph, req.end_node_id, req.end, "end")
    result = shortest_path(
        graph,
        start_id,
        end_id,
        req.max_distance_m,
        req.weight_factor,
        set(req.forbidden_edges),
        algorithm=req.algorithm,
    )
    if result is None:
        raise HTTPException(status_code=404, detail="no path within max_distance_m")
    coords = []
    for node_id in result.path:
        node = graph.nodes[node_id]
        coords.append((node.lon, node.lat))
    log_event(
        "path_request",
        start_node_id=start_id,
        end_node_id=end_id,
        algorithm=req.algorithm,
        distance_m=round(result.distance, 2),
        explored=result.explored,
        duration_ms=round((time.perf_counter() - t0) * 1000, 2),
    )
    return PathResponse(
        path=list(result.path),
        edge_ids=list(result.edge_ids),
        distance_m=round(result.distance, 2),
        cost=round(result.cost, 3),
        explored=result.explored,
        algorithm=req.algorithm,
        geometry=GeoJSONLineString(coordinates=coords),
    )
