from __future__ import annotations

import json
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import httpx
import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from trail_router.elevation import ElevationClient
from trail_router.graph_model import Graph, NodeRecord, SegmentRecord, assemble_graph
from trail_router.graph_store import GRAPH_STORE
from trail_router.loop_cache import LOOP_CACHE
import trail_router.main as main_module
from trail_router.main import _resolve_endpoint, app, elevation_client


def _square_graph() -> Graph:
    nodes = [
        NodeRecord("node1", 43.5781632, 1.4516224),
        NodeRecord("node2", 43.5791632, 1.4526224),
        NodeRecord("node3", 43.5771632, 1.4506224),
        NodeRecord("node4", 43.5781632, 1.4536224),
    ]
    segments = [
        SegmentRecord("node1", "node2", 1500.0, "way1"),
        SegmentRecord("node1", "node3", 1500.0, "way2"),
        SegmentRecord("node2", "node4", 1500.0, "way3"),
        SegmentRecord("node3", "node4", 1500.0, "way4"),
    ]
    return assemble_graph(nodes, segments, version="pytest")


@pytest.fixture()
def client() -> Iterator[TestClient]:
    GRAPH_STORE.swap(_square_graph())
    LOOP_CACHE.clear()
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
        GRAPH_STORE.clear()
        LOOP_CACHE.clear()


def _loop_payload(**overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {"start_node_id": "node1", "target_distance_m": 5000, "num_variants": 3}
    payload.update(overrides)
    return payload


def test_health() -> None:
    resp = TestClient(app).get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_loops_without_graph_is_503() -> None:
    GRAPH_STORE.clear()
    resp = TestClient(app).post("/loops", json=_loop_payload())
    assert resp.status_code == 503


def test_loops_from_start_node(client: TestClient) -> None:
    resp = client.post("/loops", json=_loop_payload())
    assert resp.status_code == 200
    data = resp.json()

    assert data["start_node_id"] == "node1"
    assert 1 <= len(data["loops"]) <= 3
    for loop in data["loops"]:
        assert loop["loop"][0] == loop["loop"][-1] == "node1"
        assert 2500 <= loop["distance_m"] <= 7500
        assert 0 <= loop["quality_score"] <= 1
        assert loop["validation"]["valid"] is True
        assert loop["geometry"]["type"] == "LineString"
        assert loop["geometry"]["coordinates"][0] == [1.4516224, 43.5781632]
        assert loop["estimated_duration_s"] > 0
        assert loop["elevation"] is None
    assert data["cached"] is False
    assert "bearings_sampled" in data["debug"]


def test_loops_second_identical_request_is_cached(client: TestClient) -> None:
    first = client.post("/loops", json=_loop_payload())
    second = client.post("/loops", json=_loop_payload())

    assert first.json()["cached"] is False
    assert second.json()["cached"] is True
    assert second.json()["loops"] == first.json()["loops"]


def test_loops_snap_start_coordinate(client: TestClient) -> None:
    resp = client.post("/loops", json=_loop_payload(start_node_id=None, start={"lat": 43.57817, "lon": 1.45163}))
    assert resp.status_code == 200
    data = resp.json()

    assert data["start_node_id"] == "node1"
    assert data["snap_distance_m"] < 10


def test_loops_far_start_coordinate_returns_warning(client: TestClient) -> None:
    resp = client.post("/loops", json=_loop_payload(start_node_id=None, start={"lat": 10.0, "lon": 10.0}))
    assert resp.status_code == 200
    data = resp.json()

    assert data["loops"] == []
    assert data["warnings"]


def test_loops_unknown_start_node_returns_empty_with_warning(client: TestClient) -> None:
    resp = client.post("/loops", json=_loop_payload(start_node_id="invalid"))
    assert resp.status_code == 200
    data = resp.json()

    assert data["loops"] == []
    assert "start node not found" in data["warnings"]


@pytest.mark.parametrize(
    "payload",
    [
        {"start_node_id": "node1", "target_distance_m": -5},
        {"start_node_id": "node1", "target_distance_m": 5000, "num_variants": 0},
        {"target_distance_m": 5000},
    ],
)
def test_loops_request_validation(client: TestClient, payload: dict[str, Any]) -> None:
    assert client.post("/loops", json=payload).status_code == 422


def test_loops_with_elevation_profile(client: TestClient) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        return httpx.Response(200, json={"results": [{"elevation": 100.0} for _ in body["locations"]]})

    app.dependency_overrides[elevation_client] = lambda: ElevationClient(
        url="https://elevation.test/lookup",
        transport=httpx.MockTransport(handler),
        retry_backoff_ms=0,
    )
    resp = client.post("/loops", json=_loop_payload(include_elevation=True))
    assert resp.status_code == 200
    loop = resp.json()["loops"][0]

    assert loop["elevation"]["gain_m"] == 0.0
    assert loop["elevation"]["min_m"] == 100.0


def test_loops_elevation_outage_degrades_to_warning(client: TestClient) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    app.dependency_overrides[elevation_client] = lambda: ElevationClient(
        url="https://elevation.test/lookup",
        transport=httpx.MockTransport(handler),
        max_attempts=1,
        retry_backoff_ms=0,
    )
    resp = client.post("/loops", json=_loop_payload(include_elevation=True, validate=False))
    assert resp.status_code == 200
    data = resp.json()

    assert data["loops"][0]["elevation"] is None
    assert data["loops"][0]["validation"] is None
    assert any("elevation unavailable" in warning for warning in data["warnings"])


def test_path_endpoint(client: TestClient) -> None:
    resp = client.post("/path", json={"start_node_id": "node1", "end_node_id": "node4", "max_distance_m": 10_000})
    assert resp.status_code == 200
    data = resp.json()

    assert data["path"][0] == "node1"
    assert data["path"][-1] == "node4"
    assert data["distance_m"] == 3000.0
    assert data["algorithm"] == "astar"
    assert len(data["geometry"]["coordinates"]) == 3


def test_path_endpoint_no_route_and_unknown_node(client: TestClient) -> None:
    too_short = client.post("/path", json={"start_node_id": "node1", "end_node_id": "node4", "max_distance_m": 1000})
    unknown = client.post("/path", json={"start_node_id": "node1", "end_node_id": "zzz"})

    assert too_short.status_code == 404
    assert unknown.status_code == 404


def _allow_dataset_dir(monkeypatch, root: Path) -> None:
    monkeypatch.setattr(main_module.settings, "graph_dataset_dir", str(root))
    monkeypatch.setattr(main_module.settings, "graph_cache_dir", str(root / "graph_cache"))


def test_graph_reload_and_status(client: TestClient, tmp_path: Path, monkeypatch) -> None:
    _allow_dataset_dir(monkeypatch, tmp_path)
    dataset = tmp_path / "area.json"
    dataset.write_text(
        json.dumps(
            {
                "version": "reload-1",
                "elements": [
                    {"type": "node", "id": 1, "lat": 43.5, "lon": 1.4},
                    {"type": "node", "id": 2, "lat": 43.501, "lon": 1.4},
                    {"type": "way", "id": 3, "nodes": [1, 2], "tags": {"highway": "path"}},
                ],
            }
        ),
        encoding="utf-8",
    )

    resp = client.post("/graph/reload", json={"path": str(dataset)})
    assert resp.status_code == 200
    assert resp.json()["graph"]["version"] == "reload-1"

    status = client.get("/graph/status").json()
    assert status["state"] == "ready"
    assert status["graph"]["nodes"] == 2
    assert "loop_cache" in status


def test_graph_reload_bad_dataset_is_422(client: TestClient, tmp_path: Path, monkeypatch) -> None:
    _allow_dataset_dir(monkeypatch, tmp_path)
    dataset = tmp_path / "bad.json"
    dataset.write_text(json.dumps({"type": "Topology"}), encoding="utf-8")

    resp = client.post("/graph/reload", json={"path": str(dataset)})

    assert resp.status_code == 422
    assert resp.json()["detail"]["reason_code"] == "dataset_format_unknown"
    assert client.get("/graph/status").json()["graph"]["version"] == "pytest"


def test_graph_reload_without_path_is_400(client: TestClient, monkeypatch) -> None:
    monkeypatch.setattr(main_module.settings, "graph_dataset_path", "")
    assert client.post("/graph/reload", json={}).status_code == 400


def test_graph_reload_rejects_paths_outside_dataset_dir(client: TestClient, tmp_path: Path, monkeypatch) -> None:
    allowed = tmp_path / "datasets"
    allowed.mkdir()
    outside = tmp_path / "elsewhere.json"
    outside.write_text(json.dumps({"elements": []}), encoding="utf-8")
    _allow_dataset_dir(monkeypatch, allowed)

    escaped = client.post("/graph/reload", json={"path": "../elsewhere.json"})
    absolute = client.post("/graph/reload", json={"path": str(outside)})

    assert escaped.status_code == 403
    assert absolute.status_code == 403
    assert client.get("/graph/status").json()["graph"]["version"] == "pytest"


def test_graph_reload_without_dataset_dir_only_accepts_configured_path(
    client: TestClient, tmp_path: Path, monkeypatch
) -> None:
    dataset = tmp_path / "configured.json"
    dataset.write_text(
        json.dumps(
            {
                "version": "configured",
                "elements": [
                    {"type": "node", "id": 1, "lat": 43.5, "lon": 1.4},
                    {"type": "node", "id": 2, "lat": 43.501, "lon": 1.4},
                    {"type": "way", "id": 3, "nodes": [1, 2], "tags": {"highway": "path"}},
                ],
            }
        ),
        encoding="utf-8",
    )
    monkeypatch.setattr(main_module.settings, "graph_dataset_dir", "")
    monkeypatch.setattr(main_module.settings, "graph_dataset_path", str(dataset))
    monkeypatch.setattr(main_module.settings, "graph_cache_dir", str(tmp_path / "graph_cache"))

    assert client.post("/graph/reload", json={"path": str(tmp_path / "other.json")}).status_code == 403
    by_name = client.post("/graph/reload", json={"path": str(dataset)})
    by_default = client.post("/graph/reload", json={})

    assert by_name.status_code == 200
    assert by_default.status_code == 200
    assert by_default.json()["graph"]["version"] == "configured"


def test_loops_terrain_preference_reports_surface_breakdown(client: TestClient) -> None:
    resp = client.post("/loops", json=_loop_payload(terrain_type="unpaved"))
    assert resp.status_code == 200
    data = resp.json()

    assert data["debug"]["terrain_type"] == "unpaved"
    for loop in data["loops"]:
        assert sum(loop["surface_breakdown"].values()) == pytest.approx(loop["distance_m"])
    assert client.post("/loops", json=_loop_payload(terrain_type="gravel")).status_code == 422


def test_resolve_endpoint_without_node_or_point_is_422() -> None:
    with pytest.raises(HTTPException) as exc:
        _resolve_endpoint(_square_graph(), None, None, "start")

    assert exc.value.status_code == 422
