from __future__ import annotations

import json

import httpx
import pytest

from trail_router.elevation import (
    ElevationClient,
    elevation_gain,
    elevation_loss,
    elevation_range,
    loop_coordinates,
    profile_loop,
)
from trail_router.engine_errors import ElevationUnavailableError
from trail_router.graph_model import NodeRecord, SegmentRecord, assemble_graph
from trail_router.loop_generator import GeneratedLoop


def _echo_handler(calls: list[int]):
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        calls.append(len(body["locations"]))
        results = [
            {"latitude": loc["latitude"], "longitude": loc["longitude"], "elevation": round(loc["latitude"] * 10, 3)}
            for loc in body["locations"]
        ]
        return httpx.Response(200, json={"results": results})

    return handler


def _client(handler, **kwargs) -> ElevationClient:
    return ElevationClient(
        url="https://elevation.test/api/v1/lookup",
        transport=httpx.MockTransport(handler),
        retry_backoff_ms=0,
        **kwargs,
    )


def test_lookup_batches_requests() -> None:
    calls: list[int] = []
    client = _client(_echo_handler(calls), batch_size=2)

    elevations = client.lookup([(1.0, 0.0), (2.0, 0.0), (3.0, 0.0)])

    assert elevations == [10.0, 20.0, 30.0]
    assert calls == [2, 1]


def test_lookup_of_nothing_makes_no_request() -> None:
    calls: list[int] = []
    assert _client(_echo_handler(calls)).lookup([]) == []
    assert calls == []


def test_void_values_become_none() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={"results": [{"elevation": 12.5}, {"elevation": None}, {"elevation": -32768}]},
        )

    assert _client(handler).lookup([(0.0, 0.0)] * 3) == [12.5, None, None]


def test_transient_failure_is_retried() -> None:
    attempts = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        attempts["n"] += 1
        if attempts["n"] == 1:
            return httpx.Response(503)
        return httpx.Response(200, json={"results": [{"elevation": 5.0}]})

    assert _client(handler, max_attempts=2).lookup([(0.0, 0.0)]) == [5.0]
    assert attempts["n"] == 2


def test_persistent_failure_raises_elevation_unavailable() -> None:
    attempts = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        attempts["n"] += 1
        raise httpx.ConnectError("down", request=request)

    with pytest.raises(ElevationUnavailableError) as exc:
        _client(handler, max_attempts=3).lookup([(0.0, 0.0)])

    assert exc.value.reason_code == "elevation_unavailable"
    assert attempts["n"] == 3


def test_client_error_is_not_retried() -> None:
    attempts = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        attempts["n"] += 1
        return httpx.Response(400, json={"error": "bad"})

    with pytest.raises(ElevationUnavailableError):
        _client(handler, max_attempts=3).lookup([(0.0, 0.0)])
    assert attempts["n"] == 1


def test_mismatched_result_count_is_invalid_response() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"results": [{"elevation": 1.0}]})

    with pytest.raises(ElevationUnavailableError) as exc:
        _client(handler).lookup([(0.0, 0.0), (1.0, 1.0)])

    assert exc.value.reason_code == "elevation_response_invalid"


def test_gain_loss_and_range_skip_missing_samples() -> None:
    samples = [100.0, 110.0, None, 105.0, 120.0, 90.0]

    assert elevation_gain(samples) == pytest.approx(25.0)
    assert elevation_loss(samples) == pytest.approx(35.0)
    assert elevation_range(samples) == (90.0, 120.0)
    assert elevation_range([None, None]) == (None, None)
    assert elevation_gain([]) == 0.0


def test_profile_loop_uses_loop_node_coordinates() -> None:
    graph = assemble_graph(
        [NodeRecord("a", 1.0, 0.0), NodeRecord("b", 2.0, 0.0), NodeRecord("c", 3.0, 0.0)],
        [SegmentRecord("a", "b", 100.0, "w"), SegmentRecord("b", "c", 100.0, "w"), SegmentRecord("c", "a", 100.0, "w")],
    )
    loop = GeneratedLoop(
        loop=("a", "b", "c", "a"),
        path_edges=("a->b", "b->c", "c->a"),
        distance=300.0,
        quality_score=0.5,
    )
    calls: list[int] = []

    assert loop_coordinates(loop, graph) == [(1.0, 0.0), (2.0, 0.0), (3.0, 0.0), (1.0, 0.0)]
    profile = profile_loop(loop, graph, _client(_echo_handler(calls)))

    assert profile.samples == (10.0, 20.0, 30.0, 10.0)
    assert profile.gain_m == pytest.approx(20.0)
    assert profile.loss_m == pytest.approx(20.0)
    assert (profile.min_m, profile.max_m) == (10.0, 30.0)
    assert profile.as_dict()["gain_m"] == 20.0
