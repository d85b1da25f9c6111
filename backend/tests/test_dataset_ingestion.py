from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from trail_router.dataset import (
    MapDataset,
    dataset_from_geojson,
    dataset_from_overpass,
    detect_format,
    load_dataset_file,
    parse_dataset,
)
from trail_router.engine_errors import GraphConstructionError
from trail_router.graph_model import build_graph


def _geojson_payload() -> dict[str, Any]:
    return {
        "type": "FeatureCollection",
        "features": [
            {
                "type": "Feature",
                "id": "trail-a",
                "properties": {"name": "Ridge", "highway": "footway"},
                "geometry": {"type": "LineString", "coordinates": [[1.45, 43.57], [1.451, 43.571], [1.452, 43.572]]},
            },
            {
                "type": "Feature",
                "properties": {"surface": "gravel"},
                "geometry": {
                    "type": "MultiLineString",
                    "coordinates": [
                        [[1.452, 43.572], [1.453, 43.5715]],
                        [[1.4500000004, 43.5700000004], [1.449, 43.569]],
                    ],
                },
            },
            {"type": "Feature", "properties": {}, "geometry": {"type": "Point", "coordinates": [1.0, 43.0]}},
        ],
    }


def test_detect_format() -> None:
    assert detect_format({"elements": []}) == "osm"
    assert detect_format({"features": []}) == "geojson"
    assert detect_format({"foo": 1}) == "unknown"
    assert detect_format([1, 2]) == "unknown"


def test_overpass_ids_and_refs_become_strings() -> None:
    dataset = dataset_from_overpass(
        {
            "elements": [
                {"type": "node", "id": 7, "lat": 1.0, "lon": 2.0, "tags": {"ele": 120}},
                {"type": "way", "id": 9, "nodes": [7, 8], "tags": {"highway": "path"}},
                {"type": "relation", "id": 3},
            ]
        }
    )

    assert [node.id for node in dataset.nodes] == ["7"]
    assert dataset.nodes[0].tags == {"ele": "120"}
    assert dataset.ways[0].nodes == ["7", "8"]


def test_overpass_node_without_coordinates_is_rejected() -> None:
    with pytest.raises(GraphConstructionError) as exc:
        dataset_from_overpass({"elements": [{"type": "node", "id": 1, "lat": 1.0}]})

    assert exc.value.reason_code == "node_missing_coordinates"


def test_overpass_out_of_range_latitude_is_invalid() -> None:
    with pytest.raises(GraphConstructionError) as exc:
        dataset_from_overpass({"elements": [{"type": "node", "id": 1, "lat": 123.0, "lon": 1.0}]})

    assert exc.value.reason_code == "dataset_invalid"


def test_geojson_shares_nodes_on_rounded_coordinates_and_defaults_tags() -> None:
    dataset = dataset_from_geojson(_geojson_payload())

    assert len(dataset.ways) == 3
    first, second, third = dataset.ways
    assert first.id == "trail-a"
    assert first.tags["highway"] == "footway"
    assert first.tags["surface"] == "unknown"
    assert second.tags["highway"] == "path"
    assert second.tags["surface"] == "gravel"
    assert second.id.startswith("geojson_1_")
    # End of the first line and start of the second share a node.
    assert first.nodes[-1] == second.nodes[0]
    # Coordinates equal at 6 dp collapse onto the same node.
    assert third.nodes[0] == first.nodes[0]
    assert len(dataset.nodes) == 5


def test_geojson_dataset_builds_a_graph() -> None:
    graph = build_graph(dataset_from_geojson(_geojson_payload()))

    assert len(graph.nodes) == 5
    assert len(graph.edges) == 8
    assert graph.is_intersection(f"osm_node_{dataset_from_geojson(_geojson_payload()).ways[0].nodes[0]}") is False


def test_parse_dataset_rejects_unknown_payload() -> None:
    with pytest.raises(GraphConstructionError) as exc:
        parse_dataset({"type": "Topology"})

    assert exc.value.reason_code == "dataset_format_unknown"
    assert exc.value.details == {"source": "memory", "keys": ["type"]}


def test_parse_dataset_passes_through_existing_dataset() -> None:
    dataset = MapDataset()
    assert parse_dataset(dataset) is dataset


def test_load_dataset_file_streams_overpass(tmp_path: Path) -> None:
    path = tmp_path / "area.json"
    path.write_text(
        json.dumps(
            {
                "version": "2024-05-01",
                "elements": [
                    {"type": "node", "id": 1, "lat": 43.5, "lon": 1.4},
                    {"type": "node", "id": 2, "lat": 43.501, "lon": 1.4},
                    {"type": "way", "id": 3, "nodes": [1, 2], "tags": {"highway": "path"}},
                ],
            }
        ),
        encoding="utf-8",
    )

    dataset = load_dataset_file(path)

    assert dataset.version == "2024-05-01"
    assert dataset.source == str(path)
    assert len(dataset.nodes) == 2
    assert dataset.nodes[0].lat == pytest.approx(43.5)
    assert dataset.ways[0].nodes == ["1", "2"]


def test_load_dataset_file_reads_geojson(tmp_path: Path) -> None:
    path = tmp_path / "trails.geojson"
    path.write_text(json.dumps(_geojson_payload()), encoding="utf-8")

    dataset = load_dataset_file(path)

    assert len(dataset.ways) == 3
    assert dataset.source == str(path)


@pytest.mark.parametrize("content", [None, "{not json", '{"elements": [1, 2'])
def test_load_dataset_file_unreadable(tmp_path: Path, content: str | None) -> None:
    path = tmp_path / "broken.json"
    if content is not None:
        path.write_text(content, encoding="utf-8")

    with pytest.raises(GraphConstructionError) as exc:
        load_dataset_file(path)

    assert exc.value.reason_code == "dataset_unreadable"
