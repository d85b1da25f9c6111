"""Ingestion boundary: raw map data (Overpass elements or GeoJSON) into a validated dataset.

Everything past this module works with fixed-shape records; malformed input is
rejected here as a :class:`GraphConstructionError` rather than deep inside a search.
"""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any, Literal

import ijson
from pydantic import BaseModel, Field, ValidationError, field_validator

from .engine_errors import GraphConstructionError

DatasetFormat = Literal["osm", "geojson", "unknown"]

_COORD_KEY_PRECISION = 6


class DatasetNode(BaseModel):
    id: str
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)
    tags: dict[str, str] = Field(default_factory=dict)

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, v: object) -> object:
        return str(v) if isinstance(v, int) and not isinstance(v, bool) else v

    @field_validator("tags", mode="before")
    @classmethod
    def _stringify_tags(cls, v: object) -> object:
        if v is None:
            return {}
        if isinstance(v, dict):
            return {str(k): str(val) for k, val in v.items() if val is not None}
        return v


class DatasetWay(BaseModel):
    id: str
    nodes: list[str] = Field(default_factory=list)
    tags: dict[str, str] = Field(default_factory=dict)

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, v: object) -> object:
        return str(v) if isinstance(v, int) and not isinstance(v, bool) else v

    @field_validator("nodes", mode="before")
    @classmethod
    def _coerce_refs(cls, v: object) -> object:
        if isinstance(v, (list, tuple)):
            return [str(ref) if isinstance(ref, int) and not isinstance(ref, bool) else ref for ref in v]
        return v

    @field_validator("tags", mode="before")
    @classmethod
    def _stringify_tags(cls, v: object) -> object:
        if v is None:
            return {}
        if isinstance(v, dict):
            return {str(k): str(val) for k, val in v.items() if val is not None}
        return v


class MapDataset(BaseModel):
    nodes: list[DatasetNode] = Field(default_factory=list)
    ways: list[DatasetWay] = Field(default_factory=list)
    version: str = "unknown"
    source: str = "memory"


def detect_format(payload: Any) -> DatasetFormat:
    if isinstance(payload, dict):
        if isinstance(payload.get("elements"), list):
            return "osm"
        if isinstance(payload.get("features"), list):
            return "geojson"
    return "unknown"


def _construction_error_from_validation(exc: ValidationError, *, source: str) -> GraphConstructionError:
    errors = exc.errors()
    missing_coords = any(
        err.get("type") == "missing" and err.get("loc", ())[-1:] in (("lat",), ("lon",))
        for err in errors
    )
    first = errors[0] if errors else {}
    return GraphConstructionError(
        reason_code="node_missing_coordinates" if missing_coords else "dataset_invalid",
        message=f"dataset failed validation: {first.get('msg', 'invalid record')}",
        details={
            "source": source,
            "error_count": len(errors),
            "first_error_loc": [str(part) for part in first.get("loc", ())],
        },
    )


def _dataset_from_elements(
    elements: Any,
    *,
    version: str,
    source: str,
) -> MapDataset:
    nodes: list[DatasetNode] = []
    ways: list[DatasetWay] = []
    try:
        for element in elements:
            if not isinstance(element, dict):
                continue
            kind = element.get("type")
            if kind == "node":
                nodes.append(DatasetNode.model_validate(element))
            elif kind == "way":
                ways.append(DatasetWay.model_validate(element))
    except ValidationError as exc:
        raise _construction_error_from_validation(exc, source=source) from exc
    return MapDataset(nodes=nodes, ways=ways, version=version, source=source)


def dataset_from_overpass(payload: dict[str, Any], *, source: str = "overpass") -> MapDataset:
    elements = payload.get("elements")
    if not isinstance(elements, list):
        raise GraphConstructionError(
            reason_code="dataset_format_unknown",
            message="Overpass payload has no 'elements' array",
            details={"source": source},
        )
    version = str(payload.get("version", "unknown"))
    return _dataset_from_elements(elements, version=version, source=source)


def _line_parts(geometry: dict[str, Any]) -> list[list[Any]]:
    kind = geometry.get("type")
    coords = geometry.get("coordinates")
    if not isinstance(coords, list):
        return []
    if kind == "LineString":
        return [coords]
    if kind == "MultiLineString":
        return [part for part in coords if isinstance(part, list)]
    return []


def dataset_from_geojson(payload: dict[str, Any], *, source: str = "geojson") -> MapDataset:
    features = payload.get("features")
    if not isinstance(features, list):
        raise GraphConstructionError(
            reason_code="dataset_format_unknown",
            message="GeoJSON payload has no 'features' array",
            details={"source": source},
        )
    node_by_coord: dict[tuple[float, float], str] = {}
    nodes: list[DatasetNode] = []
    ways: list[DatasetWay] = []
    generated_way_ids = 0
    try:
        for feature_idx, feature in enumerate(features):
            if not isinstance(feature, dict):
                continue
            geometry = feature.get("geometry")
            if not isinstance(geometry, dict):
                continue
            properties = feature.get("properties") or {}
            if not isinstance(properties, dict):
                properties = {}
            tags = {str(k): str(v) for k, v in properties.items() if v is not None and not isinstance(v, (dict, list))}
            tags.setdefault("highway", "path")
            tags.setdefault("surface", "unknown")
            feature_id = feature.get("id", properties.get("id"))
            for part_idx, part in enumerate(_line_parts(geometry)):
                refs: list[str] = []
                for coord in part:
                    if not isinstance(coord, (list, tuple)) or len(coord) < 2:
                        continue
                    lon, lat = float(coord[0]), float(coord[1])
                    key = (round(lat, _COORD_KEY_PRECISION), round(lon, _COORD_KEY_PRECISION))
                    node_id = node_by_coord.get(key)
                    if node_id is None:
                        node_id = str(len(node_by_coord) + 1)
                        node_by_coord[key] = node_id
                        nodes.append(DatasetNode(id=node_id, lat=lat, lon=lon))
                    refs.append(node_id)
                if len(refs) < 2:
                    continue
                if feature_id is None:
                    generated_way_ids += 1
                    way_id = f"geojson_{feature_idx}_{generated_way_ids}"
                else:
                    way_id = str(feature_id) if part_idx == 0 else f"{feature_id}_{part_idx}"
                ways.append(DatasetWay(id=way_id, nodes=refs, tags=tags))
    except ValidationError as exc:
        raise _construction_error_from_validation(exc, source=source) from exc
    except (TypeError, ValueError) as exc:
        raise GraphConstructionError(
            reason_code="dataset_invalid",
            message=f"GeoJSON coordinates are not numeric: {exc}",
            details={"source": source},
        ) from exc
    return MapDataset(nodes=nodes, ways=ways, version=str(payload.get("version", "unknown")), source=source)


def parse_dataset(payload: Any, *, source: str = "memory") -> MapDataset:
    if isinstance(payload, MapDataset):
        return payload
    fmt = detect_format(payload)
    if fmt == "osm":
        return dataset_from_overpass(payload, source=source)
    if fmt == "geojson":
        return dataset_from_geojson(payload, source=source)
    keys = sorted(str(k) for k in payload.keys()) if isinstance(payload, dict) else []
    raise GraphConstructionError(
        reason_code="dataset_format_unknown",
        message="expected Overpass ('elements') or GeoJSON ('features') payload",
        details={"source": source, "keys": keys[:20]},
    )


def _format_from_head(path: Path) -> tuple[DatasetFormat, str]:
    with path.open("rb") as fh:
        head = fh.read(65_536).decode("utf-8", errors="ignore")
    version_match = re.search(r'"version"\s*:\s*"?([^",}]+)"?', head)
    version = version_match.group(1).strip() if version_match else "unknown"
    if re.search(r'"elements"\s*:', head):
        return "osm", version
    if re.search(r'"features"\s*:', head):
        return "geojson", version
    return "unknown", version


def load_dataset_file(path: str | Path) -> MapDataset:
    dataset_path = Path(path)
    source = str(dataset_path)
    try:
        fmt, version = _format_from_head(dataset_path)
        if fmt == "osm":
            # Large Overpass extracts are streamed element by element.
            with dataset_path.open("rb") as fh:
                return _dataset_from_elements(
                    ijson.items(fh, "elements.item", use_float=True),
                    version=version,
                    source=source,
                )
        payload = json.loads(dataset_path.read_text(encoding="utf-8"))
    except GraphConstructionError:
        raise
    except (OSError, ValueError, ijson.JSONError) as exc:
        raise GraphConstructionError(
            reason_code="dataset_unreadable",
            message=f"could not read dataset file: {type(exc).__name__}",
            details={"source": source},
        ) from exc
    return parse_dataset(payload, source=source)
