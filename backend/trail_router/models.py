from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator


class LatLng(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)


class LoopRequest(BaseModel):
    """Either a graph node id or a coordinate to snap onto the nearest node."""

    start_node_id: str | None = None
    start: LatLng | None = None
    target_distance_m: float = Field(..., gt=0)
    num_variants: int = Field(default=3, ge=1, le=50)
    max_search_distance_m: float | None = Field(default=None, gt=0)
    deadline_ms: int | None = Field(default=None, ge=1, le=300_000)
    weight_factor: float = Field(default=1.0, ge=0.0)
    bearing_offset_deg: float = Field(default=0.0, ge=0.0, lt=360.0)
    terrain_type: Literal["paved", "unpaved", "mixed"] = "mixed"
    validate_loops: bool = Field(default=True, alias="validate")
    include_elevation: bool = False
    pace_s_per_km: float | None = Field(default=None, gt=0)

    model_config = {"populate_by_name": True}

    @field_validator("target_distance_m")
    @classmethod
    def finite(cls, v: float) -> float:
        if v != v or v in (float("inf"), float("-inf")):
            raise ValueError("target distance must be finite")
        return v

    @model_validator(mode="after")
    def require_start(self) -> "LoopRequest":
        if not self.start_node_id and self.start is None:
            raise ValueError("either start_node_id or start must be provided")
        return self


class PathRequest(BaseModel):
    start_node_id: str | None = None
    end_node_id: str | None = None
    start: LatLng | None = None
    end: LatLng | None = None
    max_distance_m: float = Field(default=50_000.0, gt=0)
    weight_factor: float = Field(default=1.0, ge=0.0)
    algorithm: Literal["dijkstra", "astar"] = "astar"
    forbidden_edges: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def require_endpoints(self) -> "PathRequest":
        if not self.start_node_id and self.start is None:
            raise ValueError("either start_node_id or start must be provided")
        if not self.end_node_id and self.end is None:
            raise ValueError("either end_node_id or end must be provided")
        return self


class ReloadRequest(BaseModel):
    path: str | None = None


class GeoJSONLineString(BaseModel):
    type: Literal["LineString"] = "LineString"
    coordinates: list[tuple[float, float]]


class LoopValidation(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    stats: dict[str, int] = Field(default_factory=dict)


class LoopOption(BaseModel):
    id: str
    loop: list[str]
    path_edges: list[str]
    distance_m: float
    quality_score: float = Field(..., ge=0, le=1)
    bearing_deg: float
    apex_node_id: str
    overlap_ratio: float
    distance_accuracy: float
    mean_edge_quality: float
    surface_breakdown: dict[str, float] = Field(default_factory=dict)
    estimated_duration_s: float
    geometry: GeoJSONLineString
    validation: LoopValidation | None = None
    elevation: dict[str, Any] | None = None


class LoopResponse(BaseModel):
    start_node_id: str
    snap_distance_m: float | None = None
    target_distance_m: float
    loops: list[LoopOption]
    warnings: list[str] = Field(default_factory=list)
    debug: dict[str, Any] = Field(default_factory=dict)
    cached: bool = False


class PathResponse(BaseModel):
    path: list[str]
    edge_ids: list[str]
    distance_m: float
    cost: float
    explored: int
    algorithm: str
    geometry: GeoJSONLineString
