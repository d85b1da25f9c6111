from __future__ import annotations

from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_out_dir() -> str:
    # Keep runtime artifacts in backend/out by default to avoid polluting source assets.
    return str(Path(__file__).resolve().parents[1] / "out")


class Settings(BaseSettings):
    """Validated settings (env-driven), keeping engine tunables out of code."""

    model_config = SettingsConfigDict(
        # Support both "repo root/.env" and "backend/.env" (local dev)
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    out_dir: str = Field(default_factory=_default_out_dir, alias="OUT_DIR")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_dir: str = Field(default="", alias="LOG_DIR")
    log_file_enabled: bool = Field(default=True, alias="LOG_FILE_ENABLED")

    # Graph dataset and snapshot cache
    graph_dataset_path: str = Field(default="", alias="GRAPH_DATASET_PATH")
    graph_load_on_startup: bool = Field(default=True, alias="GRAPH_LOAD_ON_STARTUP")
    # /graph/reload only accepts request paths inside this directory; unset means GRAPH_DATASET_PATH only.
    graph_dataset_dir: str = Field(default="", alias="GRAPH_DATASET_DIR")
    graph_cache_enabled: bool = Field(default=True, alias="GRAPH_CACHE_ENABLED")
    graph_cache_dir: str = Field(default="", alias="GRAPH_CACHE_DIR")
    graph_cache_ttl_days: float = Field(default=7.0, gt=0.0, le=365.0, alias="GRAPH_CACHE_TTL_DAYS")
    graph_grid_bucket_deg: float = Field(default=0.01, gt=0.0, le=1.0, alias="GRAPH_GRID_BUCKET_DEG")
    snap_max_distance_m: float = Field(default=500.0, gt=0.0, alias="SNAP_MAX_DISTANCE_M")

    # Loop search: direction sampling
    loop_min_bearings: int = Field(default=8, ge=1, le=72, alias="LOOP_MIN_BEARINGS")
    loop_max_bearings: int = Field(default=36, ge=1, le=360, alias="LOOP_MAX_BEARINGS")
    loop_bearing_oversample: int = Field(default=3, ge=1, le=12, alias="LOOP_BEARING_OVERSAMPLE")

    # Loop search: outbound leg
    loop_direction_penalty: float = Field(default=0.6, ge=0.0, le=10.0, alias="LOOP_DIRECTION_PENALTY")
    loop_apex_alignment_weight: float = Field(default=0.5, ge=0.0, le=5.0, alias="LOOP_APEX_ALIGNMENT_WEIGHT")
    loop_outbound_limit_ratio: float = Field(default=0.6, gt=0.0, le=1.5, alias="LOOP_OUTBOUND_LIMIT_RATIO")

    # Loop search: return leg, acceptance and dedupe
    loop_reuse_penalty: float = Field(default=5.0, ge=1.0, le=100.0, alias="LOOP_REUSE_PENALTY")
    loop_terrain_mismatch_penalty: float = Field(default=2.0, ge=1.0, le=20.0, alias="LOOP_TERRAIN_MISMATCH_PENALTY")
    loop_min_distance_ratio: float = Field(default=0.5, gt=0.0, le=1.0, alias="LOOP_MIN_DISTANCE_RATIO")
    loop_max_distance_ratio: float = Field(default=1.5, ge=1.0, le=5.0, alias="LOOP_MAX_DISTANCE_RATIO")
    loop_dedupe_similarity: float = Field(default=0.8, gt=0.0, le=1.0, alias="LOOP_DEDUPE_SIMILARITY")

    # Quality score weights; normalised at use so they always sum to 1.
    loop_quality_weight_distance: float = Field(default=0.5, ge=0.0, alias="LOOP_QUALITY_WEIGHT_DISTANCE")
    loop_quality_weight_overlap: float = Field(default=0.3, ge=0.0, alias="LOOP_QUALITY_WEIGHT_OVERLAP")
    loop_quality_weight_edges: float = Field(default=0.2, ge=0.0, alias="LOOP_QUALITY_WEIGHT_EDGES")

    # Loop search: execution budget
    loop_worker_count: int = Field(default=4, ge=1, le=64, alias="LOOP_WORKER_COUNT")
    loop_default_deadline_s: float = Field(default=10.0, gt=0.0, le=300.0, alias="LOOP_DEFAULT_DEADLINE_S")
    loop_max_variants: int = Field(default=10, ge=1, le=50, alias="LOOP_MAX_VARIANTS")

    # Loop result cache
    loop_cache_ttl_s: int = Field(default=600, ge=1, alias="LOOP_CACHE_TTL_S")
    loop_cache_max_entries: int = Field(default=256, ge=1, alias="LOOP_CACHE_MAX_ENTRIES")

    # Elevation collaborator (Open-Elevation compatible)
    elevation_api_url: str = Field(
        default="https://api.open-elevation.com/api/v1/lookup",
        alias="ELEVATION_API_URL",
    )
    elevation_batch_size: int = Field(default=100, ge=1, le=1000, alias="ELEVATION_BATCH_SIZE")
    elevation_request_timeout_s: float = Field(default=10.0, ge=0.5, le=120.0, alias="ELEVATION_REQUEST_TIMEOUT_S")
    elevation_max_attempts: int = Field(default=2, ge=1, le=6, alias="ELEVATION_MAX_ATTEMPTS")
    elevation_retry_backoff_ms: int = Field(default=200, ge=0, le=10_000, alias="ELEVATION_RETRY_BACKOFF_MS")

    default_pace_s_per_km: float = Field(default=360.0, gt=0.0, le=3600.0, alias="DEFAULT_PACE_S_PER_KM")

    @model_validator(mode="after")
    def _order_dependent_bounds(self) -> "Settings":
        if self.loop_max_bearings < self.loop_min_bearings:
            self.loop_max_bearings = self.loop_min_bearings
        if (
            self.loop_quality_weight_distance
            + self.loop_quality_weight_overlap
            + self.loop_quality_weight_edges
        ) <= 0.0:
            self.loop_quality_weight_distance = 0.5
            self.loop_quality_weight_overlap = 0.3
            self.loop_quality_weight_edges = 0.2
        return self


settings = Settings()
