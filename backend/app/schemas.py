from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class SubFactorScore(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=80)
    score: int = Field(..., ge=0, le=100)


class SelectionResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    address: str = Field(..., min_length=1, max_length=300)
    tract_id: str
    score: int = Field(..., ge=0, le=100)
    sub_scores: list[SubFactorScore] = Field(..., min_length=5, max_length=5)
    location_label: str
    strategy: Literal["bounding_box", "rendered_feature", "synthetic", "click"]
    synthetic: bool
    value: float
    longitude: float = Field(..., ge=-180, le=180)
    latitude: float = Field(..., ge=-90, le=90)
    feature: dict[str, Any]


class LegendEntry(BaseModel):
    value: float
    color: str = Field(..., pattern=r"^#[0-9a-f]{6}$")
    label: str


class EnrichmentStats(BaseModel):
    features: int = Field(..., ge=0)
    matched: int = Field(..., ge=0)
    synthesized: int = Field(..., ge=0)
    warnings: list[str] = Field(default_factory=list)


class TractLayerResponse(BaseModel):
    source_id: str
    data: dict[str, Any]
    layer: dict[str, Any]
    legend: list[LegendEntry]
    stats: EnrichmentStats
