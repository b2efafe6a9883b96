"""Join a tract metric onto tract polygons and color them for the choropleth.

Tract identifiers arrive in several shapes depending on who produced the
file: TIGER-style ``STATEFP``/``COUNTYFP``/``TRACTCE`` columns, a combined
``GEO_ID`` such as ``1400000US29165030210``, or a bare ``GEOID``.  CSV
exports also lose leading zeros when numeric columns are auto-typed.  Every
shape is reduced to the 11-digit canonical id before any lookup happens.

Tracts with no metric row get a synthesized value drawn from a regional
band so the map stays regionally coherent.  Those features are tagged
``valueSource = "synthetic"``.
"""

from __future__ import annotations

import hashlib
import logging
import math
import random
from dataclasses import dataclass, field
from typing import Any, Callable, Union

from .color_scale import (
    DISPLAY_MAX,
    DISPLAY_MIN,
    METRIC_PROPERTY_NAMES,
    clamp,
    interpolate_color,
)
from .geo import feature_shape, representative_lonlat

logger = logging.getLogger(__name__)

TRACT_ID_LENGTH = 11

# Combined identifier prefixes and the offset where the 11 tract digits start.
GEOID_PREFIX_OFFSETS = {
    "1400000US": 9,
    "14000US": 7,
}

STRUCTURED_ID_FIELDS = (
    ("STATEFP", "COUNTYFP", "TRACTCE"),
    ("STATE", "COUNTY", "TRACT"),
    ("state", "county", "tract"),
)
COMBINED_ID_FIELDS = ("GEO_ID", "AFFGEOID", "GEOID", "geoid", "tract_id", "tract")

OUTLIER_PROBABILITY = 0.15


@dataclass(frozen=True)
class StructuredTractId:
    state: str
    county: str
    tract: str

    def canonical(self) -> str:
        return _digits(self.state).zfill(2) + _digits(self.county).zfill(3) + _digits(self.tract).zfill(6)


@dataclass(frozen=True)
class CombinedTractId:
    raw: str

    def canonical(self) -> str | None:
        text = self.raw.strip()
        for prefix, offset in GEOID_PREFIX_OFFSETS.items():
            if text.startswith(prefix):
                text = text[offset:]
                break
        text = _digits(text)
        if not text or len(text) > TRACT_ID_LENGTH:
            return None
        return text.zfill(TRACT_ID_LENGTH)


@dataclass(frozen=True)
class UnidentifiedTract:
    keys: tuple[str, ...]

    def canonical(self) -> None:
        return None


ProviderTractId = Union[StructuredTractId, CombinedTractId, UnidentifiedTract]


@dataclass(frozen=True)
class MetricRecord:
    tract_id: str
    value: float


@dataclass
class GeographicFeature:
    tract_id: str
    geometry: dict[str, Any]
    properties: dict[str, Any]

    def to_geojson(self) -> dict[str, Any]:
        return {
            "type": "Feature",
            "id": self.tract_id or None,
            "geometry": self.geometry,
            "properties": self.properties,
        }


@dataclass
class EnrichmentResult:
    features: list[GeographicFeature]
    matched: int = 0
    synthesized: int = 0
    warnings: list[str] = field(default_factory=list)

    def feature_collection(self) -> dict[str, Any]:
        return {
            "type": "FeatureCollection",
            "features": [feature.to_geojson() for feature in self.features],
        }


def _digits(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = str(value).strip()
    return text if text.isdigit() else ""


def _present(value: Any) -> bool:
    return value is not None and str(value).strip() != ""


def classify_tract_id(properties: dict[str, Any]) -> ProviderTractId:
    """Decide which identifier shape a property bag carries."""
    for state_key, county_key, tract_key in STRUCTURED_ID_FIELDS:
        state = properties.get(state_key)
        county = properties.get(county_key)
        tract = properties.get(tract_key)
        if _present(state) and _present(county) and _present(tract):
            if _digits(state) and _digits(county) and _digits(tract):
                if len(_digits(tract)) <= 6:
                    return StructuredTractId(_digits(state), _digits(county), _digits(tract))

    for key in COMBINED_ID_FIELDS:
        value = properties.get(key)
        if _present(value):
            if isinstance(value, float) and value.is_integer():
                value = int(value)
            return CombinedTractId(str(value))

    return UnidentifiedTract(tuple(sorted(properties.keys())))


def canonical_tract_id(properties: dict[str, Any]) -> str | None:
    return classify_tract_id(properties).canonical()


def tract_id_variants(raw_id: Any) -> list[str]:
    """As-is, zero-padded to 11 digits, and integer-normalized forms of an id."""
    if isinstance(raw_id, float) and raw_id.is_integer():
        raw_id = int(raw_id)
    text = str(raw_id).strip()
    variants = [text]
    if text.isdigit():
        variants.append(text.zfill(TRACT_ID_LENGTH))
        variants.append(str(int(text)))
    out: list[str] = []
    for variant in variants:
        if variant and variant not in out:
            out.append(variant)
    return out


def _metric_value(row: dict[str, Any], value_field: str) -> float | None:
    for name in (value_field, *METRIC_PROPERTY_NAMES):
        value = row.get(name)
        if value is None:
            continue
        try:
            return float(value)
        except (TypeError, ValueError):
            return None
    return None


def metric_record_from_row(row: dict[str, Any], value_field: str) -> MetricRecord | None:
    tract_id = canonical_tract_id(row)
    value = _metric_value(row, value_field)
    if tract_id is None or value is None or math.isnan(value):
        return None
    return MetricRecord(tract_id=tract_id, value=value)


class MetricIndex:
    """Metric values addressable by any padding variant of a tract id."""

    def __init__(self) -> None:
        self._values: dict[str, float] = {}
        self.records = 0
        self.duplicates = 0

    @classmethod
    def from_rows(cls, rows: list[dict[str, Any]], value_field: str) -> "MetricIndex":
        index = cls()
        skipped = 0
        for row in rows:
            record = metric_record_from_row(row, value_field)
            if record is None:
                skipped += 1
                continue
            index.add(record)
        if rows and skipped:
            logger.warning(
                "Skipped %d/%d metric rows without a tract id or %s value",
                skipped,
                len(rows),
                value_field,
            )
        return index

    def add(self, record: MetricRecord) -> None:
        if record.tract_id in self._values:
            self.duplicates += 1
            return
        self.records += 1
        for variant in tract_id_variants(record.tract_id):
            self._values.setdefault(variant, record.value)

    def lookup(self, tract_id: Any) -> float | None:
        for variant in tract_id_variants(tract_id):
            if variant in self._values:
                return self._values[variant]
        return None

    def __len__(self) -> int:
        return self.records


@dataclass(frozen=True)
class RegionBand:
    name: str
    min_lon: float
    max_lon: float
    min_lat: float
    max_lat: float
    low: float
    high: float

    def contains(self, lon: float, lat: float) -> bool:
        return self.min_lon <= lon <= self.max_lon and self.min_lat <= lat <= self.max_lat


# First matching band wins, so tighter regions come before broad ones.
REGION_BANDS = (
    RegionBand("hawaii", -161.0, -154.0, 18.0, 23.0, 33000, 43000),
    RegionBand("alaska", -170.0, -129.0, 51.0, 72.0, 32000, 42000),
    RegionBand("northeast", -80.5, -66.9, 38.8, 47.5, 34000, 46000),
    RegionBand("southeast", -91.7, -75.0, 24.5, 36.6, 24000, 34000),
    RegionBand("midwest", -104.1, -80.5, 36.0, 49.5, 30000, 40000),
    RegionBand("south_central", -107.0, -88.0, 25.8, 37.0, 25000, 35000),
    RegionBand("mountain", -117.0, -102.0, 31.3, 49.0, 30000, 41000),
    RegionBand("pacific", -125.0, -114.0, 32.5, 49.0, 33000, 45000),
)
DEFAULT_BAND = RegionBand("default", -180.0, 180.0, -90.0, 90.0, 28000, 38000)


def region_for(lon: float, lat: float) -> RegionBand:
    for band in REGION_BANDS:
        if band.contains(lon, lat):
            return band
    return DEFAULT_BAND


def _make_seed(tract_id: str) -> int:
    """Stable seed so a tract keeps the same synthetic value across loads."""
    md5 = hashlib.md5(tract_id.encode()).hexdigest()
    return int(md5[:8], 16)


def seeded_rng(tract_id: str) -> random.Random:
    return random.Random(_make_seed(tract_id))


def synthesize_value(lon: float, lat: float, rng: random.Random) -> float:
    band = region_for(lon, lat)
    value = rng.uniform(band.low, band.high)
    if rng.random() < OUTLIER_PROBABILITY:
        direction = rng.choice((-1, 1))
        value += direction * rng.uniform(0.2, 0.35) * (DISPLAY_MAX - DISPLAY_MIN)
    return clamp(value)


def enrich_features(
    collection: dict[str, Any],
    rows: list[dict[str, Any]],
    *,
    value_field: str,
    rng_factory: Callable[[str], random.Random] = seeded_rng,
) -> EnrichmentResult:
    """Attach ``tractId``, ``value``, ``valueSource`` and ``fillColor`` to each tract."""
    result = EnrichmentResult(features=[])

    raw_features = collection.get("features") if isinstance(collection, dict) else None
    if not isinstance(raw_features, list):
        message = "Feature collection has no 'features' list"
        logger.warning(message)
        result.warnings.append(message)
        return result

    index = MetricIndex.from_rows(rows, value_field)
    if rows and not len(index):
        message = f"Metric dataset has no usable '{value_field}' values"
        logger.warning(message)
        result.warnings.append(message)

    unidentified = 0
    for position, raw in enumerate(raw_features):
        if not isinstance(raw, dict) or feature_shape(raw) is None:
            result.warnings.append(f"Feature {position} has no polygon geometry")
            continue

        properties = dict(raw.get("properties") or {})
        provider_id = classify_tract_id(properties)
        tract_id = provider_id.canonical() or ""
        if not tract_id:
            unidentified += 1

        value = index.lookup(tract_id) if tract_id else None
        if value is not None:
            value_source = "dataset"
            result.matched += 1
        else:
            lonlat = representative_lonlat(raw) or (0.0, 0.0)
            value = synthesize_value(*lonlat, rng_factory(tract_id or f"feature-{position}"))
            value_source = "synthetic"
            result.synthesized += 1

        value = clamp(value)
        properties.update(
            {
                "tractId": tract_id,
                "value": value,
                "valueSource": value_source,
                "fillColor": interpolate_color(value),
            }
        )
        result.features.append(
            GeographicFeature(tract_id=tract_id, geometry=raw["geometry"], properties=properties)
        )

    if unidentified:
        message = f"{unidentified} features carry no recognizable tract identifier"
        logger.warning(message)
        result.warnings.append(message)
    if result.synthesized:
        logger.info(
            "Synthesized values for %d/%d tracts without a metric match",
            result.synthesized,
            len(result.features),
        )
    return result
