from __future__ import annotations

import math
from typing import Any

from shapely.errors import GeometryTypeError
from shapely.geometry import Point, box, mapping, shape
from shapely.geometry.base import BaseGeometry

POLYGON_TYPES = {"Polygon", "MultiPolygon"}
TILE_SIZE = 512
MAX_MERCATOR_LAT = 85.051129


def feature_shape(feature: dict[str, Any]) -> BaseGeometry | None:
    """Shapely geometry for a GeoJSON feature, or None when it has no polygon."""
    geometry = feature.get("geometry") if isinstance(feature, dict) else None
    if not isinstance(geometry, dict) or geometry.get("type") not in POLYGON_TYPES:
        return None
    if not geometry.get("coordinates"):
        return None
    try:
        geom = shape(geometry)
    except (GeometryTypeError, ValueError, TypeError, IndexError, AttributeError):
        return None
    return None if geom.is_empty else geom


def has_usable_geometry(feature: dict[str, Any]) -> bool:
    return feature_shape(feature) is not None


def feature_bounds(feature: dict[str, Any]) -> tuple[float, float, float, float] | None:
    geom = feature_shape(feature)
    return geom.bounds if geom is not None else None


def point_buffer_box(lon: float, lat: float, buffer: float = 0.01) -> BaseGeometry:
    return box(lon - buffer, lat - buffer, lon + buffer, lat + buffer)


def bounds_intersect(
    a: tuple[float, float, float, float], b: tuple[float, float, float, float]
) -> bool:
    return a[0] <= b[2] and b[0] <= a[2] and a[1] <= b[3] and b[1] <= a[3]


def contains_point(feature: dict[str, Any], lon: float, lat: float) -> bool:
    geom = feature_shape(feature)
    return geom is not None and geom.intersects(Point(lon, lat))


def circle_polygon(lon: float, lat: float, radius: float = 0.01) -> dict[str, Any]:
    """16-segment polygon approximating a circle around (lon, lat)."""
    circle = Point(lon, lat).buffer(radius, quad_segs=4)
    geometry = mapping(circle)
    return {
        "type": geometry["type"],
        "coordinates": [[list(coord) for coord in ring] for ring in geometry["coordinates"]],
    }


def representative_lonlat(feature: dict[str, Any]) -> tuple[float, float] | None:
    geom = feature_shape(feature)
    if geom is None:
        return None
    centroid = geom.centroid
    return centroid.x, centroid.y


def _world_size(zoom: float) -> float:
    return TILE_SIZE * (2**zoom)


def lnglat_to_world(lon: float, lat: float, zoom: float) -> tuple[float, float]:
    lat = max(-MAX_MERCATOR_LAT, min(MAX_MERCATOR_LAT, lat))
    size = _world_size(zoom)
    x = (lon + 180.0) / 360.0 * size
    sin_lat = math.sin(math.radians(lat))
    y = (0.5 - math.log((1 + sin_lat) / (1 - sin_lat)) / (4 * math.pi)) * size
    return x, y


def world_to_lnglat(x: float, y: float, zoom: float) -> tuple[float, float]:
    size = _world_size(zoom)
    lon = x / size * 360.0 - 180.0
    n = math.pi - 2 * math.pi * y / size
    lat = math.degrees(math.atan(math.sinh(n)))
    return lon, lat
