"""Map viewport abstraction used by the resolver and the highlight overlay.

``MapViewport`` is the command surface those components are allowed to use.
``HeadlessViewport`` implements it without a browser: it keeps center, zoom,
sources and the ordered layer stack in memory, fires ``moveend`` on the
event loop after a programmatic move, and answers rendered-feature queries
by testing the painted polygons under a pixel.
"""

from __future__ import annotations

import asyncio
import logging
from copy import deepcopy
from typing import Any, Callable, Protocol

from .geo import contains_point, lnglat_to_world, world_to_lnglat

logger = logging.getLogger(__name__)

LngLat = tuple[float, float]
Pixel = tuple[float, float]
Listener = Callable[..., Any]

DEFAULT_CENTER: LngLat = (-98.5795, 39.8283)
DEFAULT_ZOOM = 3.0


class MapViewport(Protocol):
    def is_style_loaded(self) -> bool: ...

    def fly_to(self, center: LngLat, zoom: float | None = None) -> None: ...

    def on(self, event: str, listener: Listener) -> None: ...

    def once(self, event: str, listener: Listener) -> None: ...

    def off(self, event: str, listener: Listener) -> None: ...

    def project(self, lnglat: LngLat) -> Pixel: ...

    def query_source_features(self, source_id: str) -> list[dict[str, Any]]: ...

    def query_rendered_features(
        self, point: Pixel, layers: list[str] | None = None
    ) -> list[dict[str, Any]]: ...

    def get_source(self, source_id: str) -> dict[str, Any] | None: ...

    def add_source(self, source_id: str, source: dict[str, Any]) -> None: ...

    def remove_source(self, source_id: str) -> None: ...

    def get_layer(self, layer_id: str) -> dict[str, Any] | None: ...

    def add_layer(self, layer: dict[str, Any], before_id: str | None = None) -> None: ...

    def remove_layer(self, layer_id: str) -> None: ...

    def move_layer(self, layer_id: str, before_id: str | None = None) -> None: ...

    def layer_ids(self) -> list[str]: ...


class HeadlessViewport:
    def __init__(
        self,
        *,
        center: LngLat = DEFAULT_CENTER,
        zoom: float = DEFAULT_ZOOM,
        width: int = 800,
        height: int = 500,
        move_duration: float = 0.0,
        style_loaded: bool = True,
    ):
        self.center = center
        self.zoom = zoom
        self.width = width
        self.height = height
        self.move_duration = move_duration
        self._style_loaded = style_loaded
        self._sources: dict[str, dict[str, Any]] = {}
        self._layers: list[dict[str, Any]] = []
        self._listeners: dict[str, list[tuple[Listener, bool]]] = {}

    # -- lifecycle / events ------------------------------------------------

    def is_style_loaded(self) -> bool:
        return self._style_loaded

    def mark_loaded(self) -> None:
        self._style_loaded = True
        self.emit("load")

    def on(self, event: str, listener: Listener) -> None:
        self._listeners.setdefault(event, []).append((listener, False))

    def once(self, event: str, listener: Listener) -> None:
        self._listeners.setdefault(event, []).append((listener, True))

    def off(self, event: str, listener: Listener) -> None:
        remaining = [entry for entry in self._listeners.get(event, []) if entry[0] is not listener]
        self._listeners[event] = remaining

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, []))

    def emit(self, event: str, payload: Any = None) -> None:
        entries = list(self._listeners.get(event, []))
        self._listeners[event] = [entry for entry in entries if not entry[1]]
        for listener, _ in entries:
            listener(payload)

    # -- camera ------------------------------------------------------------

    def fly_to(self, center: LngLat, zoom: float | None = None) -> None:
        self.center = (float(center[0]), float(center[1]))
        if zoom is not None:
            self.zoom = float(zoom)
        loop = asyncio.get_running_loop()
        loop.call_later(self.move_duration, self.emit, "moveend", {"center": self.center})

    def project(self, lnglat: LngLat) -> Pixel:
        cx, cy = lnglat_to_world(self.center[0], self.center[1], self.zoom)
        x, y = lnglat_to_world(lnglat[0], lnglat[1], self.zoom)
        return x - cx + self.width / 2, y - cy + self.height / 2

    def unproject(self, point: Pixel) -> LngLat:
        cx, cy = lnglat_to_world(self.center[0], self.center[1], self.zoom)
        return world_to_lnglat(point[0] + cx - self.width / 2, point[1] + cy - self.height / 2, self.zoom)

    # -- sources -----------------------------------------------------------

    def get_source(self, source_id: str) -> dict[str, Any] | None:
        return self._sources.get(source_id)

    def add_source(self, source_id: str, source: dict[str, Any]) -> None:
        if source_id in self._sources:
            raise ValueError(f"There is already a source with ID {source_id!r}")
        self._sources[source_id] = source

    def remove_source(self, source_id: str) -> None:
        if any(layer.get("source") == source_id for layer in self._layers):
            raise ValueError(f"Source {source_id!r} is still used by a layer")
        if self._sources.pop(source_id, None) is None:
            raise KeyError(source_id)

    def query_source_features(self, source_id: str) -> list[dict[str, Any]]:
        source = self._sources.get(source_id) or {}
        data = source.get("data") or {}
        return [deepcopy(feature) for feature in data.get("features", [])]

    # -- layers ------------------------------------------------------------

    def get_layer(self, layer_id: str) -> dict[str, Any] | None:
        for layer in self._layers:
            if layer["id"] == layer_id:
                return layer
        return None

    def _index_of(self, layer_id: str) -> int:
        for position, layer in enumerate(self._layers):
            if layer["id"] == layer_id:
                return position
        raise KeyError(layer_id)

    def add_layer(self, layer: dict[str, Any], before_id: str | None = None) -> None:
        if self.get_layer(layer["id"]) is not None:
            raise ValueError(f"Layer with id {layer['id']!r} already exists")
        if layer.get("source") not in self._sources:
            raise ValueError(f"Source {layer.get('source')!r} does not exist")
        if before_id is None:
            self._layers.append(layer)
        else:
            self._layers.insert(self._index_of(before_id), layer)
        self.emit("layeradded", layer["id"])

    def remove_layer(self, layer_id: str) -> None:
        self._layers.pop(self._index_of(layer_id))

    def move_layer(self, layer_id: str, before_id: str | None = None) -> None:
        layer = self._layers.pop(self._index_of(layer_id))
        if before_id is None:
            self._layers.append(layer)
        else:
            self._layers.insert(self._index_of(before_id), layer)

    def layer_ids(self) -> list[str]:
        return [layer["id"] for layer in self._layers]

    def query_rendered_features(
        self, point: Pixel, layers: list[str] | None = None
    ) -> list[dict[str, Any]]:
        """Features painted at ``point``, topmost layer first."""
        lon, lat = self.unproject(point)
        hits: list[dict[str, Any]] = []
        for layer in reversed(self._layers):
            if layers is not None and layer["id"] not in layers:
                continue
            if layer.get("type") != "fill":
                continue
            if layer.get("layout", {}).get("visibility") == "none":
                continue
            for feature in self.query_source_features(layer["source"]):
                if contains_point(feature, lon, lat):
                    feature["layer"] = {"id": layer["id"]}
                    hits.append(feature)
        return hits
