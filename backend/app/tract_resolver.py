"""Address (or click) to census tract resolution.

``resolve()`` walks ``idle -> geocoding -> awaiting_viewport -> matching``
and ends in ``resolved`` or ``failed``.  Matching tries three strategies in
order: tract bounding boxes against a small box around the point, then the
feature the renderer paints under the point's pixel, and finally a
synthetic circle so there is always something to score and highlight.

Every run takes a fresh generation token.  After each suspension point a run
whose token is no longer current stops quietly and returns ``None``, so a
late geocode or move-end can never overwrite a newer selection.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Protocol

from .color_scale import (
    DISPLAY_MAX,
    DISPLAY_MIN,
    METRIC_PROPERTY_NAMES,
    normalize_score,
    round_half_up,
)
from .enrichment_service import canonical_tract_id
from .geo import bounds_intersect, circle_polygon, feature_bounds, point_buffer_box
from .geocoding_service import GeocodeCandidate
from .highlight_overlay import HighlightOverlayManager
from .viewport import Listener, MapViewport

logger = logging.getLogger(__name__)

SUB_FACTORS = (
    "Segregation",
    "Income Inequality",
    "School Quality",
    "Family Structure",
    "Social Capital",
)
SUB_FACTOR_SPREAD = 15
BBOX_BUFFER_DEGREES = 0.01
SYNTHETIC_VALUE = (DISPLAY_MIN + DISPLAY_MAX) / 2
SETTLE_DELAY_SECONDS = 0.5
MOVEEND_TIMEOUT_SECONDS = 3.0
RESOLVE_ZOOM = 12.0


class ResolverState(str, enum.Enum):
    IDLE = "idle"
    GEOCODING = "geocoding"
    AWAITING_VIEWPORT = "awaiting_viewport"
    MATCHING = "matching"
    RESOLVED = "resolved"
    FAILED = "failed"


class MatchStrategy(str, enum.Enum):
    BOUNDING_BOX = "bounding_box"
    RENDERED_FEATURE = "rendered_feature"
    SYNTHETIC = "synthetic"
    CLICK = "click"


class NoLocationFoundError(RuntimeError):
    pass


class Geocoder(Protocol):
    async def geocode(self, address: str) -> list[GeocodeCandidate]: ...


@dataclass(frozen=True)
class SelectionState:
    tract_id: str
    score: int
    sub_scores: dict[str, int]
    location_label: str
    strategy: MatchStrategy
    synthetic: bool
    value: float
    coordinates: tuple[float, float]
    feature: dict[str, Any] = field(repr=False)


def derive_sub_scores(score: int, rng: random.Random) -> dict[str, int]:
    """Perturb the base score independently per factor, clamped to 0-100."""
    out: dict[str, int] = {}
    for name in SUB_FACTORS:
        noisy = round_half_up(score + rng.uniform(-SUB_FACTOR_SPREAD, SUB_FACTOR_SPREAD))
        out[name] = max(0, min(100, noisy))
    return out


def feature_value(properties: dict[str, Any]) -> float | None:
    for name in ("value", *METRIC_PROPERTY_NAMES):
        value = properties.get(name)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return float(value)
    return None


def tract_label(properties: dict[str, Any], tract_id: str) -> str:
    parts = [f"Census Tract {tract_id or 'N/A'}"]
    for keys in (("county", "COUNTY"), ("state", "STATE")):
        for key in keys:
            if properties.get(key):
                parts.append(str(properties[key]))
                break
    return ", ".join(parts)


class TractResolver:
    def __init__(
        self,
        viewport: MapViewport,
        geocoder: Geocoder,
        overlay: HighlightOverlayManager,
        *,
        source_id: str,
        layer_id: str,
        settle_delay: float = SETTLE_DELAY_SECONDS,
        moveend_timeout: float = MOVEEND_TIMEOUT_SECONDS,
        zoom: float = RESOLVE_ZOOM,
        bbox_buffer: float = BBOX_BUFFER_DEGREES,
        rng: random.Random | None = None,
    ):
        self.viewport = viewport
        self.geocoder = geocoder
        self.overlay = overlay
        self.source_id = source_id
        self.layer_id = layer_id
        self.settle_delay = settle_delay
        self.moveend_timeout = moveend_timeout
        self.zoom = zoom
        self.bbox_buffer = bbox_buffer
        self.rng = rng or random.Random()

        self.state = ResolverState.IDLE
        self.selection: SelectionState | None = None
        self.last_error: str | None = None
        self._generation = 0
        self._listeners: list[tuple[str, Listener]] = []
        self._closed = False

    # -- tokens ------------------------------------------------------------

    def _next_token(self) -> int:
        self._generation += 1
        return self._generation

    def _is_stale(self, token: int) -> bool:
        if self._closed or token != self._generation:
            logger.debug("Dropping stale resolver run %d (current %d)", token, self._generation)
            return True
        return False

    # -- public API --------------------------------------------------------

    async def resolve(self, address: str) -> SelectionState | None:
        if self._closed or not address or not address.strip():
            return None

        token = self._next_token()
        self.state = ResolverState.GEOCODING
        self.last_error = None

        try:
            candidates = await self.geocoder.geocode(address.strip())
        except Exception as exc:
            if not self._is_stale(token):
                self.state = ResolverState.FAILED
                self.last_error = str(exc)
            raise
        if self._is_stale(token):
            return None

        if not candidates:
            self.state = ResolverState.FAILED
            self.last_error = f"No location found for {address.strip()!r}"
            raise NoLocationFoundError(self.last_error)

        target = candidates[0]
        self.state = ResolverState.AWAITING_VIEWPORT
        await self._move_to(target.lon, target.lat)
        if self._is_stale(token):
            return None

        # Source features are not reliably queryable right at move-end.
        await asyncio.sleep(self.settle_delay)
        if self._is_stale(token):
            return None

        self.state = ResolverState.MATCHING
        feature, strategy = self._match(target.lon, target.lat)
        selection = self._build_selection(
            feature, strategy, (target.lon, target.lat), label=target.place_name
        )
        return await self._commit(token, selection)

    async def select_at(self, lon: float, lat: float) -> SelectionState | None:
        """Select the tract painted at a clicked coordinate, if any."""
        if self._closed:
            return None
        hits = self.viewport.query_rendered_features(
            self.viewport.project((lon, lat)), layers=[self.layer_id]
        )
        if not hits:
            return None
        token = self._next_token()
        feature = hits[0]
        tract_id = self._tract_id(feature)
        selection = self._build_selection(
            feature,
            MatchStrategy.CLICK,
            (lon, lat),
            label=tract_label(feature.get("properties") or {}, tract_id),
        )
        return await self._commit(token, selection)

    def clear(self) -> None:
        """Drop the selection, e.g. when navigating away from the map."""
        self._next_token()
        self.selection = None
        self.state = ResolverState.IDLE
        self.last_error = None
        self.overlay.clear()

    def close(self) -> None:
        """Detach listeners and invalidate in-flight runs on view teardown."""
        for event, listener in self._listeners:
            self.viewport.off(event, listener)
        self._listeners.clear()
        self._next_token()
        self._closed = True

    # -- internals ---------------------------------------------------------

    async def _move_to(self, lon: float, lat: float) -> None:
        loop = asyncio.get_running_loop()
        moved: asyncio.Future = loop.create_future()

        def _on_moveend(_event: Any = None) -> None:
            if not moved.done():
                moved.set_result(True)

        self.viewport.once("moveend", _on_moveend)
        self._listeners.append(("moveend", _on_moveend))
        try:
            self.viewport.fly_to((lon, lat), zoom=self.zoom)
            await asyncio.wait_for(moved, timeout=self.moveend_timeout)
        except asyncio.TimeoutError:
            logger.warning("No moveend within %.1fs; matching anyway", self.moveend_timeout)
        finally:
            self.viewport.off("moveend", _on_moveend)
            if ("moveend", _on_moveend) in self._listeners:
                self._listeners.remove(("moveend", _on_moveend))

    def _match(self, lon: float, lat: float) -> tuple[dict[str, Any], MatchStrategy]:
        target = point_buffer_box(lon, lat, self.bbox_buffer).bounds
        for feature in self.viewport.query_source_features(self.source_id):
            bounds = feature_bounds(feature)
            if bounds is not None and bounds_intersect(bounds, target):
                return feature, MatchStrategy.BOUNDING_BOX

        rendered = self.viewport.query_rendered_features(
            self.viewport.project((lon, lat)), layers=[self.layer_id]
        )
        if rendered:
            return rendered[0], MatchStrategy.RENDERED_FEATURE

        logger.info("No tract found at (%.5f, %.5f); using synthetic area", lon, lat)
        synthetic = {
            "type": "Feature",
            "geometry": circle_polygon(lon, lat, self.bbox_buffer),
            "properties": {
                "tractId": "",
                "value": SYNTHETIC_VALUE,
                "valueSource": "synthetic",
            },
        }
        return synthetic, MatchStrategy.SYNTHETIC

    @staticmethod
    def _tract_id(feature: dict[str, Any]) -> str:
        properties = feature.get("properties") or {}
        tract_id = properties.get("tractId")
        if tract_id:
            return str(tract_id)
        return canonical_tract_id(properties) or ""

    def _build_selection(
        self,
        feature: dict[str, Any],
        strategy: MatchStrategy,
        coordinates: tuple[float, float],
        *,
        label: str,
    ) -> SelectionState:
        properties = feature.get("properties") or {}
        value = feature_value(properties)
        if value is None:
            logger.warning("Matched feature has no metric value; using mid-range")
            value = SYNTHETIC_VALUE
        score = normalize_score(value)
        return SelectionState(
            tract_id=self._tract_id(feature),
            score=score,
            sub_scores=derive_sub_scores(score, self.rng),
            location_label=label,
            strategy=strategy,
            synthetic=(
                strategy is MatchStrategy.SYNTHETIC
                or properties.get("valueSource") == "synthetic"
            ),
            value=value,
            coordinates=coordinates,
            feature=feature,
        )

    async def _commit(self, token: int, selection: SelectionState) -> SelectionState | None:
        ready = await self.overlay.wait_until_ready()
        if self._is_stale(token):
            return None
        self.selection = selection
        self.state = ResolverState.RESOLVED
        if ready:
            self.overlay.apply(selection.feature)
        return selection
