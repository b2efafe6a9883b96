from __future__ import annotations

import asyncio
import logging
from copy import deepcopy
from typing import Any

from .geo import has_usable_geometry
from .viewport import MapViewport

logger = logging.getLogger(__name__)

HIGHLIGHT_SOURCE_ID = "selected-tract"
HIGHLIGHT_LAYER_ID = "selected-tract-highlight"

HIGHLIGHT_PAINT = {
    "line-color": "#000000",
    "line-width": 3,
    "line-opacity": 0.9,
}


class HighlightOverlayManager:
    """Keeps at most one selected-tract outline on the map, drawn above everything."""

    def __init__(
        self,
        viewport: MapViewport,
        *,
        retry_delay: float = 0.1,
        max_retries: int = 50,
    ):
        self.viewport = viewport
        self.retry_delay = retry_delay
        self.max_retries = max_retries
        self.current: dict[str, Any] | None = None
        self._layer_listener = self._on_layer_added
        self.viewport.on("layeradded", self._layer_listener)

    async def wait_until_ready(self) -> bool:
        """Wait for the renderer to finish loading, retrying on a fixed delay."""
        attempts = 0
        while not self.viewport.is_style_loaded():
            if attempts >= self.max_retries:
                logger.warning("Map never finished loading; highlight dropped")
                return False
            attempts += 1
            logger.debug("Map not ready, retrying highlight in %.2fs", self.retry_delay)
            await asyncio.sleep(self.retry_delay)
        return True

    async def highlight(self, feature: dict[str, Any]) -> bool:
        if not await self.wait_until_ready():
            return False
        return self.apply(feature)

    def apply(self, feature: dict[str, Any]) -> bool:
        """Swap the current highlight for ``feature``; the map must be loaded."""
        self.clear()

        if not has_usable_geometry(feature):
            logger.debug("Skipping highlight: feature has no usable geometry")
            return False

        overlay = deepcopy(feature)
        self.viewport.add_source(
            HIGHLIGHT_SOURCE_ID,
            {"type": "geojson", "data": {"type": "FeatureCollection", "features": [overlay]}},
        )
        self.viewport.add_layer(
            {
                "id": HIGHLIGHT_LAYER_ID,
                "type": "line",
                "source": HIGHLIGHT_SOURCE_ID,
                "paint": dict(HIGHLIGHT_PAINT),
            }
        )
        self.current = overlay
        self.ensure_on_top()
        return True

    def _on_layer_added(self, layer_id: Any = None) -> None:
        if layer_id != HIGHLIGHT_LAYER_ID:
            self.ensure_on_top()

    def ensure_on_top(self) -> None:
        if self.viewport.get_layer(HIGHLIGHT_LAYER_ID) is None:
            return
        if self.viewport.layer_ids()[-1] != HIGHLIGHT_LAYER_ID:
            self.viewport.move_layer(HIGHLIGHT_LAYER_ID)

    def clear(self) -> None:
        if self.viewport.get_layer(HIGHLIGHT_LAYER_ID) is not None:
            self.viewport.remove_layer(HIGHLIGHT_LAYER_ID)
        if self.viewport.get_source(HIGHLIGHT_SOURCE_ID) is not None:
            self.viewport.remove_source(HIGHLIGHT_SOURCE_ID)
        self.current = None

    def close(self) -> None:
        """Clear the highlight and stop following layer additions."""
        self.clear()
        self.viewport.off("layeradded", self._layer_listener)
