"""Tests for the single-highlight overlay manager."""
from __future__ import annotations

import asyncio

from backend.app.highlight_overlay import (
    HIGHLIGHT_LAYER_ID,
    HIGHLIGHT_SOURCE_ID,
    HighlightOverlayManager,
)
from backend.app.viewport import HeadlessViewport

from conftest import square, tract_collection


def _feature(lon: float = -94.70, lat: float = 39.30) -> dict:
    return {"type": "Feature", "geometry": square(lon, lat), "properties": {"tractId": "29165030210"}}


def _viewport(**kwargs) -> HeadlessViewport:
    viewport = HeadlessViewport(**kwargs)
    viewport.add_source("tracts", {"type": "geojson", "data": tract_collection()})
    viewport.add_layer({"id": "tracts-fill", "type": "fill", "source": "tracts"})
    return viewport


def _highlight_count(viewport: HeadlessViewport) -> int:
    return viewport.layer_ids().count(HIGHLIGHT_LAYER_ID)


def test_highlight_adds_one_layer_on_top():
    viewport = _viewport()
    overlay = HighlightOverlayManager(viewport)
    assert asyncio.run(overlay.highlight(_feature())) is True
    assert viewport.layer_ids() == ["tracts-fill", HIGHLIGHT_LAYER_ID]
    assert viewport.get_source(HIGHLIGHT_SOURCE_ID) is not None


def test_highlight_twice_leaves_exactly_one_layer():
    viewport = _viewport()
    overlay = HighlightOverlayManager(viewport)
    feature = _feature()
    asyncio.run(overlay.highlight(feature))
    asyncio.run(overlay.highlight(feature))
    assert _highlight_count(viewport) == 1


def test_new_selection_replaces_previous_geometry():
    viewport = _viewport()
    overlay = HighlightOverlayManager(viewport)
    asyncio.run(overlay.highlight(_feature()))
    asyncio.run(overlay.highlight(_feature(-86.80, 33.50)))
    data = viewport.get_source(HIGHLIGHT_SOURCE_ID)["data"]
    assert len(data["features"]) == 1
    assert data["features"][0]["geometry"] == square(-86.80, 33.50)


def test_highlight_stays_above_layers_added_later():
    viewport = _viewport()
    overlay = HighlightOverlayManager(viewport)
    asyncio.run(overlay.highlight(_feature()))
    viewport.add_layer({"id": "labels", "type": "symbol", "source": "tracts"})
    asyncio.run(overlay.highlight(_feature(-86.80, 33.50)))
    assert viewport.layer_ids()[-1] == HIGHLIGHT_LAYER_ID
    assert _highlight_count(viewport) == 1


def test_feature_without_geometry_is_skipped_and_clears_old_highlight():
    viewport = _viewport()
    overlay = HighlightOverlayManager(viewport)
    asyncio.run(overlay.highlight(_feature()))
    assert asyncio.run(overlay.highlight({"type": "Feature", "geometry": None, "properties": {}})) is False
    assert _highlight_count(viewport) == 0
    assert overlay.current is None


def test_overlay_holds_a_copy_of_the_feature():
    viewport = _viewport()
    overlay = HighlightOverlayManager(viewport)
    feature = _feature()
    asyncio.run(overlay.highlight(feature))
    feature["properties"]["tractId"] = "changed"
    assert overlay.current["properties"]["tractId"] == "29165030210"


def test_highlight_waits_for_map_to_load():
    viewport = _viewport(style_loaded=False)
    overlay = HighlightOverlayManager(viewport, retry_delay=0.01)

    async def _run():
        asyncio.get_running_loop().call_later(0.03, viewport.mark_loaded)
        return await overlay.highlight(_feature())

    assert asyncio.run(_run()) is True
    assert _highlight_count(viewport) == 1


def test_highlight_gives_up_when_map_never_loads():
    viewport = _viewport(style_loaded=False)
    overlay = HighlightOverlayManager(viewport, retry_delay=0.001, max_retries=3)
    assert asyncio.run(overlay.highlight(_feature())) is False
    assert _highlight_count(viewport) == 0


def test_clear_removes_layer_and_source():
    viewport = _viewport()
    overlay = HighlightOverlayManager(viewport)
    asyncio.run(overlay.highlight(_feature()))
    overlay.clear()
    assert _highlight_count(viewport) == 0
    assert viewport.get_source(HIGHLIGHT_SOURCE_ID) is None


def test_layer_added_after_highlight_goes_underneath():
    viewport = _viewport()
    overlay = HighlightOverlayManager(viewport)
    asyncio.run(overlay.highlight(_feature()))
    viewport.add_layer({"id": "labels", "type": "symbol", "source": "tracts"})
    assert viewport.layer_ids() == ["tracts-fill", "labels", HIGHLIGHT_LAYER_ID]


def test_close_stops_following_new_layers():
    viewport = _viewport()
    overlay = HighlightOverlayManager(viewport)
    assert viewport.listener_count("layeradded") == 1
    overlay.close()
    assert viewport.listener_count("layeradded") == 0
    assert viewport.get_source(HIGHLIGHT_SOURCE_ID) is None
