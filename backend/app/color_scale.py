from __future__ import annotations

import math
from typing import Any

DISPLAY_MIN = 20000
DISPLAY_MAX = 55500

# (value, color) stops for household income at age 35, low to high.
CONTROL_POINTS: list[tuple[float, str]] = [
    (20000, "#9b252f"),
    (25000, "#b65441"),
    (28000, "#d07e59"),
    (30000, "#e5a979"),
    (32000, "#f4d79e"),
    (34000, "#fcfdc1"),
    (36000, "#cdddb5"),
    (38000, "#9dbda9"),
    (41000, "#729d9d"),
    (45000, "#4f7f8b"),
    (55500, "#34687e"),
]

LEGEND_LABELS = ["<$20k", "25k", "28k", "30k", "32k", "34k", "36k", "38k", "41k", "45k", ">$55k"]

# Property spellings seen across tileset and CSV exports of the same metric.
METRIC_PROPERTY_NAMES = (
    "Household_Income_at_Age_35_rP_gP_p25",
    "household_income_at_age_35_rp_gp_p25",
    "Household_Income_at_Age_35-rP_gP_p25",
)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def clamp(value: float, low: float = DISPLAY_MIN, high: float = DISPLAY_MAX) -> float:
    return max(low, min(high, value))


def hex_to_rgb(color: str) -> tuple[int, int, int]:
    color = color.lstrip("#")
    return int(color[0:2], 16), int(color[2:4], 16), int(color[4:6], 16)


def rgb_to_hex(rgb: tuple[int, ...]) -> str:
    return "#{:02x}{:02x}{:02x}".format(*rgb)


def interpolate_color(value: float, points: list[tuple[float, str]] = CONTROL_POINTS) -> str:
    """Piecewise-linear color for ``value``; out-of-range values pin to the ends."""
    if value <= points[0][0]:
        return points[0][1]
    if value >= points[-1][0]:
        return points[-1][1]

    for (lo_value, lo_color), (hi_value, hi_color) in zip(points, points[1:]):
        if value == lo_value:
            return lo_color
        if lo_value < value < hi_value:
            t = (value - lo_value) / (hi_value - lo_value)
            lo_rgb = hex_to_rgb(lo_color)
            hi_rgb = hex_to_rgb(hi_color)
            mixed = tuple(
                round_half_up(a + (b - a) * t) for a, b in zip(lo_rgb, hi_rgb)
            )
            return rgb_to_hex(mixed)
    return points[-1][1]


def normalize_score(value: float, low: float = DISPLAY_MIN, high: float = DISPLAY_MAX) -> int:
    """Map a metric value onto 0-100 against the fixed display range."""
    score = round_half_up(((value - low) / (high - low)) * 100)
    return int(max(0, min(100, score)))


def fill_color_expression(points: list[tuple[float, str]] = CONTROL_POINTS) -> list[Any]:
    """Renderer expression equivalent to :func:`interpolate_color`."""
    expression: list[Any] = [
        "interpolate",
        ["linear"],
        ["coalesce", *(["get", name] for name in METRIC_PROPERTY_NAMES), ["get", "value"], 0],
    ]
    for value, color in points:
        expression.extend([value, color])
    return expression


def choropleth_layer(source_id: str, layer_id: str = "census-tracts-layer") -> dict[str, Any]:
    return {
        "id": layer_id,
        "type": "fill",
        "source": source_id,
        "paint": {
            "fill-color": fill_color_expression(),
            "fill-opacity": 0.8,
            "fill-outline-color": "#000000",
        },
    }


def legend() -> list[dict[str, Any]]:
    return [
        {"value": value, "color": color, "label": label}
        for (value, color), label in zip(CONTROL_POINTS, LEGEND_LABELS)
    ]
