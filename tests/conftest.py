"""Shared fakes for the tract map tests: clock, dataset source, geocoder, tracts."""
from __future__ import annotations

from typing import Any

import pytest

from backend.app.geocoding_service import GeocodeCandidate

SPRINGFIELD_LON = -94.70
SPRINGFIELD_LAT = 39.30
SPRINGFIELD_TRACT = "29165030210"


def square(lon: float, lat: float, half: float = 0.02) -> dict[str, Any]:
    return {
        "type": "Polygon",
        "coordinates": [
            [
                [lon - half, lat - half],
                [lon + half, lat - half],
                [lon + half, lat + half],
                [lon - half, lat + half],
                [lon - half, lat - half],
            ]
        ],
    }


def tract_collection() -> dict[str, Any]:
    return {
        "type": "FeatureCollection",
        "features": [
            {
                "type": "Feature",
                "geometry": square(SPRINGFIELD_LON, SPRINGFIELD_LAT),
                "properties": {
                    "GEO_ID": "1400000US29165030210",
                    "county": "Platte County",
                    "state": "MO",
                },
            },
            {
                "type": "Feature",
                "geometry": square(-86.80, 33.50),
                "properties": {"STATEFP": "01", "COUNTYFP": "073", "TRACTCE": "004500"},
            },
        ],
    }


METRICS_CSV = (
    "tract,Household_Income_at_Age_35_rP_gP_p25\n"
    "29165030210,105732\n"
    "1073004500,30500\n"
)


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StaticSource:
    """Dataset source serving canned payloads and counting fetches."""

    def __init__(self, payloads: dict[tuple[str, str, str], Any]):
        self.payloads = payloads
        self.calls: list[tuple[str, str, str, bool]] = []

    async def fetch(self, bucket: str, key: str, fmt: str, *, fresh: bool = False) -> Any:
        self.calls.append((bucket, key, fmt, fresh))
        return self.payloads[(bucket, key, fmt)]


class FakeGeocoder:
    def __init__(self, results: dict[str, list[GeocodeCandidate]] | None = None):
        self.results = results or {}
        self.calls: list[str] = []

    async def geocode(self, address: str) -> list[GeocodeCandidate]:
        self.calls.append(address)
        return list(self.results.get(address, []))


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def springfield_geocoder() -> FakeGeocoder:
    return FakeGeocoder(
        {
            "123 Main St, Springfield": [
                GeocodeCandidate(
                    lon=SPRINGFIELD_LON,
                    lat=SPRINGFIELD_LAT,
                    place_name="123 Main St, Springfield, Missouri, United States",
                )
            ]
        }
    )
