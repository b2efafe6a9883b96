from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import httpx

MAPBOX_GEOCODING_URL = "https://api.mapbox.com/geocoding/v5/mapbox.places"
RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


@dataclass(frozen=True)
class ApiConfig:
    timeout: float = 20.0
    retries: int = 3


@dataclass(frozen=True)
class GeocodeCandidate:
    lon: float
    lat: float
    place_name: str


class UpstreamAPIError(RuntimeError):
    def __init__(self, stage: str, message: str):
        super().__init__(f"[{stage}] {message}")
        self.stage = stage
        self.message = message


def _backoff_seconds(attempt: int) -> float:
    return min(8.0, 0.5 * (2**attempt))


def _short_error_text(text: str, limit: int = 240) -> str:
    one_line = " ".join(text.split())
    if len(one_line) <= limit:
        return one_line
    return one_line[:limit] + "..."


async def request_json(
    client: httpx.AsyncClient,
    url: str,
    *,
    params: dict[str, Any] | None,
    stage: str,
    config: ApiConfig,
) -> dict[str, Any]:
    headers = {"User-Agent": "opportunity-map/0.1"}
    for attempt in range(config.retries + 1):
        try:
            response = await client.get(url, params=params, timeout=config.timeout, headers=headers)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            if attempt < config.retries:
                await asyncio.sleep(_backoff_seconds(attempt))
                continue
            raise UpstreamAPIError(stage, f"Network error after retries: {exc!s}") from exc

        status = response.status_code
        if status in RETRYABLE_STATUS_CODES:
            if attempt < config.retries:
                await asyncio.sleep(_backoff_seconds(attempt))
                continue
            raise UpstreamAPIError(stage, f"HTTP {status}: {_short_error_text(response.text)}")

        if 400 <= status < 500:
            raise UpstreamAPIError(stage, f"HTTP {status}: {_short_error_text(response.text)}")

        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamAPIError(
                stage, f"Invalid JSON in upstream response (HTTP {status})"
            ) from exc

    raise UpstreamAPIError(stage, "No request attempts were made.")


def parse_candidates(payload: dict[str, Any]) -> list[GeocodeCandidate]:
    """Keep features that carry a numeric ``[lon, lat]`` center."""
    features = payload.get("features") if isinstance(payload, dict) else None
    if not isinstance(features, list):
        return []

    candidates: list[GeocodeCandidate] = []
    for feature in features:
        if not isinstance(feature, dict):
            continue
        center = feature.get("center")
        if not isinstance(center, (list, tuple)) or len(center) < 2:
            continue
        lon, lat = center[0], center[1]
        if not isinstance(lon, (int, float)) or not isinstance(lat, (int, float)):
            continue
        place_name = feature.get("place_name") or feature.get("text") or ""
        candidates.append(GeocodeCandidate(lon=float(lon), lat=float(lat), place_name=str(place_name)))
    return candidates


class MapboxGeocoder:
    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        access_token: str,
        country: str = "us",
        config: ApiConfig | None = None,
    ):
        self.client = client
        self.access_token = access_token
        self.country = country
        self.config = config or ApiConfig()

    async def geocode(self, address: str) -> list[GeocodeCandidate]:
        url = f"{MAPBOX_GEOCODING_URL}/{quote(address.strip(), safe='')}.json"
        payload = await request_json(
            self.client,
            url,
            params={"access_token": self.access_token, "country": self.country},
            stage="geocoder",
            config=self.config,
        )
        return parse_candidates(payload)
