"""Tests for the two-level dataset cache (memory + persisted store)."""
from __future__ import annotations

import asyncio
import io
import json

import httpx
import pytest

from backend.app.data_cache import (
    DataCache,
    DataCacheError,
    GatewaySource,
    HttpObjectStoreSource,
    MemoryKeyValueStore,
    SQLiteKeyValueStore,
    TabularParseError,
    parse_tabular,
)
from backend.app.object_store_service import ObjectStoreGateway

from conftest import METRICS_CSV, StaticSource, tract_collection

DAY = 24 * 60 * 60

_PAYLOADS = {
    ("bucket", "tracts.geojson", "json"): tract_collection(),
    ("bucket", "metrics.csv", "csv"): METRICS_CSV,
}


class _FailingSource:
    async def fetch(self, bucket, key, fmt, *, fresh=False):
        raise DataCacheError("object store unavailable")


class _WriteFailingStore(MemoryKeyValueStore):
    def set_item(self, key: str, value: str) -> None:
        raise OSError("disk full")


def _cache(clock, store=None, source=None) -> tuple[DataCache, StaticSource]:
    source = source or StaticSource(_PAYLOADS)
    store = store if store is not None else MemoryKeyValueStore()
    return DataCache(source, store=store, clock=clock), source


def test_round_trip_returns_equal_value_without_refetch(clock):
    cache, source = _cache(clock)
    first = asyncio.run(cache.get("bucket", "tracts.geojson", "json"))
    second = asyncio.run(cache.get("bucket", "tracts.geojson", "json"))
    assert second == first == tract_collection()
    assert len(source.calls) == 1


def test_use_cache_false_forces_network_fetch(clock):
    cache, source = _cache(clock)
    asyncio.run(cache.get("bucket", "tracts.geojson", "json"))
    asyncio.run(cache.get("bucket", "tracts.geojson", "json", use_cache=False))
    assert len(source.calls) == 2
    assert source.calls[-1][3] is True


def test_csv_within_ttl_issues_one_network_call(clock):
    cache, source = _cache(clock)
    rows = asyncio.run(cache.get("bucket", "metrics.csv", "csv"))
    clock.advance(DAY - 1)
    again = asyncio.run(cache.get("bucket", "metrics.csv", "csv"))
    assert again == rows
    assert len(source.calls) == 1
    assert rows[0] == {"tract": 29165030210, "Household_Income_at_Age_35_rP_gP_p25": 105732}


def test_returned_data_is_isolated_from_cache(clock):
    cache, _ = _cache(clock)
    data = asyncio.run(cache.get("bucket", "tracts.geojson", "json"))
    data["features"].clear()
    fresh = asyncio.run(cache.get("bucket", "tracts.geojson", "json"))
    assert len(fresh["features"]) == 2


def test_expired_entries_are_refetched_and_deleted(clock):
    store = MemoryKeyValueStore()
    cache, source = _cache(clock, store=store)
    asyncio.run(cache.get("bucket", "metrics.csv", "csv"))
    clock.advance(DAY)

    calls_before = len(source.calls)
    cache.clear_memory()
    # Swap in a source that fails so we can see the expired entry is gone first.
    cache.source = _FailingSource()
    with pytest.raises(DataCacheError):
        asyncio.run(cache.get("bucket", "metrics.csv", "csv"))
    assert store.get_item("csv:bucket:metrics.csv") is None
    assert len(source.calls) == calls_before


def test_persisted_entry_survives_new_cache_instance(clock, tmp_path):
    path = str(tmp_path / "cache.sqlite3")
    cache, source = _cache(clock, store=SQLiteKeyValueStore(path))
    asyncio.run(cache.get("bucket", "tracts.geojson", "json"))

    reloaded, reloaded_source = _cache(clock, store=SQLiteKeyValueStore(path))
    data = asyncio.run(reloaded.get("bucket", "tracts.geojson", "json"))
    assert data == tract_collection()
    assert reloaded_source.calls == []


def test_persisted_record_shape(clock):
    store = MemoryKeyValueStore()
    cache, _ = _cache(clock, store=store)
    asyncio.run(cache.get("bucket", "metrics.csv", "csv"))
    record = json.loads(store.get_item("csv:bucket:metrics.csv"))
    assert record["timestamp"] == clock.now
    assert isinstance(record["data"], list)


def test_corrupt_persisted_entry_falls_through_to_network(clock):
    store = MemoryKeyValueStore()
    store.set_item("json:bucket:tracts.geojson", "{this is not json")
    cache, source = _cache(clock, store=store)
    data = asyncio.run(cache.get("bucket", "tracts.geojson", "json"))
    assert data == tract_collection()
    assert len(source.calls) == 1
    assert json.loads(store.get_item("json:bucket:tracts.geojson"))["data"] == data


def test_persist_failure_does_not_fail_the_call(clock):
    store = _WriteFailingStore()
    cache, source = _cache(clock, store=store)
    assert cache.store is store
    data = asyncio.run(cache.get("bucket", "tracts.geojson", "json"))
    assert data == tract_collection()
    asyncio.run(cache.get("bucket", "tracts.geojson", "json"))
    assert len(source.calls) == 1
    assert len(store) == 0


def test_preload_warms_cache(clock):
    cache, source = _cache(clock)
    asyncio.run(cache.preload("bucket", "metrics.csv", "csv"))
    asyncio.run(cache.get("bucket", "metrics.csv", "csv"))
    assert len(source.calls) == 1


def test_preload_swallows_errors(clock):
    cache, _ = _cache(clock, source=_FailingSource())
    assert asyncio.run(cache.preload("bucket", "metrics.csv", "csv")) is None


def test_preload_in_background_runs_as_task(clock):
    cache, source = _cache(clock)

    async def _run():
        task = cache.preload_in_background("bucket", "tracts.geojson", "json")
        await task
        return await cache.get("bucket", "tracts.geojson", "json")

    assert asyncio.run(_run()) == tract_collection()
    assert len(source.calls) == 1


def test_parse_error_propagates(clock):
    source = StaticSource({("bucket", "bad.csv", "csv"): "a,b\n1,2\n3,4,5,6\n"})
    cache, _ = _cache(clock, source=source)
    with pytest.raises(TabularParseError):
        asyncio.run(cache.get("bucket", "bad.csv", "csv"))


def test_parse_tabular_types_numeric_columns():
    rows = parse_tabular("name,count,share\nalpha,3,0.5\nbeta,,1.25\n")
    assert rows == [
        {"name": "alpha", "count": 3.0, "share": 0.5},
        {"name": "beta", "count": None, "share": 1.25},
    ]


def test_parse_tabular_empty_text():
    assert parse_tabular("   \n") == []


def test_storage_key_format():
    assert DataCache.storage_key("bucket", "path/to.csv", "csv") == "csv:bucket:path/to.csv"


def test_http_source_reads_api_and_busts_cache(clock):
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.params["type"] == "csv":
            return httpx.Response(200, text="a,b\n1,2\n", headers={"Content-Type": "text/csv"})
        return httpx.Response(200, json={"type": "FeatureCollection", "features": []})

    async def _run():
        async with httpx.AsyncClient(
            transport=httpx.MockTransport(handler), base_url="http://testserver"
        ) as client:
            source = HttpObjectStoreSource(client, clock=clock)
            text = await source.fetch("bucket", "a.csv", "csv")
            data = await source.fetch("bucket", "b.json", "json", fresh=True)
            return text, data

    text, data = asyncio.run(_run())
    assert text == "a,b\n1,2\n"
    assert data["type"] == "FeatureCollection"
    assert seen[0].url.path == "/api/s3"
    assert seen[0].url.params["bucket"] == "bucket"
    assert "nocache" not in seen[0].url.params
    assert seen[1].url.params["nocache"] == str(int(clock.now * 1000))


def test_http_source_raises_on_error_status():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"error": "Failed to fetch"})

    async def _run():
        async with httpx.AsyncClient(
            transport=httpx.MockTransport(handler), base_url="http://testserver"
        ) as client:
            await HttpObjectStoreSource(client).fetch("bucket", "a.json", "json")

    with pytest.raises(DataCacheError):
        asyncio.run(_run())


class _UndecodableS3:
    def get_object(self, Bucket, Key):
        return {"Body": io.BytesIO(b"\xff\xfe\x00")}


def test_gateway_source_reports_undecodable_objects_as_cache_errors():
    gateway = ObjectStoreGateway(
        regions=["us-east-1", "us-west-2"],
        client_factory=lambda region: _UndecodableS3(),
    )
    with pytest.raises(DataCacheError) as excinfo:
        asyncio.run(GatewaySource(gateway).fetch("bucket", "metrics.csv", "csv"))
    assert "us-west-2" in str(excinfo.value)
