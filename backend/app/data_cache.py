"""Two-level dataset cache in front of the object store.

Lookups go memory first, then a persisted key-value store, then the network.
Entries are ``{data, timestamp}`` records keyed ``<format>:<bucket>:<key>``
and expire after a fixed window (24h by default).  CSV payloads are parsed
into row dicts before they are cached so every later hit skips parsing.
"""

from __future__ import annotations

import asyncio
import io
import json
import logging
import sqlite3
import time
from copy import deepcopy
from dataclasses import dataclass
from typing import Any, Callable, Protocol

import httpx
import pandas as pd

from .object_store_service import DataFormat, ObjectStoreError, ObjectStoreGateway

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 24 * 60 * 60


class DataCacheError(RuntimeError):
    """A dataset could not be fetched from its source."""


class TabularParseError(ValueError):
    pass


class KeyValueStore(Protocol):
    def get_item(self, key: str) -> str | None: ...

    def set_item(self, key: str, value: str) -> None: ...

    def remove_item(self, key: str) -> None: ...


class DatasetSource(Protocol):
    async def fetch(self, bucket: str, key: str, fmt: DataFormat, *, fresh: bool = False) -> Any: ...


class MemoryKeyValueStore:
    def __init__(self) -> None:
        self._items: dict[str, str] = {}

    def get_item(self, key: str) -> str | None:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def __len__(self) -> int:
        return len(self._items)


class SQLiteKeyValueStore:
    """String key/value store persisted in a single sqlite table."""

    def __init__(self, path: str):
        self.path = path
        self.conn = sqlite3.connect(self.path, check_same_thread=False)
        self._create_tables()

    def _create_tables(self) -> None:
        cur = self.conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS cache_entries (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
            """
        )
        self.conn.commit()

    def get_item(self, key: str) -> str | None:
        cur = self.conn.cursor()
        cur.execute("SELECT value FROM cache_entries WHERE key = ?", (key,))
        row = cur.fetchone()
        return row[0] if row else None

    def set_item(self, key: str, value: str) -> None:
        self.conn.execute(
            "INSERT OR REPLACE INTO cache_entries (key, value) VALUES (?, ?)",
            (key, value),
        )
        self.conn.commit()

    def remove_item(self, key: str) -> None:
        self.conn.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
        self.conn.commit()

    def close(self) -> None:
        self.conn.close()


class HttpObjectStoreSource:
    """Reads datasets through the ``/api/s3`` endpoint."""

    def __init__(self, client: httpx.AsyncClient, *, path: str = "/api/s3", clock: Callable[[], float] = time.time):
        self.client = client
        self.path = path
        self.clock = clock

    async def fetch(self, bucket: str, key: str, fmt: DataFormat, *, fresh: bool = False) -> Any:
        params: dict[str, Any] = {"bucket": bucket, "key": key, "type": fmt}
        if fresh:
            params["nocache"] = int(self.clock() * 1000)
        try:
            response = await self.client.get(self.path, params=params)
        except httpx.HTTPError as exc:
            raise DataCacheError(f"Failed to reach object store API: {exc!s}") from exc

        if response.status_code != 200:
            raise DataCacheError(
                f"Failed to fetch from object store API: {response.status_code} - {response.text}"
            )
        if fmt == "csv":
            return response.text
        try:
            return response.json()
        except ValueError as exc:
            raise DataCacheError(f"Invalid JSON for s3://{bucket}/{key}") from exc


class GatewaySource:
    """Reads datasets from an in-process gateway without an HTTP hop."""

    def __init__(self, gateway: ObjectStoreGateway):
        self.gateway = gateway

    async def fetch(self, bucket: str, key: str, fmt: DataFormat, *, fresh: bool = False) -> Any:
        try:
            result = await asyncio.to_thread(
                self.gateway.fetch, bucket, key, fmt, use_cache=not fresh
            )
        except ObjectStoreError as exc:
            raise DataCacheError(str(exc)) from exc
        if fmt == "csv":
            return result.body
        try:
            return json.loads(result.body)
        except ValueError as exc:
            raise DataCacheError(f"Invalid JSON for s3://{bucket}/{key}") from exc


def parse_tabular(text: str) -> list[dict[str, Any]]:
    """Parse CSV text (header row first) into rows with numeric columns typed."""
    if not text.strip():
        return []
    try:
        frame = pd.read_csv(io.StringIO(text), skip_blank_lines=True)
    except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as exc:
        raise TabularParseError(f"Could not parse CSV payload: {exc!s}") from exc
    # to_json turns NaN into null and numpy scalars into plain numbers.
    return json.loads(frame.to_json(orient="records", double_precision=15))


@dataclass
class CachedValue:
    data: Any
    timestamp: float


class DataCache:
    def __init__(
        self,
        source: DatasetSource,
        *,
        store: KeyValueStore | None = None,
        ttl: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.source = source
        self.store: KeyValueStore = store if store is not None else MemoryKeyValueStore()
        self.ttl = ttl
        self.clock = clock
        self._memory: dict[str, CachedValue] = {}
        self._background: set[asyncio.Task] = set()

    @staticmethod
    def storage_key(bucket: str, key: str, fmt: DataFormat) -> str:
        return f"{fmt}:{bucket}:{key}"

    def _is_fresh(self, timestamp: float) -> bool:
        return self.clock() - timestamp < self.ttl

    def _read_memory(self, storage_key: str) -> CachedValue | None:
        cached = self._memory.get(storage_key)
        if cached is None:
            return None
        if self._is_fresh(cached.timestamp):
            return cached
        self._memory.pop(storage_key, None)
        return None

    def _read_persisted(self, storage_key: str) -> CachedValue | None:
        try:
            raw = self.store.get_item(storage_key)
        except Exception as exc:
            logger.warning("Persisted cache read failed for %s: %s", storage_key, exc)
            return None
        if raw is None:
            return None

        try:
            record = json.loads(raw)
            cached = CachedValue(data=record["data"], timestamp=float(record["timestamp"]))
        except (ValueError, TypeError, KeyError) as exc:
            logger.warning("Discarding corrupt cache entry %s: %s", storage_key, exc)
            self._remove_persisted(storage_key)
            return None

        if not self._is_fresh(cached.timestamp):
            self._remove_persisted(storage_key)
            return None
        return cached

    def _remove_persisted(self, storage_key: str) -> None:
        try:
            self.store.remove_item(storage_key)
        except Exception as exc:
            logger.warning("Could not remove cache entry %s: %s", storage_key, exc)

    def _write(self, storage_key: str, data: Any) -> None:
        cached = CachedValue(data=data, timestamp=self.clock())
        self._memory[storage_key] = cached
        try:
            self.store.set_item(
                storage_key,
                json.dumps({"data": cached.data, "timestamp": cached.timestamp}),
            )
        except Exception as exc:
            logger.warning("Could not persist cache entry %s: %s", storage_key, exc)

    async def get(
        self,
        bucket: str,
        key: str,
        fmt: DataFormat = "json",
        use_cache: bool = True,
    ) -> Any:
        storage_key = self.storage_key(bucket, key, fmt)

        if use_cache:
            cached = self._read_memory(storage_key)
            if cached is None:
                cached = self._read_persisted(storage_key)
                if cached is not None:
                    self._memory[storage_key] = cached
            if cached is not None:
                return deepcopy(cached.data)

        payload = await self.source.fetch(bucket, key, fmt, fresh=not use_cache)
        data = parse_tabular(payload) if fmt == "csv" else payload
        self._write(storage_key, data)
        return deepcopy(data)

    async def preload(self, bucket: str, key: str, fmt: DataFormat = "json") -> None:
        """Warm both cache levels; failures are logged and dropped."""
        try:
            await self.get(bucket, key, fmt)
        except Exception as exc:
            logger.warning("Preload of %s failed: %s", self.storage_key(bucket, key, fmt), exc)

    def preload_in_background(self, bucket: str, key: str, fmt: DataFormat = "json") -> asyncio.Task:
        task = asyncio.create_task(self.preload(bucket, key, fmt))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def clear_memory(self) -> None:
        self._memory.clear()
