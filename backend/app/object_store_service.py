"""Object store gateway: S3 reads with region fallback and a short-lived cache.

Datasets live in S3 buckets whose region is not known up front.  A fetch
tries the preferred region, follows a ``PermanentRedirect`` straight to the
region S3 reports, and otherwise walks a fixed list of fallback regions.
Successful reads are cached in-process for a few minutes keyed by
``(bucket, key, format)``.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Literal

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .config import Settings

logger = logging.getLogger(__name__)

DataFormat = Literal["json", "csv"]

CONTENT_TYPES: dict[str, str] = {
    "csv": "text/csv",
    "json": "application/json",
}

REDIRECT_ERROR_CODES = {"PermanentRedirect", "301"}
BUCKET_REGION_HEADER = "x-amz-bucket-region"

ClientFactory = Callable[[str], Any]
CacheKey = tuple[str, str, str]


class ObjectStoreError(RuntimeError):
    """Raised once every region has been tried and none returned the object."""

    def __init__(self, bucket: str, key: str, failures: list[dict[str, str]]):
        self.bucket = bucket
        self.key = key
        self.failures = failures
        if failures:
            detail = "; ".join(f"{f['region']}: {f['message']}" for f in failures)
        else:
            detail = "no regions configured"
        super().__init__(f"Failed to fetch s3://{bucket}/{key} from all regions ({detail})")


@dataclass
class CacheEntry:
    payload: str
    content_type: str
    timestamp: float
    ttl: float

    def is_valid(self, now: float) -> bool:
        return now - self.timestamp < self.ttl


@dataclass(frozen=True)
class ObjectResult:
    body: str
    content_type: str
    cache_hit: bool
    region: str | None = None


def build_client_factory(settings: Settings) -> ClientFactory:
    """Return a callable building an S3 client for a given region."""

    def _factory(region: str) -> Any:
        kwargs: dict[str, Any] = {
            "region_name": region,
            "config": Config(signature_version="s3v4"),
        }
        if settings.aws_access_key_id and settings.aws_secret_access_key:
            kwargs["aws_access_key_id"] = settings.aws_access_key_id
            kwargs["aws_secret_access_key"] = settings.aws_secret_access_key
        return boto3.client("s3", **kwargs)

    return _factory


def _short_error_text(text: str, limit: int = 240) -> str:
    one_line = " ".join(text.split())
    if len(one_line) <= limit:
        return one_line
    return one_line[:limit] + "..."


def _redirect_region(exc: ClientError) -> str | None:
    response = exc.response or {}
    error = response.get("Error", {})
    metadata = response.get("ResponseMetadata", {})
    code = str(error.get("Code", ""))
    status = metadata.get("HTTPStatusCode")
    if code not in REDIRECT_ERROR_CODES and status != 301:
        return None
    headers = metadata.get("HTTPHeaders", {}) or {}
    region = headers.get(BUCKET_REGION_HEADER) or error.get("Region")
    return str(region) if region else None


class ObjectStoreGateway:
    def __init__(
        self,
        *,
        regions: list[str],
        client_factory: ClientFactory,
        cache_ttl: float = 300.0,
        clock: Callable[[], float] = time.time,
    ):
        self.regions = list(regions)
        self.client_factory = client_factory
        self.cache_ttl = cache_ttl
        self.clock = clock
        self._cache: dict[CacheKey, CacheEntry] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> "ObjectStoreGateway":
        return cls(
            regions=settings.region_order,
            client_factory=build_client_factory(settings),
            cache_ttl=settings.object_cache_ttl,
        )

    def fetch(
        self,
        bucket: str,
        key: str,
        fmt: DataFormat = "json",
        *,
        use_cache: bool = True,
    ) -> ObjectResult:
        if not bucket or not key:
            raise ValueError("bucket and key must be non-empty")
        if fmt not in CONTENT_TYPES:
            raise ValueError(f"Unsupported format: {fmt!r}")

        cache_key: CacheKey = (bucket, key, fmt)
        content_type = CONTENT_TYPES[fmt]

        if use_cache:
            entry = self._cache.get(cache_key)
            if entry is not None:
                if entry.is_valid(self.clock()):
                    logger.debug("Object cache HIT for %s", cache_key)
                    return ObjectResult(entry.payload, entry.content_type, cache_hit=True)
                self._cache.pop(cache_key, None)

        logger.debug("Object cache MISS for %s", cache_key)
        body, region = self._fetch_with_region_fallback(bucket, key)
        self._cache[cache_key] = CacheEntry(
            payload=body,
            content_type=content_type,
            timestamp=self.clock(),
            ttl=self.cache_ttl,
        )
        return ObjectResult(body, content_type, cache_hit=False, region=region)

    def _get_object_text(self, region: str, bucket: str, key: str) -> str:
        client = self.client_factory(region)
        response = client.get_object(Bucket=bucket, Key=key)
        body = response.get("Body")
        if body is None:
            raise ValueError("Empty response body")
        return body.read().decode("utf-8")

    def _fetch_with_region_fallback(self, bucket: str, key: str) -> tuple[str, str]:
        failures: list[dict[str, str]] = []
        tried: set[str] = set()
        pending = list(self.regions)

        while pending:
            region = pending.pop(0)
            if region in tried:
                continue
            tried.add(region)

            try:
                text = self._get_object_text(region, bucket, key)
            except ClientError as exc:
                logger.warning("Error fetching s3://%s/%s in %s: %s", bucket, key, region, exc)
                failures.append({"region": region, "message": _short_error_text(str(exc))})
                correct_region = _redirect_region(exc)
                if correct_region and correct_region not in tried:
                    logger.warning("Detected bucket region %s from redirect", correct_region)
                    pending.insert(0, correct_region)
                continue
            except (BotoCoreError, ValueError) as exc:
                # ValueError covers a missing body and bytes that are not UTF-8.
                logger.warning("Error fetching s3://%s/%s in %s: %s", bucket, key, region, exc)
                failures.append({"region": region, "message": _short_error_text(str(exc))})
                continue

            logger.info("Fetched s3://%s/%s using region %s", bucket, key, region)
            return text, region

        raise ObjectStoreError(bucket, key, failures)
