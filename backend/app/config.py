# Settings: load from .env at project root when the backend starts.
# Existing environment variables always win over values from .env.

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

_project_root = Path(__file__).resolve().parents[2]

DEFAULT_FALLBACK_REGIONS = ("us-west-2", "us-east-2", "us-west-1", "eu-west-1")


def _load_dotenv() -> None:
    """Load .env from project root or cwd; existing env vars win."""
    for path in (_project_root / ".env", Path.cwd() / ".env"):
        if path.is_file():
            with open(path, encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if line and not line.startswith("#") and "=" in line:
                        k, _, v = line.partition("=")
                        v = v.strip().strip('"').strip("'")
                        os.environ.setdefault(k.strip(), v)
            break


_load_dotenv()


def _env_str(name: str, default: str = "") -> str:
    return (os.getenv(name, default) or default).strip()


def _env_float(name: str, default: float) -> float:
    raw = _env_str(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logging.getLogger(__name__).warning("Ignoring non-numeric %s=%r", name, raw)
        return default


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = _env_str(name)
    if not raw:
        return default
    return tuple(part.strip() for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class Settings:
    aws_region: str
    aws_fallback_regions: tuple[str, ...]
    aws_access_key_id: str
    aws_secret_access_key: str
    object_cache_ttl: float
    data_cache_ttl: float
    data_cache_path: str
    mapbox_access_token: str
    geocoder_country: str
    tracts_bucket: str
    tracts_geojson_key: str
    metrics_csv_key: str
    metric_value_field: str
    viewport_settle_seconds: float
    moveend_timeout_seconds: float
    preload_datasets: bool
    cors_origins: tuple[str, ...]
    log_level: str

    @property
    def region_order(self) -> list[str]:
        """Preferred region first, then the fallbacks, without duplicates."""
        order: list[str] = []
        for region in (self.aws_region, *self.aws_fallback_regions):
            if region and region not in order:
                order.append(region)
        return order


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings(
        aws_region=_env_str("AWS_REGION", "us-east-1"),
        aws_fallback_regions=_env_list("AWS_FALLBACK_REGIONS", DEFAULT_FALLBACK_REGIONS),
        aws_access_key_id=_env_str("AWS_ACCESS_KEY_ID"),
        aws_secret_access_key=_env_str("AWS_SECRET_ACCESS_KEY"),
        object_cache_ttl=_env_float("OBJECT_CACHE_TTL_SECONDS", 300.0),
        data_cache_ttl=_env_float("DATA_CACHE_TTL_SECONDS", 24 * 60 * 60.0),
        data_cache_path=_env_str("DATA_CACHE_PATH", ".data_cache.sqlite3"),
        mapbox_access_token=_env_str("MAPBOX_ACCESS_TOKEN"),
        geocoder_country=_env_str("GEOCODER_COUNTRY", "us"),
        tracts_bucket=_env_str("TRACTS_BUCKET", "opportunity-atlas-data"),
        tracts_geojson_key=_env_str("TRACTS_GEOJSON_KEY", "tracts/census_tracts.geojson"),
        metrics_csv_key=_env_str("METRICS_CSV_KEY", "tracts/tract_kfr_rP_gP_p25.csv"),
        metric_value_field=_env_str(
            "METRIC_VALUE_FIELD", "Household_Income_at_Age_35_rP_gP_p25"
        ),
        viewport_settle_seconds=_env_float("VIEWPORT_SETTLE_SECONDS", 0.5),
        moveend_timeout_seconds=_env_float("MOVEEND_TIMEOUT_SECONDS", 3.0),
        preload_datasets=_env_str("PRELOAD_DATASETS", "1") != "0",
        cors_origins=_env_list("CORS_ORIGINS", ("*",)),
        log_level=_env_str("LOG_LEVEL", "INFO").upper(),
    )


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=(level or get_settings().log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
