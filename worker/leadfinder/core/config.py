"""Application configuration helpers."""

import logging
import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict, Optional, Tuple

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


class ConfigError(RuntimeError):
    """Raised when mandatory configuration is missing."""


@dataclass(frozen=True)
class Settings:
    database_url: str
    redis_url: str = ""
    google_places_api_keys: Tuple[str, ...] = ()
    yelp_fusion_api_keys: Tuple[str, ...] = ()
    serpapi_api_key: str = ""
    hunter_api_key: str = ""
    quota_limits: Dict[str, int] = field(default_factory=dict)
    prefer_apis: bool = False
    max_data_age_days: int = 30
    rate_limit_enabled: bool = True
    rate_limit_per_domain: int = 20
    rate_limit_min_delay: float = 2.0
    rate_limit_respect_robots: bool = True
    worker_port: int = 9000
    worker_fanout: int = 3
    worker_max_jobs: int = 4
    job_max_attempts: int = 3
    job_retry_delay: float = 2.0
    fetch_multiplier: float = 1.5
    stream_poll_interval: float = 1.0
    cache_ttl_seconds: int = 24 * 60 * 60
    cache_popularity_threshold: int = 3
    jobs_per_minute: int = 10
    default_phone_region: Optional[str] = "US"
    enrich_use_js_renderer: bool = False


DEFAULT_QUOTAS = {
    "google_places": 200,
    "yelp_fusion": 5000,
    "serpapi": 100,
    "hunter": 25,
}


def _parse_bool(raw: Optional[str], default: bool) -> bool:
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _parse_keys(*raw_values: Optional[str]) -> Tuple[str, ...]:
    """Split comma separated key pools, using the first populated variable."""
    for raw in raw_values:
        if raw:
            keys = tuple(part.strip() for part in raw.split(",") if part.strip())
            if keys:
                return keys
    return ()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("%s=%r is not an integer; using %s", name, raw, default)
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("%s=%r is not a number; using %s", name, raw, default)
        return default


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings from environment variables with sensible defaults."""
    load_dotenv()

    database_url = os.getenv("DATABASE_URL", "")
    redis_url = os.getenv("REDIS_URL", "")
    google_keys = _parse_keys(os.getenv("GOOGLE_PLACES_API_KEYS"), os.getenv("GOOGLE_API_KEY"))
    yelp_keys = _parse_keys(os.getenv("YELP_FUSION_API_KEYS"), os.getenv("YELP_FUSION_API_KEY"))
    serpapi_api_key = os.getenv("SERPAPI_API_KEY", "")
    hunter_api_key = os.getenv("HUNTER_API_KEY", "")

    quota_limits = {
        provider: _env_int(f"QUOTA_{provider.upper()}", default)
        for provider, default in DEFAULT_QUOTAS.items()
    }

    default_phone_region_raw = os.getenv("DEFAULT_PHONE_REGION", "US")
    default_phone_region = default_phone_region_raw.strip().upper() if default_phone_region_raw else None

    if not database_url:
        logger.warning("DATABASE_URL is not set; database operations will fail.")
    if not redis_url:
        logger.warning("REDIS_URL is not set; search cache falls back to process memory.")
    if not (google_keys or yelp_keys or serpapi_api_key):
        logger.warning("No listing provider keys configured; searches will rely on scraping only.")
    if not hunter_api_key:
        logger.warning("HUNTER_API_KEY is not configured; contact lookups are disabled.")

    return Settings(
        database_url=database_url,
        redis_url=redis_url,
        google_places_api_keys=google_keys,
        yelp_fusion_api_keys=yelp_keys,
        serpapi_api_key=serpapi_api_key,
        hunter_api_key=hunter_api_key,
        quota_limits=quota_limits,
        prefer_apis=_parse_bool(os.getenv("API_FALLBACK_PREFER_APIS"), False),
        max_data_age_days=_env_int("MAX_DATA_AGE_DAYS", 30),
        rate_limit_enabled=_parse_bool(os.getenv("RATE_LIMIT_ENABLED"), True),
        rate_limit_per_domain=_env_int("RATE_LIMIT_PER_DOMAIN", 20),
        rate_limit_min_delay=_env_float("RATE_LIMIT_MIN_DELAY", 2.0),
        rate_limit_respect_robots=_parse_bool(os.getenv("RATE_LIMIT_RESPECT_ROBOTS"), True),
        worker_port=_env_int("WORKER_PORT", 9000),
        worker_fanout=max(1, _env_int("WORKER_FANOUT", 3)),
        worker_max_jobs=max(1, _env_int("WORKER_MAX_JOBS", 4)),
        job_max_attempts=max(1, _env_int("JOB_MAX_ATTEMPTS", 3)),
        job_retry_delay=_env_float("JOB_RETRY_DELAY", 2.0),
        fetch_multiplier=max(1.0, _env_float("FETCH_MULTIPLIER", 1.5)),
        stream_poll_interval=_env_float("STREAM_POLL_INTERVAL", 1.0),
        cache_ttl_seconds=_env_int("CACHE_TTL_SECONDS", 24 * 60 * 60),
        cache_popularity_threshold=_env_int("CACHE_POPULARITY_THRESHOLD", 3),
        jobs_per_minute=_env_int("JOBS_PER_MINUTE", 10),
        default_phone_region=default_phone_region,
        enrich_use_js_renderer=_parse_bool(os.getenv("ENRICH_USE_JS_RENDERER"), False),
    )


def require(value: str, name: str) -> str:
    """Return a mandatory setting or raise ConfigError naming the variable."""
    if not value:
        raise ConfigError(f"{name} must be set in the environment.")
    return value
