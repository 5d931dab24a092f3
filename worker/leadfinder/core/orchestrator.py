"""Routes a search across paid providers and the scraping fallback.

Sources are tried in ranked order until enough unique listings have been
collected. A failing or empty source never aborts the search; the router moves
on and, once every source has been tried, returns whatever it gathered.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from leadfinder.core.cancellation import CancellationToken, JobCancelled
from leadfinder.core.config import Settings
from leadfinder.core.errors import ProviderConfigError, ProviderError, ProviderQuotaError
from leadfinder.core.quota import QuotaRegistry
from leadfinder.core.rate_limiter import DomainRateLimiter
from leadfinder.etl.dedupe import BusinessAggregator
from leadfinder.vendors.base import ListingProvider
from leadfinder.vendors.directory_scraper import DirectoryScraper
from leadfinder.vendors.google_places import GooglePlacesProvider
from leadfinder.vendors.serpapi_maps import SerpApiMapsProvider
from leadfinder.vendors.yelp_fusion import YelpFusionProvider

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, int, int], None]


@dataclass
class SourceAttempt:
    source: str
    results: int = 0
    added: int = 0
    duration_ms: float = 0.0
    error: Optional[str] = None
    skipped: Optional[str] = None


@dataclass
class DiscoveryResult:
    attempts: List[SourceAttempt] = field(default_factory=list)

    @property
    def sources_used(self) -> List[str]:
        return [attempt.source for attempt in self.attempts if attempt.results]

    @property
    def errors(self) -> Dict[str, str]:
        return {attempt.source: attempt.error for attempt in self.attempts if attempt.error}


class SourceOrchestrator:
    def __init__(
        self,
        providers: Sequence[ListingProvider],
        registry: QuotaRegistry,
        *,
        scraper: Optional[ListingProvider] = None,
        prefer_apis: bool = False,
        max_data_age_days: int = 30,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.providers = sorted(providers, key=lambda provider: (provider.priority, provider.cost_per_call_usd))
        self.registry = registry
        self.scraper = scraper
        self.prefer_apis = prefer_apis
        self.max_data_age_days = max_data_age_days
        self._clock = clock

    def ranked_sources(self) -> List[ListingProvider]:
        if self.scraper is None:
            return list(self.providers)
        if self.prefer_apis:
            return [*self.providers, self.scraper]
        return [self.scraper, *self.providers]

    def _skip_reason(self, source: ListingProvider) -> Optional[str]:
        if not source.is_api:
            return None
        if not self.registry.is_available(source.name):
            return "unavailable or out of quota"
        if source.data_age_days > self.max_data_age_days:
            return f"data older than {self.max_data_age_days} days"
        return None

    def discover(
        self,
        query: str,
        location: Optional[str],
        wanted: int,
        aggregator: BusinessAggregator,
        token: Optional[CancellationToken] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> DiscoveryResult:
        """Fill ``aggregator`` with up to ``wanted`` unique listings."""
        result = DiscoveryResult()
        for source in self.ranked_sources():
            if token is not None:
                token.checkpoint()
            needed = wanted - len(aggregator)
            if needed <= 0:
                break

            attempt = SourceAttempt(source=source.name)
            result.attempts.append(attempt)
            attempt.skipped = self._skip_reason(source)
            if attempt.skipped:
                logger.info("Skipping %s: %s", source.name, attempt.skipped)
                continue

            started = self._clock()
            try:
                candidates = source.fetch_listings(query, location, needed)
            except ProviderConfigError as exc:
                attempt.error = str(exc)
                self.registry.mark_unavailable(source.name, exc.message)
                candidates = []
            except ProviderQuotaError as exc:
                attempt.error = str(exc)
                logger.warning("%s out of quota: %s", source.name, exc)
                candidates = []
            except ProviderError as exc:
                attempt.error = str(exc)
                logger.warning("%s failed, falling back to next source: %s", source.name, exc)
                candidates = []
            except JobCancelled:
                raise
            except Exception as exc:  # noqa: BLE001
                attempt.error = f"{type(exc).__name__}: {exc}"
                logger.exception("%s raised unexpectedly, falling back to next source", source.name)
                candidates = []
            attempt.duration_ms = (self._clock() - started) * 1000.0
            attempt.results = len(candidates)
            attempt.added = aggregator.add_all(candidates)
            self.registry.record_usage(source.name, len(candidates), attempt.duration_ms, source.is_api)
            logger.info(
                "%s returned %d listing(s), %d kept (%d/%d unique)",
                source.name,
                attempt.results,
                attempt.added,
                len(aggregator),
                wanted,
            )
            if on_progress is not None:
                on_progress(source.name, len(aggregator), wanted)

        if len(aggregator) < wanted:
            logger.info("All sources tried; returning %d of %d requested listing(s)", len(aggregator), wanted)
        return result

    def can_fulfill(self, count: int) -> Dict[str, object]:
        """Estimate whether paid providers alone can cover ``count`` results."""
        estimates = []
        for provider in self.providers:
            if not self.registry.is_available(provider.name):
                continue
            estimated = self.registry.remaining(provider.name) * provider.results_per_call
            if estimated > 0:
                estimates.append((provider.name, estimated))

        total = sum(estimated for _, estimated in estimates)
        return {
            "canFulfill": total >= count,
            "estimatedFromApis": min(total, count),
            "needsScraping": total < count,
            "recommendedApis": [name for name, _ in estimates[:3]],
        }


def build_registry(settings: Settings) -> QuotaRegistry:
    registry = QuotaRegistry()
    limits = settings.quota_limits
    registry.register(
        "google_places",
        settings.google_places_api_keys,
        limits.get("google_places", 0),
        cost_per_call_usd=GooglePlacesProvider.cost_per_call_usd,
        results_per_call=GooglePlacesProvider.results_per_call,
    )
    registry.register(
        "yelp_fusion",
        settings.yelp_fusion_api_keys,
        limits.get("yelp_fusion", 0),
        cost_per_call_usd=YelpFusionProvider.cost_per_call_usd,
        results_per_call=YelpFusionProvider.results_per_call,
    )
    registry.register(
        "serpapi",
        [settings.serpapi_api_key] if settings.serpapi_api_key else [],
        limits.get("serpapi", 0),
        cost_per_call_usd=SerpApiMapsProvider.cost_per_call_usd,
        results_per_call=SerpApiMapsProvider.results_per_call,
    )
    registry.register(
        "hunter",
        [settings.hunter_api_key] if settings.hunter_api_key else [],
        limits.get("hunter", 0),
        results_per_call=1,
    )
    return registry


def build_orchestrator(
    settings: Settings, registry: QuotaRegistry, rate_limiter: DomainRateLimiter
) -> SourceOrchestrator:
    region = settings.default_phone_region
    providers: List[ListingProvider] = [
        GooglePlacesProvider(registry, default_region=region),
        YelpFusionProvider(registry, default_region=region),
        SerpApiMapsProvider(registry, default_region=region),
    ]
    return SourceOrchestrator(
        providers,
        registry,
        scraper=DirectoryScraper(rate_limiter, default_region=region),
        prefer_apis=settings.prefer_apis,
        max_data_age_days=settings.max_data_age_days,
    )
