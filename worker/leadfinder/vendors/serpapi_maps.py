"""SerpAPI Google Maps listing source."""

from __future__ import annotations

import logging
import random
import time
from typing import Any, Callable, Dict, List, Optional

from serpapi import GoogleSearch

from leadfinder.core.errors import ProviderConfigError, ProviderError
from leadfinder.core.models import BusinessCandidate
from leadfinder.core.quota import QuotaRegistry
from leadfinder.etl.transform import from_serpapi_place
from leadfinder.vendors.base import ListingProvider, search_text

logger = logging.getLogger(__name__)

PROVIDER_NAME = "serpapi"
RETRY_LIMIT = 2
RETRY_DELAY_SECONDS = 1.2
PAGE_SIZE = 20


def build_serpapi_params(query: str, api_key: str, start: int = 0) -> Dict[str, Any]:
    """Construct SerpAPI request parameters for the Google Maps engine."""
    if not query or not query.strip():
        raise ValueError("Query must be provided for SerpAPI lookups.")

    params: Dict[str, Any] = {
        "engine": "google_maps",
        "q": query.strip(),
        "api_key": api_key,
        "type": "search",
    }
    if start:
        params["start"] = start
    return params


def _error_payload(data: Dict[str, Any]) -> Dict[str, Any]:
    """Translate SerpAPI's in-band ``error`` field; an empty result set is not an error."""
    message = str(data["error"])
    lowered = message.lower()
    if "api key" in lowered:
        raise ProviderConfigError(PROVIDER_NAME, message)
    if "hasn't returned any results" in lowered:
        return {"local_results": []}
    raise ProviderError(PROVIDER_NAME, f"error response: {message}")


def fetch_from_serpapi(
    params: Dict[str, Any],
    *,
    search_factory: Callable[[Dict[str, Any]], Any] = GoogleSearch,
    sleep: Callable[[float], None] = time.sleep,
) -> Dict[str, Any]:
    """Run one Google Maps search, retrying transient failures up to RETRY_LIMIT times.

    SerpAPI charges per request; every attempt is logged so usage can be
    reconciled against the account dashboard.
    """
    attempts = RETRY_LIMIT + 1
    for attempt in range(1, attempts + 1):
        logger.info("Calling SerpAPI (attempt %s) for query=%s", attempt, params.get("q"))
        try:
            data = search_factory(params).get_dict()
            if not data:
                raise ProviderError(PROVIDER_NAME, "empty payload")
            return _error_payload(data) if "error" in data else data
        except ProviderConfigError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.warning("SerpAPI call %s/%s for %r failed: %s", attempt, attempts, params.get("q"), exc)
            if attempt == attempts:
                logger.error("Giving up on SerpAPI query=%s", params.get("q"))
                if isinstance(exc, ProviderError):
                    raise
                raise ProviderError(PROVIDER_NAME, str(exc)) from exc
            sleep(RETRY_DELAY_SECONDS + random.uniform(0, 0.8))


# Keys under which the Maps engine has been seen to nest its listings.
_NESTED_LISTING_KEYS = ("places", "results", "local_results")


def _listing_items(data: Dict[str, Any]) -> List[Any]:
    local = data.get("local_results")
    if isinstance(local, list):
        return local
    if isinstance(local, dict):
        nested = next((local[key] for key in _NESTED_LISTING_KEYS if isinstance(local.get(key), list)), None)
        if nested is not None:
            return nested

    # A query naming one business answers with its place card instead.
    place = data.get("place_results")
    if isinstance(place, dict):
        return [place]
    return place if isinstance(place, list) else []


def parse_serpapi_maps(data: Optional[Dict[str, Any]], default_region: Optional[str] = "US") -> List[BusinessCandidate]:
    """Normalize every listing in a SerpAPI payload, skipping malformed entries."""
    if not data:
        return []
    parsed = (from_serpapi_place(item, default_region) for item in _listing_items(data) if isinstance(item, dict))
    return [candidate for candidate in parsed if candidate is not None]


class SerpApiMapsProvider(ListingProvider):
    name = PROVIDER_NAME
    priority = 3
    cost_per_call_usd = 0.01
    results_per_call = PAGE_SIZE

    def __init__(
        self,
        registry: Optional[QuotaRegistry] = None,
        *,
        default_region: Optional[str] = "US",
        search_factory: Callable[[Dict[str, Any]], Any] = GoogleSearch,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(registry)
        self.default_region = default_region
        self._search_factory = search_factory
        self._sleep = sleep

    def fetch_listings(self, query: str, location: Optional[str], limit: int) -> List[BusinessCandidate]:
        text = search_text(query, location)
        candidates: List[BusinessCandidate] = []
        start = 0
        while len(candidates) < limit:
            api_key = self._reserve_page_key(len(candidates))
            if api_key is None:
                break
            params = build_serpapi_params(text, api_key, start)
            page = parse_serpapi_maps(
                fetch_from_serpapi(params, search_factory=self._search_factory, sleep=self._sleep),
                self.default_region,
            )
            candidates.extend(page)
            if len(page) < PAGE_SIZE:
                break
            start += PAGE_SIZE
        return candidates[:limit]
