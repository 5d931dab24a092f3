"""Yelp Fusion business search."""

import logging
from typing import List, Optional

import requests

from leadfinder.core.errors import ProviderError
from leadfinder.core.models import BusinessCandidate
from leadfinder.core.quota import QuotaRegistry
from leadfinder.etl.transform import from_yelp_business
from leadfinder.vendors.base import ListingProvider

logger = logging.getLogger(__name__)

_BASE_URL = "https://api.yelp.com/v3"
MAX_PER_REQUEST = 50
# Stay within the free tier's paging allowance.
MAX_OFFSET = 200


class YelpFusionProvider(ListingProvider):
    name = "yelp_fusion"
    priority = 2
    cost_per_call_usd = 0.0
    results_per_call = MAX_PER_REQUEST

    def __init__(
        self,
        registry: Optional[QuotaRegistry] = None,
        session: Optional[requests.Session] = None,
        *,
        default_region: Optional[str] = "US",
    ) -> None:
        super().__init__(registry, session)
        self.default_region = default_region

    def fetch_listings(self, query: str, location: Optional[str], limit: int) -> List[BusinessCandidate]:
        if not location:
            # Yelp requires a location for every search.
            raise ProviderError(self.name, "location is required")

        candidates: List[BusinessCandidate] = []
        offset = 0
        while len(candidates) < limit and offset < min(limit, MAX_OFFSET):
            request_limit = min(MAX_PER_REQUEST, limit - len(candidates))
            api_key = self._reserve_page_key(len(candidates))
            if api_key is None:
                break
            response = self._get(
                f"{_BASE_URL}/businesses/search",
                params={"term": query, "location": location, "limit": request_limit, "offset": offset},
                headers={"Authorization": f"Bearer {api_key}", "Accept": "application/json"},
            )
            try:
                payload = response.json()
            except ValueError as exc:
                raise ProviderError(self.name, f"invalid JSON response: {exc}") from exc
            if not isinstance(payload, dict):
                raise ProviderError(self.name, f"unexpected response body: {type(payload).__name__}")

            businesses = payload.get("businesses") or []
            logger.info("Yelp returned %d business(es) at offset %d (total=%s)", len(businesses), offset, payload.get("total"))
            for raw in businesses:
                if len(candidates) >= limit:
                    break
                candidate = from_yelp_business(raw, self.default_region)
                if candidate is not None:
                    candidates.append(candidate)

            if len(businesses) < request_limit:
                break
            offset += len(businesses)
        return candidates
