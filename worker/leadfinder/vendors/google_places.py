"""Client utilities for the Google Places API."""

import logging
import time
from typing import Any, Callable, Dict, List, Optional

import requests

from leadfinder.core.errors import ProviderConfigError, ProviderError, ProviderQuotaError
from leadfinder.core.models import BusinessCandidate
from leadfinder.core.quota import QuotaRegistry
from leadfinder.etl.transform import from_google_place
from leadfinder.vendors.base import REQUEST_TIMEOUT, ListingProvider, retrying_session, search_text

logger = logging.getLogger(__name__)
_SESSION = retrying_session()
_BASE_URL = "https://maps.googleapis.com/maps/api/place"

PROVIDER_NAME = "google_places"
MAX_PAGES = 3
# A next_page_token is only valid a short while after it is issued.
PAGE_TOKEN_DELAY_SECONDS = 2.0
DETAIL_FIELDS = (
    "place_id,name,formatted_address,formatted_phone_number,international_phone_number,"
    "website,rating,user_ratings_total,types,address_components,business_status"
)


class GooglePlacesError(ProviderError):
    """Raised when the Places API returns a non-successful response."""

    def __init__(self, message: str) -> None:
        super().__init__(PROVIDER_NAME, message)


def _check_status(operation: str, payload: Dict[str, Any]) -> None:
    status = payload.get("status")
    if status in {"OK", "ZERO_RESULTS"}:
        return
    logger.error("%s failed: status=%s, error_message=%s", operation, status, payload.get("error_message"))
    message = payload.get("error_message") or status or "unknown status"
    if status == "REQUEST_DENIED":
        raise ProviderConfigError(PROVIDER_NAME, message)
    if status == "OVER_QUERY_LIMIT":
        raise ProviderQuotaError(PROVIDER_NAME, message)
    raise GooglePlacesError(message)


def _get_json(session: requests.Session, url: str, params: Dict[str, Any]) -> Dict[str, Any]:
    try:
        response = session.get(url, params=params, timeout=REQUEST_TIMEOUT)
        response.raise_for_status()
        return response.json()
    except requests.RequestException as exc:
        raise GooglePlacesError(f"request failed: {exc}") from exc
    except ValueError as exc:
        raise GooglePlacesError(f"invalid JSON response: {exc}") from exc


def text_search(
    query: str, api_key: str, pagetoken: Optional[str] = None, session: Optional[requests.Session] = None
) -> Dict[str, Any]:
    params = {"query": query, "key": api_key}
    if pagetoken:
        params["pagetoken"] = pagetoken
    payload = _get_json(session or _SESSION, f"{_BASE_URL}/textsearch/json", params)
    _check_status("text_search", payload)
    return payload


def place_details(place_id: str, api_key: str, session: Optional[requests.Session] = None) -> Dict[str, Any]:
    params = {"place_id": place_id, "key": api_key, "fields": DETAIL_FIELDS}
    payload = _get_json(session or _SESSION, f"{_BASE_URL}/details/json", params)
    _check_status("place_details", payload)
    return payload.get("result", {})


class GooglePlacesProvider(ListingProvider):
    """Text search followed by a details lookup per place; every call costs one quota unit."""

    name = PROVIDER_NAME
    priority = 1
    cost_per_call_usd = 0.017
    results_per_call = 20

    def __init__(
        self,
        registry: Optional[QuotaRegistry] = None,
        session: Optional[requests.Session] = None,
        *,
        default_region: Optional[str] = "US",
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(registry, session or _SESSION)
        self.default_region = default_region
        self._sleep = sleep

    def _search_places(self, text: str, limit: int) -> List[Dict[str, Any]]:
        places: List[Dict[str, Any]] = []
        pagetoken: Optional[str] = None
        for page in range(MAX_PAGES):
            if page and pagetoken:
                self._sleep(PAGE_TOKEN_DELAY_SECONDS)
            api_key = self._reserve_page_key(len(places))
            if api_key is None:
                break
            payload = text_search(text, api_key, pagetoken=pagetoken, session=self.session)
            places.extend(payload.get("results", []))
            pagetoken = payload.get("next_page_token")
            if len(places) >= limit or not pagetoken:
                break
        return places[:limit]

    def fetch_listings(self, query: str, location: Optional[str], limit: int) -> List[BusinessCandidate]:
        places = self._search_places(search_text(query, location), limit)
        logger.info("Google Places returned %d place(s) for %r", len(places), query)

        candidates: List[BusinessCandidate] = []
        for place in places:
            result = place
            place_id = place.get("place_id")
            if place_id and self.registry is not None and self.registry.is_available(self.name):
                try:
                    result = {**place, **place_details(place_id, self._reserve_key(), session=self.session)}
                except ProviderQuotaError:
                    logger.warning("Google Places quota exhausted during details; using search data")
                except GooglePlacesError as exc:
                    logger.warning("Details lookup failed for %s: %s", place_id, exc)

            if result.get("business_status") == "CLOSED_PERMANENTLY":
                continue
            candidate = from_google_place(result, self.default_region)
            if candidate is not None:
                candidates.append(candidate)
        return candidates
