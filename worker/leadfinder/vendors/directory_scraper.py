"""Yellow Pages search-result scraper, the fallback listing source."""

import logging
import re
from typing import List, Optional, Tuple
from urllib.parse import urljoin

import requests
from bs4 import BeautifulSoup

from leadfinder.core.errors import ProviderError
from leadfinder.core.models import BusinessCandidate
from leadfinder.core.rate_limiter import USER_AGENT, DomainRateLimiter
from leadfinder.etl.transform import normalize_phone, parse_state, safe_int, sanitize_website, strip_or_none
from leadfinder.vendors.base import ListingProvider

logger = logging.getLogger(__name__)

_SEARCH_URL = "https://www.yellowpages.com/search"
RESULTS_PER_PAGE = 30
MAX_PAGES = 5

_RATING_WORDS = {"one": 1.0, "two": 2.0, "three": 3.0, "four": 4.0, "five": 5.0}
_SIZE_PATTERN = re.compile(r"(\d[\d,]*)\s*(?:\+|-\s*\d[\d,]*)?\s*employees", re.IGNORECASE)


def _parse_rating(classes: List[str]) -> Optional[float]:
    """Ratings are encoded as CSS classes, e.g. ``result-rating four half``."""
    score = None
    for css_class in classes:
        if css_class in _RATING_WORDS:
            score = _RATING_WORDS[css_class]
    if score is not None and "half" in classes:
        score += 0.5
    return score


def parse_search_results(html: str, base_url: str = _SEARCH_URL, default_region: Optional[str] = "US") -> List[BusinessCandidate]:
    soup = BeautifulSoup(html, "html.parser")
    candidates: List[BusinessCandidate] = []
    for card in soup.select("div.result"):
        name_node = card.select_one("a.business-name")
        name = strip_or_none(name_node.get_text(" ", strip=True) if name_node else None)
        if not name:
            continue

        website_node = card.select_one("a.track-visit-website")
        phone_node = card.select_one("div.phones")
        street = card.select_one("div.street-address")
        locality = card.select_one("div.locality")
        address_parts = [node.get_text(" ", strip=True) for node in (street, locality) if node]
        address = ", ".join(part for part in address_parts if part) or None

        rating_node = card.select_one("div.result-rating")
        review_node = card.select_one("div.ratings span.count")
        years_node = card.select_one("div.years-in-business div.count")
        categories = [node.get_text(strip=True) for node in card.select("div.categories a")]
        size_match = _SIZE_PATTERN.search(card.get_text(" ", strip=True))

        candidates.append(
            BusinessCandidate(
                name=name,
                website=sanitize_website(website_node.get("href")) if website_node else None,
                phone=normalize_phone(phone_node.get_text(strip=True), default_region) if phone_node else None,
                address=address,
                rating=_parse_rating(rating_node.get("class", [])) if rating_node else None,
                review_count=safe_int(review_node.get_text(strip=True)) if review_node else None,
                years_in_business=safe_int(years_node.get_text(strip=True)) if years_node else None,
                employee_count=safe_int(size_match.group(1)) if size_match else None,
                industry_code=categories[0] if categories else None,
                source="yellowpages",
                state=parse_state(address),
                raw_snapshot={"listing_url": urljoin(base_url, name_node.get("href", "")) if name_node else None},
            )
        )
    return candidates


class DirectoryScraper(ListingProvider):
    """Scrapes directory search pages; every fetch waits on the domain rate limiter."""

    name = "yellowpages"
    is_api = False
    priority = 10
    results_per_call = RESULTS_PER_PAGE

    def __init__(
        self,
        rate_limiter: DomainRateLimiter,
        session: Optional[requests.Session] = None,
        *,
        default_region: Optional[str] = "US",
    ) -> None:
        super().__init__(None, session)
        self.rate_limiter = rate_limiter
        self.default_region = default_region
        self.session.headers.setdefault("User-Agent", USER_AGENT)

    def _fetch_page(self, query: str, location: Optional[str], page: int) -> Tuple[str, str]:
        params = {"search_terms": query, "geo_location_terms": location or ""}
        if page > 1:
            params["page"] = str(page)
        self.rate_limiter.acquire(_SEARCH_URL)
        response = self._get(_SEARCH_URL, params=params)
        return response.url or _SEARCH_URL, response.text

    def fetch_listings(self, query: str, location: Optional[str], limit: int) -> List[BusinessCandidate]:
        if not location:
            raise ProviderError(self.name, "location is required")

        candidates: List[BusinessCandidate] = []
        for page in range(1, MAX_PAGES + 1):
            final_url, html = self._fetch_page(query, location, page)
            results = parse_search_results(html, final_url, self.default_region)
            logger.info("Directory page %d returned %d listing(s) for %r", page, len(results), query)
            candidates.extend(results)
            if len(candidates) >= limit or len(results) < RESULTS_PER_PAGE:
                break
        return candidates[:limit]
