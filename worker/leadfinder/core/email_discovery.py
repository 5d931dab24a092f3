"""Contact email discovery and confidence scoring.

Sources are tried in order and the first hit wins:

1. the business website (home page plus contact/about pages),
2. a generic inbox on the website's domain, only if the domain accepts mail,
3. Hunter.io domain search, when configured and under quota; a hit replaces
   the unverified guess from step 2.

Confidences are always stored on the 0.0-1.0 scale.
"""

from __future__ import annotations

import json
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, List, Optional, Sequence, Tuple

import dns.exception
import dns.resolver
import requests

from leadfinder.core.cache import CacheBackend, CacheBackendError
from leadfinder.core.cancellation import CancellationToken
from leadfinder.core.errors import ProviderError
from leadfinder.core.models import EmailResult, normalize_confidence
from leadfinder.core.rate_limiter import DomainRateLimiter, extract_domain
from leadfinder.core.site_enricher import SiteEnricher, email_domain_matches
from leadfinder.vendors.hunter import HunterClient

logger = logging.getLogger(__name__)

__all__ = ["EmailDiscovery", "has_mx_records", "normalize_confidence"]

SCRAPED_CONFIDENCE = 0.90
SCRAPED_OFF_DOMAIN_CONFIDENCE = 0.85
PATTERN_CONFIDENCE = 0.50
PATTERN_PREFIXES = ("info", "contact", "hello", "office")
EMAIL_CACHE_PREFIX = "email:"
EMAIL_CACHE_TTL_SECONDS = 30 * 24 * 60 * 60
# Listing and social hosts never carry the business's own inbox.
NON_BUSINESS_DOMAINS = (
    "facebook.com",
    "instagram.com",
    "yelp.com",
    "yellowpages.com",
    "google.com",
    "linktr.ee",
    "squareup.com",
    "wixsite.com",
)

ResultCallback = Callable[[Any, Optional[EmailResult]], None]


def has_mx_records(domain: str) -> bool:
    try:
        answers = dns.resolver.resolve(domain, "MX", lifetime=3.0)
    except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer, dns.resolver.NoNameservers, dns.exception.Timeout):
        return False
    except dns.exception.DNSException as exc:
        logger.debug("MX lookup for %s failed: %s", domain, exc)
        return False
    return len(answers) > 0


def business_domain(website: Optional[str]) -> Optional[str]:
    if not website:
        return None
    domain = extract_domain(website)
    if not domain or "." not in domain:
        return None
    if any(domain == host or domain.endswith(f".{host}") for host in NON_BUSINESS_DOMAINS):
        return None
    return domain


class EmailDiscovery:
    def __init__(
        self,
        *,
        hunter: Optional[HunterClient] = None,
        rate_limiter: Optional[DomainRateLimiter] = None,
        cache_backend: Optional[CacheBackend] = None,
        mx_resolver: Callable[[str], bool] = has_mx_records,
        enricher_factory: Optional[Callable[[str], SiteEnricher]] = None,
        use_js_renderer: bool = False,
        default_region: Optional[str] = "US",
    ) -> None:
        self.hunter = hunter
        self.rate_limiter = rate_limiter
        self.cache_backend = cache_backend
        self.mx_resolver = mx_resolver
        self.use_js_renderer = use_js_renderer
        self.default_region = default_region
        self._enricher_factory = enricher_factory or self._default_enricher

    def _default_enricher(self, website: str) -> SiteEnricher:
        return SiteEnricher(
            website,
            session=requests.Session(),
            rate_limiter=self.rate_limiter,
            use_js_renderer=self.use_js_renderer,
            default_region=self.default_region,
        )

    def _cached(self, domain: str) -> Optional[EmailResult]:
        if self.cache_backend is None:
            return None
        try:
            raw = self.cache_backend.get(f"{EMAIL_CACHE_PREFIX}{domain}")
        except CacheBackendError as exc:
            logger.debug("Email cache read failed for %s: %s", domain, exc)
            return None
        if not raw:
            return None
        payload = json.loads(raw)
        return EmailResult(
            email=payload["email"],
            source=payload["source"],
            confidence=normalize_confidence(payload.get("confidence")),
        )

    def _remember(self, domain: str, result: EmailResult) -> None:
        if self.cache_backend is None:
            return
        payload = json.dumps({"email": result.email, "source": result.source, "confidence": result.confidence})
        try:
            self.cache_backend.set(f"{EMAIL_CACHE_PREFIX}{domain}", payload, EMAIL_CACHE_TTL_SECONDS)
        except CacheBackendError as exc:
            logger.debug("Email cache write failed for %s: %s", domain, exc)

    def scrape_website(self, website: str, domain: str) -> Optional[EmailResult]:
        try:
            with self._enricher_factory(website) as enricher:
                found = enricher.enrich()
        except ValueError as exc:
            logger.debug("Skipping website scrape for %s: %s", website, exc)
            return None

        emails: List[str] = list(found.get("emails") or [])
        if not emails:
            return None
        email = emails[0]
        confidence = SCRAPED_CONFIDENCE if email_domain_matches(email, domain) else SCRAPED_OFF_DOMAIN_CONFIDENCE
        return EmailResult(email=email, source="website-scrape", confidence=confidence)

    def guess_pattern(self, domain: str) -> Optional[EmailResult]:
        if not self.mx_resolver(domain):
            logger.debug("No MX records for %s; skipping pattern guess", domain)
            return None
        return EmailResult(email=f"{PATTERN_PREFIXES[0]}@{domain}", source="pattern-mx", confidence=PATTERN_CONFIDENCE)

    def lookup_provider(self, domain: str) -> Optional[EmailResult]:
        if self.hunter is None or not self.hunter.enabled:
            return None
        try:
            return self.hunter.domain_search(domain)
        except ProviderError as exc:
            logger.warning("Contact lookup failed for %s: %s", domain, exc)
            return None

    def discover(self, business: Any) -> Optional[EmailResult]:
        """Find an email for one business; None when every source came up empty."""
        if getattr(business, "email", None):
            return None
        domain = business_domain(getattr(business, "website", None))
        if domain is None:
            return None

        cached = self._cached(domain)
        if cached is not None:
            return cached

        result = self.scrape_website(business.website, domain)
        if result is None:
            guess = self.guess_pattern(domain)
            # A guessed inbox is kept only when the paid lookup finds nothing better.
            result = self.lookup_provider(domain) or guess
        if result is not None:
            result.confidence = normalize_confidence(result.confidence)
            self._remember(domain, result)
            logger.info("Found %s for %r via %s (%.2f)", result.email, business.name, result.source, result.confidence)
        return result

    def discover_batch(
        self,
        businesses: Sequence[Any],
        concurrency: int = 3,
        on_result: Optional[ResultCallback] = None,
        token: Optional[CancellationToken] = None,
    ) -> List[Tuple[Any, Optional[EmailResult]]]:
        """Run ``discover`` over ``businesses`` with at most ``concurrency`` in flight.

        ``on_result`` fires as each lookup finishes. A cancelled token stops new
        lookups from starting; lookups already running are allowed to finish.
        """
        results: List[Tuple[Any, Optional[EmailResult]]] = []

        def run(business: Any) -> Optional[EmailResult]:
            if token is not None and token.cancelled:
                return None
            return self.discover(business)

        with ThreadPoolExecutor(max_workers=max(1, concurrency), thread_name_prefix="email") as pool:
            futures = {pool.submit(run, business): business for business in businesses}
            try:
                for future in as_completed(futures):
                    business = futures[future]
                    try:
                        result = future.result()
                    except Exception:  # noqa: BLE001
                        logger.exception("Email discovery crashed for %r", getattr(business, "name", business))
                        result = None
                    results.append((business, result))
                    if on_result is not None:
                        on_result(business, result)
            finally:
                for future in futures:
                    future.cancel()
        if token is not None:
            token.checkpoint()
        return results
