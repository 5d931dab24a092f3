"""Common capability shared by every listing source."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from leadfinder.core.errors import ProviderConfigError, ProviderError, ProviderQuotaError
from leadfinder.core.models import BusinessCandidate
from leadfinder.core.quota import QuotaRegistry

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 10


def retrying_session(total: int = 3, backoff_factor: float = 1.0) -> requests.Session:
    """Session that retries connection errors and 5xx responses on GET.

    429 is left to the caller, which maps it to a quota error.
    """
    session = requests.Session()
    retries = Retry(
        total=total,
        backoff_factor=backoff_factor,
        status_forcelist=(500, 502, 503, 504),
        allowed_methods=("GET",),
        raise_on_status=False,
    )
    session.mount("http://", HTTPAdapter(max_retries=retries))
    session.mount("https://", HTTPAdapter(max_retries=retries))
    return session


class ListingProvider(ABC):
    """A source of business listings.

    ``fetch_listings`` returns normalized candidates or raises ProviderError;
    the orchestrator treats any ProviderError as "try the next source".
    """

    name: str = "provider"
    is_api: bool = True
    priority: int = 100
    cost_per_call_usd: float = 0.0
    results_per_call: int = 20
    # Oldest listing data we still accept from this source, in days.
    data_age_days: int = 0

    def __init__(self, registry: Optional[QuotaRegistry] = None, session: Optional[requests.Session] = None) -> None:
        self.registry = registry
        self.session = session or retrying_session()

    @abstractmethod
    def fetch_listings(self, query: str, location: Optional[str], limit: int) -> List[BusinessCandidate]:
        raise NotImplementedError

    def _reserve_key(self, count: int = 1) -> str:
        if self.registry is None:
            raise ProviderConfigError(self.name, "no quota registry attached")
        key = self.registry.try_consume(self.name, count)
        if key is None:
            raise ProviderQuotaError(self.name, "quota exhausted")
        return key

    def _reserve_page_key(self, collected: int) -> Optional[str]:
        """Key for a follow-up page, or None to stop paging and keep what was collected."""
        try:
            return self._reserve_key()
        except ProviderQuotaError:
            if not collected:
                raise
            logger.warning("%s quota exhausted after %d result(s); stopping early", self.name, collected)
            return None

    def _check_response(self, response: requests.Response) -> None:
        if response.status_code in (401, 403):
            raise ProviderConfigError(self.name, f"credentials rejected (HTTP {response.status_code})")
        if response.status_code == 429:
            raise ProviderQuotaError(self.name, "rate limited upstream (HTTP 429)")
        if response.status_code >= 400:
            raise ProviderError(self.name, f"HTTP {response.status_code}: {response.text[:200]}")

    def _get(self, url: str, **kwargs) -> requests.Response:
        try:
            response = self.session.get(url, timeout=REQUEST_TIMEOUT, **kwargs)
        except requests.RequestException as exc:
            raise ProviderError(self.name, f"request failed: {exc}") from exc
        self._check_response(response)
        return response


def search_text(query: str, location: Optional[str]) -> str:
    return f"{query} in {location}" if location else query
