"""Hunter.io domain search used as the last resort for contact emails."""

import logging
from typing import Any, Dict, Optional

import requests

from leadfinder.core.errors import ProviderError
from leadfinder.core.models import EmailResult, normalize_confidence
from leadfinder.core.quota import QuotaRegistry
from leadfinder.vendors.base import REQUEST_TIMEOUT, retrying_session

logger = logging.getLogger(__name__)

_BASE_URL = "https://api.hunter.io/v2"
PROVIDER_NAME = "hunter"
GENERIC_PREFIXES = ("info", "contact", "hello", "office", "sales", "support", "admin")


def _pick_email(emails: list) -> Optional[Dict[str, Any]]:
    """Prefer verified generic inboxes, then the highest reported confidence."""

    def rank(entry: Dict[str, Any]):
        verified = (entry.get("verification") or {}).get("status") == "valid"
        prefix = str(entry.get("value", "")).split("@")[0].lower()
        return (verified, prefix in GENERIC_PREFIXES, normalize_confidence(entry.get("confidence")))

    usable = [entry for entry in emails if isinstance(entry, dict) and entry.get("value")]
    if not usable:
        return None
    return max(usable, key=rank)


class HunterClient:
    def __init__(
        self,
        api_key: str,
        registry: Optional[QuotaRegistry] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.api_key = api_key
        self.registry = registry
        self.session = session or retrying_session()

    @property
    def enabled(self) -> bool:
        if not self.api_key:
            return False
        return self.registry is None or self.registry.is_available(PROVIDER_NAME)

    def domain_search(self, domain: str) -> Optional[EmailResult]:
        """Return the best contact for ``domain`` or None when nothing is published."""
        if self.registry is not None and self.registry.try_consume(PROVIDER_NAME) is None:
            logger.info("Hunter quota exhausted; skipping lookup for %s", domain)
            return None

        try:
            response = self.session.get(
                f"{_BASE_URL}/domain-search",
                params={"domain": domain, "api_key": self.api_key, "limit": 10},
                timeout=REQUEST_TIMEOUT,
            )
        except requests.RequestException as exc:
            raise ProviderError(PROVIDER_NAME, f"request failed: {exc}") from exc

        if response.status_code in (401, 403):
            if self.registry is not None:
                self.registry.mark_unavailable(PROVIDER_NAME, f"HTTP {response.status_code}")
            raise ProviderError(PROVIDER_NAME, "credentials rejected")
        if response.status_code == 429:
            if self.registry is not None:
                self.registry.mark_unavailable(PROVIDER_NAME, "rate limited upstream")
            return None
        if response.status_code >= 400:
            raise ProviderError(PROVIDER_NAME, f"HTTP {response.status_code}")

        chosen = _pick_email((response.json().get("data") or {}).get("emails") or [])
        if chosen is None:
            return None
        verified = (chosen.get("verification") or {}).get("status") == "valid"
        return EmailResult(
            email=str(chosen["value"]).lower(),
            source="hunter-verified" if verified else "hunter",
            confidence=0.95 if verified else 0.80,
        )
