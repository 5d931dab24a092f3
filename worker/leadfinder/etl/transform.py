"""Utilities for transforming provider payloads into BusinessCandidate objects."""

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional
from urllib.parse import urlparse, urlunparse

import phonenumbers

from leadfinder.core.models import BusinessCandidate

logger = logging.getLogger(__name__)

_IGNORE_TYPES = {"point_of_interest", "establishment", "political", "premise"}

# Provider categories that indicate the business mostly sells to other businesses.
B2B_CATEGORIES = {
    "accounting",
    "lawyer",
    "insurance_agency",
    "real_estate_agency",
    "general_contractor",
    "electrician",
    "plumber",
    "roofing_contractor",
    "moving_company",
    "storage",
    "marketing",
    "advertising",
    "itservices",
    "web_design",
    "businessconsulting",
    "commercialrealestate",
    "staffing",
    "employmentagencies",
    "printingservices",
    "wholesalers",
    "courier",
}

_STATE_PATTERN = re.compile(r",\s*([A-Z]{2})\s+\d{5}(?:-\d{4})?\b")
_STATE_TRAILING = re.compile(r",\s*([A-Z]{2})\s*(?:,\s*(?:USA|United States))?\s*$")


def strip_or_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    value_str = str(value).strip()
    return value_str or None


def safe_float(value: Any) -> Optional[float]:
    try:
        if value is None:
            return None
        return float(value)
    except (TypeError, ValueError):
        return None


def safe_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)

    if isinstance(value, str):
        digits = "".join(ch for ch in value if ch.isdigit())
        if digits:
            return int(digits)
    return None


def sanitize_website(raw_url: Any) -> Optional[str]:
    """Normalise raw website strings into absolute URLs without query or fragment."""
    url = strip_or_none(raw_url)
    if not url:
        return None

    parsed = urlparse(url, scheme="https")
    if not parsed.netloc:
        parsed = urlparse(f"https://{url}")
    if not parsed.netloc or "." not in parsed.netloc:
        return None

    path = parsed.path or "/"
    if not path.startswith("/"):
        path = f"/{path}"
    return urlunparse(parsed._replace(path=path, fragment="", query=""))


def normalize_phone(raw: Any, default_region: Optional[str] = "US") -> Optional[str]:
    """Return an E.164 number, or the trimmed input when it cannot be parsed."""
    value = strip_or_none(raw)
    if not value:
        return None
    try:
        parsed = phonenumbers.parse(value, default_region)
    except phonenumbers.NumberParseException:
        logger.debug("Unparseable phone number %r", value)
        return value
    if not phonenumbers.is_possible_number(parsed):
        return value
    return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)


def parse_state(address: Optional[str]) -> Optional[str]:
    """Extract a two-letter US state code from a formatted address."""
    if not address:
        return None
    match = _STATE_PATTERN.search(address) or _STATE_TRAILING.search(address)
    return match.group(1) if match else None


def parse_state_from_components(address_components: Iterable[Dict[str, Any]]) -> Optional[str]:
    for component in address_components or []:
        if "administrative_area_level_1" in set(component.get("types", [])):
            return component.get("short_name")
    return None


def _extract_primary_type(types: Iterable[str]) -> Optional[str]:
    for type_name in types or []:
        if type_name not in _IGNORE_TYPES:
            return type_name
    return None


def _now() -> datetime:
    return datetime.now(timezone.utc)


def from_google_place(result: Dict[str, Any], default_region: Optional[str] = "US") -> Optional[BusinessCandidate]:
    name = strip_or_none(result.get("name"))
    if not name:
        return None

    address = strip_or_none(result.get("formatted_address"))
    industry = _extract_primary_type(result.get("types", []))
    state = parse_state_from_components(result.get("address_components", [])) or parse_state(address)
    return BusinessCandidate(
        name=name,
        website=sanitize_website(result.get("website")),
        phone=normalize_phone(
            result.get("international_phone_number") or result.get("formatted_phone_number"), default_region
        ),
        address=address,
        rating=safe_float(result.get("rating")),
        review_count=safe_int(result.get("user_ratings_total")),
        industry_code=industry,
        is_b2b=industry in B2B_CATEGORIES,
        source="google_places",
        state=state,
        fetched_at=_now(),
        raw_snapshot=result,
    )


def from_yelp_business(raw: Dict[str, Any], default_region: Optional[str] = "US") -> Optional[BusinessCandidate]:
    name = strip_or_none(raw.get("name"))
    if not name or raw.get("is_closed"):
        return None

    location = raw.get("location") or {}
    display_address = location.get("display_address") or []
    if display_address:
        address = ", ".join(part for part in display_address if part)
    else:
        parts = [location.get("address1"), location.get("city"), location.get("state"), location.get("zip_code")]
        address = ", ".join(part for part in parts if part) or None

    categories = [category.get("alias") for category in raw.get("categories") or [] if category.get("alias")]
    industry = categories[0] if categories else None
    return BusinessCandidate(
        name=name,
        # Search results only carry the Yelp listing URL, not the business site.
        website=None,
        phone=normalize_phone(raw.get("phone") or raw.get("display_phone"), default_region),
        address=address,
        rating=safe_float(raw.get("rating")),
        review_count=safe_int(raw.get("review_count")),
        industry_code=industry,
        is_b2b=any(category in B2B_CATEGORIES for category in categories),
        source="yelp_fusion",
        state=strip_or_none(location.get("state")) or parse_state(address),
        fetched_at=_now(),
        raw_snapshot=raw,
    )


def from_serpapi_place(raw: Dict[str, Any], default_region: Optional[str] = "US") -> Optional[BusinessCandidate]:
    name = strip_or_none(raw.get("title") or raw.get("name"))
    if not name:
        return None

    address = strip_or_none(raw.get("address"))
    industry = strip_or_none(raw.get("type"))
    return BusinessCandidate(
        name=name,
        website=sanitize_website(raw.get("website")),
        phone=normalize_phone(raw.get("phone"), default_region),
        address=address,
        rating=safe_float(raw.get("rating")),
        review_count=safe_int(raw.get("reviews_count") or raw.get("reviews")),
        industry_code=industry,
        is_b2b=bool(industry) and industry.lower().replace(" ", "_") in B2B_CATEGORIES,
        source="serpapi",
        state=parse_state(address),
        fetched_at=_now(),
        raw_snapshot=raw,
    )
