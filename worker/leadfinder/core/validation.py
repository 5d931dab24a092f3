"""Input sanitising and validation for job requests."""

import random
import re
import string
import time
from typing import Any, Dict, Mapping, Optional, Tuple

from leadfinder.core.errors import (
    InvalidCountError,
    InvalidLocationError,
    InvalidQueryError,
    ValidationError,
)
from leadfinder.core.models import PRIORITIES, B2BTargeting

MIN_COUNT = 1
MAX_COUNT = 500
DEFAULT_COUNT = 25

_ALLOWED_TEXT = re.compile(r"^[\w\s\-'&.,()]+$", re.UNICODE)
_CONTROL_CHARS = re.compile(r"[\x00-\x1F\x7F]")
_DANGEROUS_PATTERNS = (
    re.compile(r"<script", re.IGNORECASE),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"on\w+=", re.IGNORECASE),
    re.compile(r"data:", re.IGNORECASE),
    re.compile(r"vbscript:", re.IGNORECASE),
)

INDUSTRY_CATEGORIES = frozenset(
    {
        "restaurant_food",
        "beauty_wellness",
        "retail",
        "home_services",
        "medical",
        "automotive",
        "professional_services",
        "entertainment",
        "education",
        "pet_services",
    }
)

US_STATES = frozenset(
    """
    AL AK AZ AR CA CO CT DE DC FL GA HI ID IL IN IA KS KY LA ME MD MA MI MN MS
    MO MT NE NV NH NJ NM NY NC ND OH OK OR PA RI SC SD TN TX UT VT VA WA WV WI WY
    """.split()
)

_JOB_ID_ALPHABET = string.ascii_lowercase + string.digits


def sanitize_text(value: str) -> str:
    cleaned = value.strip().replace("<", "").replace(">", "")
    return _CONTROL_CHARS.sub("", cleaned)[:500]


def _is_dangerous(value: str) -> bool:
    return any(pattern.search(value) for pattern in _DANGEROUS_PATTERNS)


def _is_allowed(value: str) -> bool:
    # \w admits underscores, which the search boxes never produce.
    return bool(_ALLOWED_TEXT.match(value)) and "_" not in value


def validate_query(query: Any) -> str:
    if not isinstance(query, str):
        raise InvalidQueryError(query)

    sanitized = sanitize_text(query)
    if not 2 <= len(sanitized) <= 200:
        raise InvalidQueryError(query)
    if _is_dangerous(sanitized) or not _is_allowed(sanitized):
        raise InvalidQueryError(query)
    return sanitized


def validate_location(location: Any) -> Optional[str]:
    if location is None or location == "":
        return None
    if not isinstance(location, str):
        raise InvalidLocationError(location)

    sanitized = sanitize_text(location)
    if not sanitized:
        return None
    if not 2 <= len(sanitized) <= 100:
        raise InvalidLocationError(location)
    if _is_dangerous(sanitized) or not _is_allowed(sanitized):
        raise InvalidLocationError(location)
    return sanitized


def validate_count(count: Any) -> int:
    """Coerce the requested count and clamp it into [MIN_COUNT, MAX_COUNT]."""
    if count is None or count == "":
        return DEFAULT_COUNT
    if isinstance(count, bool):
        raise InvalidCountError(count)
    if isinstance(count, (int, float)):
        value = count
    elif isinstance(count, str):
        try:
            value = int(count.strip())
        except ValueError as exc:
            raise InvalidCountError(count) from exc
    else:
        raise InvalidCountError(count)

    if value != value or value in (float("inf"), float("-inf")):
        raise InvalidCountError(count)
    return max(MIN_COUNT, min(MAX_COUNT, int(value)))


def validate_priority(priority: Any) -> str:
    if isinstance(priority, str) and priority.lower() in PRIORITIES:
        return priority.lower()
    return "normal"


def validate_industry_category(category: Any) -> Optional[str]:
    if not isinstance(category, str):
        return None
    sanitized = sanitize_text(category)
    return sanitized if sanitized in INDUSTRY_CATEGORIES else None


def validate_target_state(state: Any) -> Optional[str]:
    if not isinstance(state, str):
        return None
    sanitized = sanitize_text(state).upper()
    return sanitized if sanitized in US_STATES else None


def validate_company_size(size: Any) -> Optional[int]:
    if size is None or isinstance(size, bool):
        return None
    try:
        value = int(size)
    except (TypeError, ValueError):
        return None
    return value if value >= 0 else None


def validate_targeting(payload: Mapping[str, Any]) -> B2BTargeting:
    b2c_only = payload.get("b2cOnly")
    targeting = B2BTargeting(
        industry_category=validate_industry_category(payload.get("industryCategory")),
        company_size_min=validate_company_size(payload.get("companySizeMin")),
        company_size_max=validate_company_size(payload.get("companySizeMax")),
        target_state=validate_target_state(payload.get("targetState")),
        b2c_only=True if b2c_only is None else bool(b2c_only),
    )
    if (
        targeting.company_size_min is not None
        and targeting.company_size_max is not None
        and targeting.company_size_min > targeting.company_size_max
    ):
        raise ValidationError("companySizeMin must not exceed companySizeMax")
    return targeting


def validate_job_request(body: Any) -> Tuple[str, Optional[str], int, str, B2BTargeting]:
    """Validate a job creation payload and return its normalized parts."""
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")

    targeting_payload: Dict[str, Any] = dict(body)
    nested = body.get("b2bTargeting")
    if isinstance(nested, dict):
        targeting_payload.update(nested)

    return (
        validate_query(body.get("query")),
        validate_location(body.get("location")),
        validate_count(body.get("count")),
        validate_priority(body.get("priority")),
        validate_targeting(targeting_payload),
    )


def generate_job_id() -> str:
    timestamp = int(time.time() * 1000)
    suffix = "".join(random.choice(_JOB_ID_ALPHABET) for _ in range(7))
    return f"job_{timestamp}_{suffix}"


def is_job_id(value: Any) -> bool:
    return isinstance(value, str) and value.startswith("job_") and len(value) > 4
