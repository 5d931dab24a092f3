"""Core data models shared by the lead discovery pipeline."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

PENDING = "pending"
RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"

TERMINAL_STATUSES = frozenset({COMPLETED, FAILED, CANCELLED})

# Allowed forward transitions; FAILED -> RUNNING covers an event bus retry.
TRANSITIONS = {
    PENDING: frozenset({RUNNING, FAILED, CANCELLED}),
    RUNNING: frozenset({RUNNING, COMPLETED, FAILED, CANCELLED}),
    FAILED: frozenset({RUNNING}),
    COMPLETED: frozenset(),
    CANCELLED: frozenset(),
}

PRIORITIES = ("high", "normal", "low")

VERIFIED_CONFIDENCE = 0.8


@dataclass(slots=True)
class B2BTargeting:
    industry_category: Optional[str] = None
    company_size_min: Optional[int] = None
    company_size_max: Optional[int] = None
    target_state: Optional[str] = None
    b2c_only: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "industryCategory": self.industry_category,
            "companySizeMin": self.company_size_min,
            "companySizeMax": self.company_size_max,
            "targetState": self.target_state,
            "b2cOnly": self.b2c_only,
        }


@dataclass(slots=True)
class Job:
    id: str
    query: str
    location: Optional[str]
    target_count: int
    priority: str = "normal"
    status: str = PENDING
    progress: int = 0
    message: Optional[str] = None
    targeting: B2BTargeting = field(default_factory=B2BTargeting)
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(slots=True)
class BusinessCandidate:
    """Normalized listing returned by a provider or a scraped directory page."""

    name: str
    website: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    rating: Optional[float] = None
    review_count: Optional[int] = None
    employee_count: Optional[int] = None
    industry_code: Optional[str] = None
    is_b2b: bool = False
    source: str = "unknown"
    email: Optional[str] = None
    email_source: Optional[str] = None
    email_confidence: float = 0.0
    years_in_business: Optional[int] = None
    instagram: Optional[str] = None
    state: Optional[str] = None
    fetched_at: Optional[datetime] = None
    raw_snapshot: Optional[Dict[str, Any]] = field(default=None, repr=False)

    def to_row(self, job_id: str) -> Dict[str, Any]:
        row = asdict(self)
        row.pop("raw_snapshot", None)
        row.pop("state", None)
        row.pop("fetched_at", None)
        row["job_id"] = job_id
        return row


@dataclass(slots=True)
class Business:
    """A business persisted for a job; ``id`` is assigned by the store."""

    id: int
    job_id: str
    name: str
    source: str
    website: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    rating: Optional[float] = None
    review_count: Optional[int] = None
    employee_count: Optional[int] = None
    industry_code: Optional[str] = None
    is_b2b: bool = False
    email: Optional[str] = None
    email_source: Optional[str] = None
    email_confidence: float = 0.0
    years_in_business: Optional[int] = None
    instagram: Optional[str] = None
    created_at: Optional[datetime] = None

    def display_confidence(self) -> int:
        """Confidence on the 0-100 scale used by list views."""
        return int(round(self.email_confidence * 100))

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        if self.created_at is not None:
            payload["created_at"] = self.created_at.isoformat()
        return payload


@dataclass(slots=True)
class EmailResult:
    email: str
    source: str
    confidence: float


def normalize_confidence(value: Any) -> float:
    """Map a confidence given on either the 0-1 or the 0-100 scale onto 0.0-1.0."""
    try:
        score = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(score):
        return 0.0
    if score > 1.0:
        score = score / 100.0
    return min(1.0, max(0.0, score))
