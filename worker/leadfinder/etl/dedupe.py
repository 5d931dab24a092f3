"""Deduplication of listings gathered from several sources for one job.

Identity is the lower-cased, trimmed business name. Two branches of the same
chain at different addresses therefore collapse into one record; that loss of
precision is accepted so that cross-source duplicates never reach the store.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from leadfinder.core.models import BusinessCandidate

logger = logging.getLogger(__name__)


def identity_key(name: str) -> str:
    return " ".join((name or "").split()).lower()


def completeness(candidate: BusinessCandidate) -> int:
    return sum(1 for value in (candidate.website, candidate.phone, candidate.email) if value)


def quality_key(candidate: BusinessCandidate) -> Tuple[int, float, float, int]:
    """Higher sorts better; ties fall through to first-seen."""
    return (
        completeness(candidate),
        candidate.email_confidence or 0.0,
        candidate.rating if candidate.rating is not None else -1.0,
        candidate.review_count if candidate.review_count is not None else -1,
    )


def is_better(challenger: BusinessCandidate, incumbent: BusinessCandidate) -> bool:
    """True only when ``challenger`` strictly outranks ``incumbent``."""
    return quality_key(challenger) > quality_key(incumbent)


@dataclass
class AggregationStats:
    added: int = 0
    replaced: int = 0
    discarded: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"added": self.added, "replaced": self.replaced, "discarded": self.discarded}


class BusinessAggregator:
    """Accumulates candidates across batches, keeping the best record per name."""

    def __init__(self, job_id: Optional[str] = None) -> None:
        self.job_id = job_id
        self.stats = AggregationStats()
        self._records: Dict[str, BusinessCandidate] = {}
        self._order: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, name: str) -> bool:
        return identity_key(name) in self._records

    def add(self, candidate: BusinessCandidate) -> bool:
        """Add one candidate; returns True if it is now the kept record for its name."""
        key = identity_key(candidate.name)
        if not key:
            self.stats.discarded += 1
            return False

        incumbent = self._records.get(key)
        if incumbent is None:
            self._records[key] = candidate
            self._order[key] = len(self._order)
            self.stats.added += 1
            return True

        if is_better(candidate, incumbent):
            logger.debug("Replacing %r from %s with record from %s", candidate.name, incumbent.source, candidate.source)
            self._records[key] = candidate
            self.stats.replaced += 1
            return True

        self.stats.discarded += 1
        return False

    def add_all(self, candidates: Iterable[BusinessCandidate]) -> int:
        return sum(1 for candidate in candidates if self.add(candidate))

    def results(self) -> List[BusinessCandidate]:
        """Kept records in first-seen order."""
        return sorted(self._records.values(), key=lambda record: self._order[identity_key(record.name)])

    def ranked(self) -> List[BusinessCandidate]:
        """Kept records best first; first-seen breaks ties."""
        return sorted(
            self._records.values(),
            key=lambda record: (tuple(-part for part in quality_key(record)), self._order[identity_key(record.name)]),
        )


def dedupe(candidates: Iterable[BusinessCandidate]) -> List[BusinessCandidate]:
    aggregator = BusinessAggregator()
    aggregator.add_all(candidates)
    return aggregator.results()
