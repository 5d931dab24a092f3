"""Quota and source registry shared by every job running in the worker.

Each provider owns a pool of API keys with a per-key allowance that resets at
UTC midnight. Consumption is reserved atomically under the registry lock so
two concurrent jobs can never spend the same remaining call.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)

SCRAPING_COST_PER_RESULT_USD = 0.002
SCRAPING_TIME_PER_RESULT_MS = 2000
API_TIME_PER_CALL_MS = 300


def _next_utc_midnight(now: datetime) -> datetime:
    tomorrow = (now + timedelta(days=1)).date()
    return datetime(tomorrow.year, tomorrow.month, tomorrow.day, tzinfo=timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _KeyState:
    key: str
    used: int = 0


@dataclass
class QuotaRecord:
    provider: str
    limit_per_key: int
    keys: List[_KeyState]
    reset_at: datetime
    cost_per_call_usd: float = 0.0
    results_per_call: int = 20
    available: bool = True
    unavailable_reason: Optional[str] = None
    total_calls: int = 0
    total_results: int = 0
    total_duration_ms: float = 0.0
    rotation: int = 0

    @property
    def limit(self) -> int:
        return self.limit_per_key * max(1, len(self.keys))

    @property
    def used(self) -> int:
        return sum(state.used for state in self.keys)

    @property
    def remaining(self) -> int:
        return sum(max(0, self.limit_per_key - state.used) for state in self.keys)


@dataclass
class SourceUsage:
    """Running totals for one source since the last session reset."""

    source: str
    is_api: bool
    calls: int = 0
    results: int = 0
    duration_ms: float = 0.0


class QuotaRegistry:
    """Lock protected registry of provider quotas and per-session usage."""

    def __init__(self, clock: Callable[[], datetime] = _utcnow) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._records: Dict[str, QuotaRecord] = {}
        self._usage: Dict[str, SourceUsage] = {}

    def register(
        self,
        provider: str,
        keys: Sequence[str],
        limit_per_key: int,
        *,
        cost_per_call_usd: float = 0.0,
        results_per_call: int = 20,
    ) -> None:
        with self._lock:
            self._records[provider] = QuotaRecord(
                provider=provider,
                limit_per_key=max(0, limit_per_key),
                keys=[_KeyState(key=key) for key in keys if key],
                reset_at=_next_utc_midnight(self._clock()),
                cost_per_call_usd=cost_per_call_usd,
                results_per_call=results_per_call,
            )
        logger.info("Registered provider %s with %d key(s), %d calls/key/day", provider, len(keys), limit_per_key)

    def providers(self) -> List[str]:
        with self._lock:
            return list(self._records)

    def _roll_period(self, record: QuotaRecord) -> None:
        now = self._clock()
        if now >= record.reset_at:
            for state in record.keys:
                state.used = 0
            record.reset_at = _next_utc_midnight(now)
            logger.info("Quota period reset for %s", record.provider)

    def remaining(self, provider: str) -> int:
        with self._lock:
            record = self._records.get(provider)
            if record is None:
                return 0
            self._roll_period(record)
            return record.remaining

    def is_available(self, provider: str) -> bool:
        with self._lock:
            record = self._records.get(provider)
            if record is None or not record.available or not record.keys:
                return False
            self._roll_period(record)
            return record.remaining > 0

    def try_consume(self, provider: str, count: int = 1) -> Optional[str]:
        """Reserve ``count`` calls on the next key with room; returns that key or None."""
        with self._lock:
            record = self._records.get(provider)
            if record is None or not record.available or not record.keys:
                return None
            self._roll_period(record)
            total = len(record.keys)
            for offset in range(total):
                index = (record.rotation + offset) % total
                state = record.keys[index]
                if record.limit_per_key - state.used >= count:
                    state.used += count
                    record.total_calls += count
                    record.rotation = (index + 1) % total
                    return state.key
            return None

    def mark_unavailable(self, provider: str, reason: str) -> None:
        with self._lock:
            record = self._records.get(provider)
            if record is None or not record.available:
                return
            record.available = False
            record.unavailable_reason = reason
        logger.warning("Provider %s disabled for this session: %s", provider, reason)

    def record_usage(self, source: str, results: int, duration_ms: float, is_api: bool) -> None:
        with self._lock:
            usage = self._usage.get(source)
            if usage is None:
                usage = self._usage[source] = SourceUsage(source=source, is_api=is_api)
            usage.calls += 1
            usage.results += results
            usage.duration_ms += duration_ms
            record = self._records.get(source)
            if record is not None:
                record.total_results += results
                record.total_duration_ms += duration_ms

    def reset_session(self) -> None:
        with self._lock:
            self._usage.clear()
            for record in self._records.values():
                record.available = True
                record.unavailable_reason = None

    def usage_summary(self) -> Dict[str, object]:
        with self._lock:
            usage = [replace(entry) for entry in self._usage.values()]

        total = sum(entry.results for entry in usage)
        api_results = sum(entry.results for entry in usage if entry.is_api)
        return {
            "sources": [{"name": entry.source, "results": entry.results, "isApi": entry.is_api} for entry in usage],
            "totalResults": total,
            "apiResults": api_results,
            "scrapedResults": total - api_results,
            "apiPercentage": (api_results / total * 100.0) if total else 0.0,
        }

    def cost_savings(self) -> Dict[str, float]:
        with self._lock:
            api_usage = [replace(entry) for entry in self._usage.values() if entry.is_api]
            spent = sum(
                record.total_calls * record.cost_per_call_usd for record in self._records.values()
            )

        api_results = sum(entry.results for entry in api_usage)
        api_time_ms = sum(entry.duration_ms for entry in api_usage)
        scraping_cost = api_results * SCRAPING_COST_PER_RESULT_USD
        scraping_time_ms = api_results * SCRAPING_TIME_PER_RESULT_MS
        return {
            "apiCalls": sum(entry.calls for entry in api_usage),
            "scrapingAvoided": api_results,
            "timeSavedSeconds": round(max(0.0, scraping_time_ms - api_time_ms) / 1000.0),
            "costSavedUsd": round(max(0.0, scraping_cost - spent), 3),
        }

    def snapshot(self) -> List[Dict[str, object]]:
        """Per-provider availability and quota view, ordered by registration."""
        with self._lock:
            rows = []
            for record in self._records.values():
                self._roll_period(record)
                rows.append(
                    {
                        "name": record.provider,
                        "available": record.available and record.remaining > 0,
                        "unavailableReason": record.unavailable_reason,
                        "keyCount": len(record.keys),
                        "used": record.used,
                        "limit": record.limit,
                        "remaining": record.remaining,
                        "percentUsed": (record.used / record.limit * 100.0) if record.limit else 0.0,
                        "resetAt": record.reset_at.isoformat(),
                        "estimatedResults": record.remaining * record.results_per_call,
                        "lifetimeCalls": record.total_calls,
                        "lifetimeResults": record.total_results,
                    }
                )
            return rows
