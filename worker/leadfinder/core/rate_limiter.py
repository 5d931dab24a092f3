"""Per-domain politeness delays for scraping fetches."""

from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Tuple
from urllib import robotparser
from urllib.parse import urlparse, urlunparse

from leadfinder.core.config import Settings

logger = logging.getLogger(__name__)

USER_AGENT = "LeadFinderBot/1.0 (+https://leadfinder.app/bot)"
WINDOW_SECONDS = 60.0
# Domains untouched for this long are forgotten, robots.txt verdict included.
IDLE_SECONDS = 600.0

# (requests per minute, minimum delay in seconds)
DOMAIN_PRESETS: Dict[str, Tuple[int, float]] = {
    "google.com": (10, 3.0),
    "yelp.com": (15, 2.5),
    "yellowpages.com": (20, 2.0),
    "bbb.org": (15, 2.5),
    "instagram.com": (10, 3.0),
    "facebook.com": (10, 3.0),
    "linkedin.com": (10, 3.0),
}


def extract_domain(url: str) -> str:
    parsed = urlparse(url if "://" in url else f"https://{url}")
    host = (parsed.hostname or url).lower()
    if host.startswith("www."):
        host = host[4:]
    return host


def load_crawl_delay(domain: str) -> Optional[float]:
    """Read ``Crawl-delay`` for our agent from the domain's robots.txt."""
    robots_url = urlunparse(("https", domain, "/robots.txt", "", "", ""))
    parser_obj = robotparser.RobotFileParser()
    parser_obj.set_url(robots_url)
    try:
        parser_obj.read()
    except Exception as exc:  # noqa: BLE001
        logger.debug("Unable to read robots.txt from %s: %s", robots_url, exc)
        return None
    delay = parser_obj.crawl_delay(USER_AGENT)
    return float(delay) if delay else None


@dataclass
class _DomainState:
    lock: threading.Lock = field(default_factory=threading.Lock)
    last_request: Optional[float] = None
    window_start: float = 0.0
    request_count: int = 0
    crawl_delay: Optional[float] = None
    robots_checked: bool = False


class DomainRateLimiter:
    """Serialises requests per domain and spaces them by the configured delay.

    Different domains never wait on each other; requests to the same domain
    queue on that domain's lock.
    """

    def __init__(
        self,
        *,
        enabled: bool = True,
        requests_per_minute: int = 20,
        min_delay: float = 2.0,
        respect_robots: bool = True,
        jitter: float = 0.3,
        presets: Optional[Dict[str, Tuple[int, float]]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        robots_loader: Callable[[str], Optional[float]] = load_crawl_delay,
    ) -> None:
        self.enabled = enabled
        self.requests_per_minute = max(1, requests_per_minute)
        self.min_delay = max(0.0, min_delay)
        self.respect_robots = respect_robots
        self.jitter = max(0.0, jitter)
        self.presets = DOMAIN_PRESETS if presets is None else presets
        self._clock = clock
        self._sleep = sleep
        self._robots_loader = robots_loader
        self._lock = threading.Lock()
        self._states: Dict[str, _DomainState] = {}
        self._last_prune = clock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "DomainRateLimiter":
        return cls(
            enabled=settings.rate_limit_enabled,
            requests_per_minute=settings.rate_limit_per_domain,
            min_delay=settings.rate_limit_min_delay,
            respect_robots=settings.rate_limit_respect_robots,
        )

    def _settings_for(self, domain: str) -> Tuple[int, float]:
        for preset_domain, preset in self.presets.items():
            if domain == preset_domain or domain.endswith(f".{preset_domain}"):
                return preset
        return self.requests_per_minute, self.min_delay

    def _prune(self, now: float) -> None:
        idle = [
            domain
            for domain, state in self._states.items()
            if not state.lock.locked() and now - (state.last_request or state.window_start) >= IDLE_SECONDS
        ]
        for domain in idle:
            del self._states[domain]
        self._last_prune = now
        if idle:
            logger.debug("Forgot %d idle domain(s)", len(idle))

    def _state(self, domain: str) -> _DomainState:
        with self._lock:
            now = self._clock()
            if now - self._last_prune >= WINDOW_SECONDS:
                self._prune(now)
            state = self._states.get(domain)
            if state is None:
                state = _DomainState(window_start=now)
                self._states[domain] = state
            return state

    def _delay_for(self, domain: str, state: _DomainState) -> float:
        per_minute, min_delay = self._settings_for(domain)
        now = self._clock()

        if now - state.window_start >= WINDOW_SECONDS:
            state.window_start = now
            state.request_count = 0

        if state.request_count >= per_minute:
            return max(WINDOW_SECONDS - (now - state.window_start), min_delay)

        if self.respect_robots and not state.robots_checked:
            state.crawl_delay = self._robots_loader(domain)
            state.robots_checked = True
        if state.crawl_delay and state.crawl_delay > min_delay:
            min_delay = state.crawl_delay

        if state.last_request is None:
            return 0.0
        target = min_delay * (1.0 + random.uniform(0.0, self.jitter)) if self.jitter else min_delay
        return max(0.0, target - (now - state.last_request))

    def acquire(self, url: str) -> float:
        """Block until a request to ``url`` is allowed; returns seconds waited."""
        if not self.enabled:
            return 0.0

        domain = extract_domain(url)
        state = self._state(domain)
        with state.lock:
            delay = self._delay_for(domain, state)
            if delay > 0:
                logger.debug("Rate limiting %s for %.2fs", domain, delay)
                self._sleep(delay)
            now = self._clock()
            if now - state.window_start >= WINDOW_SECONDS:
                state.window_start = now
                state.request_count = 0
            state.last_request = now
            state.request_count += 1
        return delay

    def stats(self) -> Dict[str, Dict[str, object]]:
        with self._lock:
            return {
                domain: {
                    "requestCount": state.request_count,
                    "lastRequest": state.last_request,
                    "crawlDelay": state.crawl_delay,
                }
                for domain, state in self._states.items()
            }
