"""Crawl a business website for the contact details it publishes itself.

Only the home page and a few contact/about pages on the same domain are
visited. Every fetch goes through the shared domain rate limiter and is
checked against the site's robots.txt first.
"""

from __future__ import annotations

import logging
import re
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, List, Optional, Set
from urllib import robotparser
from urllib.parse import urljoin, urlparse, urlunparse

import requests
from bs4 import BeautifulSoup
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright

from leadfinder.core.rate_limiter import USER_AGENT, DomainRateLimiter, extract_domain
from leadfinder.etl.transform import normalize_phone, sanitize_website

logger = logging.getLogger(__name__)

PAGE_TIMEOUT = 10
MAX_PAGES_PER_DOMAIN = 3
CONTACT_PATHS = ("/contact", "/contact-us", "/contactus", "/about", "/about-us", "/team")
GENERIC_PREFIXES = ("info", "contact", "hello", "office", "sales", "support", "admin", "enquiries", "inquiries")

# Template and asset addresses that match the email pattern but are never inboxes.
_JUNK_EMAIL_DOMAINS = ("example.com", "sentry.io", "wixpress.com", "domain.com", "email.com")
_ASSET_SUFFIXES = (".png", ".jpg", ".jpeg", ".gif", ".svg", ".webp")
_INSTAGRAM_HOSTS = ("instagram.com", "instagr.am")
_INSTAGRAM_NON_PROFILES = {"p", "explore", "reel", "reels", "stories", "accounts"}

_EMAIL_PATTERN = re.compile(r"[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}", re.IGNORECASE)
_PHONE_PATTERN = re.compile(r"\+?\d[\d\s().\-]{6,}")
_SPA_ROOT = re.compile("(app|root)", re.IGNORECASE)

RobotsLoader = Callable[[str], Optional[robotparser.RobotFileParser]]


@dataclass
class FetchedPage:
    url: str
    soup: BeautifulSoup

    @property
    def text(self) -> str:
        return self.soup.get_text(" ", strip=True)

    def hrefs(self) -> List[str]:
        return [anchor["href"].strip() for anchor in self.soup.find_all("a", href=True) if anchor["href"].strip()]

    def looks_unrendered(self) -> bool:
        """Near-empty shell of a client-rendered app."""
        if len(self.text) > 200:
            return False
        if self.soup.find(attrs={"data-page": True}):
            return True
        mount = self.soup.find(id=_SPA_ROOT)
        return bool(mount and not mount.get_text(strip=True))


class HeadlessBrowser:
    """Lazily started Chromium used only for pages that need JavaScript."""

    def __init__(self, timeout_ms: int = PAGE_TIMEOUT * 1000) -> None:
        self.timeout_ms = timeout_ms
        self._playwright = None
        self._browser = None

    def render(self, url: str) -> FetchedPage:
        if self._browser is None:
            self._playwright = sync_playwright().start()
            self._browser = self._playwright.chromium.launch(headless=True)
        page = self._browser.new_page(user_agent=USER_AGENT)
        try:
            page.goto(url, wait_until="networkidle", timeout=self.timeout_ms)
            return FetchedPage(page.url, BeautifulSoup(page.content(), "html.parser"))
        finally:
            page.close()

    def close(self) -> None:
        if self._browser is not None:
            self._browser.close()
        if self._playwright is not None:
            self._playwright.stop()
        self._browser = None
        self._playwright = None


def fetch_page(session: requests.Session, url: str) -> Optional[FetchedPage]:
    """GET ``url``; None for network errors, HTTP errors and non-HTML bodies."""
    try:
        response = session.get(url, timeout=PAGE_TIMEOUT, allow_redirects=True)
    except requests.RequestException as exc:
        logger.warning("Failed to fetch %s: %s", url, exc)
        return None
    if response.status_code >= 400:
        logger.debug("Skipping %s (HTTP %s)", url, response.status_code)
        return None
    content_type = response.headers.get("Content-Type", "").lower()
    if "text/html" not in content_type:
        logger.debug("Skipping %s: %s is not HTML", url, content_type)
        return None
    return FetchedPage(response.url, BeautifulSoup(response.text, "html.parser"))


def is_plausible_email(email: str) -> bool:
    local, _, domain = email.partition("@")
    if not local or not domain or email.endswith(_ASSET_SUFFIXES):
        return False
    return not any(domain == junk or domain.endswith(f".{junk}") for junk in _JUNK_EMAIL_DOMAINS)


def extract_emails(text: str) -> List[str]:
    found = {match.group(0).lower().strip(".") for match in _EMAIL_PATTERN.finditer(text or "")}
    return sorted(email for email in found if is_plausible_email(email))


def mailto_addresses(hrefs: List[str]) -> Set[str]:
    addresses = set()
    for href in hrefs:
        if not href.lower().startswith("mailto:"):
            continue
        address = href[len("mailto:"):].split("?", 1)[0].strip().lower()
        if is_plausible_email(address):
            addresses.add(address)
    return addresses


def extract_phones(text: str, default_region: Optional[str] = None) -> List[str]:
    """E.164 numbers found in ``text``; fragments that do not parse are dropped."""
    phones = set()
    for raw in _PHONE_PATTERN.findall(text or ""):
        phone = normalize_phone(raw, default_region)
        if phone and phone.startswith("+"):
            phones.add(phone)
    return sorted(phones)


def extract_instagram(soup: BeautifulSoup, base_url: str) -> Optional[str]:
    """First Instagram profile handle linked from the page."""
    for anchor in soup.find_all("a", href=True):
        link = urlparse(urljoin(base_url, anchor["href"].strip()))
        host = link.netloc.lower()
        if not any(host == known or host.endswith(f".{known}") for known in _INSTAGRAM_HOSTS):
            continue
        handle = next((part for part in link.path.split("/") if part), None)
        if handle and handle.lower() not in _INSTAGRAM_NON_PROFILES:
            return handle
    return None


def email_domain_matches(email: str, domain: str) -> bool:
    mailbox_domain = email.rsplit("@", 1)[-1].lower()
    domain = domain.lower()
    return mailbox_domain == domain or mailbox_domain.endswith(f".{domain}") or domain.endswith(f".{mailbox_domain}")


def rank_emails(emails: List[str], domain: str) -> List[str]:
    """Own-domain addresses first, generic inboxes before personal ones."""
    return sorted(
        set(emails),
        key=lambda email: (
            not email_domain_matches(email, domain),
            email.split("@", 1)[0] not in GENERIC_PREFIXES,
            email,
        ),
    )


def contact_links(page: FetchedPage, domain: str) -> List[str]:
    """Same-domain contact/about links on ``page``; the two usual paths if none are linked."""
    links: List[str] = []
    for href in page.hrefs():
        target = urlparse(urljoin(page.url, href))
        if target.netloc and extract_domain(target.geturl()) != domain:
            continue
        if not any(path in target.path.lower() for path in CONTACT_PATHS):
            continue
        link = urlunparse((target.scheme, target.netloc, target.path, "", "", ""))
        if link not in links:
            links.append(link)
    return links or [urljoin(page.url, path) for path in CONTACT_PATHS[:2]]


def load_robots(root_url: str) -> Optional[robotparser.RobotFileParser]:
    parts = urlparse(root_url)
    rules = robotparser.RobotFileParser(urlunparse((parts.scheme, parts.netloc, "/robots.txt", "", "", "")))
    try:
        rules.read()
    except (OSError, ValueError) as exc:
        logger.debug("No usable robots.txt for %s: %s", parts.netloc, exc)
        return None
    return rules


@dataclass
class _Findings:
    emails: Set[str] = field(default_factory=set)
    phones: Set[str] = field(default_factory=set)
    instagram: Optional[str] = None

    def absorb(self, page: FetchedPage, region: Optional[str]) -> None:
        text = page.text
        self.emails.update(extract_emails(text))
        self.emails.update(mailto_addresses(page.hrefs()))
        self.phones.update(extract_phones(text, region))
        if self.instagram is None:
            self.instagram = extract_instagram(page.soup, page.url)


class SiteEnricher:
    def __init__(
        self,
        website: str,
        *,
        session: Optional[requests.Session] = None,
        rate_limiter: Optional[DomainRateLimiter] = None,
        max_pages: int = MAX_PAGES_PER_DOMAIN,
        use_js_renderer: bool = False,
        default_region: Optional[str] = "US",
        robots_loader: RobotsLoader = load_robots,
    ) -> None:
        root_url = sanitize_website(website)
        if not root_url:
            raise ValueError(f"Not a crawlable website: {website!r}")

        self.root_url = root_url
        self.domain = extract_domain(root_url)
        self.max_pages = max_pages
        self.default_region = default_region
        self.rate_limiter = rate_limiter
        self.use_js_renderer = use_js_renderer
        self.session = session or requests.Session()
        for header, value in (
            ("User-Agent", USER_AGENT),
            ("Accept", "text/html,application/xhtml+xml"),
            ("Accept-Language", "en-US,en;q=0.9"),
        ):
            self.session.headers.setdefault(header, value)
        self._robots = robots_loader(root_url)
        self._browser: Optional[HeadlessBrowser] = None

    def _allowed(self, url: str) -> bool:
        if urlparse(url).netloc and extract_domain(url) != self.domain:
            return False
        if self._robots is not None and not self._robots.can_fetch(USER_AGENT, url):
            logger.info("robots.txt disallows %s", url)
            return False
        return True

    def _render(self, url: str) -> Optional[FetchedPage]:
        if not self.use_js_renderer:
            return None
        if self._browser is None:
            self._browser = HeadlessBrowser()
        try:
            return self._browser.render(url)
        except PlaywrightTimeoutError:
            logger.warning("Headless render of %s timed out", url)
        except PlaywrightError as exc:
            logger.warning("Headless rendering disabled after failure on %s: %s", url, exc)
            self.use_js_renderer = False
        return None

    def _load(self, url: str) -> Optional[FetchedPage]:
        if self.rate_limiter is not None:
            self.rate_limiter.acquire(url)
        page = fetch_page(self.session, url)
        if page is None:
            return self._render(url)
        if self.use_js_renderer and page.looks_unrendered():
            return self._render(page.url) or page
        return page

    def enrich(self) -> Dict[str, object]:
        """Crawl the home page, then contact pages until an own-domain email turns up.

        Returns ``website``, ``pages_crawled`` (fetch attempts), ranked
        ``emails``, E.164 ``phones`` and an ``instagram`` handle.
        """
        findings = _Findings()
        attempted = 0
        if self._allowed(self.root_url):
            queue: Deque[str] = deque([self.root_url])
            seen: Set[str] = {self.root_url}
            while queue and attempted < self.max_pages:
                url = queue.popleft()
                if url != self.root_url and not self._allowed(url):
                    continue
                attempted += 1
                page = self._load(url)
                if page is None:
                    continue
                findings.absorb(page, self.default_region)
                if any(email_domain_matches(email, self.domain) for email in findings.emails):
                    break
                if url == self.root_url:
                    for link in contact_links(page, self.domain):
                        if link not in seen:
                            seen.add(link)
                            queue.append(link)
        else:
            logger.info("robots.txt disallows %s; not crawling", self.domain)

        return {
            "website": self.root_url,
            "pages_crawled": attempted,
            "emails": rank_emails(list(findings.emails), self.domain),
            "phones": sorted(findings.phones),
            "instagram": findings.instagram,
        }

    def close(self) -> None:
        self.session.close()
        if self._browser is not None:
            self._browser.close()
            self._browser = None

    def __enter__(self) -> "SiteEnricher":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
