"""Tests for the Yelp, SerpAPI, directory scraper and Hunter sources."""

import pytest
import requests
from unittest.mock import Mock

from leadfinder.core.errors import ProviderConfigError, ProviderError, ProviderQuotaError
from leadfinder.core.quota import QuotaRegistry
from leadfinder.vendors import directory_scraper, hunter, serpapi_maps
from leadfinder.vendors.base import retrying_session
from leadfinder.vendors.yelp_fusion import YelpFusionProvider


class DummyResponse:
    def __init__(self, status_code=200, payload=None, text="", url=None):
        self.status_code = status_code
        self._payload = payload or {}
        self.text = text
        self.url = url

    def json(self):
        return self._payload


class DummySession:
    def __init__(self, responses=None, error=None):
        self.headers = {}
        self.calls = []
        self.responses = list(responses or [])
        self.error = error

    def get(self, url, params=None, timeout=None, headers=None):
        self.calls.append({"url": url, "params": params, "timeout": timeout, "headers": headers})
        if self.error is not None:
            raise self.error
        return self.responses.pop(0)


def _registry(provider, limit=10, keys=("key-1",)):
    registry = QuotaRegistry()
    registry.register(provider, list(keys), limit)
    return registry


def _yelp_business(index):
    return {
        "name": f"Cafe {index}",
        "phone": f"+1512555{index:04d}",
        "location": {"display_address": [f"{index} Main St", "Austin, TX 78701"], "state": "TX"},
        "categories": [{"alias": "cafes"}],
    }


# ---------- Yelp Fusion ----------


def test_yelp_requires_location():
    provider = YelpFusionProvider(_registry("yelp_fusion"), DummySession())

    with pytest.raises(ProviderError):
        provider.fetch_listings("cafes", None, 10)


def test_yelp_pages_with_offset_and_bearer_token():
    session = DummySession(
        [
            DummyResponse(payload={"businesses": [_yelp_business(i) for i in range(50)], "total": 70}),
            DummyResponse(payload={"businesses": [_yelp_business(i) for i in range(50, 70)], "total": 70}),
        ]
    )
    registry = _registry("yelp_fusion")
    provider = YelpFusionProvider(registry, session)

    candidates = provider.fetch_listings("cafes", "Austin, TX", 100)

    assert len(candidates) == 70
    assert session.calls[0]["headers"]["Authorization"] == "Bearer key-1"
    assert session.calls[0]["params"] == {"term": "cafes", "location": "Austin, TX", "limit": 50, "offset": 0}
    assert session.calls[1]["params"]["offset"] == 50
    assert session.calls[1]["params"]["limit"] == 50
    assert registry.remaining("yelp_fusion") == 8


def test_yelp_rejected_credentials():
    provider = YelpFusionProvider(_registry("yelp_fusion"), DummySession([DummyResponse(status_code=401)]))

    with pytest.raises(ProviderConfigError):
        provider.fetch_listings("cafes", "Austin, TX", 10)


def test_yelp_upstream_rate_limit():
    provider = YelpFusionProvider(_registry("yelp_fusion"), DummySession([DummyResponse(status_code=429)]))

    with pytest.raises(ProviderQuotaError):
        provider.fetch_listings("cafes", "Austin, TX", 10)


def test_yelp_network_failure_is_provider_error():
    session = DummySession(error=requests.ConnectionError("boom"))
    provider = YelpFusionProvider(_registry("yelp_fusion"), session)

    with pytest.raises(ProviderError):
        provider.fetch_listings("cafes", "Austin, TX", 10)


def test_yelp_non_object_body_is_provider_error():
    session = DummySession([DummyResponse(payload=["unexpected"])])
    provider = YelpFusionProvider(_registry("yelp_fusion"), session)

    with pytest.raises(ProviderError, match="unexpected response body"):
        provider.fetch_listings("cafes", "Austin, TX", 10)


def test_yelp_keeps_first_page_when_quota_runs_out():
    session = DummySession([DummyResponse(payload={"businesses": [_yelp_business(i) for i in range(50)]})])
    provider = YelpFusionProvider(_registry("yelp_fusion", limit=1), session)

    candidates = provider.fetch_listings("cafes", "Austin, TX", 80)

    assert len(candidates) == 50
    assert len(session.calls) == 1


# ---------- SerpAPI ----------


class FakeSearch:
    def __init__(self, pages):
        self.pages = list(pages)
        self.params = []

    def __call__(self, params):
        self.params.append(dict(params))
        page = self.pages.pop(0)
        if isinstance(page, Exception):
            raise page
        return Mock(get_dict=Mock(return_value=page))


def _serp_results(start, count):
    return {
        "local_results": [
            {"title": f"Plumber {i}", "address": f"{i} Oak St, Austin, TX 78701", "website": f"plumber{i}.com"}
            for i in range(start, start + count)
        ]
    }


def test_build_serpapi_params():
    params = serpapi_maps.build_serpapi_params(" plumbers in Austin ", "key", start=20)

    assert params == {"engine": "google_maps", "q": "plumbers in Austin", "api_key": "key", "type": "search", "start": 20}
    with pytest.raises(ValueError):
        serpapi_maps.build_serpapi_params("  ", "key")


def test_fetch_from_serpapi_retries_then_succeeds():
    search = FakeSearch([RuntimeError("timeout"), _serp_results(0, 1)])
    sleeps = []

    data = serpapi_maps.fetch_from_serpapi({"q": "plumbers"}, search_factory=search, sleep=sleeps.append)

    assert len(data["local_results"]) == 1
    assert len(sleeps) == 1


def test_fetch_from_serpapi_gives_up_after_retry_limit():
    search = FakeSearch([RuntimeError("timeout")] * 3)

    with pytest.raises(ProviderError):
        serpapi_maps.fetch_from_serpapi({"q": "plumbers"}, search_factory=search, sleep=lambda _: None)
    assert len(search.params) == serpapi_maps.RETRY_LIMIT + 1


def test_fetch_from_serpapi_bad_key_is_not_retried():
    search = FakeSearch([{"error": "Invalid API key. Your API key should be here"}])

    with pytest.raises(ProviderConfigError):
        serpapi_maps.fetch_from_serpapi({"q": "plumbers"}, search_factory=search, sleep=lambda _: None)
    assert len(search.params) == 1


def test_fetch_from_serpapi_no_results_is_empty():
    search = FakeSearch([{"error": "Google hasn't returned any results for this query."}])

    data = serpapi_maps.fetch_from_serpapi({"q": "plumbers"}, search_factory=search, sleep=lambda _: None)

    assert data == {"local_results": []}


def test_parse_serpapi_maps_handles_nested_shapes():
    nested = {"local_results": {"places": [{"title": "Nested Co"}]}}
    single = {"place_results": {"title": "Single Co"}}

    assert [c.name for c in serpapi_maps.parse_serpapi_maps(nested)] == ["Nested Co"]
    assert [c.name for c in serpapi_maps.parse_serpapi_maps(single)] == ["Single Co"]
    assert serpapi_maps.parse_serpapi_maps(None) == []


def test_serpapi_provider_pages_by_start():
    search = FakeSearch([_serp_results(0, 20), _serp_results(20, 5)])
    registry = _registry("serpapi")
    provider = serpapi_maps.SerpApiMapsProvider(registry, search_factory=search, sleep=lambda _: None)

    candidates = provider.fetch_listings("plumbers", "Austin, TX", 30)

    assert len(candidates) == 25
    assert search.params[0]["q"] == "plumbers in Austin, TX"
    assert "start" not in search.params[0]
    assert search.params[1]["start"] == 20
    assert registry.remaining("serpapi") == 8


# ---------- Directory scraper ----------

RESULT_HTML = """
<div class="result">
  <a class="business-name" href="/austin-tx/mip/smile-dental-1"><span>Smile Dental</span></a>
  <a class="track-visit-website" href="https://smiledental.com">Website</a>
  <div class="phones phone primary">(512) 555-0101</div>
  <div class="adr"><div class="street-address">100 Congress Ave</div><div class="locality">Austin, TX 78701</div></div>
  <div class="result-rating four half"></div>
  <div class="ratings"><span class="count">(23)</span></div>
  <div class="years-in-business"><div class="count">12</div></div>
  <div class="categories"><a>Dentists</a><a>Orthodontists</a></div>
  <p>11-50 employees</p>
</div>
<div class="result">
  <a class="business-name" href="/austin-tx/mip/bare-listing-2">Bare Listing</a>
</div>
<div class="result"><span>No name here</span></div>
"""


def test_parse_search_results():
    candidates = directory_scraper.parse_search_results(RESULT_HTML, "https://www.yellowpages.com/search")

    assert [c.name for c in candidates] == ["Smile Dental", "Bare Listing"]
    first = candidates[0]
    assert first.website == "https://smiledental.com/"
    assert first.phone == "+15125550101"
    assert first.address == "100 Congress Ave, Austin, TX 78701"
    assert first.state == "TX"
    assert first.rating == 4.5
    assert first.review_count == 23
    assert first.years_in_business == 12
    assert first.employee_count == 11
    assert first.industry_code == "Dentists"
    assert first.raw_snapshot["listing_url"] == "https://www.yellowpages.com/austin-tx/mip/smile-dental-1"
    assert candidates[1].website is None
    assert candidates[1].rating is None


def test_directory_scraper_waits_on_rate_limiter_per_page():
    page = "".join(
        f'<div class="result"><a class="business-name">Dentist {i}</a></div>' for i in range(directory_scraper.RESULTS_PER_PAGE)
    )
    session = DummySession(
        [
            DummyResponse(text=page, url="https://www.yellowpages.com/search?page=1"),
            DummyResponse(text=RESULT_HTML, url="https://www.yellowpages.com/search?page=2"),
        ]
    )
    limiter = Mock()
    scraper = directory_scraper.DirectoryScraper(limiter, session)

    candidates = scraper.fetch_listings("dentists", "Austin, TX", 100)

    assert len(candidates) == directory_scraper.RESULTS_PER_PAGE + 2
    assert limiter.acquire.call_count == 2
    assert session.headers["User-Agent"].startswith("LeadFinderBot")
    assert session.calls[0]["params"] == {"search_terms": "dentists", "geo_location_terms": "Austin, TX"}
    assert session.calls[1]["params"]["page"] == "2"
    assert scraper.is_api is False


def test_directory_scraper_requires_location():
    scraper = directory_scraper.DirectoryScraper(Mock(), DummySession())

    with pytest.raises(ProviderError):
        scraper.fetch_listings("dentists", None, 10)


# ---------- Hunter ----------


def test_hunter_prefers_verified_generic_inbox():
    session = DummySession(
        [
            DummyResponse(
                payload={
                    "data": {
                        "emails": [
                            {"value": "jane@acme.com", "confidence": 97, "verification": {"status": "valid"}},
                            {"value": "Info@Acme.com", "confidence": 90, "verification": {"status": "valid"}},
                            {"value": "sales@acme.com", "confidence": 99},
                        ]
                    }
                }
            )
        ]
    )
    registry = _registry("hunter", limit=5)
    client = hunter.HunterClient("secret", registry, session)

    result = client.domain_search("acme.com")

    assert result.email == "info@acme.com"
    assert result.source == "hunter-verified"
    assert result.confidence == 0.95
    assert session.calls[0]["params"]["domain"] == "acme.com"
    assert registry.remaining("hunter") == 4


def test_hunter_unverified_result():
    session = DummySession([DummyResponse(payload={"data": {"emails": [{"value": "owner@acme.com", "confidence": 60}]}})])

    result = hunter.HunterClient("secret", session=session).domain_search("acme.com")

    assert result.source == "hunter"
    assert result.confidence == 0.80


def test_hunter_skips_call_when_quota_exhausted():
    session = DummySession()
    client = hunter.HunterClient("secret", _registry("hunter", limit=0), session)

    assert client.domain_search("acme.com") is None
    assert session.calls == []


def test_hunter_rejected_key_disables_provider():
    registry = _registry("hunter")
    client = hunter.HunterClient("secret", registry, DummySession([DummyResponse(status_code=401)]))

    with pytest.raises(ProviderError):
        client.domain_search("acme.com")
    assert client.enabled is False


def test_hunter_rate_limit_returns_none():
    registry = _registry("hunter")
    client = hunter.HunterClient("secret", registry, DummySession([DummyResponse(status_code=429)]))

    assert client.domain_search("acme.com") is None
    assert registry.is_available("hunter") is False


def test_hunter_disabled_without_key():
    assert hunter.HunterClient("").enabled is False


def test_retrying_session_retries_server_errors_only():
    session = retrying_session(total=2)
    retries = session.get_adapter("https://api.yelp.com").max_retries

    assert retries.total == 2
    assert 503 in retries.status_forcelist
    assert 429 not in retries.status_forcelist
    assert retries.is_retry("GET", 502) is True
    assert retries.is_retry("POST", 502) is False
