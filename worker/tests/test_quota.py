import threading
from datetime import datetime, timedelta, timezone

from leadfinder.core.quota import QuotaRegistry


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 5, 1, 22, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


def test_try_consume_rotates_keys_and_stops_at_limit():
    registry = QuotaRegistry(clock=FakeClock())
    registry.register("google_places", ["k1", "k2"], 2)

    keys = [registry.try_consume("google_places") for _ in range(5)]

    assert keys == ["k1", "k2", "k1", "k2", None]
    assert registry.remaining("google_places") == 0
    assert registry.is_available("google_places") is False


def test_unknown_or_keyless_provider_is_unavailable():
    registry = QuotaRegistry(clock=FakeClock())
    registry.register("serpapi", [], 100)

    assert registry.try_consume("serpapi") is None
    assert registry.try_consume("nope") is None
    assert registry.is_available("serpapi") is False
    assert registry.remaining("nope") == 0


def test_quota_resets_at_utc_midnight():
    clock = FakeClock()
    registry = QuotaRegistry(clock=clock)
    registry.register("hunter", ["h"], 1)
    assert registry.try_consume("hunter") == "h"
    assert registry.try_consume("hunter") is None

    clock.now += timedelta(hours=2, minutes=1)

    assert registry.remaining("hunter") == 1
    assert registry.try_consume("hunter") == "h"


def test_concurrent_consumers_never_overspend():
    registry = QuotaRegistry(clock=FakeClock())
    registry.register("yelp_fusion", ["y1", "y2"], 50)
    granted = []
    lock = threading.Lock()

    def consume():
        for _ in range(30):
            key = registry.try_consume("yelp_fusion")
            if key is not None:
                with lock:
                    granted.append(key)

    threads = [threading.Thread(target=consume) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(granted) == 100
    assert registry.remaining("yelp_fusion") == 0


def test_mark_unavailable_until_session_reset(caplog):
    registry = QuotaRegistry(clock=FakeClock())
    registry.register("google_places", ["k1"], 10)

    with caplog.at_level("WARNING"):
        registry.mark_unavailable("google_places", "REQUEST_DENIED")

    assert registry.is_available("google_places") is False
    assert registry.try_consume("google_places") is None
    assert "disabled for this session" in " ".join(caplog.messages)
    snapshot = registry.snapshot()[0]
    assert snapshot["available"] is False
    assert snapshot["unavailableReason"] == "REQUEST_DENIED"

    registry.reset_session()

    assert registry.is_available("google_places") is True


def test_usage_summary_and_savings():
    registry = QuotaRegistry(clock=FakeClock())
    registry.register("google_places", ["k1"], 10, cost_per_call_usd=0.017)
    registry.try_consume("google_places")
    registry.record_usage("google_places", 20, 300.0, True)
    registry.record_usage("yellowpages", 10, 9000.0, False)

    summary = registry.usage_summary()
    assert summary["totalResults"] == 30
    assert summary["apiResults"] == 20
    assert summary["scrapedResults"] == 10
    assert round(summary["apiPercentage"], 1) == 66.7

    savings = registry.cost_savings()
    assert savings["apiCalls"] == 1
    assert savings["scrapingAvoided"] == 20
    assert savings["timeSavedSeconds"] == 40
    assert savings["costSavedUsd"] == round(20 * 0.002 - 0.017, 3)


def test_usage_is_kept_as_per_source_totals():
    registry = QuotaRegistry(clock=FakeClock())
    for _ in range(5000):
        registry.record_usage("google_places", 2, 10.0, True)
        registry.record_usage("yellowpages", 1, 50.0, False)

    summary = registry.usage_summary()

    assert summary["sources"] == [
        {"name": "google_places", "results": 10000, "isApi": True},
        {"name": "yellowpages", "results": 5000, "isApi": False},
    ]
    assert registry.cost_savings()["apiCalls"] == 5000
    assert len(registry._usage) == 2


def test_snapshot_estimates_results():
    registry = QuotaRegistry(clock=FakeClock())
    registry.register("yelp_fusion", ["y1", "y2"], 5, results_per_call=50)
    registry.try_consume("yelp_fusion", 3)

    row = registry.snapshot()[0]

    assert row["name"] == "yelp_fusion"
    assert row["keyCount"] == 2
    assert row["used"] == 3
    assert row["limit"] == 10
    assert row["estimatedResults"] == 7 * 50
    assert row["resetAt"] == "2024-05-02T00:00:00+00:00"
