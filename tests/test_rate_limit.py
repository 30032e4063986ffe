"""
Tests for rate-limit classification and the hourly request budget.

The key property is scoping: error strings inside unrelated GraphQL
traffic must never flip the session into backoff.
"""

import logging

from adcrawler.rate_limit import RateLimitMonitor, ResponseClass

from conftest import compact, rate_limited_body, search_body, unrelated_body


class TestClassify:
    """Ensure only ad-search responses can flip the rate-limit flag."""

    def test_http_429_always_rate_limited(self):
        monitor = RateLimitMonitor()
        assert monitor.classify(429, "") is ResponseClass.RATE_LIMITED
        assert monitor.rate_limited

    def test_other_non_200_is_unrelated(self):
        monitor = RateLimitMonitor()
        assert monitor.classify(500, rate_limited_body()) is ResponseClass.UNRELATED
        assert not monitor.rate_limited

    def test_signature_in_ad_search_response(self):
        monitor = RateLimitMonitor()
        assert monitor.classify(200, rate_limited_body()) is ResponseClass.RATE_LIMITED
        assert monitor.rate_limited
        assert monitor.hits == 1

    def test_numeric_error_code_signature(self):
        body = compact({"errors": [{"code": 1675004}], "ad_library_search": True})
        assert RateLimitMonitor().classify(200, body) is ResponseClass.RATE_LIMITED

    def test_signature_in_unrelated_response_is_ignored(self):
        monitor = RateLimitMonitor()
        body = compact({"errors": [{"message": "Rate limit exceeded", "code": 1675004}],
                        "data": {"viewer": {"presence": None}}})
        assert monitor.classify(200, body) is ResponseClass.UNRELATED
        assert not monitor.rate_limited

    def test_clean_ad_search_clears_flag(self):
        monitor = RateLimitMonitor()
        monitor.classify(429, "")
        assert monitor.classify(200, search_body(["1"])) is ResponseClass.CLEAN
        assert not monitor.rate_limited

    def test_unrelated_response_leaves_flag_alone(self):
        monitor = RateLimitMonitor()
        monitor.classify(429, "")
        assert monitor.classify(200, unrelated_body()) is ResponseClass.UNRELATED
        assert monitor.rate_limited

    def test_state_is_per_instance(self):
        a, b = RateLimitMonitor(), RateLimitMonitor()
        a.classify(429, "")
        assert a.rate_limited and not b.rate_limited

    def test_clear(self):
        monitor = RateLimitMonitor()
        monitor.classify(429, "")
        monitor.clear()
        assert not monitor.rate_limited


class TestRequestBudget:
    """Hourly request window and its threshold warnings."""

    def test_window_slides(self):
        now = [0.0]
        monitor = RateLimitMonitor(clock=lambda: now[0])
        for _ in range(10):
            monitor.track_request()
        assert monitor.requests_last_hour() == 10
        now[0] = 3601.0
        assert monitor.requests_last_hour() == 0

    def test_thresholds_log_once(self, caplog):
        now = [0.0]
        monitor = RateLimitMonitor(warn_threshold=3, critical_threshold=5, clock=lambda: now[0])
        with caplog.at_level(logging.WARNING, logger="adcrawler.rate_limit"):
            for _ in range(7):
                monitor.track_request()
        messages = [r.getMessage() for r in caplog.records]
        assert sum("warning at 3" in m for m in messages) == 1
        assert sum("CRITICAL" in m for m in messages) == 1
        assert not monitor.rate_limited
