"""Tests for server-side request classification."""

from __future__ import annotations

import logging

import pytest

from veilgate.classify import RequestClassifier, client_ip
from veilgate.ratelimit import RateLimiter
from tests.simulate.headers import BOT_USER_AGENTS, browser_headers, client_headers
from tests.simulate.timing import FakeClock, NeverSweep


@pytest.fixture
def classifier() -> RequestClassifier:
    limiter = RateLimiter(clock=FakeClock(), rng=NeverSweep())  # type: ignore[arg-type]
    return RequestClassifier(limiter)


# ---------------------------------------------------------------------------
# Client identity
# ---------------------------------------------------------------------------


class TestClientIP:
    """Tests for resolving the client identity."""

    def test_forwarded_for_first_value_wins(self) -> None:
        headers = {"X-Forwarded-For": "203.0.113.7, 10.0.0.1, 10.0.0.2"}
        assert client_ip(headers, "10.0.0.2") == "203.0.113.7"

    def test_real_ip_fallback(self) -> None:
        assert client_ip({"x-real-ip": "198.51.100.4"}, "10.0.0.2") == "198.51.100.4"

    def test_peer_fallback(self) -> None:
        assert client_ip({}, "10.0.0.2") == "10.0.0.2"

    def test_unknown(self) -> None:
        assert client_ip({}) == "unknown"


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


class TestClassify:
    """Tests for RequestClassifier.classify."""

    def test_browser_scores_zero(self, classifier: RequestClassifier) -> None:
        result = classifier.classify(browser_headers(), "10.0.0.1")
        assert result.score == 0
        assert result.record.signals == []
        assert result.hard_block is False

    @pytest.mark.parametrize("user_agent", sorted(BOT_USER_AGENTS.values()))
    def test_catalog_match_scores_once(
        self, classifier: RequestClassifier, user_agent: str
    ) -> None:
        result = classifier.classify(client_headers(user_agent), "10.0.0.1")
        assert result.score >= 60
        assert result.record.signals.count("bot-ua") == 1

    def test_many_patterns_still_count_once(self, classifier: RequestClassifier) -> None:
        ua = "Selenium WebDriver Puppeteer HeadlessChrome crawler curl monitor"
        result = classifier.classify(client_headers(ua), "10.0.0.1")
        assert result.record.signals == ["bot-ua"]
        assert result.score == 60

    def test_curl_is_not_hard_blocked_alone(self, classifier: RequestClassifier) -> None:
        result = classifier.classify(client_headers("curl/7.68.0"), "10.0.0.1")
        assert result.score == 60
        assert result.hard_block is False

    def test_missing_user_agent(self, classifier: RequestClassifier) -> None:
        result = classifier.classify({"Accept": "*/*"}, "10.0.0.1")
        assert result.record.signals == ["missing-ua"]
        assert result.score == 50

    def test_short_bot_user_agent_is_hard_blocked(self, classifier: RequestClassifier) -> None:
        result = classifier.classify({"User-Agent": "bot"}, "10.0.0.1")
        assert result.record.signals == ["bot-ua", "missing-ua"]
        assert result.score == 110
        assert result.hard_block is True

    def test_rate_limit_signal(self, classifier: RequestClassifier) -> None:
        headers = browser_headers()
        results = [classifier.classify(headers, "10.0.0.1") for _ in range(11)]
        assert all(r.score == 0 for r in results[:10])
        assert results[10].record.signals == ["rate-limit-exceeded"]
        assert results[10].score == 40
        assert results[10].hard_block is False

    def test_rate_limit_plus_bot_ua_is_hard_blocked(
        self, classifier: RequestClassifier
    ) -> None:
        headers = client_headers("curl/7.68.0")
        for _ in range(10):
            classifier.classify(headers, "10.0.0.1")
        result = classifier.classify(headers, "10.0.0.1")
        assert result.record.signals == ["bot-ua", "rate-limit-exceeded"]
        assert result.score == 100
        assert result.hard_block is True

    def test_assessment_carries_identity(self, classifier: RequestClassifier) -> None:
        result = classifier.classify(client_headers("curl/7.68.0"), "203.0.113.9")
        assert result.client_ip == "203.0.113.9"
        assert result.user_agent == "curl/7.68.0"

    def test_logs_blocked_and_suspicious(
        self, classifier: RequestClassifier, caplog: pytest.LogCaptureFixture
    ) -> None:
        with caplog.at_level(logging.INFO, logger="veilgate.classify"):
            classifier.classify(client_headers("curl/7.68.0"), "10.0.0.1")
            classifier.classify({"User-Agent": "bot"}, "10.0.0.2")
        messages = [r.getMessage() for r in caplog.records]
        assert any(m.startswith("[SUSPICIOUS] IP: 10.0.0.1") for m in messages)
        assert any(m.startswith("[BLOCKED] IP: 10.0.0.2") for m in messages)
