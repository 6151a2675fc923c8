"""Tests for the score aggregator and redirect cloaking."""

from __future__ import annotations

import re
from urllib.parse import urlsplit

import pytest

from veilgate import signals
from veilgate.aggregate import ScoreAggregator, build_redirect_url
from veilgate.detector import detect
from veilgate.ledger import FingerprintLedger
from veilgate.models import (
    ScoreRecord,
    ServerAssessment,
    SignalCategory,
    UrlParams,
    Verdict,
    VerifyHumanRequest,
)
from tests.simulate.environments import headless_puppeteer, human_chrome, selenium_chrome
from tests.simulate.timing import FakeClock, NeverSweep

LABEL = re.compile(r"^[0-9a-f]{12}\.example\.com$")


@pytest.fixture
def aggregator() -> ScoreAggregator:
    ledger = FingerprintLedger(clock=FakeClock(), rng=NeverSweep())  # type: ignore[arg-type]
    return ScoreAggregator(ledger, "https://example.com")


def _assessment(ip: str = "10.0.0.1", *server_signals: signals.Signal) -> ServerAssessment:
    record = ScoreRecord(category=SignalCategory.SERVER)
    for signal in server_signals:
        record.add(signal)
    return ServerAssessment(record=record, client_ip=ip)


def _payload(
    client_score: float = 0,
    checks: dict | None = None,
    fingerprint: dict | None = None,
    url_params: UrlParams | None = None,
) -> VerifyHumanRequest:
    return VerifyHumanRequest(
        fingerprint=fingerprint if fingerprint is not None else {"canvas": "abc"},
        behaviors={},
        client_score=client_score,
        checks=checks or {},
        url_params=url_params,
    )


# ---------------------------------------------------------------------------
# Redirect construction
# ---------------------------------------------------------------------------


class TestBuildRedirectUrl:
    """Tests for cloaked redirect construction."""

    def test_random_label_and_path(self) -> None:
        url = build_redirect_url("https://example.com", UrlParams(path="/foo"))
        parts = urlsplit(url)
        assert LABEL.match(parts.hostname or "")
        assert parts.path == "/foo"
        assert parts.scheme == "https"

    def test_fresh_label_every_call(self) -> None:
        params = UrlParams(path="/foo")
        urls = {build_redirect_url("https://example.com", params) for _ in range(20)}
        assert len(urls) == 20

    def test_query_override(self) -> None:
        url = build_redirect_url(
            "https://example.com/landing?src=a",
            UrlParams(query="?id=42&x=y"),
            label_factory=lambda: "abcdefabcdef",
        )
        assert url == "https://abcdefabcdef.example.com/landing?id=42&x=y"

    def test_keeps_target_path_and_port_without_params(self) -> None:
        url = build_redirect_url("http://example.com:8443/app", label_factory=lambda: "0" * 12)
        assert url == "http://000000000000.example.com:8443/app"

    def test_bare_host_gets_root_path(self) -> None:
        url = build_redirect_url("https://example.com", label_factory=lambda: "a" * 12)
        assert url == "https://aaaaaaaaaaaa.example.com/"

    @pytest.mark.parametrize(
        "target", ["not a url", "example.com/path", "https://example.com:port"]
    )
    def test_malformed_target_falls_back(self, target: str) -> None:
        assert build_redirect_url(target, UrlParams(path="/foo")) == target


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------


class TestDecide:
    """Tests for ScoreAggregator.decide."""

    def test_clean_visitor_is_allowed(self, aggregator: ScoreAggregator) -> None:
        decision = aggregator.decide(_assessment(), _payload(url_params=UrlParams(path="/foo")))
        assert decision.verdict == Verdict.HUMAN
        assert decision.final_score == 0
        assert decision.allowed is True
        assert decision.redirect_url is not None
        assert urlsplit(decision.redirect_url).path == "/foo"

    def test_client_score_is_halved(self, aggregator: ScoreAggregator) -> None:
        decision = aggregator.decide(_assessment(), _payload(client_score=30))
        assert decision.final_score == 15

    def test_server_score_carries_over(self, aggregator: ScoreAggregator) -> None:
        decision = aggregator.decide(_assessment("10.0.0.1", signals.BOT_UA), _payload())
        assert decision.final_score == 60
        assert decision.signals == ["bot-ua"]
        assert decision.verdict == Verdict.SUSPICIOUS
        assert decision.allowed is True

    def test_webdriver_check_rescored_server_side(self, aggregator: ScoreAggregator) -> None:
        decision = aggregator.decide(_assessment(), _payload(checks={"webdriver": True}))
        assert decision.final_score >= 70
        assert decision.verdict == Verdict.SUSPICIOUS
        assert "webdriver-detected" in decision.signals

    def test_webdriver_plus_minor_signal_is_denied(self, aggregator: ScoreAggregator) -> None:
        fp = {"canvas": "shared"}
        aggregator.decide(_assessment("10.0.0.1"), _payload(fingerprint=fp))
        decision = aggregator.decide(
            _assessment("10.0.0.2"), _payload(checks={"webdriver": True}, fingerprint=fp)
        )
        assert decision.final_score == 90
        assert decision.signals == ["webdriver-detected", "fingerprint-reuse"]
        assert decision.verdict == Verdict.LIKELY_BOT
        assert decision.allowed is False
        assert decision.redirect_url is None

    def test_double_counting_preserved(self, aggregator: ScoreAggregator) -> None:
        decision = aggregator.decide(
            _assessment(), _payload(client_score=45, checks={"webdriver": True})
        )
        assert decision.final_score == 92.5

    @pytest.mark.parametrize(
        ("checks", "expected", "name"),
        [
            ({"cdp": True}, 60, "cdp-detected"),
            ({"automationArtifacts": ["selenium"]}, 65, "automation-artifacts"),
            ({"headlessSignals": ["no-plugins", "no-mimetypes"]}, 50, "headless-browser"),
        ],
    )
    def test_check_bonuses(
        self, aggregator: ScoreAggregator, checks: dict, expected: float, name: str
    ) -> None:
        decision = aggregator.decide(_assessment(), _payload(checks=checks))
        assert decision.final_score == expected
        assert decision.signals == [name]

    def test_single_headless_signal_no_bonus(self, aggregator: ScoreAggregator) -> None:
        decision = aggregator.decide(_assessment(), _payload(checks={"headlessSignals": ["x"]}))
        assert decision.final_score == 0

    def test_empty_artifact_list_no_bonus(self, aggregator: ScoreAggregator) -> None:
        decision = aggregator.decide(_assessment(), _payload(checks={"automationArtifacts": []}))
        assert decision.final_score == 0

    def test_same_ip_repeat_is_not_reuse(self, aggregator: ScoreAggregator) -> None:
        aggregator.decide(_assessment("10.0.0.1"), _payload())
        decision = aggregator.decide(_assessment("10.0.0.1"), _payload())
        assert "fingerprint-reuse" not in decision.signals

    def test_denied_and_allowed_share_shape(self, aggregator: ScoreAggregator) -> None:
        allowed = aggregator.decide(_assessment(), _payload())
        denied = aggregator.decide(_assessment(), _payload(checks={"cdp": True, "webdriver": True}))
        assert denied.allowed is False
        assert set(allowed.model_dump()) == set(denied.model_dump())


class TestDetectorPayloads:
    """Detector output posted straight into the aggregator."""

    def test_human_chrome(self, aggregator: ScoreAggregator) -> None:
        result = detect(human_chrome())
        payload = VerifyHumanRequest.model_validate(result.to_payload())
        decision = aggregator.decide(_assessment(), payload)
        assert decision.verdict == Verdict.HUMAN
        assert decision.allowed is True

    @pytest.mark.parametrize("preset", [headless_puppeteer, selenium_chrome])
    def test_automation_is_denied(self, aggregator: ScoreAggregator, preset: object) -> None:
        result = detect(preset())  # type: ignore[operator]
        payload = VerifyHumanRequest.model_validate(result.to_payload())
        decision = aggregator.decide(_assessment(), payload)
        assert decision.verdict == Verdict.BOT
        assert decision.redirect_url is None

    def test_forged_client_total_cannot_hide_webdriver(
        self, aggregator: ScoreAggregator
    ) -> None:
        body = detect(selenium_chrome()).to_payload()
        body["clientScore"] = 0
        decision = aggregator.decide(_assessment(), VerifyHumanRequest.model_validate(body))
        assert decision.final_score == 135
        assert decision.allowed is False


class TestForgedClientScore:
    """Out-of-range client totals that reach the aggregator unvalidated."""

    CHECKS = {"webdriver": True, "cdp": True, "automationArtifacts": ["selenium"]}

    @pytest.mark.parametrize("score", [-1000.0, float("nan"), float("-inf"), float("inf")])
    def test_counts_as_zero(self, aggregator: ScoreAggregator, score: float) -> None:
        payload = VerifyHumanRequest.model_construct(
            fingerprint={"canvas": "abc"}, behaviors={}, client_score=score, checks=self.CHECKS
        )
        decision = aggregator.decide(_assessment(), payload)
        assert decision.final_score == 195
        assert decision.signals == [
            "cdp-detected",
            "webdriver-detected",
            "automation-artifacts",
        ]
        assert decision.verdict == Verdict.BOT
        assert decision.allowed is False
        assert decision.redirect_url is None
