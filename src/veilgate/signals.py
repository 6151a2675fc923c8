"""Signal catalog: user-agent patterns, signal weights and score thresholds.

Pure data plus matchers. Nothing here keeps state or applies scores.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from veilgate.models import Signal, SignalCategory

# ---------------------------------------------------------------------------
# Thresholds
# ---------------------------------------------------------------------------

HARD_BLOCK_THRESHOLD = 80.0
SUSPICIOUS_LOG_THRESHOLD = 40.0
ALLOW_BOUNDARY = 80.0
CLIENT_SCORE_FACTOR = 0.5
MIN_USER_AGENT_LENGTH = 5
HEADLESS_BONUS_MIN_SIGNALS = 2

# ---------------------------------------------------------------------------
# Server-side signals
# ---------------------------------------------------------------------------

BOT_UA = Signal(name="bot-ua", weight=60, category=SignalCategory.SERVER)
MISSING_UA = Signal(name="missing-ua", weight=50, category=SignalCategory.SERVER)
RATE_LIMIT_EXCEEDED = Signal(name="rate-limit-exceeded", weight=40, category=SignalCategory.SERVER)

# ---------------------------------------------------------------------------
# Client-side signals re-scored by the aggregator from raw checks
# ---------------------------------------------------------------------------

CDP_DETECTED = Signal(name="cdp-detected", weight=60, category=SignalCategory.CLIENT)
WEBDRIVER_DETECTED = Signal(name="webdriver-detected", weight=70, category=SignalCategory.CLIENT)
AUTOMATION_ARTIFACTS = Signal(
    name="automation-artifacts", weight=65, category=SignalCategory.CLIENT
)
HEADLESS_BROWSER = Signal(name="headless-browser", weight=50, category=SignalCategory.CLIENT)
FINGERPRINT_REUSE = Signal(name="fingerprint-reuse", weight=20, category=SignalCategory.CLIENT)

# ---------------------------------------------------------------------------
# User-agent patterns
# ---------------------------------------------------------------------------


def _compile(*patterns: str) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


# Ordered: matching walks groups and patterns in this exact order.
USER_AGENT_PATTERNS: tuple[tuple[str, tuple[re.Pattern[str], ...]], ...] = (
    (
        "email-scanner",
        _compile(
            r"ProofPoint",
            r"Mimecast",
            r"Barracuda",
            r"SafeRedirect",
            r"EmailScanner",
            r"MailScanner",
            r"ATP",
            r"Advanced.*Threat",
            r"Link.*Scanner",
            r"Security.*Scanner",
            r"URL.*Scanner",
            r"IronPort",
            r"FortiMail",
            r"Sophos",
        ),
    ),
    ("headless-browser", _compile(r"HeadlessChrome", r"PhantomJS", r"Nightmare")),
    (
        "automation-framework",
        _compile(
            r"Selenium",
            r"WebDriver",
            r"Puppeteer",
            r"Playwright",
            r"Cypress",
            r"TestCafe",
            r"ChromeDriver",
        ),
    ),
    ("crawler", _compile(r"bot", r"crawl", r"spider", r"scrape")),
    (
        "http-client",
        _compile(
            r"curl",
            r"wget",
            r"python-requests",
            r"python-urllib",
            r"node-fetch",
            r"axios",
            r"okhttp",
            r"Apache-HttpClient",
            r"Java/",
            r"Go-http-client",
            r"libwww-perl",
        ),
    ),
    (
        "monitoring",
        _compile(
            r"monitor",
            r"check",
            r"validator",
            r"preview",
            r"uptime",
            r"pingdom",
            r"StatusCake",
        ),
    ),
)


@dataclass(frozen=True)
class PatternMatch:
    """The first catalog pattern a user-agent matched."""

    group: str
    pattern: str


def match_user_agent(user_agent: str) -> PatternMatch | None:
    """Find the first catalog pattern contained in a user-agent string.

    Args:
        user_agent: The raw User-Agent header value.

    Returns:
        The first match in catalog order, or None.
    """
    if not user_agent:
        return None
    for group, patterns in USER_AGENT_PATTERNS:
        for pattern in patterns:
            if pattern.search(user_agent):
                return PatternMatch(group=group, pattern=pattern.pattern)
    return None


def is_missing_user_agent(user_agent: str | None) -> bool:
    """Whether a user-agent is absent or too short to be a real browser's."""
    return not user_agent or len(user_agent) < MIN_USER_AGENT_LENGTH
