"""Server-side request classification.

Scores one inbound request from its headers and the client's recent
request rate:
  - user-agent matches a catalog pattern  -> bot-ua (+60, once)
  - user-agent missing or under 5 chars   -> missing-ua (+50)
  - over the per-IP ceiling in the window -> rate-limit-exceeded (+40)

A total of 80 or more is a hard block: the caller must answer with the
inert page before any detector script is served.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping

from veilgate import signals
from veilgate.models import ScoreRecord, ServerAssessment, SignalCategory
from veilgate.ratelimit import RateLimiter

logger = logging.getLogger(__name__)


def client_ip(headers: Mapping[str, str], peer: str | None = None) -> str:
    """Resolve the client identity from forwarding headers.

    Args:
        headers: Request headers. Lookups are case-insensitive.
        peer: Address of the directly connected socket peer, if known.

    Returns:
        The first X-Forwarded-For entry, else X-Real-IP, else the peer,
        else "unknown".
    """
    h = {k.lower(): v for k, v in headers.items()}
    forwarded = h.get("x-forwarded-for", "")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = h.get("x-real-ip", "").strip()
    return real_ip or peer or "unknown"


class RequestClassifier:
    """Scores inbound requests against the signal catalog and rate limiter."""

    def __init__(
        self,
        limiter: RateLimiter,
        hard_block_threshold: float = signals.HARD_BLOCK_THRESHOLD,
    ) -> None:
        self.limiter = limiter
        self.hard_block_threshold = hard_block_threshold

    def classify(self, headers: Mapping[str, str], identity: str) -> ServerAssessment:
        """Score a single request.

        Each call counts against the identity's rate window.

        Args:
            headers: The raw request headers.
            identity: The resolved client IP.

        Returns:
            A ServerAssessment carrying the server-category ScoreRecord and
            the hard-block flag.
        """
        h = {k.lower(): v for k, v in headers.items()}
        user_agent = h.get("user-agent", "")
        record = ScoreRecord(category=SignalCategory.SERVER)

        match = signals.match_user_agent(user_agent)
        if match is not None:
            record.add(signals.BOT_UA)
            logger.debug("User-agent matched %s pattern %r", match.group, match.pattern)

        if signals.is_missing_user_agent(user_agent):
            record.add(signals.MISSING_UA)

        count = self.limiter.admit(identity)
        if self.limiter.exceeded(count):
            record.add(signals.RATE_LIMIT_EXCEEDED)

        hard_block = record.total >= self.hard_block_threshold
        summary = ", ".join(record.signals)
        if hard_block:
            logger.warning(
                "[BLOCKED] IP: %s, UA: %s, Score: %s, Signals: %s",
                identity,
                user_agent,
                record.total,
                summary,
            )
        elif record.total >= signals.SUSPICIOUS_LOG_THRESHOLD:
            logger.info(
                "[SUSPICIOUS] IP: %s, UA: %s, Score: %s, Signals: %s",
                identity,
                user_agent,
                record.total,
                summary,
            )

        return ServerAssessment(
            record=record,
            hard_block=hard_block,
            client_ip=identity,
            user_agent=user_agent,
        )
