"""Verdict engine: merges server and client evidence into one decision.

final = server score
      + client score * 0.5
      + bonuses re-scored from the raw client checks
      + fingerprint reuse penalty

The client's own total is discounted because the client controls it.
The raw checks are scored again here so a forged total cannot hide a
webdriver flag or a debugger hit. A negative or non-finite total counts
as zero. A check the client already counted is therefore counted twice;
that is intended.
"""

from __future__ import annotations

import logging
import math
import secrets
from collections.abc import Callable
from typing import Any
from urllib.parse import urlsplit, urlunsplit

from veilgate import signals
from veilgate.ledger import FingerprintLedger, fingerprint_hash
from veilgate.models import (
    Decision,
    ScoreRecord,
    ServerAssessment,
    SignalCategory,
    UrlParams,
    Verdict,
    VerifyHumanRequest,
)

logger = logging.getLogger(__name__)


def random_label() -> str:
    """Return a fresh 12 hex character subdomain label."""
    return secrets.token_hex(6)


def build_redirect_url(
    target: str,
    url_params: UrlParams | None = None,
    label_factory: Callable[[], str] = random_label,
) -> str:
    """Cloak the configured target behind a random subdomain.

    Args:
        target: The configured downstream URL.
        url_params: Optional path and query taken from the visitor's own URL.
        label_factory: Source of the random host label.

    Returns:
        The target with a fresh label prepended to its host and the path
        and query replaced when given. A target that cannot be parsed is
        returned unchanged.
    """
    try:
        parts = urlsplit(target)
        if not parts.scheme or not parts.hostname:
            raise ValueError(f"not an absolute URL: {target!r}")
        host = f"{label_factory()}.{parts.hostname}"
        if parts.port is not None:
            host = f"{host}:{parts.port}"
        netloc = host
        if parts.username:
            userinfo = parts.username
            if parts.password:
                userinfo = f"{userinfo}:{parts.password}"
            netloc = f"{userinfo}@{host}"

        path = parts.path or "/"
        query = parts.query
        if url_params and url_params.path:
            path = url_params.path if url_params.path.startswith("/") else f"/{url_params.path}"
        if url_params and url_params.query:
            query = url_params.query.removeprefix("?")

        return urlunsplit((parts.scheme, netloc, path, query, parts.fragment))
    except ValueError as exc:
        logger.warning("Could not cloak redirect target, using it as-is: %s", exc)
        return target


def _checks_bonus(checks: dict[str, Any] | None) -> ScoreRecord:
    """Score the raw client checks that count regardless of the client total."""
    record = ScoreRecord(category=SignalCategory.CLIENT)
    if not checks:
        return record
    if checks.get("cdp"):
        record.add(signals.CDP_DETECTED)
    if checks.get("webdriver"):
        record.add(signals.WEBDRIVER_DETECTED)
    artifacts = checks.get("automationArtifacts")
    if isinstance(artifacts, list | tuple) and len(artifacts) > 0:
        record.add(signals.AUTOMATION_ARTIFACTS)
    headless = checks.get("headlessSignals")
    if isinstance(headless, list | tuple) and len(headless) >= signals.HEADLESS_BONUS_MIN_SIGNALS:
        record.add(signals.HEADLESS_BROWSER)
    return record


class ScoreAggregator:
    """Produces the final verdict and, when allowed, the cloaked redirect."""

    def __init__(
        self,
        ledger: FingerprintLedger,
        redirect_target: str,
        label_factory: Callable[[], str] = random_label,
        client_score_factor: float = signals.CLIENT_SCORE_FACTOR,
    ) -> None:
        self.ledger = ledger
        self.redirect_target = redirect_target
        self.label_factory = label_factory
        self.client_score_factor = client_score_factor

    def decide(self, assessment: ServerAssessment, payload: VerifyHumanRequest) -> Decision:
        """Combine the server assessment with a client verification payload.

        Args:
            assessment: The classifier output for this request.
            payload: The validated client body. fingerprint must be present.

        Returns:
            The decision. redirect_url is None whenever the visitor is not
            allowed through.
        """
        ip = assessment.client_ip
        total = assessment.score
        found = list(assessment.record.signals)

        # A client can only add to its own suspicion, never subtract.
        client_score = payload.client_score or 0.0
        if not math.isfinite(client_score) or client_score < 0:
            client_score = 0.0
        total += client_score * self.client_score_factor

        bonus = _checks_bonus(payload.checks)
        total += bonus.total
        found.extend(bonus.signals)

        observation = self.ledger.observe(fingerprint_hash(payload.fingerprint or {}), ip)
        if observation.reused_from_different_ip:
            total += signals.FINGERPRINT_REUSE.weight
            found.append(signals.FINGERPRINT_REUSE.name)

        verdict = Verdict.from_score(total)
        allowed = verdict.allowed

        logger.info(
            "[VERIFICATION] IP: %s, Verdict: %s, Score: %s, Signals: %s",
            ip,
            verdict,
            total,
            ", ".join(found),
        )

        redirect_url = None
        if allowed:
            redirect_url = build_redirect_url(
                self.redirect_target, payload.url_params, self.label_factory
            )

        return Decision(
            verdict=verdict,
            final_score=total,
            signals=found,
            allowed=allowed,
            redirect_url=redirect_url,
        )
