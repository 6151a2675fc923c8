"""Core data models for Veilgate."""

from __future__ import annotations

import enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

# Verdict ladder boundaries, evaluated highest first
_THRESHOLD_BOT = 100.0
_THRESHOLD_LIKELY_BOT = 80.0
_THRESHOLD_SUSPICIOUS = 50.0


class SignalCategory(enum.StrEnum):
    """Which side of the exchange observed a signal."""

    SERVER = "server"
    CLIENT = "client"


class Verdict(enum.StrEnum):
    """Final classification of a visitor, totally ordered by score."""

    HUMAN = "human"
    SUSPICIOUS = "suspicious"
    LIKELY_BOT = "likely-bot"
    BOT = "bot"

    @classmethod
    def from_score(cls, score: float) -> Verdict:
        """Map a final score onto the verdict ladder.

        Args:
            score: The combined server and client score.

        Returns:
            The highest verdict whose threshold the score reaches.
        """
        if score >= _THRESHOLD_BOT:
            return cls.BOT
        if score >= _THRESHOLD_LIKELY_BOT:
            return cls.LIKELY_BOT
        if score >= _THRESHOLD_SUSPICIOUS:
            return cls.SUSPICIOUS
        return cls.HUMAN

    @property
    def allowed(self) -> bool:
        """Whether the gated action may fire for this verdict."""
        return self not in (Verdict.BOT, Verdict.LIKELY_BOT)


class Signal(BaseModel):
    """A named, weighted piece of evidence."""

    model_config = ConfigDict(frozen=True)

    name: str
    weight: float = Field(ge=0.0)
    category: SignalCategory


class ScoreRecord(BaseModel):
    """Running total plus the ordered names of the signals applied.

    A record belongs to a single category and to the request flow that
    created it. It is discarded once a verdict has been produced.
    """

    category: SignalCategory
    signals: list[str] = Field(default_factory=list)
    total: float = 0.0

    def add(self, signal: Signal) -> None:
        """Apply a catalog signal to the record.

        Args:
            signal: The signal to apply. Its category must match the record's.

        Raises:
            ValueError: If the signal belongs to the other category.
        """
        if signal.category != self.category:
            raise ValueError(
                f"Cannot add {signal.category} signal '{signal.name}' to a {self.category} record"
            )
        self.signals.append(signal.name)
        self.total += signal.weight

    def add_points(self, name: str, weight: float) -> None:
        """Apply an ad-hoc weighted signal."""
        self.signals.append(name)
        self.total += weight


class FingerprintRecord(BaseModel):
    """Observation metadata for one fingerprint hash."""

    owning_ip: str
    occurrence_count: int = Field(default=1, ge=1)
    first_seen: float
    last_seen: float

    @model_validator(mode="after")
    def _check_order(self) -> FingerprintRecord:
        if self.last_seen < self.first_seen:
            raise ValueError("last_seen must not precede first_seen")
        return self


class Observation(BaseModel):
    """Result of recording a fingerprint in the ledger."""

    is_new: bool
    reused_from_different_ip: bool = False


class Challenge(BaseModel):
    """A proof-of-work challenge as handed to the client."""

    token: str
    difficulty: int = Field(ge=0, le=64)
    issued_at: float = Field(description="Issue time in epoch milliseconds")


class PowResult(BaseModel):
    """Outcome of a proof-of-work verification."""

    valid: bool
    reason: str | None = None


class ServerAssessment(BaseModel):
    """What the request classifier concluded about one inbound request."""

    record: ScoreRecord = Field(
        default_factory=lambda: ScoreRecord(category=SignalCategory.SERVER)
    )
    hard_block: bool = False
    client_ip: str = "unknown"
    user_agent: str = ""

    @property
    def score(self) -> float:
        """Server-side total."""
        return self.record.total


class Decision(BaseModel):
    """Output of the score aggregator for one verification call."""

    verdict: Verdict
    final_score: float
    signals: list[str] = Field(default_factory=list)
    allowed: bool
    redirect_url: str | None = None


# ---------------------------------------------------------------------------
# API payloads
# ---------------------------------------------------------------------------


class UrlParams(BaseModel):
    """Path and query the visitor originally requested."""

    path: str | None = None
    query: str | None = None


class VerifyHumanRequest(BaseModel):
    """Body of POST /api/verify-human, as posted by the client detector."""

    model_config = ConfigDict(populate_by_name=True)

    fingerprint: dict[str, Any] | None = None
    behaviors: dict[str, Any] | None = None
    client_score: float | None = Field(
        default=None, alias="clientScore", ge=0, allow_inf_nan=False
    )
    checks: dict[str, Any] | None = None
    url_params: UrlParams | None = Field(default=None, alias="urlParams")

    def missing_fields(self) -> list[str]:
        """Return the names of required fields absent from the body."""
        missing = []
        if self.fingerprint is None:
            missing.append("fingerprint")
        if self.behaviors is None:
            missing.append("behaviors")
        return missing


class VerifyHumanResponse(BaseModel):
    """Body returned by POST /api/verify-human.

    Denied and allowed responses share this exact shape; only the
    redirect field differs (null when denied).
    """

    model_config = ConfigDict(populate_by_name=True)

    allowed: bool
    verdict: Verdict
    score: float
    signals: list[str]
    redirect_url: str | None = Field(alias="redirectUrl")

    @classmethod
    def from_decision(cls, decision: Decision) -> VerifyHumanResponse:
        """Build the response body from an aggregator decision."""
        return cls(
            allowed=decision.allowed,
            verdict=decision.verdict,
            score=decision.final_score,
            signals=decision.signals,
            redirect_url=decision.redirect_url,
        )


class ChallengeResponse(BaseModel):
    """Body returned by POST /api/challenge."""

    challenge: str
    difficulty: int
    timestamp: float

    @classmethod
    def from_challenge(cls, challenge: Challenge) -> ChallengeResponse:
        """Build the response body from an issued challenge."""
        return cls(
            challenge=challenge.token,
            difficulty=challenge.difficulty,
            timestamp=challenge.issued_at,
        )


class VerifyPowRequest(BaseModel):
    """Body of POST /api/verify-pow."""

    challenge: str | None = None
    nonce: int | str | None = None
    timestamp: float | None = Field(default=None, allow_inf_nan=False)

    def missing_fields(self) -> list[str]:
        """Return the names of required fields absent from the body.

        A nonce of 0 is a legitimate solution; a zero timestamp is not.
        """
        missing = []
        if not self.challenge:
            missing.append("challenge")
        if self.nonce is None:
            missing.append("nonce")
        if not self.timestamp:
            missing.append("timestamp")
        return missing
